from typing import List, Optional

import structlog
from bson.objectid import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from config import MESSAGES_PER_PAGE, RATE_LIMIT_UPLOAD
from database import as_aware, create_document, db, find_by_ids, serialize_doc, user_briefs, utcnow
from realtime import emit_to_user
from schemas import Attachment, Conversation, Message
from security import get_current_user, limiter
from uploads import ATTACHMENT_EXTENSIONS, delete_upload, save_upload

logger = structlog.get_logger()

router = APIRouter(prefix="/api/messages", tags=["messages"])


class SendMessageBody(BaseModel):
    recipient_id: str
    content: str = Field("", max_length=5000)
    referenced_message_id: Optional[str] = None


# ----------------------- Helpers -----------------------
def is_blocked(sender: dict, recipient: dict) -> bool:
    return str(recipient["_id"]) in sender.get("blocked_users", []) or sender["id"] in recipient.get("blocked_users", [])


def find_or_create_conversation(a: str, b: str) -> dict:
    conv = db["conversation"].find_one({"participants": {"$all": [a, b]}})
    if conv:
        return conv
    cid = create_document("conversation", Conversation(participants=[a, b]))
    return db["conversation"].find_one({"_id": ObjectId(cid)})


def message_out(msg: dict, briefs: dict) -> dict:
    out = serialize_doc(msg)
    out["sender"] = briefs.get(msg["sender_id"])
    return out


def check_recipient(sender: dict, recipient_id: str) -> dict:
    recipient = db["user"].find_one({"_id": ObjectId(recipient_id)})
    if not recipient:
        raise HTTPException(status_code=404, detail="Recipient not found")
    if recipient_id == sender["id"]:
        raise HTTPException(status_code=400, detail="You cannot message yourself")
    if is_blocked(sender, recipient):
        raise HTTPException(status_code=403, detail="You cannot message this user")
    return recipient


def deliver(background_tasks: BackgroundTasks, sender: dict, recipient_id: str, content: str, attachments: list, referenced: Optional[str]):
    check_recipient(sender, recipient_id)
    if not content.strip() and not attachments:
        raise HTTPException(status_code=400, detail="Message must have content or an attachment")

    conv = find_or_create_conversation(sender["id"], recipient_id)
    conv_id = str(conv["_id"])
    if referenced:
        ref = db["message"].find_one({"_id": ObjectId(referenced)})
        if not ref or ref["conversation_id"] != conv_id:
            raise HTTPException(status_code=400, detail="Referenced message not found in this conversation")

    message = Message(
        conversation_id=conv_id,
        sender_id=sender["id"],
        content=content.strip(),
        attachments=attachments,
        read_by=[sender["id"]],
        referenced_message_id=referenced,
    )
    mid = create_document("message", message)
    db["conversation"].update_one({"_id": conv["_id"]}, {"$set": {"last_message_id": mid, "updated_at": utcnow()}})
    out = message_out(db["message"].find_one({"_id": ObjectId(mid)}), user_briefs([sender["id"]]))
    background_tasks.add_task(emit_to_user, recipient_id, "new_private_message", out)
    return out


def open_conversations(user: dict) -> list:
    """(conversation, partner) pairs, skipping partners blocked in either direction."""
    uid = user["id"]
    blocked = set(user.get("blocked_users", []))
    pairs = []
    for conv in db["conversation"].find({"participants": uid}):
        other_id = next((p for p in conv["participants"] if p != uid), None)
        if other_id in blocked:
            continue
        other = db["user"].find_one({"_id": ObjectId(other_id)}) if other_id else None
        if not other or uid in other.get("blocked_users", []):
            continue
        pairs.append((conv, other))
    return pairs


# ----------------------- Routes -----------------------
@router.get("/conversations")
def list_conversations(user=Depends(get_current_user)):
    uid = user["id"]
    conversations = open_conversations(user)
    conversations.sort(key=lambda pair: as_aware(pair[0].get("updated_at")), reverse=True)

    last_messages = {str(m["_id"]): m for m in find_by_ids("message", [c["last_message_id"] for c, _ in conversations if c.get("last_message_id")])}
    out = []
    for conv, other in conversations:
        cid = str(conv["_id"])
        unread = db["message"].count_documents({"conversation_id": cid, "read_by": {"$ne": uid}})
        last = last_messages.get(conv.get("last_message_id"))
        out.append(
            {
                "id": cid,
                "participant": {"id": str(other["_id"]), "username": other["username"], "profile_pic": other.get("profile_pic")},
                "lastMessage": serialize_doc(last) if last else None,
                "unreadCount": unread,
                "updated_at": serialize_doc({"t": conv.get("updated_at")})["t"],
            }
        )
    return out


@router.get("/unread-count")
def unread_count(user=Depends(get_current_user)):
    conv_ids = [str(c["_id"]) for c, _ in open_conversations(user)]
    count = db["message"].count_documents({"conversation_id": {"$in": conv_ids}, "read_by": {"$ne": user["id"]}})
    return {"unreadCount": count}


@router.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: str, user=Depends(get_current_user)):
    conv = db["conversation"].find_one({"_id": ObjectId(conversation_id), "participants": user["id"]})
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")
    newest = list(
        db["message"].find({"conversation_id": conversation_id}).sort("created_at", -1).limit(MESSAGES_PER_PAGE)
    )
    newest.reverse()
    db["message"].update_many(
        {"conversation_id": conversation_id, "read_by": {"$ne": user["id"]}},
        {"$addToSet": {"read_by": user["id"]}},
    )
    briefs = user_briefs(conv["participants"])
    return {
        "id": conversation_id,
        "participants": [briefs[p] for p in conv["participants"] if p in briefs],
        "messages": [message_out(m, briefs) for m in newest],
    }


@router.post("", status_code=201)
def send_message(body: SendMessageBody, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    return deliver(background_tasks, user, body.recipient_id, body.content, [], body.referenced_message_id)


@router.post("/attachments", status_code=201)
@limiter.limit(RATE_LIMIT_UPLOAD)
def send_with_attachments(
    request: Request,
    background_tasks: BackgroundTasks,
    recipient_id: str = Form(...),
    content: str = Form(""),
    referenced_message_id: Optional[str] = Form(None),
    files: List[UploadFile] = File(...),
    user=Depends(get_current_user),
):
    check_recipient(user, recipient_id)
    attachments = []
    try:
        for f in files:
            saved = save_upload(f, "messages", "attachment", ATTACHMENT_EXTENSIONS)
            attachments.append(
                Attachment(
                    type=saved["kind"],
                    url=saved["url"],
                    filename=saved["filename"],
                    mimetype=saved["mimetype"],
                    size=saved["size"],
                )
            )
        return deliver(background_tasks, user, recipient_id, content, attachments, referenced_message_id)
    except HTTPException:
        for a in attachments:
            delete_upload(a.url)
        raise
