import math
from typing import Literal, Optional

import structlog
from bson.objectid import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field

from config import ADMIN_PAGE_SIZE
from database import create_document, db, new_id, serialize_doc, utcnow
from mailer import send_support_reply_email
from realtime import emit_admin_activity
from routers.deps import ensure_owner_or_admin, find_or_404
from schemas import SupportMessage, SupportReply
from security import get_current_user, get_optional_user, require_admin

logger = structlog.get_logger()

router = APIRouter(prefix="/api/support", tags=["support"])

Subject = Literal["General Inquiry", "Account Support", "Order Issue", "Partnership", "Feedback"]
Status = Literal["Open", "In Progress", "Closed"]


class TicketBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    subject: Subject
    message: str = Field(..., min_length=1, max_length=5000)


class StatusBody(BaseModel):
    status: Status


class ReplyBody(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)


def load_ticket(ticket_id: str) -> dict:
    return find_or_404("supportmessage", ticket_id, "Support ticket not found")


def add_reply(ticket: dict, user: dict, content: str, admin: bool) -> dict:
    reply = SupportReply(id=new_id(), user_id=user["id"], is_admin=admin, content=content, created_at=utcnow())
    update = {"$push": {"replies": reply.model_dump()}}
    if admin and ticket["status"] == "Open":
        update["$set"] = {"status": "In Progress"}
    db["supportmessage"].update_one({"_id": ticket["_id"]}, update)
    return serialize_doc(db["supportmessage"].find_one({"_id": ticket["_id"]}))


@router.post("", status_code=201)
def create_ticket(body: TicketBody, background_tasks: BackgroundTasks, user=Depends(get_optional_user)):
    ticket = SupportMessage(**body.model_dump(), user_id=user["id"] if user else None)
    tid = create_document("supportmessage", ticket)
    background_tasks.add_task(
        emit_admin_activity,
        {"type": "new_support_ticket", "message": f"New support ticket: {body.subject} from {body.name}", "ticketId": tid},
    )
    logger.info(f"Support ticket {tid} created")
    return {"message": "Your message has been received", "id": tid}


@router.get("")
def list_tickets(
    status: Optional[Status] = None,
    subject: Optional[Subject] = None,
    page: int = 1,
    user=Depends(require_admin),
):
    filt = {}
    if status:
        filt["status"] = status
    if subject:
        filt["subject"] = subject
    page = max(page, 1)
    total = db["supportmessage"].count_documents(filt)
    items = (
        db["supportmessage"].find(filt).sort("created_at", -1).skip((page - 1) * ADMIN_PAGE_SIZE).limit(ADMIN_PAGE_SIZE)
    )
    return {
        "tickets": [serialize_doc(t) for t in items],
        "page": page,
        "pages": max(math.ceil(total / ADMIN_PAGE_SIZE), 1),
        "total": total,
    }


@router.get("/my-tickets")
def my_tickets(user=Depends(get_current_user)):
    return [serialize_doc(t) for t in db["supportmessage"].find({"user_id": user["id"]}).sort("created_at", -1)]


@router.get("/{ticket_id}")
def get_ticket(ticket_id: str, user=Depends(get_current_user)):
    ticket = load_ticket(ticket_id)
    ensure_owner_or_admin(ticket.get("user_id"), user, "Not authorized to view this ticket")
    return serialize_doc(ticket)


@router.put("/{ticket_id}/status")
def set_status(ticket_id: str, body: StatusBody, user=Depends(require_admin)):
    ticket = load_ticket(ticket_id)
    db["supportmessage"].update_one({"_id": ticket["_id"]}, {"$set": {"status": body.status}})
    return serialize_doc(db["supportmessage"].find_one({"_id": ObjectId(ticket_id)}))


@router.post("/{ticket_id}/reply")
def user_reply(ticket_id: str, body: ReplyBody, user=Depends(get_current_user)):
    ticket = load_ticket(ticket_id)
    if ticket.get("user_id") != user["id"]:
        raise HTTPException(status_code=403, detail="Not authorized to reply to this ticket")
    if ticket["status"] == "Closed":
        raise HTTPException(status_code=400, detail="This ticket is closed")
    return add_reply(ticket, user, body.content, admin=False)


@router.post("/{ticket_id}/admin-reply")
def admin_reply(ticket_id: str, body: ReplyBody, background_tasks: BackgroundTasks, user=Depends(require_admin)):
    ticket = load_ticket(ticket_id)
    out = add_reply(ticket, user, body.content, admin=True)
    background_tasks.add_task(send_support_reply_email, ticket, body.content)
    return out
