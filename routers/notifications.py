from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, HTTPException

from config import NOTIFICATIONS_LIMIT
from database import db, serialize_doc, user_briefs
from security import get_current_user

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def load_own(notification_id: str, user: dict) -> dict:
    notification = db["notification"].find_one({"_id": ObjectId(notification_id)})
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    if notification["recipient_id"] != user["id"]:
        raise HTTPException(status_code=403, detail="Not authorized")
    return notification


@router.get("")
def list_notifications(user=Depends(get_current_user)):
    items = list(
        db["notification"].find({"recipient_id": user["id"]}).sort("created_at", -1).limit(NOTIFICATIONS_LIMIT)
    )
    senders = user_briefs([n.get("sender_id") for n in items])
    out = []
    for n in items:
        sn = serialize_doc(n)
        sn["sender"] = senders.get(n.get("sender_id"))
        out.append(sn)
    unread = db["notification"].count_documents({"recipient_id": user["id"], "is_read": False})
    return {"notifications": out, "unreadCount": unread}


@router.put("/mark-all-read")
def mark_all_read(user=Depends(get_current_user)):
    res = db["notification"].update_many({"recipient_id": user["id"], "is_read": False}, {"$set": {"is_read": True}})
    return {"updated": res.modified_count}


@router.put("/{notification_id}/read")
def mark_read(notification_id: str, user=Depends(get_current_user)):
    notification = load_own(notification_id, user)
    db["notification"].update_one({"_id": notification["_id"]}, {"$set": {"is_read": True}})
    return {"message": "Notification marked as read"}


@router.delete("/{notification_id}")
def delete_notification(notification_id: str, user=Depends(get_current_user)):
    notification = load_own(notification_id, user)
    db["notification"].delete_one({"_id": notification["_id"]})
    return {"message": "Notification removed"}
