from datetime import timedelta
from typing import Optional

import structlog
from fastapi import BackgroundTasks

from config import NOTIFICATION_DEDUP_MINUTES
from database import as_aware, create_document, db, serialize_doc, user_briefs, utcnow
from realtime import emit_to_user
from schemas import Notification

logger = structlog.get_logger()


def notify(
    background_tasks: Optional[BackgroundTasks],
    recipient_id: str,
    sender_id: Optional[str],
    type: str,
    message: str = "",
    post_id: Optional[str] = None,
    comment_id: Optional[str] = None,
    product_id: Optional[str] = None,
    order_id: Optional[str] = None,
    link: Optional[str] = None,
) -> Optional[str]:
    """Store a notification and push it to the recipient if they are online.

    Returns the new id, or None when the event is a self-notification or a
    duplicate of one sent within the dedup window.
    """
    if not recipient_id or (sender_id and sender_id == recipient_id):
        return None
    window_start = utcnow() - timedelta(minutes=NOTIFICATION_DEDUP_MINUTES)
    candidates = db["notification"].find(
        {
            "recipient_id": recipient_id,
            "sender_id": sender_id,
            "type": type,
            "post_id": post_id,
            "comment_id": comment_id,
            "product_id": product_id,
            "order_id": order_id,
            "message": message,
        }
    )
    for existing in candidates:
        if as_aware(existing.get("created_at")) >= window_start:
            return None
    notification = Notification(
        recipient_id=recipient_id,
        sender_id=sender_id,
        type=type,
        post_id=post_id,
        comment_id=comment_id,
        product_id=product_id,
        order_id=order_id,
        message=message,
        link=link,
    )
    notification_id = create_document("notification", notification)
    if background_tasks is not None:
        payload = serialize_doc({**notification.model_dump(), "id": notification_id})
        payload["sender"] = user_briefs([sender_id]).get(sender_id) if sender_id else None
        background_tasks.add_task(emit_to_user, recipient_id, "new_notification", payload)
    return notification_id


def notify_wishlisters(product: dict, type: str, message: str) -> int:
    """Fan a system notification out to every user with `product` on their wishlist."""
    product_id = str(product["_id"])
    recipients = [str(u["_id"]) for u in db["user"].find({"wishlist": product_id}, {"_id": 1})]
    now = utcnow()
    docs = [
        {
            **Notification(
                recipient_id=r,
                type=type,
                product_id=product_id,
                message=message,
                link=f"/product/{product_id}",
            ).model_dump(),
            "created_at": now,
            "updated_at": now,
        }
        for r in recipients
    ]
    if docs:
        db["notification"].insert_many(docs)
        logger.info(f"Sent {len(docs)} {type} notifications for product {product.get('name')}")
    return len(docs)
