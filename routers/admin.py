import csv
import io
from datetime import timedelta
from typing import List

import structlog
from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from database import as_aware, create_document, db, find_by_ids, serialize_doc, utcnow
from schemas import AutoJoinConfig
from security import require_admin

logger = structlog.get_logger()

router = APIRouter(prefix="/api/admin", tags=["admin"])

EXPORT_COLUMNS = ["id", "username", "email", "role", "active", "joined", "total_orders", "total_spent", "harvest_coins"]


class AutoJoinBody(BaseModel):
    group_ids: List[str] = []
    is_active: bool = True


def signups_last_week(now=None) -> list:
    now = now or utcnow()
    days = [(now - timedelta(days=offset)).date() for offset in range(6, -1, -1)]
    counts = {d: 0 for d in days}
    since = now - timedelta(days=7)
    for u in db["user"].find({}, {"created_at": 1}):
        created = as_aware(u.get("created_at"))
        if created and created >= since and created.date() in counts:
            counts[created.date()] += 1
    return [{"date": d.isoformat(), "count": counts[d]} for d in days]


@router.get("/stats")
def stats(user=Depends(require_admin)):
    revenue = sum(o.get("total_price", 0) for o in db["order"].find({"is_paid": True}, {"total_price": 1}))
    return {
        "users": db["user"].count_documents({}),
        "products": db["product"].count_documents({}),
        "orders": db["order"].count_documents({}),
        "posts": db["post"].count_documents({}),
        "groups": db["group"].count_documents({}),
        "openTickets": db["supportmessage"].count_documents({"status": "Open"}),
        "revenue": round(revenue, 2),
        "signups": signups_last_week(),
    }


@router.get("/users/export")
def export_users(user=Depends(require_admin)):
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_COLUMNS)
    for u in db["user"].find({}).sort("created_at", 1):
        activity = u.get("activity") or {}
        created = as_aware(u.get("created_at"))
        writer.writerow(
            [
                str(u["_id"]),
                u["username"],
                u["email"],
                u.get("role", "user"),
                u.get("is_active", True),
                created.isoformat() if created else "",
                activity.get("total_orders", 0),
                activity.get("total_spent", 0),
                activity.get("harvest_coins", 0),
            ]
        )
    buf.seek(0)
    logger.info(f"User export requested by {user['username']}")
    return StreamingResponse(
        iter([buf.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=users.csv"},
    )


# ----------------------- Auto-join groups -----------------------
@router.get("/auto-join-groups")
def get_auto_join(user=Depends(require_admin)):
    config = db["autojoinconfig"].find_one({"is_active": True})
    if not config:
        return {"group_ids": [], "groups": [], "is_active": False}
    out = serialize_doc(config)
    out["groups"] = [
        {"id": str(g["_id"]), "name": g["name"], "slug": g["slug"]} for g in find_by_ids("group", config["group_ids"])
    ]
    return out


@router.put("/auto-join-groups")
def set_auto_join(body: AutoJoinBody, user=Depends(require_admin)):
    group_ids = list(dict.fromkeys(body.group_ids))
    known = {str(g["_id"]) for g in find_by_ids("group", group_ids)}
    unknown = [gid for gid in group_ids if gid not in known]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown group ids: {', '.join(unknown)}")
    db["autojoinconfig"].update_many({"is_active": True}, {"$set": {"is_active": False}})
    cid = create_document(
        "autojoinconfig", AutoJoinConfig(group_ids=group_ids, is_active=body.is_active, updated_by=user["id"])
    )
    logger.info(f"Auto-join groups updated by {user['username']}: {group_ids}")
    return serialize_doc(db["autojoinconfig"].find_one({"_id": ObjectId(cid)}))
