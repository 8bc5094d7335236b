import re

from bson.objectid import ObjectId
from fastapi import HTTPException

from database import db
from security import is_admin


def find_or_404(collection: str, doc_id: str, detail: str) -> dict:
    doc = db[collection].find_one({"_id": ObjectId(doc_id)})
    if not doc:
        raise HTTPException(status_code=404, detail=detail)
    return doc


def ensure_owner_or_admin(owner_id: str, user: dict, detail: str = "Not authorized"):
    if owner_id != user["id"] and not is_admin(user):
        raise HTTPException(status_code=403, detail=detail)


def regex(q: str) -> dict:
    return {"$regex": re.escape(q), "$options": "i"}
