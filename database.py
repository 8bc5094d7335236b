"""
MongoDB access helpers.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured so the app
can still boot and report its status on /test.
"""
import os
from datetime import datetime, timezone
from typing import Optional, Union

import structlog
from bson.objectid import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config  # noqa: F401  loads .env before the lookups below

logger = structlog.get_logger()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands datetimes back without tzinfo; they are always stored as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(ObjectId())


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort=None):
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def find_by_ids(collection_name: str, ids) -> list:
    """Fetch documents for a list of string ids, preserving the given order."""
    oids = [ObjectId(i) for i in ids if ObjectId.is_valid(i)]
    if not oids:
        return []
    docs = {str(d["_id"]): d for d in db[collection_name].find({"_id": {"$in": oids}})}
    return [docs[i] for i in ids if i in docs]


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_aware(value).isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        doc[k] = _serialize_value(v)
    return doc


def user_briefs(ids) -> dict:
    """Map of user id -> {id, username, profile_pic} for embedding in responses."""
    briefs = {}
    for u in find_by_ids("user", list(dict.fromkeys(i for i in ids if i))):
        briefs[str(u["_id"])] = {
            "id": str(u["_id"]),
            "username": u.get("username"),
            "profile_pic": u.get("profile_pic"),
        }
    return briefs


def ensure_indexes():
    if db is None:
        return
    db["user"].create_index([("username", ASCENDING)], unique=True)
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["coupon"].create_index([("code", ASCENDING)], unique=True)
    db["group"].create_index([("name", ASCENDING)], unique=True)
    db["group"].create_index([("slug", ASCENDING)], unique=True)
    db["notification"].create_index([("recipient_id", ASCENDING), ("created_at", ASCENDING)])
    logger.info("Database indexes ensured")
