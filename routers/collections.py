from typing import List, Optional

from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from database import create_document, db, find_by_ids, get_documents, serialize_doc
from routers.community import posts_out
from routers.deps import find_or_404
from schemas import Collection
from security import get_current_user, get_optional_user

router = APIRouter(prefix="/api/collections", tags=["collections"])


class CollectionBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: str = Field("", max_length=250)
    is_public: bool = True


class CollectionUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=250)
    is_public: Optional[bool] = None


class SyncPostBody(BaseModel):
    collection_ids: List[str] = []


def load_owned(collection_id: str, user: dict) -> dict:
    collection = find_or_404("collection", collection_id, "Collection not found")
    if collection["user_id"] != user["id"]:
        raise HTTPException(status_code=403, detail="Not authorized to modify this collection")
    return collection


@router.post("", status_code=201)
def create_collection(body: CollectionBody, user=Depends(get_current_user)):
    cid = create_document("collection", Collection(user_id=user["id"], **body.model_dump()))
    return serialize_doc(db["collection"].find_one({"_id": ObjectId(cid)}))


@router.get("/me")
def my_collections(user=Depends(get_current_user)):
    return [serialize_doc(c) for c in get_documents("collection", {"user_id": user["id"]}, sort=[("created_at", -1)])]


@router.get("/user/{user_id}")
def user_collections(user_id: str):
    return [serialize_doc(c) for c in get_documents("collection", {"user_id": user_id, "is_public": True}, sort=[("created_at", -1)])]


@router.put("/posts/{post_id}")
def sync_post_collections(post_id: str, body: SyncPostBody, user=Depends(get_current_user)):
    find_or_404("post", post_id, "Post not found")
    wanted = set(body.collection_ids)
    for collection in db["collection"].find({"user_id": user["id"]}):
        cid = str(collection["_id"])
        op = "$addToSet" if cid in wanted else "$pull"
        db["collection"].update_one({"_id": collection["_id"]}, {op: {"posts": post_id}})
    return [serialize_doc(c) for c in get_documents("collection", {"user_id": user["id"]}, sort=[("created_at", -1)])]


@router.get("/{collection_id}")
def get_collection(collection_id: str, user=Depends(get_optional_user)):
    collection = find_or_404("collection", collection_id, "Collection not found")
    if not collection.get("is_public") and (not user or user["id"] != collection["user_id"]):
        raise HTTPException(status_code=403, detail="This collection is private")
    out = serialize_doc(collection)
    out["posts"] = posts_out(find_by_ids("post", collection.get("posts", [])))
    return out


@router.put("/{collection_id}")
def update_collection(collection_id: str, body: CollectionUpdateBody, user=Depends(get_current_user)):
    collection = load_owned(collection_id, user)
    update = body.model_dump(exclude_none=True)
    if update:
        db["collection"].update_one({"_id": collection["_id"]}, {"$set": update})
    return serialize_doc(db["collection"].find_one({"_id": collection["_id"]}))


@router.delete("/{collection_id}")
def delete_collection(collection_id: str, user=Depends(get_current_user)):
    collection = load_owned(collection_id, user)
    db["collection"].delete_one({"_id": collection["_id"]})
    return {"message": "Collection removed"}
