from typing import Optional

from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from database import create_document, db, serialize_doc
from routers.deps import find_or_404
from schemas import Address as AddressSchema
from security import get_current_user

router = APIRouter(prefix="/api/addresses", tags=["addresses"])


class AddressBody(BaseModel):
    full_name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "India"
    label: str = "Home"
    phone: Optional[str] = None
    is_default: bool = False


class AddressUpdateBody(BaseModel):
    full_name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    label: Optional[str] = None
    phone: Optional[str] = None
    is_default: Optional[bool] = None


def _own_address(address_id: str, user: dict) -> dict:
    address = find_or_404("address", address_id, "Address not found")
    if address["user_id"] != user["id"]:
        raise HTTPException(status_code=403, detail="Not authorized")
    return address


def _clear_defaults(user_id: str):
    db["address"].update_many({"user_id": user_id, "is_default": True}, {"$set": {"is_default": False}})


@router.get("")
def list_addresses(user=Depends(get_current_user)):
    items = db["address"].find({"user_id": user["id"]}).sort([("is_default", -1), ("created_at", -1)])
    return [serialize_doc(a) for a in items]


@router.post("", status_code=201)
def create_address(body: AddressBody, user=Depends(get_current_user)):
    is_first = db["address"].count_documents({"user_id": user["id"]}) == 0
    if body.is_default or is_first:
        _clear_defaults(user["id"])
    address = AddressSchema(user_id=user["id"], **body.model_dump(exclude={"is_default"}), is_default=body.is_default or is_first)
    aid = create_document("address", address)
    return serialize_doc(db["address"].find_one({"_id": ObjectId(aid)}))


@router.put("/{address_id}")
def update_address(address_id: str, body: AddressUpdateBody, user=Depends(get_current_user)):
    address = _own_address(address_id, user)
    update = body.model_dump(exclude_none=True)
    if update.get("is_default"):
        _clear_defaults(user["id"])
    if update:
        db["address"].update_one({"_id": address["_id"]}, {"$set": update})
    return serialize_doc(db["address"].find_one({"_id": address["_id"]}))


@router.put("/{address_id}/default")
def set_default_address(address_id: str, user=Depends(get_current_user)):
    address = _own_address(address_id, user)
    _clear_defaults(user["id"])
    db["address"].update_one({"_id": address["_id"]}, {"$set": {"is_default": True}})
    return serialize_doc(db["address"].find_one({"_id": address["_id"]}))


@router.delete("/{address_id}")
def delete_address(address_id: str, user=Depends(get_current_user)):
    address = _own_address(address_id, user)
    db["address"].delete_one({"_id": address["_id"]})
    if address.get("is_default"):
        # promote the most recent remaining address
        remaining = db["address"].find_one({"user_id": user["id"]}, sort=[("created_at", -1)])
        if remaining:
            db["address"].update_one({"_id": remaining["_id"]}, {"$set": {"is_default": True}})
    return {"ok": True}
