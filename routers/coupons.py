import math
from datetime import datetime
from typing import List, Literal, Optional

from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from config import ADMIN_PAGE_SIZE
from database import as_aware, create_document, db, serialize_doc, utcnow
from rewards import tier_for_user
from routers.deps import find_or_404, regex
from schemas import ALL_TIERS, Coupon as CouponSchema, Tier
from security import get_current_user, require_admin

router = APIRouter(prefix="/api/coupons", tags=["coupons"])


# ----------------------- Models -----------------------
class ValidateBody(BaseModel):
    code: str
    cart_total: float = Field(..., ge=0)


class CouponBody(BaseModel):
    code: str = Field(..., min_length=3, max_length=30)
    discount_type: Literal["percentage", "fixed"]
    discount_value: float = Field(..., gt=0)
    expires_at: datetime
    min_purchase: float = Field(0, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    is_active: bool = True
    tier_restrictions: List[Tier] = ALL_TIERS


class CouponUpdateBody(BaseModel):
    discount_type: Optional[Literal["percentage", "fixed"]] = None
    discount_value: Optional[float] = Field(None, gt=0)
    expires_at: Optional[datetime] = None
    min_purchase: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None
    tier_restrictions: Optional[List[Tier]] = None


# ----------------------- Rules -----------------------
def is_expired(coupon: dict) -> bool:
    return as_aware(coupon["expires_at"]) < utcnow()


def coupon_discount(coupon: dict, cart_total: float) -> float:
    if coupon["discount_type"] == "percentage":
        discount = cart_total * coupon["discount_value"] / 100
    else:
        discount = coupon["discount_value"]
    return round(min(discount, cart_total), 2)


def check_coupon(code: str, cart_total: float, user: Optional[dict] = None):
    """Return (coupon, discount) or raise the HTTP error explaining why it cannot be used."""
    coupon = db["coupon"].find_one({"code": code.strip().upper()})
    if not coupon:
        raise HTTPException(status_code=404, detail="Invalid coupon code")
    if not coupon.get("is_active", True):
        raise HTTPException(status_code=400, detail="This coupon is no longer active")
    if is_expired(coupon):
        raise HTTPException(status_code=400, detail="This coupon has expired")
    limit = coupon.get("usage_limit")
    if limit is not None and coupon.get("times_used", 0) >= limit:
        raise HTTPException(status_code=400, detail="This coupon has reached its usage limit")
    if cart_total < coupon.get("min_purchase", 0):
        raise HTTPException(
            status_code=400,
            detail=f"A minimum purchase of {coupon['min_purchase']:.2f} is required for this coupon",
        )
    if user is not None and tier_for_user(user) not in coupon.get("tier_restrictions", ALL_TIERS):
        raise HTTPException(status_code=400, detail="This coupon is not available for your loyalty tier")
    return coupon, coupon_discount(coupon, cart_total)


# ----------------------- Routes -----------------------
@router.post("/validate")
def validate_coupon(body: ValidateBody, user=Depends(get_current_user)):
    coupon, discount = check_coupon(body.code, body.cart_total, user)
    return {
        "code": coupon["code"],
        "discountType": coupon["discount_type"],
        "discountValue": coupon["discount_value"],
        "discount": discount,
    }


@router.get("")
def list_coupons(q: Optional[str] = None, page: int = 1, user=Depends(require_admin)):
    filt = {"code": regex(q)} if q else {}
    total = db["coupon"].count_documents(filt)
    page = max(page, 1)
    items = db["coupon"].find(filt).sort("created_at", -1).skip((page - 1) * ADMIN_PAGE_SIZE).limit(ADMIN_PAGE_SIZE)
    return {
        "coupons": [serialize_doc(c) for c in items],
        "page": page,
        "pages": max(math.ceil(total / ADMIN_PAGE_SIZE), 1),
        "total": total,
    }


@router.post("", status_code=201)
def create_coupon(body: CouponBody, user=Depends(require_admin)):
    code = body.code.strip().upper()
    if db["coupon"].find_one({"code": code}):
        raise HTTPException(status_code=400, detail="Coupon code already exists")
    cid = create_document("coupon", CouponSchema(**{**body.model_dump(), "code": code}))
    return serialize_doc(db["coupon"].find_one({"_id": ObjectId(cid)}))


@router.put("/{coupon_id}")
def update_coupon(coupon_id: str, body: CouponUpdateBody, user=Depends(require_admin)):
    coupon = find_or_404("coupon", coupon_id, "Coupon not found")
    update = body.model_dump(exclude_none=True)
    if update:
        db["coupon"].update_one({"_id": coupon["_id"]}, {"$set": update})
    return serialize_doc(db["coupon"].find_one({"_id": coupon["_id"]}))


@router.delete("/{coupon_id}")
def delete_coupon(coupon_id: str, user=Depends(require_admin)):
    res = db["coupon"].delete_one({"_id": ObjectId(coupon_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"ok": True}


@router.get("/{code}/orders")
def coupon_orders(code: str, user=Depends(require_admin)):
    orders = db["order"].find({"discount.code": code.upper()}).sort("created_at", -1)
    return [serialize_doc(o) for o in orders]
