from fastapi import APIRouter, Depends

from database import db, serialize_doc
from rewards import earn_rate, tier_for_user
from routers.coupons import is_expired
from routers.deps import find_or_404
from security import get_current_user

router = APIRouter(prefix="/api/offers", tags=["offers"])

MAX_LOYALTY_DISCOUNT = 10
MAX_POPULARITY_FACTOR = 1.2


def offer_value(coupon: dict) -> float:
    # fixed amounts are scaled down so they rank alongside percentages
    if coupon["discount_type"] == "percentage":
        return coupon["discount_value"]
    return coupon["discount_value"] / 100


@router.get("/personalized")
def personalized_offers(user=Depends(get_current_user)):
    tier = tier_for_user(user)
    activity = user.get("activity") or {}
    offers = []
    for coupon in db["coupon"].find({"is_active": True, "tier_restrictions": tier}):
        limit = coupon.get("usage_limit")
        if is_expired(coupon) or (limit is not None and coupon.get("times_used", 0) >= limit):
            continue
        offers.append(coupon)
    offers.sort(key=offer_value, reverse=True)
    return {
        "offers": [serialize_doc(c) for c in offers[:5]],
        "userTier": tier,
        "totalSpent": activity.get("total_spent", 0),
        "orderCount": activity.get("total_orders", 0),
    }


def dynamic_price(base_price: float, user_orders: int, total_sales: int) -> dict:
    loyalty_discount = min(MAX_LOYALTY_DISCOUNT, user_orders * 2)
    popularity_factor = min(MAX_POPULARITY_FACTOR, 1 + total_sales / 1000)
    price = base_price * popularity_factor * (1 - loyalty_discount / 100)
    return {
        "originalPrice": base_price,
        "dynamicPrice": max(round(price / 10) * 10, 0),
        "loyaltyDiscount": loyalty_discount,
        "popularityFactor": round(popularity_factor, 3),
    }


@router.get("/dynamic-pricing/{product_id}")
def dynamic_pricing(product_id: str, user=Depends(get_current_user)):
    product = find_or_404("product", product_id, "Product not found")
    activity = user.get("activity") or {}
    tier = tier_for_user(user)
    pricing = dynamic_price(product["price"], activity.get("total_orders", 0), product.get("total_sales", 0))
    return {
        "productId": product_id,
        **pricing,
        "userTier": tier,
        "harvestCoinsPercentage": round(earn_rate(tier) * 100),
    }
