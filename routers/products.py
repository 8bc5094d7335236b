import math
from typing import List, Optional

import structlog
from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from config import LOW_STOCK_THRESHOLD, PRODUCTS_PER_PAGE, RATE_LIMIT_UPLOAD
from database import create_document, db, new_id, serialize_doc, utcnow
from notifier import notify_wishlisters
from routers.deps import find_or_404, regex
from schemas import PRODUCT_CATEGORIES, Category, Product as ProductSchema, Review, Variant
from security import get_current_user, is_admin, limiter, require_admin
from uploads import IMAGE_EXTENSIONS, save_upload

logger = structlog.get_logger()

router = APIRouter(prefix="/api/products", tags=["products"])

PRICE_DROP_THRESHOLD = 10

SORTS = {
    "priceAsc": [("price", 1)],
    "priceDesc": [("price", -1)],
    "nameAsc": [("name", 1)],
    "nameDesc": [("name", -1)],
    "rating": [("rating", -1), ("num_reviews", -1)],
    "newest": [("created_at", -1)],
    "default": [("is_featured", -1), ("created_at", -1)],
}


# ----------------------- Models -----------------------
class ProductCreateBody(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    unit: str = "kg"
    images: List[str] = []
    category: Category
    count_in_stock: int = Field(0, ge=0)
    brand: Optional[str] = None
    tags: List[str] = []
    variants: List[Variant] = []
    badges: List[str] = []
    sale_price: Optional[float] = Field(None, ge=0)
    is_featured: bool = False
    nutrition_facts: dict = {}
    recipe_suggestions: List[str] = []


class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    unit: Optional[str] = None
    images: Optional[List[str]] = None
    category: Optional[Category] = None
    count_in_stock: Optional[int] = Field(None, ge=0)
    brand: Optional[str] = None
    tags: Optional[List[str]] = None
    variants: Optional[List[Variant]] = None
    badges: Optional[List[str]] = None
    sale_price: Optional[float] = Field(None, ge=0)
    is_featured: Optional[bool] = None
    nutrition_facts: Optional[dict] = None
    recipe_suggestions: Optional[List[str]] = None


class ReviewBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1, max_length=2000)


class BulkDeleteBody(BaseModel):
    ids: List[str]


# ----------------------- Helpers -----------------------
def _product_out(doc: dict) -> dict:
    return serialize_doc(doc)


def has_purchased(user_id: str, product_id: str) -> bool:
    return (
        db["order"].find_one(
            {
                "user_id": user_id,
                "order_items.product_id": product_id,
                "$or": [{"is_paid": True}, {"status": "Delivered"}],
            }
        )
        is not None
    )


def notify_product_changes(before: dict, after: dict):
    old_price, new_price = before.get("price", 0), after.get("price", 0)
    if old_price and new_price < old_price:
        drop = (old_price - new_price) / old_price * 100
        if drop >= PRICE_DROP_THRESHOLD:
            notify_wishlisters(
                after,
                "price_drop",
                f"Great news! {after['name']} is now {drop:.0f}% cheaper at ₹{new_price:.2f}",
            )
    if before.get("count_in_stock", 0) <= 0 and after.get("count_in_stock", 0) > 0:
        notify_wishlisters(after, "restock", f"{after['name']} is back in stock! Grab it while supplies last.")


# ----------------------- Catalog -----------------------
@router.get("")
def list_products(
    keyword: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort: str = "default",
    page: int = 1,
    limit: int = PRODUCTS_PER_PAGE,
):
    filt = {}
    if keyword:
        filt["$or"] = [{"name": regex(keyword)}, {"category": regex(keyword)}]
    if category:
        filt["category"] = category
    price = {}
    if min_price is not None:
        price["$gte"] = min_price
    if max_price is not None:
        price["$lte"] = max_price
    if price:
        filt["price"] = price
    limit = min(max(limit, 1), 100)
    page = max(page, 1)
    total = db["product"].count_documents(filt)
    items = db["product"].find(filt).sort(SORTS.get(sort, SORTS["default"])).skip((page - 1) * limit).limit(limit)
    return {
        "products": [_product_out(p) for p in items],
        "page": page,
        "pages": max(math.ceil(total / limit), 1),
        "total": total,
    }


@router.get("/search")
def search_products(q: str):
    items = db["product"].find({"$or": [{"name": regex(q)}, {"tags": regex(q)}]}, {"reviews": 0}).limit(10)
    return [_product_out(p) for p in items]


@router.get("/categories")
def categories():
    return PRODUCT_CATEGORIES


@router.get("/low-stock")
def low_stock(threshold: int = LOW_STOCK_THRESHOLD, user=Depends(require_admin)):
    items = db["product"].find({"count_in_stock": {"$lte": threshold}}).sort("count_in_stock", 1)
    return [_product_out(p) for p in items]


@router.get("/{product_id}")
def get_product(product_id: str):
    return _product_out(find_or_404("product", product_id, "Product not found"))


# ----------------------- Admin -----------------------
@router.post("", status_code=201)
def create_product(body: ProductCreateBody, user=Depends(require_admin)):
    pid = create_document("product", ProductSchema(**body.model_dump()))
    logger.info(f"Product created: {body.name}")
    return _product_out(db["product"].find_one({"_id": ObjectId(pid)}))


@router.put("/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user=Depends(require_admin)):
    before = find_or_404("product", product_id, "Product not found")
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = utcnow()
    db["product"].update_one({"_id": before["_id"]}, {"$set": update})
    after = db["product"].find_one({"_id": before["_id"]})
    notify_product_changes(before, after)
    return _product_out(after)


@router.post("/{product_id}/images")
@limiter.limit(RATE_LIMIT_UPLOAD)
def upload_product_images(request: Request, product_id: str, files: List[UploadFile] = File(...), user=Depends(require_admin)):
    product = find_or_404("product", product_id, "Product not found")
    urls = [save_upload(f, "productImages", "image", IMAGE_EXTENSIONS)["url"] for f in files]
    db["product"].update_one({"_id": product["_id"]}, {"$push": {"images": {"$each": urls}}})
    return _product_out(db["product"].find_one({"_id": product["_id"]}))


@router.put("/{product_id}/feature")
def toggle_featured(product_id: str, user=Depends(require_admin)):
    product = find_or_404("product", product_id, "Product not found")
    featured = not product.get("is_featured", False)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"is_featured": featured}})
    return {"id": product_id, "is_featured": featured}


@router.delete("/{product_id}")
def delete_product(product_id: str, user=Depends(require_admin)):
    res = db["product"].delete_one({"_id": ObjectId(product_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    db["user"].update_many({}, {"$pull": {"wishlist": product_id}})
    return {"ok": True}


@router.post("/bulk-delete")
def bulk_delete(body: BulkDeleteBody, user=Depends(require_admin)):
    res = db["product"].delete_many({"_id": {"$in": [ObjectId(i) for i in body.ids]}})
    db["user"].update_many({}, {"$pull": {"wishlist": {"$in": body.ids}}})
    return {"deleted": res.deleted_count}


# ----------------------- Reviews -----------------------
@router.post("/{product_id}/reviews", status_code=201)
def add_review(product_id: str, body: ReviewBody, user=Depends(get_current_user)):
    product = find_or_404("product", product_id, "Product not found")
    if not is_admin(user) and not has_purchased(user["id"], product_id):
        raise HTTPException(status_code=400, detail="You can only review products you have purchased")
    if any(r["user_id"] == user["id"] for r in product.get("reviews", [])):
        raise HTTPException(status_code=400, detail="Product already reviewed")
    review = Review(
        id=new_id(),
        user_id=user["id"],
        name=user["username"],
        rating=body.rating,
        comment=body.comment,
        created_at=utcnow(),
    )
    reviews = product.get("reviews", []) + [review.model_dump()]
    rating = round(sum(r["rating"] for r in reviews) / len(reviews), 2)
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$push": {"reviews": review.model_dump()}, "$set": {"rating": rating, "num_reviews": len(reviews)}},
    )
    return {"message": "Review added", "rating": rating, "num_reviews": len(reviews)}


@router.post("/{product_id}/reviews/{review_id}/upvote")
def upvote_review(product_id: str, review_id: str, user=Depends(get_current_user)):
    product = find_or_404("product", product_id, "Product not found")
    reviews = product.get("reviews", [])
    review = next((r for r in reviews if r.get("id") == review_id), None)
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    upvotes = review.setdefault("upvotes", [])
    if user["id"] in upvotes:
        upvotes.remove(user["id"])
    else:
        upvotes.append(user["id"])
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"reviews": reviews}})
    return {"upvotes": len(upvotes), "upvoted": user["id"] in upvotes}
