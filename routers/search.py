from collections import Counter
from datetime import timedelta
from typing import Optional

from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, Query

from config import (
    POSTS_PER_PAGE,
    PRODUCTS_PER_PAGE,
    SEARCH_MAX_LENGTH,
    SEARCH_MIN_LENGTH,
    SEARCH_RESULTS_LIMIT,
    TRENDING_DAYS,
    TRENDING_LIMIT,
    USERS_PER_PAGE,
)
from database import as_aware, db, serialize_doc, utcnow
from ranking import paginate, sort_posts
from routers.community import post_visibility_filter, posts_out
from routers.deps import regex
from security import get_optional_user

router = APIRouter(prefix="/api/search", tags=["search"])

SearchQuery = Query(..., min_length=SEARCH_MIN_LENGTH, max_length=SEARCH_MAX_LENGTH)


def post_filter(q: str, user: Optional[dict]) -> dict:
    filt = {"$or": [{"title": regex(q)}, {"content": regex(q)}, {"hashtags": q.lower().lstrip("#")}]}
    filt.update(post_visibility_filter(user))
    return filt


def product_filter(q: str) -> dict:
    return {"$or": [{"name": regex(q)}, {"description": regex(q)}, {"category": regex(q)}, {"tags": regex(q)}]}


def user_filter(q: str, user: Optional[dict]) -> dict:
    filt = {"username": regex(q), "is_active": True}
    if user:
        excluded = set(user.get("blocked_users", []))
        excluded.update(str(u["_id"]) for u in db["user"].find({"blocked_users": user["id"]}, {"_id": 1}))
        if excluded:
            filt["_id"] = {"$nin": [ObjectId(i) for i in excluded if ObjectId.is_valid(i)]}
    return filt


def user_summary(u: dict) -> dict:
    return {"id": str(u["_id"]), "username": u["username"], "profile_pic": u.get("profile_pic"), "bio": u.get("bio", "")}


@router.get("")
def search_all(q: str = SearchQuery, user=Depends(get_optional_user)):
    posts = sort_posts(list(db["post"].find(post_filter(q, user))), "top")[:SEARCH_RESULTS_LIMIT]
    products = db["product"].find(product_filter(q)).limit(SEARCH_RESULTS_LIMIT)
    users = db["user"].find(user_filter(q, user)).limit(SEARCH_RESULTS_LIMIT)
    return {
        "posts": posts_out(posts),
        "products": [serialize_doc(p) for p in products],
        "users": [user_summary(u) for u in users],
    }


@router.get("/posts")
def search_posts(q: str = SearchQuery, page: int = 1, user=Depends(get_optional_user)):
    ranked = sort_posts(list(db["post"].find(post_filter(q, user))), "top")
    items, page, pages = paginate(ranked, page, POSTS_PER_PAGE)
    return {"posts": posts_out(items), "page": page, "pages": pages, "total": len(ranked)}


@router.get("/products")
def search_products(q: str = SearchQuery, page: int = 1):
    found = list(db["product"].find(product_filter(q)).sort("rating", -1))
    items, page, pages = paginate(found, page, PRODUCTS_PER_PAGE)
    return {"products": [serialize_doc(p) for p in items], "page": page, "pages": pages, "total": len(found)}


@router.get("/users")
def search_users(q: str = SearchQuery, page: int = 1, user=Depends(get_optional_user)):
    found = list(db["user"].find(user_filter(q, user)).sort("username", 1))
    items, page, pages = paginate(found, page, USERS_PER_PAGE)
    return {"users": [user_summary(u) for u in items], "page": page, "pages": pages, "total": len(found)}


@router.get("/trending-hashtags")
def trending_hashtags():
    since = utcnow() - timedelta(days=TRENDING_DAYS)
    counts = Counter()
    for post in db["post"].find({"hashtags.0": {"$exists": True}}, {"hashtags": 1, "created_at": 1}):
        if post.get("created_at") and as_aware(post["created_at"]) >= since:
            counts.update(post["hashtags"])
    return [{"hashtag": tag, "count": n} for tag, n in counts.most_common(TRENDING_LIMIT)]
