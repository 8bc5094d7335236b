import math
from typing import List, Literal, Optional

import structlog
from bson.objectid import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from config import (
    BIO_MAX_LENGTH,
    PASSWORD_MIN_LENGTH,
    RATE_LIMIT_UPLOAD,
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
    USERNAME_PATTERN,
    USERS_PER_PAGE,
)
from database import db, find_by_ids, serialize_doc
from notifier import notify
from rewards import balance_summary
from routers.community import post_visibility_filter, readable_posts
from routers.deps import find_or_404, regex
from schemas import Preferences
from security import get_current_user, get_optional_user, hash_password, is_admin, limiter, public_user, require_admin, verify_password
from uploads import IMAGE_EXTENSIONS, save_upload

logger = structlog.get_logger()

router = APIRouter(prefix="/api/users", tags=["users"])

SOCIAL_PROVIDERS = ("google", "github", "linkedin")


# ----------------------- Models -----------------------
class ProfileUpdateBody(BaseModel):
    username: Optional[str] = Field(None, min_length=USERNAME_MIN_LENGTH, max_length=USERNAME_MAX_LENGTH, pattern=USERNAME_PATTERN)
    bio: Optional[str] = Field(None, max_length=BIO_MAX_LENGTH)
    profile_pic: Optional[str] = None
    preferences: Optional[Preferences] = None


class PasswordChangeBody(BaseModel):
    current_password: Optional[str] = None
    new_password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)


class BulkStatusBody(BaseModel):
    user_ids: List[str]
    is_active: bool


class RoleBody(BaseModel):
    role: Literal["user", "admin"]


class StatusBody(BaseModel):
    is_active: bool


# ----------------------- Helpers -----------------------
def load_user(user_id: str) -> dict:
    return serialize_doc(find_or_404("user", user_id, "User not found"))


def apply_profile_update(user: dict, body: ProfileUpdateBody) -> dict:
    update = body.model_dump(exclude_none=True)
    if "username" in update and update["username"] != user["username"]:
        if db["user"].find_one({"username": update["username"]}):
            raise HTTPException(status_code=400, detail="Username already taken")
    if not update:
        return public_user(user)
    db["user"].update_one({"_id": ObjectId(user["id"])}, {"$set": update})
    return public_user(load_user(user["id"]))


def anonymize_user(user_id: str):
    """Soft-delete: strip personal data but keep the document for content references."""
    db["user"].update_one(
        {"_id": ObjectId(user_id)},
        {
            "$set": {
                "username": f"user_{user_id[-8:]}",
                "email": f"{user_id}@deleted.co",
                "bio": "",
                "is_active": False,
                "following": [],
                "followers": [],
            },
            "$unset": {
                "password_hash": "",
                "google": "",
                "github": "",
                "linkedin": "",
                "password_reset_token": "",
                "password_reset_expires": "",
            },
        },
    )
    db["user"].update_many({}, {"$pull": {"following": user_id, "followers": user_id}})
    logger.info(f"User {user_id} anonymized")


def _post_summaries(query: dict, limit: int, viewer: Optional[dict]):
    query = {**query, **post_visibility_filter(viewer)}
    return [serialize_doc(p) for p in db["post"].find(query).sort("created_at", -1).limit(limit)]


def _comment_summaries(query: dict, limit: int, viewer: Optional[dict]):
    comments = [serialize_doc(c) for c in db["comment"].find(query).sort("created_at", -1).limit(limit)]
    posts = readable_posts(find_by_ids("post", [c["post_id"] for c in comments]), viewer)
    titles = {str(p["_id"]): p.get("title") for p in posts}
    comments = [c for c in comments if c["post_id"] in titles]
    for c in comments:
        c["post"] = {"id": c["post_id"], "title": titles[c["post_id"]]}
    return comments


# ----------------------- Self -----------------------
@router.get("/me")
def get_me(user=Depends(get_current_user)):
    return public_user(user)


@router.put("/me")
def update_me(body: ProfileUpdateBody, user=Depends(get_current_user)):
    return apply_profile_update(user, body)


@router.put("/me/avatar")
@limiter.limit(RATE_LIMIT_UPLOAD)
def upload_avatar(request: Request, file: UploadFile = File(...), user=Depends(get_current_user)):
    saved = save_upload(file, "profilePics", "profilePic", IMAGE_EXTENSIONS)
    db["user"].update_one({"_id": ObjectId(user["id"])}, {"$set": {"profile_pic": saved["url"]}})
    return {"profile_pic": saved["url"]}


@router.put("/me/password")
def change_password(body: PasswordChangeBody, user=Depends(get_current_user)):
    stored = db["user"].find_one({"_id": ObjectId(user["id"])})
    if stored.get("password_hash"):
        if not body.current_password or not verify_password(body.current_password, stored["password_hash"]):
            raise HTTPException(status_code=400, detail="Current password is incorrect")
    db["user"].update_one({"_id": stored["_id"]}, {"$set": {"password_hash": hash_password(body.new_password)}})
    return {"message": "Password updated successfully"}


@router.post("/me/delete-account")
def delete_my_account(user=Depends(get_current_user)):
    anonymize_user(user["id"])
    return {"message": "Your account has been deleted"}


@router.delete("/me/social/{provider}")
def unlink_social(provider: str, user=Depends(get_current_user)):
    if provider not in SOCIAL_PROVIDERS:
        raise HTTPException(status_code=400, detail="Unsupported provider")
    if not user.get(provider):
        raise HTTPException(status_code=400, detail=f"No {provider} account linked")
    stored = db["user"].find_one({"_id": ObjectId(user["id"])})
    other_logins = [p for p in SOCIAL_PROVIDERS if p != provider and stored.get(p)]
    if not stored.get("password_hash") and not other_logins:
        raise HTTPException(status_code=400, detail="Set a password before unlinking your only login method")
    db["user"].update_one({"_id": stored["_id"]}, {"$unset": {provider: ""}})
    return public_user(load_user(user["id"]))


# ----------------------- Saved content -----------------------
@router.post("/me/saved-posts/{post_id}")
def toggle_saved_post(post_id: str, user=Depends(get_current_user)):
    find_or_404("post", post_id, "Post not found")
    saved = post_id in user.get("saved_posts", [])
    op = "$pull" if saved else "$addToSet"
    db["user"].update_one({"_id": ObjectId(user["id"])}, {op: {"saved_posts": post_id}})
    return {"saved": not saved, "saved_posts": load_user(user["id"]).get("saved_posts", [])}


@router.get("/me/saved-posts")
def get_saved_posts(user=Depends(get_current_user)):
    return [serialize_doc(p) for p in readable_posts(find_by_ids("post", user.get("saved_posts", [])), user)]


@router.post("/me/wishlist/{product_id}")
def toggle_wishlist(product_id: str, user=Depends(get_current_user)):
    find_or_404("product", product_id, "Product not found")
    listed = product_id in user.get("wishlist", [])
    op = "$pull" if listed else "$addToSet"
    db["user"].update_one({"_id": ObjectId(user["id"])}, {op: {"wishlist": product_id}})
    return {"wishlisted": not listed, "wishlist": load_user(user["id"]).get("wishlist", [])}


@router.get("/me/wishlist")
def get_wishlist(user=Depends(get_current_user)):
    return [serialize_doc(p) for p in find_by_ids("product", user.get("wishlist", []))]


# ----------------------- Activity -----------------------
@router.get("/me/activity")
def my_activity(user=Depends(get_current_user)):
    return {
        "posts": _post_summaries({"user_id": user["id"]}, 50, user),
        "comments": _comment_summaries({"user_id": user["id"]}, 50, user),
    }


@router.get("/me/dashboard")
def my_dashboard(user=Depends(get_current_user)):
    orders = db["order"].find({"user_id": user["id"]}).sort("created_at", -1).limit(3)
    return {
        "recentPosts": _post_summaries({"user_id": user["id"]}, 3, user),
        "recentComments": _comment_summaries({"user_id": user["id"]}, 3, user),
        "recentOrders": [serialize_doc(o) for o in orders],
        "loyalty": balance_summary(user),
        "stats": {
            "posts": db["post"].count_documents({"user_id": user["id"]}),
            "comments": db["comment"].count_documents({"user_id": user["id"]}),
            "followers": len(user.get("followers", [])),
            "following": len(user.get("following", [])),
        },
    }


@router.get("/me/blocked")
def my_blocked_users(user=Depends(get_current_user)):
    blocked = find_by_ids("user", user.get("blocked_users", []))
    return [{"id": str(u["_id"]), "username": u["username"], "profile_pic": u.get("profile_pic")} for u in blocked]


@router.get("/profile/{username}")
def public_profile(username: str, viewer=Depends(get_optional_user)):
    target = db["user"].find_one({"username": username, "is_active": True})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    target = serialize_doc(target)
    viewer_id = viewer["id"] if viewer else None
    if viewer_id and (viewer_id in target.get("blocked_users", []) or target["id"] in viewer.get("blocked_users", [])):
        raise HTTPException(status_code=404, detail="User not found")

    privacy = (target.get("preferences") or {}).get("privacy") or {}
    is_self = viewer_id == target["id"]
    is_following = bool(viewer_id) and viewer_id in target.get("followers", [])
    profile = {
        "id": target["id"],
        "username": target["username"],
        "bio": target.get("bio", ""),
        "profile_pic": target.get("profile_pic"),
        "created_at": target.get("created_at"),
        "followersCount": len(target.get("followers", [])),
        "followingCount": len(target.get("following", [])),
        "isFollowing": is_following,
    }
    if privacy.get("show_email") or is_self:
        profile["email"] = target["email"]
    if privacy.get("profile_visibility") == "private" and not (is_self or is_following or is_admin(viewer)):
        profile["isPrivate"] = True
        return profile
    profile["posts"] = _post_summaries({"user_id": target["id"]}, 15, viewer)
    profile["comments"] = _comment_summaries({"user_id": target["id"]}, 15, viewer)
    return profile


# ----------------------- Admin -----------------------
@router.get("")
def list_users(q: Optional[str] = None, page: int = 1, user=Depends(require_admin)):
    filt = {"$or": [{"username": regex(q)}, {"email": regex(q)}]} if q else {}
    total = db["user"].count_documents(filt)
    page = max(page, 1)
    items = db["user"].find(filt).sort("created_at", -1).skip((page - 1) * USERS_PER_PAGE).limit(USERS_PER_PAGE)
    return {
        "users": [public_user(serialize_doc(u)) for u in items],
        "page": page,
        "pages": max(math.ceil(total / USERS_PER_PAGE), 1),
        "total": total,
    }


@router.get("/search")
def search_users(q: str, user=Depends(require_admin)):
    items = db["user"].find({"$or": [{"username": regex(q)}, {"email": regex(q)}]}).limit(20)
    return [public_user(serialize_doc(u)) for u in items]


@router.put("/bulk-status")
def bulk_status(body: BulkStatusBody, user=Depends(require_admin)):
    ids = [ObjectId(i) for i in body.user_ids if i != user["id"]]
    res = db["user"].update_many({"_id": {"$in": ids}}, {"$set": {"is_active": body.is_active}})
    return {"modified": res.modified_count}


@router.get("/{user_id}/addresses")
def user_addresses(user_id: str, user=Depends(require_admin)):
    return [serialize_doc(a) for a in db["address"].find({"user_id": user_id})]


@router.delete("/{user_id}/addresses/{address_id}")
def delete_user_address(user_id: str, address_id: str, user=Depends(require_admin)):
    res = db["address"].delete_one({"_id": ObjectId(address_id), "user_id": user_id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Address not found")
    return {"ok": True}


# ----------------------- Social -----------------------
@router.post("/{user_id}/block")
def toggle_block(user_id: str, user=Depends(get_current_user)):
    if user_id == user["id"]:
        raise HTTPException(status_code=400, detail="You cannot block yourself")
    load_user(user_id)
    me = ObjectId(user["id"])
    if user_id in user.get("blocked_users", []):
        db["user"].update_one({"_id": me}, {"$pull": {"blocked_users": user_id}})
        return {"blocked": False}
    db["user"].update_one(
        {"_id": me},
        {"$addToSet": {"blocked_users": user_id}, "$pull": {"following": user_id, "followers": user_id}},
    )
    db["user"].update_one({"_id": ObjectId(user_id)}, {"$pull": {"following": user["id"], "followers": user["id"]}})
    return {"blocked": True}


@router.post("/{user_id}/follow")
def toggle_follow(user_id: str, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    if user_id == user["id"]:
        raise HTTPException(status_code=400, detail="You cannot follow yourself")
    target = load_user(user_id)
    if user_id in user.get("blocked_users", []) or user["id"] in target.get("blocked_users", []):
        raise HTTPException(status_code=403, detail="You cannot follow this user")
    if user_id in user.get("following", []):
        db["user"].update_one({"_id": ObjectId(user["id"])}, {"$pull": {"following": user_id}})
        db["user"].update_one({"_id": ObjectId(user_id)}, {"$pull": {"followers": user["id"]}})
        following = False
    else:
        db["user"].update_one({"_id": ObjectId(user["id"])}, {"$addToSet": {"following": user_id}})
        db["user"].update_one({"_id": ObjectId(user_id)}, {"$addToSet": {"followers": user["id"]}})
        following = True
        notify(
            background_tasks,
            user_id,
            user["id"],
            "follow",
            message=f"{user['username']} started following you",
            link=f"/user/{user['username']}",
        )
    target = load_user(user_id)
    return {"following": following, "followersCount": len(target.get("followers", []))}


# ----------------------- By id -----------------------
@router.get("/{user_id}")
def get_user(user_id: str, user=Depends(get_current_user)):
    if user_id != user["id"] and not is_admin(user):
        raise HTTPException(status_code=403, detail="Not authorized")
    return public_user(load_user(user_id))


@router.put("/{user_id}")
def update_user(user_id: str, body: ProfileUpdateBody, user=Depends(get_current_user)):
    if user_id != user["id"] and not is_admin(user):
        raise HTTPException(status_code=403, detail="Not authorized")
    return apply_profile_update(load_user(user_id), body)


@router.delete("/{user_id}")
def delete_user(user_id: str, user=Depends(require_admin)):
    load_user(user_id)
    anonymize_user(user_id)
    return {"message": "User deleted"}


@router.put("/{user_id}/role")
def set_role(user_id: str, body: RoleBody, user=Depends(require_admin)):
    load_user(user_id)
    db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": {"role": body.role}})
    return public_user(load_user(user_id))


@router.put("/{user_id}/status")
def set_status(user_id: str, body: StatusBody, user=Depends(require_admin)):
    if user_id == user["id"] and not body.is_active:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    load_user(user_id)
    db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": {"is_active": body.is_active}})
    return public_user(load_user(user_id))
