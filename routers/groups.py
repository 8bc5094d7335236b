import re
from typing import List, Literal, Optional

import structlog
from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from config import GROUP_POSTS_PER_PAGE, RATE_LIMIT_UPLOAD
from database import create_document, db, new_id, serialize_doc, user_briefs
from ranking import paginate, sort_posts
from routers.community import can_moderate, can_view_group, delete_posts, is_member, posts_out
from routers.deps import regex
from schemas import Flair, Group as GroupSchema, GroupRule
from security import get_current_user, get_optional_user, is_admin, limiter
from uploads import IMAGE_EXTENSIONS, save_upload

logger = structlog.get_logger()

router = APIRouter(prefix="/api/groups", tags=["groups"])


# ----------------------- Models -----------------------
class RuleBody(BaseModel):
    title: str = Field(..., max_length=100)
    description: str = Field("", max_length=500)


class FlairBody(BaseModel):
    text: str = Field(..., max_length=30)
    color: str = "#808080"
    background_color: str = "#e0e0e0"


class GroupCreateBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=30)
    description: str = Field(..., min_length=1, max_length=500)
    is_private: bool = False
    rules: List[RuleBody] = []
    flairs: List[FlairBody] = []


class GroupUpdateBody(BaseModel):
    description: Optional[str] = Field(None, max_length=500)
    is_private: Optional[bool] = None
    rules: Optional[List[RuleBody]] = None
    flairs: Optional[List[FlairBody]] = None


class MemberRoleBody(BaseModel):
    role: Literal["member", "moderator"]


class RemoveMemberBody(BaseModel):
    ban: bool = False


# ----------------------- Helpers -----------------------
def slugify(name: str) -> str:
    slug = re.sub(r"\s+", "-", name.strip().lower())
    return re.sub(r"[^a-z0-9-]", "", slug)


def load_group(slug: str) -> dict:
    group = db["group"].find_one({"slug": slug})
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


def ensure_moderator(group: dict, user: dict):
    if not can_moderate(group, user):
        raise HTTPException(status_code=403, detail="Moderator access required")


def ensure_creator_or_admin(group: dict, user: dict):
    if group["creator_id"] != user["id"] and not is_admin(user):
        raise HTTPException(status_code=403, detail="Only the group creator can do this")


def _rules(rules) -> list:
    return [GroupRule(id=new_id(), **r.model_dump()).model_dump() for r in rules]


def _flairs(flairs) -> list:
    return [Flair(id=new_id(), **f.model_dump()).model_dump() for f in flairs]


def group_out(group: dict, user: Optional[dict] = None) -> dict:
    out = serialize_doc(group)
    # membership lists are for moderators only
    if not can_moderate(group, user):
        for field in ("banned_users", "join_requests"):
            out.pop(field, None)
    out["creator"] = user_briefs([group["creator_id"]]).get(group["creator_id"])
    out["isMember"] = is_member(group, user)
    out["isModerator"] = bool(user) and user["id"] in group.get("moderators", [])
    out["hasRequested"] = bool(user) and user["id"] in group.get("join_requests", [])
    return out


def add_member(group: dict, user_id: str):
    res = db["group"].update_one(
        {"_id": group["_id"], "members": {"$ne": user_id}},
        {"$push": {"members": user_id}, "$inc": {"member_count": 1}},
    )
    db["group"].update_one({"_id": group["_id"]}, {"$pull": {"join_requests": user_id}})
    db["user"].update_one({"_id": ObjectId(user_id)}, {"$addToSet": {"subscriptions": str(group["_id"])}})
    return res.modified_count > 0


def remove_member(group: dict, user_id: str):
    res = db["group"].update_one(
        {"_id": group["_id"], "members": user_id},
        {"$pull": {"members": user_id, "moderators": user_id}, "$inc": {"member_count": -1}},
    )
    db["user"].update_one({"_id": ObjectId(user_id)}, {"$pull": {"subscriptions": str(group["_id"])}})
    return res.modified_count > 0


# ----------------------- Groups -----------------------
@router.post("", status_code=201)
def create_group(body: GroupCreateBody, user=Depends(get_current_user)):
    slug = slugify(body.name)
    if not slug:
        raise HTTPException(status_code=400, detail="Group name must contain letters or numbers")
    if db["group"].find_one({"$or": [{"name": body.name}, {"slug": slug}]}):
        raise HTTPException(status_code=400, detail="A group with this name already exists")
    group = GroupSchema(
        name=body.name,
        slug=slug,
        description=body.description,
        creator_id=user["id"],
        moderators=[user["id"]],
        members=[user["id"]],
        member_count=1,
        is_private=body.is_private,
        rules=_rules(body.rules),
        flairs=_flairs(body.flairs),
    )
    gid = create_document("group", group)
    db["user"].update_one({"_id": ObjectId(user["id"])}, {"$addToSet": {"subscriptions": gid}})
    logger.info(f"Group {slug} created by {user['username']}")
    return group_out(db["group"].find_one({"_id": ObjectId(gid)}), user)


@router.get("")
def list_groups(search: Optional[str] = None, user=Depends(get_optional_user)):
    filt = {"$or": [{"name": regex(search)}, {"description": regex(search)}]} if search else {}
    groups = db["group"].find(filt).sort("member_count", -1)
    return [group_out(g, user) for g in groups]


@router.put("/{slug}/cover")
@limiter.limit(RATE_LIMIT_UPLOAD)
def upload_cover(request: Request, slug: str, file: UploadFile = File(...), user=Depends(get_current_user)):
    group = load_group(slug)
    ensure_moderator(group, user)
    saved = save_upload(file, "groupCovers", "cover", IMAGE_EXTENSIONS)
    db["group"].update_one({"_id": group["_id"]}, {"$set": {"cover_image": saved["url"]}})
    return {"cover_image": saved["url"]}


@router.get("/{slug}")
def get_group(slug: str, user=Depends(get_optional_user)):
    return group_out(load_group(slug), user)


@router.get("/{slug}/posts")
def group_posts(
    slug: str,
    sort: Literal["new", "top", "discussed", "hot"] = "hot",
    search: Optional[str] = None,
    is_recipe: Optional[bool] = None,
    page: int = 1,
    user=Depends(get_optional_user),
):
    group = load_group(slug)
    if not can_view_group(group, user):
        raise HTTPException(status_code=403, detail="This group is private")
    filt = {"group_id": str(group["_id"])}
    if search:
        filt["$or"] = [{"title": regex(search)}, {"content": regex(search)}]
    if is_recipe is not None:
        filt["is_recipe"] = is_recipe
    ranked = sort_posts(list(db["post"].find(filt)), sort, pinned_first=True)
    items, page, pages = paginate(ranked, page, GROUP_POSTS_PER_PAGE)
    return {"posts": posts_out(items), "page": page, "pages": pages}


@router.put("/{slug}")
def update_group(slug: str, body: GroupUpdateBody, user=Depends(get_current_user)):
    group = load_group(slug)
    ensure_moderator(group, user)
    update = body.model_dump(exclude_none=True)
    if body.rules is not None:
        update["rules"] = _rules(body.rules)
    if body.flairs is not None:
        update["flairs"] = _flairs(body.flairs)
    if update:
        db["group"].update_one({"_id": group["_id"]}, {"$set": update})
    return group_out(db["group"].find_one({"_id": group["_id"]}), user)


@router.delete("/{slug}")
def delete_group(slug: str, user=Depends(get_current_user)):
    group = load_group(slug)
    ensure_creator_or_admin(group, user)
    gid = str(group["_id"])
    removed = delete_posts([str(p["_id"]) for p in db["post"].find({"group_id": gid}, {"_id": 1})])
    db["user"].update_many({"subscriptions": gid}, {"$pull": {"subscriptions": gid}})
    db["autojoinconfig"].update_many({}, {"$pull": {"group_ids": gid}})
    db["group"].delete_one({"_id": group["_id"]})
    logger.info(f"Group {slug} deleted with {removed} posts")
    return {"message": "Group deleted"}


# ----------------------- Membership -----------------------
@router.post("/{slug}/toggle-membership")
def toggle_membership(slug: str, user=Depends(get_current_user)):
    group = load_group(slug)
    uid = user["id"]
    if uid in group.get("banned_users", []):
        raise HTTPException(status_code=403, detail="You are banned from this group")

    if uid in group.get("members", []):
        if uid == group["creator_id"] or uid in group.get("moderators", []):
            raise HTTPException(status_code=400, detail="Creators and moderators cannot leave the group")
        remove_member(group, uid)
        return {"message": "Left the group", "isMember": False}

    if group.get("is_private"):
        if uid in group.get("join_requests", []):
            return {"message": "Join request already sent", "isMember": False, "hasRequested": True}
        db["group"].update_one({"_id": group["_id"]}, {"$addToSet": {"join_requests": uid}})
        return {"message": "Join request sent", "isMember": False, "hasRequested": True}

    add_member(group, uid)
    return {"message": "Joined the group", "isMember": True}


@router.get("/{slug}/requests")
def join_requests(slug: str, user=Depends(get_current_user)):
    group = load_group(slug)
    ensure_moderator(group, user)
    briefs = user_briefs(group.get("join_requests", []))
    return [briefs[uid] for uid in group.get("join_requests", []) if uid in briefs]


@router.post("/{slug}/requests/{user_id}/approve")
def approve_request(slug: str, user_id: str, user=Depends(get_current_user)):
    group = load_group(slug)
    ensure_moderator(group, user)
    if user_id not in group.get("join_requests", []):
        raise HTTPException(status_code=404, detail="Join request not found")
    add_member(group, user_id)
    return {"message": "Request approved"}


@router.post("/{slug}/requests/{user_id}/deny")
def deny_request(slug: str, user_id: str, user=Depends(get_current_user)):
    group = load_group(slug)
    ensure_moderator(group, user)
    if user_id not in group.get("join_requests", []):
        raise HTTPException(status_code=404, detail="Join request not found")
    db["group"].update_one({"_id": group["_id"]}, {"$pull": {"join_requests": user_id}})
    return {"message": "Request denied"}


# ----------------------- Moderation -----------------------
@router.get("/{slug}/members")
def list_members(slug: str, user=Depends(get_current_user)):
    group = load_group(slug)
    ensure_moderator(group, user)
    briefs = user_briefs(group.get("members", []))
    members = []
    for uid in group.get("members", []):
        if uid not in briefs:
            continue
        role = "creator" if uid == group["creator_id"] else "moderator" if uid in group.get("moderators", []) else "member"
        members.append({**briefs[uid], "role": role})
    return members


@router.put("/{slug}/members/{user_id}/role")
def set_member_role(slug: str, user_id: str, body: MemberRoleBody, user=Depends(get_current_user)):
    group = load_group(slug)
    ensure_creator_or_admin(group, user)
    if user_id not in group.get("members", []):
        raise HTTPException(status_code=404, detail="User is not a member of this group")
    if user_id == group["creator_id"]:
        raise HTTPException(status_code=400, detail="The group creator cannot be demoted")
    op = "$addToSet" if body.role == "moderator" else "$pull"
    db["group"].update_one({"_id": group["_id"]}, {op: {"moderators": user_id}})
    return {"message": f"Role updated to {body.role}"}


@router.delete("/{slug}/members/{user_id}")
def kick_member(slug: str, user_id: str, body: Optional[RemoveMemberBody] = None, user=Depends(get_current_user)):
    group = load_group(slug)
    ensure_moderator(group, user)
    if user_id == group["creator_id"]:
        raise HTTPException(status_code=400, detail="The group creator cannot be removed")
    removed = remove_member(group, user_id)
    banned = bool(body and body.ban)
    if banned:
        db["group"].update_one(
            {"_id": group["_id"]},
            {"$addToSet": {"banned_users": user_id}, "$pull": {"join_requests": user_id}},
        )
    if not removed and not banned:
        raise HTTPException(status_code=404, detail="User is not a member of this group")
    return {"message": "User banned" if banned else "User removed"}
