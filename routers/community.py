"""
Helpers shared by the posts, comments and groups routers.

Comments form a two-level tree: a comment on a post is listed in
`post.comments`, a reply is listed in its parent's `replies` and carries
`parent_id`. Replies to replies are attached to the top-level ancestor.
"""
from typing import Iterable, List, Optional

from bson.objectid import ObjectId
from fastapi import HTTPException

from database import db, find_by_ids, serialize_doc, user_briefs
from security import is_admin


def can_moderate(group: Optional[dict], user: Optional[dict]) -> bool:
    if is_admin(user):
        return True
    return bool(group) and bool(user) and user["id"] in group.get("moderators", [])


def is_member(group: dict, user: Optional[dict]) -> bool:
    return bool(user) and user["id"] in group.get("members", [])


def can_view_group(group: dict, user: Optional[dict]) -> bool:
    return not group.get("is_private") or is_member(group, user) or is_admin(user)


def group_of(post: dict) -> Optional[dict]:
    gid = post.get("group_id")
    if not gid or not ObjectId.is_valid(gid):
        return None
    return db["group"].find_one({"_id": ObjectId(gid)})


def ensure_can_edit_post(post: dict, user: dict):
    if post["user_id"] != user["id"] and not can_moderate(group_of(post), user):
        raise HTTPException(status_code=403, detail="Not authorized to modify this post")


def hidden_group_ids(user: Optional[dict]) -> Optional[List[str]]:
    """Ids of private groups the user may not read, or None when nothing is hidden."""
    if is_admin(user):
        return None
    hidden = []
    for g in db["group"].find({"is_private": True}, {"members": 1}):
        if not user or user["id"] not in g.get("members", []):
            hidden.append(str(g["_id"]))
    return hidden or None


def post_visibility_filter(user: Optional[dict]) -> dict:
    hidden = hidden_group_ids(user)
    return {"group_id": {"$nin": hidden}} if hidden else {}


def readable_posts(posts: List[dict], user: Optional[dict]) -> List[dict]:
    """Drop posts that live in private groups the user cannot read."""
    hidden = hidden_group_ids(user) or []
    return [p for p in posts if p.get("group_id") not in hidden]


def delete_comment_tree(comment_id: str) -> int:
    """Delete a comment and every reply beneath it. Returns the number removed."""
    comment = db["comment"].find_one({"_id": ObjectId(comment_id)})
    if not comment:
        return 0
    removed = 0
    for reply_id in comment.get("replies", []):
        removed += delete_comment_tree(reply_id)
    db["comment"].delete_one({"_id": comment["_id"]})
    return removed + 1


def delete_posts(post_ids: Iterable[str]) -> int:
    """Delete posts together with their comments and any saved/collection references."""
    post_ids = list(post_ids)
    if not post_ids:
        return 0
    db["comment"].delete_many({"post_id": {"$in": post_ids}})
    db["user"].update_many({}, {"$pull": {"saved_posts": {"$in": post_ids}}})
    db["collection"].update_many({}, {"$pull": {"posts": {"$in": post_ids}}})
    res = db["post"].delete_many({"_id": {"$in": [ObjectId(p) for p in post_ids]}})
    return res.deleted_count


def posts_out(posts: List[dict]) -> List[dict]:
    """Serialize posts with author and group summaries."""
    authors = user_briefs([p["user_id"] for p in posts])
    groups = {
        str(g["_id"]): {"id": str(g["_id"]), "name": g["name"], "slug": g["slug"]}
        for g in find_by_ids("group", list({p["group_id"] for p in posts if p.get("group_id")}))
    }
    out = []
    for p in posts:
        sp = serialize_doc(p)
        sp.pop("reports", None)
        sp["user"] = authors.get(p["user_id"])
        sp["group"] = groups.get(p.get("group_id"))
        out.append(sp)
    return out


def comments_out(comments: List[dict]) -> List[dict]:
    authors = user_briefs([c["user_id"] for c in comments])
    out = []
    for c in comments:
        sc = serialize_doc(c)
        sc.pop("reports", None)
        sc["user"] = authors.get(c["user_id"])
        out.append(sc)
    return out


def comment_thread(post: dict) -> List[dict]:
    """Top-level comments of a post, oldest first, each with its replies."""
    top = find_by_ids("comment", post.get("comments", []))
    replies = list(db["comment"].find({"post_id": str(post["_id"]), "parent_id": {"$ne": None}}).sort("created_at", 1))
    by_parent = {}
    for r in comments_out(replies):
        by_parent.setdefault(r["parent_id"], []).append(r)
    thread = []
    for c in comments_out(top):
        c["replies"] = by_parent.get(c["id"], [])
        thread.append(c)
    return thread
