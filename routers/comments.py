from bson.objectid import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from config import COMMENT_MAX_LENGTH
from database import db, serialize_doc, utcnow
from notifier import notify
from routers.community import can_moderate, comments_out, delete_comment_tree, group_of
from routers.deps import ensure_owner_or_admin, find_or_404
from security import get_current_user, require_admin
from text_parser import extract_mentions, resolve_mentions

router = APIRouter(prefix="/api/comments", tags=["comments"])


class CommentUpdateBody(BaseModel):
    content: str = Field(..., min_length=1, max_length=COMMENT_MAX_LENGTH)


class ReportBody(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


def load_comment(comment_id: str) -> dict:
    return find_or_404("comment", comment_id, "Comment not found")


@router.get("/reported")
def reported_comments(user=Depends(require_admin)):
    comments = list(db["comment"].find({"reports.0": {"$exists": True}}).sort("created_at", -1))
    out = comments_out(comments)
    for sc, raw in zip(out, comments):
        sc["reports"] = serialize_doc({"r": raw.get("reports", [])})["r"]
    return out


@router.put("/{comment_id}/upvote")
def upvote_comment(comment_id: str, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    comment = load_comment(comment_id)
    upvotes = list(comment.get("upvotes", []))
    added = user["id"] not in upvotes
    if added:
        upvotes.append(user["id"])
    else:
        upvotes.remove(user["id"])
    db["comment"].update_one({"_id": comment["_id"]}, {"$set": {"upvotes": upvotes}})
    if added:
        notify(
            background_tasks,
            comment["user_id"],
            user["id"],
            "comment_upvote",
            message=f"{user['username']} upvoted your comment",
            post_id=comment["post_id"],
            comment_id=comment_id,
            link=f"/post/{comment['post_id']}",
        )
    return {"upvoted": added, "upvotes": len(upvotes)}


@router.put("/{comment_id}")
def update_comment(comment_id: str, body: CommentUpdateBody, user=Depends(get_current_user)):
    comment = load_comment(comment_id)
    ensure_owner_or_admin(comment["user_id"], user, "Not authorized to edit this comment")
    mentions = [uid for uid in resolve_mentions(extract_mentions(body.content)) if uid != comment["user_id"]]
    db["comment"].update_one(
        {"_id": comment["_id"]},
        {"$set": {"content": body.content, "mentions": mentions, "updated_at": utcnow()}},
    )
    return comments_out([db["comment"].find_one({"_id": comment["_id"]})])[0]


@router.delete("/{comment_id}")
def delete_comment(comment_id: str, user=Depends(get_current_user)):
    comment = load_comment(comment_id)
    post = db["post"].find_one({"_id": ObjectId(comment["post_id"])})
    if comment["user_id"] != user["id"] and not can_moderate(group_of(post) if post else None, user):
        raise HTTPException(status_code=403, detail="Not authorized to delete this comment")

    if comment.get("parent_id"):
        db["comment"].update_one({"_id": ObjectId(comment["parent_id"])}, {"$pull": {"replies": comment_id}})
    elif post:
        db["post"].update_one({"_id": post["_id"]}, {"$pull": {"comments": comment_id}})
    removed = delete_comment_tree(comment_id)
    if post:
        count = max(post.get("comment_count", 0) - removed, 0)
        db["post"].update_one({"_id": post["_id"]}, {"$set": {"comment_count": count}})
    return {"message": "Comment removed", "removed": removed}


@router.post("/{comment_id}/report")
def report_comment(comment_id: str, body: ReportBody, user=Depends(get_current_user)):
    comment = load_comment(comment_id)
    if any(r["user_id"] == user["id"] for r in comment.get("reports", [])):
        raise HTTPException(status_code=400, detail="You have already reported this comment")
    db["comment"].update_one(
        {"_id": comment["_id"]},
        {"$push": {"reports": {"user_id": user["id"], "reason": body.reason, "created_at": utcnow()}}},
    )
    return {"message": "Comment reported"}
