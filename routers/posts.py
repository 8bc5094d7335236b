from typing import List, Literal, Optional

import structlog
from bson.objectid import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from config import (
    COMMENT_MAX_LENGTH,
    CONTENT_MAX_LENGTH,
    CONTENT_MIN_LENGTH,
    MAX_TAGS,
    POSTS_PER_PAGE,
    RATE_LIMIT_UPLOAD,
    TITLE_MAX_LENGTH,
    TITLE_MIN_LENGTH,
)
from database import create_document, db, new_id, serialize_doc, utcnow
from notifier import notify
from ranking import paginate, sort_posts
from routers.community import (
    can_moderate,
    can_view_group,
    comment_thread,
    comments_out,
    delete_posts,
    ensure_can_edit_post,
    group_of,
    hidden_group_ids,
    posts_out,
)
from routers.deps import find_or_404, regex
from schemas import Comment as CommentSchema, Media, Post as PostSchema, RecipeDetails, RecipeReview
from security import get_current_user, get_optional_user, limiter, require_admin
from text_parser import extract_hashtags, extract_mentions, resolve_mentions
from uploads import MEDIA_EXTENSIONS, kind_of, save_upload

logger = structlog.get_logger()

router = APIRouter(prefix="/api/posts", tags=["posts"])


# ----------------------- Models -----------------------
class PostCreateBody(BaseModel):
    title: str = Field(..., min_length=TITLE_MIN_LENGTH, max_length=TITLE_MAX_LENGTH)
    content: str = Field(..., min_length=CONTENT_MIN_LENGTH, max_length=CONTENT_MAX_LENGTH)
    group_id: str
    tags: List[str] = Field([], max_length=MAX_TAGS)
    flair: Optional[str] = None
    media: List[Media] = []
    is_recipe: bool = False
    recipe_details: Optional[RecipeDetails] = None
    tagged_products: List[str] = []


class PostUpdateBody(BaseModel):
    title: Optional[str] = Field(None, min_length=TITLE_MIN_LENGTH, max_length=TITLE_MAX_LENGTH)
    content: Optional[str] = Field(None, min_length=CONTENT_MIN_LENGTH, max_length=CONTENT_MAX_LENGTH)
    tags: Optional[List[str]] = Field(None, max_length=MAX_TAGS)
    flair: Optional[str] = None
    media: Optional[List[Media]] = None
    is_recipe: Optional[bool] = None
    recipe_details: Optional[RecipeDetails] = None
    tagged_products: Optional[List[str]] = None


class CommentBody(BaseModel):
    content: str = Field(..., min_length=1, max_length=COMMENT_MAX_LENGTH)
    parent_comment_id: Optional[str] = None


class ReportBody(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class RecipeReviewBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field("", max_length=2000)


# ----------------------- Helpers -----------------------
def load_post(post_id: str) -> dict:
    return find_or_404("post", post_id, "Post not found")


def notify_mentions(background_tasks, mention_ids, sender: dict, post_id: str, comment_id: Optional[str] = None):
    where = "a comment" if comment_id else "a post"
    for uid in mention_ids:
        notify(
            background_tasks,
            uid,
            sender["id"],
            "mention",
            message=f"{sender['username']} mentioned you in {where}",
            post_id=post_id,
            comment_id=comment_id,
            link=f"/post/{post_id}",
        )


def _votes(post: dict, user_id: str, field: str, other: str):
    """Toggle user_id in `field`, removing it from `other`, and recompute the score."""
    upvotes = {"upvotes": list(post.get("upvotes", [])), "downvotes": list(post.get("downvotes", []))}
    added = user_id not in upvotes[field]
    if added:
        upvotes[field].append(user_id)
        if user_id in upvotes[other]:
            upvotes[other].remove(user_id)
    else:
        upvotes[field].remove(user_id)
    upvotes["vote_score"] = len(upvotes["upvotes"]) - len(upvotes["downvotes"])
    db["post"].update_one({"_id": post["_id"]}, {"$set": upvotes})
    return added, upvotes


# ----------------------- Feed -----------------------
@router.get("")
def list_posts(
    sort: Literal["new", "top", "discussed", "hot"] = "new",
    search: Optional[str] = None,
    hashtag: Optional[str] = None,
    group: Optional[str] = None,
    is_recipe: Optional[bool] = None,
    page: int = 1,
    limit: int = POSTS_PER_PAGE,
    user=Depends(get_optional_user),
):
    filt = {}
    if search:
        filt["$or"] = [{"title": regex(search)}, {"content": regex(search)}, {"hashtags": search.lower().lstrip("#")}]
    if hashtag:
        filt["hashtags"] = hashtag.lower().lstrip("#")
    if group:
        filt["group_id"] = group
    if is_recipe is not None:
        filt["is_recipe"] = is_recipe
    hidden = hidden_group_ids(user)
    if hidden:
        if group in hidden:
            return {"posts": [], "page": 1, "pages": 1, "total": 0}
        if not group:
            filt["group_id"] = {"$nin": hidden}
    ranked = sort_posts(list(db["post"].find(filt)), sort)
    items, page, pages = paginate(ranked, page, min(max(limit, 1), 50))
    return {"posts": posts_out(items), "page": page, "pages": pages, "total": len(ranked)}


@router.get("/reported")
def reported_posts(user=Depends(require_admin)):
    posts = list(db["post"].find({"reports.0": {"$exists": True}}).sort("created_at", -1))
    out = posts_out(posts)
    for sp, raw in zip(out, posts):
        sp["reports"] = serialize_doc({"r": raw.get("reports", [])})["r"]
    return out


@router.post("/media")
@limiter.limit(RATE_LIMIT_UPLOAD)
def upload_media(request: Request, files: List[UploadFile] = File(...), user=Depends(get_current_user)):
    return [
        {"url": save_upload(f, "recipes", "media", MEDIA_EXTENSIONS)["url"], "media_type": kind_of(f.filename)}
        for f in files
    ]


@router.get("/{post_id}")
def get_post(post_id: str, user=Depends(get_optional_user)):
    post = load_post(post_id)
    group = group_of(post)
    if group and not can_view_group(group, user):
        raise HTTPException(status_code=403, detail="This post belongs to a private group")
    out = posts_out([post])[0]
    out["comments"] = comment_thread(post)
    return out


# ----------------------- Authoring -----------------------
@router.post("", status_code=201)
def create_post(body: PostCreateBody, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    group = find_or_404("group", body.group_id, "Group not found")
    if user["id"] in group.get("banned_users", []):
        raise HTTPException(status_code=403, detail="You are banned from this group")
    if user["id"] not in group.get("members", []):
        raise HTTPException(status_code=403, detail="Join the group to post in it")
    if body.flair and body.flair not in [f["text"] for f in group.get("flairs", [])]:
        raise HTTPException(status_code=400, detail="Unknown flair for this group")

    text = f"{body.title} {body.content}"
    mention_ids = [uid for uid in resolve_mentions(extract_mentions(text)) if uid != user["id"]]
    post = PostSchema(
        user_id=user["id"],
        group_id=body.group_id,
        title=body.title,
        content=body.content,
        media=body.media,
        tags=[t.strip() for t in body.tags if t.strip()],
        hashtags=extract_hashtags(text),
        mentions=mention_ids,
        flair=body.flair,
        is_recipe=body.is_recipe,
        recipe_details=body.recipe_details if body.is_recipe else None,
        tagged_products=body.tagged_products,
    )
    pid = create_document("post", post)
    notify_mentions(background_tasks, mention_ids, user, pid)
    db["user"].update_one({"_id": ObjectId(user["id"])}, {"$set": {"activity.last_activity": utcnow()}})
    return posts_out([db["post"].find_one({"_id": ObjectId(pid)})])[0]


@router.put("/{post_id}")
def update_post(post_id: str, body: PostUpdateBody, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    post = load_post(post_id)
    ensure_can_edit_post(post, user)
    update = body.model_dump(exclude_none=True)
    if "title" in update or "content" in update:
        text = f"{update.get('title', post['title'])} {update.get('content', post['content'])}"
        mention_ids = [uid for uid in resolve_mentions(extract_mentions(text)) if uid != post["user_id"]]
        new_mentions = [uid for uid in mention_ids if uid not in post.get("mentions", [])]
        update["hashtags"] = extract_hashtags(text)
        update["mentions"] = mention_ids
        notify_mentions(background_tasks, new_mentions, user, post_id)
    if update.get("is_recipe") is False:
        update["recipe_details"] = None
    if update:
        db["post"].update_one({"_id": post["_id"]}, {"$set": update})
    return posts_out([db["post"].find_one({"_id": post["_id"]})])[0]


@router.delete("/{post_id}")
def delete_post(post_id: str, user=Depends(get_current_user)):
    post = load_post(post_id)
    ensure_can_edit_post(post, user)
    delete_posts([post_id])
    return {"message": "Post removed"}


# ----------------------- Votes -----------------------
@router.put("/{post_id}/upvote")
def upvote_post(post_id: str, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    post = load_post(post_id)
    added, votes = _votes(post, user["id"], "upvotes", "downvotes")
    if added:
        notify(
            background_tasks,
            post["user_id"],
            user["id"],
            "post_upvote",
            message=f"{user['username']} upvoted your post \"{post['title']}\"",
            post_id=post_id,
            link=f"/post/{post_id}",
        )
    return {"upvoted": added, "upvotes": len(votes["upvotes"]), "vote_score": votes["vote_score"]}


@router.put("/{post_id}/downvote")
def downvote_post(post_id: str, user=Depends(get_current_user)):
    post = load_post(post_id)
    added, votes = _votes(post, user["id"], "downvotes", "upvotes")
    return {"downvoted": added, "downvotes": len(votes["downvotes"]), "vote_score": votes["vote_score"]}


# ----------------------- Comments -----------------------
@router.post("/{post_id}/comments", status_code=201)
def add_comment(post_id: str, body: CommentBody, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    post = load_post(post_id)
    group = group_of(post)
    if group and user["id"] in group.get("banned_users", []):
        raise HTTPException(status_code=403, detail="You are banned from this group")
    if group and not can_view_group(group, user):
        raise HTTPException(status_code=403, detail="This post belongs to a private group")

    parent = None
    if body.parent_comment_id:
        parent = find_or_404("comment", body.parent_comment_id, "Parent comment not found")
        if parent["post_id"] != post_id:
            raise HTTPException(status_code=400, detail="Parent comment belongs to another post")
        if parent.get("parent_id"):
            # replies stay two levels deep
            parent = find_or_404("comment", parent["parent_id"], "Parent comment not found")

    mention_ids = [uid for uid in resolve_mentions(extract_mentions(body.content)) if uid != user["id"]]
    comment = CommentSchema(
        post_id=post_id,
        user_id=user["id"],
        content=body.content,
        parent_id=str(parent["_id"]) if parent else None,
        mentions=mention_ids,
    )
    cid = create_document("comment", comment)
    if parent:
        db["comment"].update_one({"_id": parent["_id"]}, {"$push": {"replies": cid}})
        notify(
            background_tasks,
            parent["user_id"],
            user["id"],
            "reply",
            message=f"{user['username']} replied to your comment",
            post_id=post_id,
            comment_id=cid,
            link=f"/post/{post_id}",
        )
    else:
        db["post"].update_one({"_id": post["_id"]}, {"$push": {"comments": cid}})
    db["post"].update_one({"_id": post["_id"]}, {"$inc": {"comment_count": 1}})
    if not parent or parent["user_id"] != post["user_id"]:
        notify(
            background_tasks,
            post["user_id"],
            user["id"],
            "comment",
            message=f"{user['username']} commented on your post \"{post['title']}\"",
            post_id=post_id,
            comment_id=cid,
            link=f"/post/{post_id}",
        )
    notify_mentions(background_tasks, mention_ids, user, post_id, cid)
    return comments_out([db["comment"].find_one({"_id": ObjectId(cid)})])[0]


# ----------------------- Moderation -----------------------
@router.post("/{post_id}/report")
def report_post(post_id: str, body: ReportBody, user=Depends(get_current_user)):
    post = load_post(post_id)
    if any(r["user_id"] == user["id"] for r in post.get("reports", [])):
        raise HTTPException(status_code=400, detail="You have already reported this post")
    db["post"].update_one(
        {"_id": post["_id"]},
        {"$push": {"reports": {"user_id": user["id"], "reason": body.reason, "created_at": utcnow()}}},
    )
    return {"message": "Post reported"}


@router.put("/{post_id}/pin")
def toggle_pin(post_id: str, user=Depends(get_current_user)):
    post = load_post(post_id)
    if not can_moderate(group_of(post), user):
        raise HTTPException(status_code=403, detail="Only moderators can pin posts")
    pinned = not post.get("is_pinned", False)
    db["post"].update_one({"_id": post["_id"]}, {"$set": {"is_pinned": pinned}})
    return {"is_pinned": pinned}


@router.put("/{post_id}/feature")
def toggle_feature(post_id: str, user=Depends(require_admin)):
    post = load_post(post_id)
    featured = not post.get("is_featured", False)
    db["post"].update_one({"_id": post["_id"]}, {"$set": {"is_featured": featured}})
    return {"is_featured": featured}


# ----------------------- Recipe reviews -----------------------
@router.post("/{post_id}/recipe-reviews", status_code=201)
def add_recipe_review(post_id: str, body: RecipeReviewBody, user=Depends(get_current_user)):
    post = load_post(post_id)
    if not post.get("is_recipe"):
        raise HTTPException(status_code=400, detail="Only recipes can be reviewed")
    if post["user_id"] == user["id"]:
        raise HTTPException(status_code=400, detail="You cannot review your own recipe")
    if any(r["user_id"] == user["id"] for r in post.get("recipe_reviews", [])):
        raise HTTPException(status_code=400, detail="Recipe already reviewed")
    review = RecipeReview(
        id=new_id(),
        user_id=user["id"],
        name=user["username"],
        rating=body.rating,
        comment=body.comment,
        created_at=utcnow(),
    ).model_dump()
    reviews = post.get("recipe_reviews", []) + [review]
    rating = round(sum(r["rating"] for r in reviews) / len(reviews), 2)
    db["post"].update_one(
        {"_id": post["_id"]},
        {"$push": {"recipe_reviews": review}, "$set": {"recipe_rating": rating, "num_recipe_reviews": len(reviews)}},
    )
    return {"recipe_rating": rating, "num_recipe_reviews": len(reviews)}
