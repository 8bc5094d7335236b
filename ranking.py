import math
from datetime import datetime
from typing import List, Optional

from database import as_aware, utcnow

GRAVITY = 1.8


def hot_score(votes: int, age_hours: float, gravity: float = GRAVITY) -> float:
    return votes / math.pow(max(age_hours, 0) + 2, gravity)


def age_in_hours(created_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    if created_at is None:
        return 0.0
    now = now or utcnow()
    return max((now - as_aware(created_at)).total_seconds() / 3600, 0.0)


def _created(post) -> float:
    created = post.get("created_at")
    return as_aware(created).timestamp() if created else 0.0


def sort_posts(posts: List[dict], sort: str = "new", pinned_first: bool = False, now: Optional[datetime] = None) -> List[dict]:
    now = now or utcnow()
    if sort == "top":
        key = lambda p: (p.get("vote_score", 0), _created(p))
    elif sort == "discussed":
        key = lambda p: (p.get("comment_count", 0), _created(p))
    elif sort == "hot":
        key = lambda p: (hot_score(p.get("vote_score", 0), age_in_hours(p.get("created_at"), now)), _created(p))
    else:
        key = _created
    ranked = sorted(posts, key=key, reverse=True)
    if pinned_first:
        # stable sort keeps the ranking inside each bucket
        ranked.sort(key=lambda p: not p.get("is_pinned", False))
    return ranked


def paginate(items: list, page: int, limit: int):
    page = max(page, 1)
    pages = max(math.ceil(len(items) / limit), 1) if limit else 1
    start = (page - 1) * limit
    return items[start:start + limit], page, pages
