import re
from typing import List

from config import CLIENT_URL, MAX_HASHTAGS, MAX_MENTIONS
from database import db

MENTION_RE = re.compile(r"@([a-zA-Z0-9_]{3,30})\b")
HASHTAG_RE = re.compile(r"#([a-zA-Z0-9_]{2,50})\b")


def _unique(values, cap):
    seen = []
    for v in values:
        if v not in seen:
            seen.append(v)
        if len(seen) == cap:
            break
    return seen


def extract_mentions(text: str) -> List[str]:
    if not text:
        return []
    return _unique(MENTION_RE.findall(text), MAX_MENTIONS)


def extract_hashtags(text: str) -> List[str]:
    if not text:
        return []
    return _unique((t.lower() for t in HASHTAG_RE.findall(text)), MAX_HASHTAGS)


def resolve_mentions(usernames: List[str]) -> List[str]:
    """User ids for the usernames that exist, in mention order."""
    if not usernames:
        return []
    found = {u["username"]: str(u["_id"]) for u in db["user"].find({"username": {"$in": usernames}})}
    return [found[name] for name in usernames if name in found]


def linkify(text: str, base_url: str = CLIENT_URL) -> str:
    if not text:
        return ""
    text = MENTION_RE.sub(lambda m: f'<a href="{base_url}/user/{m.group(1)}" class="mention">@{m.group(1)}</a>', text)
    return HASHTAG_RE.sub(lambda m: f'<a href="{base_url}/search?q=%23{m.group(1)}" class="hashtag">#{m.group(1)}</a>', text)
