from datetime import datetime, timedelta, timezone

from ranking import age_in_hours, hot_score, paginate, sort_posts

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def post(name, hours_ago=0, score=0, comments=0, pinned=False):
    return {
        "name": name,
        "created_at": NOW - timedelta(hours=hours_ago),
        "vote_score": score,
        "comment_count": comments,
        "is_pinned": pinned,
    }


def test_hot_score_decays_with_age():
    assert hot_score(10, 0) > hot_score(10, 5) > hot_score(10, 48)
    assert hot_score(0, 1) == 0


def test_age_handles_naive_datetimes():
    naive = (NOW - timedelta(hours=3)).replace(tzinfo=None)
    assert round(age_in_hours(naive, NOW), 3) == 3


def test_sort_modes():
    posts = [post("old-popular", 48, score=50, comments=1), post("fresh", 1, score=5, comments=9), post("newest", 0)]
    assert [p["name"] for p in sort_posts(posts, "new", now=NOW)] == ["newest", "fresh", "old-popular"]
    assert [p["name"] for p in sort_posts(posts, "top", now=NOW)] == ["old-popular", "fresh", "newest"]
    assert [p["name"] for p in sort_posts(posts, "discussed", now=NOW)] == ["fresh", "old-popular", "newest"]
    assert sort_posts(posts, "hot", now=NOW)[0]["name"] == "fresh"


def test_pinned_first_keeps_ranking_within_buckets():
    posts = [post("a", 1, score=3), post("b", 2, score=9, pinned=True), post("c", 0, score=1), post("d", 5, score=1, pinned=True)]
    ranked = sort_posts(posts, "top", pinned_first=True, now=NOW)
    assert [p["name"] for p in ranked] == ["b", "d", "a", "c"]


def test_paginate():
    items = list(range(25))
    page_items, page, pages = paginate(items, 3, 10)
    assert page_items == [20, 21, 22, 23, 24]
    assert (page, pages) == (3, 3)
    assert paginate([], 1, 10) == ([], 1, 1)
    assert paginate(items, 0, 10)[1] == 1
