from bson.objectid import ObjectId

from conftest import make_group, make_post
from database import db


def setup_group(client, alice, bob):
    _, alice_headers = alice
    _, bob_headers = bob
    group = make_group(client, alice_headers)
    client.post("/api/groups/urban-gardeners/toggle-membership", headers=bob_headers)
    return group


def test_non_member_cannot_post(client, alice, bob):
    _, alice_headers = alice
    _, bob_headers = bob
    group = make_group(client, alice_headers)
    res = client.post("/api/posts", json={"title": "Hello", "content": "Not a member yet", "group_id": group["id"]}, headers=bob_headers)
    assert res.status_code == 403


def test_create_post_extracts_tags_and_notifies_mentions(client, alice, bob):
    group = setup_group(client, alice, bob)
    bob_user, bob_headers = bob
    _, alice_headers = alice
    post = make_post(client, alice_headers, group["id"], content="Ask @bob about #Compost and #compost bins")
    assert post["hashtags"] == ["compost"]
    assert post["mentions"] == [bob_user["id"]]
    assert post["user"]["username"] == "alice"
    assert post["group"]["slug"] == "urban-gardeners"

    notes = client.get("/api/notifications", headers=bob_headers).json()
    assert notes["unreadCount"] == 1
    assert notes["notifications"][0]["type"] == "mention"
    assert notes["notifications"][0]["sender"]["username"] == "alice"


def test_vote_toggles(client, alice, bob):
    group = setup_group(client, alice, bob)
    _, alice_headers = alice
    _, bob_headers = bob
    post = make_post(client, alice_headers, group["id"])

    res = client.put(f"/api/posts/{post['id']}/upvote", headers=bob_headers).json()
    assert res == {"upvoted": True, "upvotes": 1, "vote_score": 1}
    res = client.put(f"/api/posts/{post['id']}/downvote", headers=bob_headers).json()
    assert res == {"downvoted": True, "downvotes": 1, "vote_score": -1}
    res = client.put(f"/api/posts/{post['id']}/downvote", headers=bob_headers).json()
    assert res["vote_score"] == 0
    assert db["notification"].count_documents({"type": "post_upvote"}) == 1


def test_upvote_notification_deduplicated(client, alice, bob):
    group = setup_group(client, alice, bob)
    _, alice_headers = alice
    _, bob_headers = bob
    post = make_post(client, alice_headers, group["id"])
    for _ in range(3):
        client.put(f"/api/posts/{post['id']}/upvote", headers=bob_headers)
    assert db["notification"].count_documents({"type": "post_upvote"}) == 1


def test_self_upvote_does_not_notify(client, alice, bob):
    group = setup_group(client, alice, bob)
    _, alice_headers = alice
    post = make_post(client, alice_headers, group["id"])
    client.put(f"/api/posts/{post['id']}/upvote", headers=alice_headers)
    assert db["notification"].count_documents({}) == 0


def test_feed_sorting_and_search(client, alice, bob):
    group = setup_group(client, alice, bob)
    _, alice_headers = alice
    _, bob_headers = bob
    quiet = make_post(client, alice_headers, group["id"], title="Quiet post", content="Nothing much happening here")
    loud = make_post(client, alice_headers, group["id"], title="Loud post", content="Everyone is talking #harvest")
    client.put(f"/api/posts/{quiet['id']}/upvote", headers=bob_headers)
    client.post(f"/api/posts/{loud['id']}/comments", json={"content": "Agreed!"}, headers=bob_headers)

    assert client.get("/api/posts?sort=top").json()["posts"][0]["id"] == quiet["id"]
    assert client.get("/api/posts?sort=discussed").json()["posts"][0]["id"] == loud["id"]
    assert [p["id"] for p in client.get("/api/posts?hashtag=%23Harvest").json()["posts"]] == [loud["id"]]
    assert [p["id"] for p in client.get("/api/posts?search=quiet").json()["posts"]] == [quiet["id"]]


def test_update_and_delete_permissions(client, alice, bob):
    group = setup_group(client, alice, bob)
    _, alice_headers = alice
    _, bob_headers = bob
    post = make_post(client, bob_headers, group["id"])

    res = client.put(f"/api/posts/{post['id']}", json={"content": "Updated content with #newtag"}, headers=bob_headers)
    assert res.json()["hashtags"] == ["newtag"]

    # alice moderates the group
    assert client.put(f"/api/posts/{post['id']}", json={"title": "Moderated"}, headers=alice_headers).status_code == 200

    stranger_post = make_post(client, alice_headers, group["id"])
    assert client.delete(f"/api/posts/{stranger_post['id']}", headers=bob_headers).status_code == 403


def test_delete_post_cleans_references(client, alice, bob):
    group = setup_group(client, alice, bob)
    _, alice_headers = alice
    bob_user, bob_headers = bob
    post = make_post(client, alice_headers, group["id"])
    client.post(f"/api/users/me/saved-posts/{post['id']}", headers=bob_headers)
    collection = client.post("/api/collections", json={"name": "Favorites"}, headers=bob_headers).json()
    client.put(f"/api/collections/posts/{post['id']}", json={"collection_ids": [collection["id"]]}, headers=bob_headers)
    client.post(f"/api/posts/{post['id']}/comments", json={"content": "First!"}, headers=bob_headers)

    assert client.delete(f"/api/posts/{post['id']}", headers=alice_headers).status_code == 200
    assert client.get(f"/api/posts/{post['id']}").status_code == 404
    assert db["comment"].count_documents({}) == 0
    assert db["user"].find_one({"_id": ObjectId(bob_user["id"])})["saved_posts"] == []
    assert db["collection"].find_one({"_id": ObjectId(collection["id"])})["posts"] == []


def test_report_once(client, alice, bob):
    group = setup_group(client, alice, bob)
    _, alice_headers = alice
    _, bob_headers = bob
    post = make_post(client, alice_headers, group["id"])
    assert client.post(f"/api/posts/{post['id']}/report", json={"reason": "spam"}, headers=bob_headers).status_code == 200
    assert client.post(f"/api/posts/{post['id']}/report", json={"reason": "spam"}, headers=bob_headers).status_code == 400
    assert "reports" not in client.get(f"/api/posts/{post['id']}").json()


def test_reported_posts_admin_only(client, alice, bob, admin):
    group = setup_group(client, alice, bob)
    _, alice_headers = alice
    _, bob_headers = bob
    _, admin_headers = admin
    post = make_post(client, alice_headers, group["id"])
    client.post(f"/api/posts/{post['id']}/report", json={"reason": "spam"}, headers=bob_headers)
    assert client.get("/api/posts/reported", headers=bob_headers).status_code == 403
    reported = client.get("/api/posts/reported", headers=admin_headers).json()
    assert reported[0]["reports"][0]["reason"] == "spam"


def test_recipe_reviews(client, alice, bob):
    group = setup_group(client, alice, bob)
    _, alice_headers = alice
    _, bob_headers = bob
    recipe = make_post(
        client,
        alice_headers,
        group["id"],
        title="Tomato soup",
        is_recipe=True,
        recipe_details={"ingredients": ["tomato", "basil"], "instructions": ["simmer"]},
    )
    plain = make_post(client, alice_headers, group["id"])

    res = client.post(f"/api/posts/{recipe['id']}/recipe-reviews", json={"rating": 4, "comment": "Tasty"}, headers=bob_headers)
    assert res.status_code == 201
    assert res.json() == {"recipe_rating": 4, "num_recipe_reviews": 1}
    assert client.post(f"/api/posts/{recipe['id']}/recipe-reviews", json={"rating": 5}, headers=bob_headers).status_code == 400
    assert client.post(f"/api/posts/{recipe['id']}/recipe-reviews", json={"rating": 5}, headers=alice_headers).status_code == 400
    assert client.post(f"/api/posts/{plain['id']}/recipe-reviews", json={"rating": 5}, headers=bob_headers).status_code == 400


def test_unknown_post_and_bad_id(client):
    assert client.get(f"/api/posts/{ObjectId()}").status_code == 404
    assert client.get("/api/posts/not-an-id").status_code == 400
