import csv
import io
from datetime import timedelta

from bson.objectid import ObjectId

import mailer
from conftest import make_group, make_post, make_product, register
from database import db, utcnow
from routers.admin import EXPORT_COLUMNS, signups_last_week

TICKET = {"name": "Alice", "email": "alice@example.com", "subject": "Order Issue", "message": "My tomatoes arrived squashed"}


# ----------------------- Support -----------------------
def test_support_ticket_flow(client, alice, bob, admin):
    _, alice_headers = alice
    _, bob_headers = bob
    _, admin_headers = admin
    res = client.post("/api/support", json=TICKET, headers=alice_headers)
    assert res.status_code == 201
    ticket_id = res.json()["id"]

    assert [t["id"] for t in client.get("/api/support/my-tickets", headers=alice_headers).json()] == [ticket_id]
    assert client.get(f"/api/support/{ticket_id}", headers=bob_headers).status_code == 403
    assert client.get("/api/support", headers=alice_headers).status_code == 403

    listing = client.get("/api/support?status=Open", headers=admin_headers).json()
    assert listing["total"] == 1

    ticket = client.post(f"/api/support/{ticket_id}/admin-reply", json={"content": "Sorry! Refund on the way."}, headers=admin_headers).json()
    assert ticket["status"] == "In Progress"
    assert ticket["replies"][0]["is_admin"] is True

    ticket = client.post(f"/api/support/{ticket_id}/reply", json={"content": "Thanks!"}, headers=alice_headers).json()
    assert len(ticket["replies"]) == 2
    assert client.post(f"/api/support/{ticket_id}/reply", json={"content": "Me too"}, headers=bob_headers).status_code == 403

    client.put(f"/api/support/{ticket_id}/status", json={"status": "Closed"}, headers=admin_headers)
    assert client.post(f"/api/support/{ticket_id}/reply", json={"content": "One more"}, headers=alice_headers).status_code == 400


def test_guest_can_open_ticket(client):
    res = client.post("/api/support", json={**TICKET, "subject": "General Inquiry"})
    assert res.status_code == 201
    assert db["supportmessage"].find_one({"_id": ObjectId(res.json()["id"])})["user_id"] is None


def test_ticket_subject_is_validated(client):
    assert client.post("/api/support", json={**TICKET, "subject": "Complaint"}).status_code == 422


def test_support_reply_email_escapes_user_text(client, admin, monkeypatch):
    _, admin_headers = admin
    sent = []
    monkeypatch.setattr(mailer, "send_email", lambda to, subject, html: sent.append(html) or True)
    ticket_id = client.post("/api/support", json={**TICKET, "name": "<b>Alice</b>"}).json()["id"]

    reply = "Try <script>alert(1)</script> & see #compost tips"
    client.post(f"/api/support/{ticket_id}/admin-reply", json={"content": reply}, headers=admin_headers)
    html = sent[-1]
    assert "Hi &lt;b&gt;Alice&lt;/b&gt;," in html
    assert "<script>" not in html
    assert "&lt;script&gt;alert(1)&lt;/script&gt; &amp; see" in html
    assert 'class="hashtag">#compost</a>' in html


# ----------------------- Admin -----------------------
def test_admin_stats(client, alice, admin):
    _, alice_headers = alice
    _, admin_headers = admin
    make_product()
    db["order"].insert_one({"user_id": "x", "order_items": [], "total_price": 120.5, "is_paid": True})
    db["order"].insert_one({"user_id": "x", "order_items": [], "total_price": 99, "is_paid": False})
    client.post("/api/support", json=TICKET)

    assert client.get("/api/admin/stats", headers=alice_headers).status_code == 403
    stats = client.get("/api/admin/stats", headers=admin_headers).json()
    assert stats["users"] == 2
    assert stats["products"] == 1
    assert stats["orders"] == 2
    assert stats["openTickets"] == 1
    assert stats["revenue"] == 120.5
    assert len(stats["signups"]) == 7
    assert stats["signups"][-1]["count"] == 2


def test_signups_ignore_older_users(client):
    db["user"].insert_one({"username": "old", "email": "old@example.com", "created_at": utcnow() - timedelta(days=30)})
    assert sum(day["count"] for day in signups_last_week()) == 0


def test_user_export_csv(client, alice, admin):
    _, admin_headers = admin
    res = client.get("/api/admin/users/export", headers=admin_headers)
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    rows = list(csv.reader(io.StringIO(res.text)))
    assert rows[0] == EXPORT_COLUMNS
    assert sorted(r[1] for r in rows[1:]) == ["admin_user", "alice"]


def test_auto_join_config(client, alice, admin):
    _, alice_headers = alice
    _, admin_headers = admin
    assert client.get("/api/admin/auto-join-groups", headers=admin_headers).json() == {"group_ids": [], "groups": [], "is_active": False}

    res = client.put("/api/admin/auto-join-groups", json={"group_ids": [str(ObjectId())]}, headers=admin_headers)
    assert res.status_code == 400

    group = make_group(client, alice_headers)
    client.put("/api/admin/auto-join-groups", json={"group_ids": [group["id"]]}, headers=admin_headers)
    config = client.get("/api/admin/auto-join-groups", headers=admin_headers).json()
    assert config["groups"] == [{"id": group["id"], "name": "Urban Gardeners", "slug": "urban-gardeners"}]
    assert db["autojoinconfig"].count_documents({"is_active": True}) == 1


# ----------------------- Notifications -----------------------
def test_notification_read_and_delete(client, alice, bob):
    _, alice_headers = alice
    bob_user, bob_headers = bob
    client.post(f"/api/users/{bob_user['id']}/follow", headers=alice_headers)
    notes = client.get("/api/notifications", headers=bob_headers).json()
    assert notes["unreadCount"] == 1
    note_id = notes["notifications"][0]["id"]

    assert client.put(f"/api/notifications/{note_id}/read", headers=alice_headers).status_code == 403
    client.put(f"/api/notifications/{note_id}/read", headers=bob_headers)
    assert client.get("/api/notifications", headers=bob_headers).json()["unreadCount"] == 0
    assert client.delete(f"/api/notifications/{note_id}", headers=bob_headers).status_code == 200
    assert client.get("/api/notifications", headers=bob_headers).json()["notifications"] == []


def test_mark_all_read(client, alice, bob):
    alice_user, alice_headers = alice
    bob_user, bob_headers = bob
    client.post(f"/api/users/{bob_user['id']}/follow", headers=alice_headers)
    carol, carol_headers = register(client, "carol")
    client.post(f"/api/users/{bob_user['id']}/follow", headers=carol_headers)
    assert client.put("/api/notifications/mark-all-read", headers=bob_headers).json() == {"updated": 2}


# ----------------------- Collections -----------------------
def test_collection_privacy(client, alice, bob):
    alice_user, alice_headers = alice
    _, bob_headers = bob
    group = make_group(client, alice_headers)
    post = make_post(client, alice_headers, group["id"])
    public = client.post("/api/collections", json={"name": "Summer recipes"}, headers=alice_headers).json()
    secret = client.post("/api/collections", json={"name": "Drafts", "is_public": False}, headers=alice_headers).json()
    client.put(f"/api/collections/posts/{post['id']}", json={"collection_ids": [public["id"], secret["id"]]}, headers=alice_headers)

    shown = client.get(f"/api/collections/{public['id']}", headers=bob_headers).json()
    assert [p["id"] for p in shown["posts"]] == [post["id"]]
    assert client.get(f"/api/collections/{secret['id']}", headers=bob_headers).status_code == 403
    assert client.get(f"/api/collections/{secret['id']}", headers=alice_headers).status_code == 200
    assert [c["name"] for c in client.get(f"/api/collections/user/{alice_user['id']}").json()] == ["Summer recipes"]

    assert client.put(f"/api/collections/{public['id']}", json={"name": "Mine now"}, headers=bob_headers).status_code == 403
    client.put(f"/api/collections/posts/{post['id']}", json={"collection_ids": []}, headers=alice_headers)
    assert db["collection"].count_documents({"posts": post["id"]}) == 0


# ----------------------- Search -----------------------
def test_global_search(client, alice, bob):
    _, alice_headers = alice
    bob_user, bob_headers = bob
    group = make_group(client, alice_headers)
    make_post(client, alice_headers, group["id"], title="Basil pesto", content="Blend basil with pine nuts #pesto")
    make_product(name="Fresh Basil", category="Vegetables")
    register(client, "basil_lover")

    res = client.get("/api/search?q=basil", headers=bob_headers).json()
    assert [p["title"] for p in res["posts"]] == ["Basil pesto"]
    assert [p["name"] for p in res["products"]] == ["Fresh Basil"]
    assert [u["username"] for u in res["users"]] == ["basil_lover"]

    assert client.get("/api/search?q=b").status_code == 422


def test_user_search_hides_blocked(client, alice, bob):
    alice_user, alice_headers = alice
    bob_user, bob_headers = bob
    client.post(f"/api/users/{alice_user['id']}/block", headers=bob_headers)
    assert client.get("/api/search/users?q=bob", headers=alice_headers).json()["users"] == []
    assert client.get("/api/search/users?q=alice", headers=bob_headers).json()["users"] == []
    assert client.get("/api/search/users?q=alice").json()["total"] == 1


def test_trending_hashtags(client, alice):
    _, headers = alice
    group = make_group(client, headers)
    make_post(client, headers, group["id"], content="Watering schedule for #tomatoes and #basil")
    make_post(client, headers, group["id"], content="Pruning #tomatoes in July")
    old = make_post(client, headers, group["id"], content="Last year's #basil")
    db["post"].update_one({"_id": ObjectId(old["id"])}, {"$set": {"created_at": utcnow() - timedelta(days=10)}})

    trending = client.get("/api/search/trending-hashtags").json()
    assert trending == [{"hashtag": "tomatoes", "count": 2}, {"hashtag": "basil", "count": 1}]
