import os

from bson.objectid import ObjectId

from config import UPLOAD_DIR
from conftest import register
from database import db


def send(client, headers, recipient_id, content, **extra):
    return client.post("/api/messages", json={"recipient_id": recipient_id, "content": content, **extra}, headers=headers)


def test_conversation_unread_and_read(client, alice, bob):
    alice_user, alice_headers = alice
    bob_user, bob_headers = bob
    assert send(client, alice_headers, bob_user["id"], "Hi Bob, want some zucchini?").status_code == 201
    send(client, alice_headers, bob_user["id"], "I have way too many")

    assert client.get("/api/messages/unread-count", headers=bob_headers).json() == {"unreadCount": 2}
    conversations = client.get("/api/messages/conversations", headers=bob_headers).json()
    assert len(conversations) == 1
    conv = conversations[0]
    assert conv["participant"]["username"] == "alice"
    assert conv["unreadCount"] == 2
    assert conv["lastMessage"]["content"] == "I have way too many"

    thread = client.get(f"/api/messages/conversations/{conv['id']}", headers=bob_headers).json()
    assert [m["content"] for m in thread["messages"]] == ["Hi Bob, want some zucchini?", "I have way too many"]
    assert thread["messages"][0]["sender"]["username"] == "alice"
    assert client.get("/api/messages/unread-count", headers=bob_headers).json() == {"unreadCount": 0}
    # the sender's own messages never count as unread
    assert client.get("/api/messages/unread-count", headers=alice_headers).json() == {"unreadCount": 0}


def test_reply_reuses_conversation(client, alice, bob):
    alice_user, alice_headers = alice
    bob_user, bob_headers = bob
    first = send(client, alice_headers, bob_user["id"], "Hello").json()
    reply = send(client, bob_headers, alice_user["id"], "Hey!", referenced_message_id=first["id"]).json()
    assert reply["conversation_id"] == first["conversation_id"]
    assert reply["referenced_message_id"] == first["id"]
    assert db["conversation"].count_documents({}) == 1


def test_referenced_message_must_be_in_conversation(client, alice, bob):
    _, alice_headers = alice
    bob_user, bob_headers = bob
    carol = client.post("/api/auth/register", json={"username": "carol", "email": "carol@example.com", "password": "secret123"}).json()
    client.cookies.clear()
    other = send(client, bob_headers, carol["user"]["id"], "Private to carol").json()
    res = send(client, alice_headers, bob_user["id"], "Quoting", referenced_message_id=other["id"])
    assert res.status_code == 400


def test_message_validation(client, alice, bob):
    alice_user, alice_headers = alice
    bob_user, _ = bob
    assert send(client, alice_headers, alice_user["id"], "Talking to myself").status_code == 400
    assert send(client, alice_headers, bob_user["id"], "   ").status_code == 400
    assert send(client, alice_headers, str(ObjectId()), "Anyone there?").status_code == 404


def test_blocking_stops_messages_both_ways(client, alice, bob):
    alice_user, alice_headers = alice
    bob_user, bob_headers = bob
    send(client, alice_headers, bob_user["id"], "Hello")

    assert client.post(f"/api/users/{bob_user['id']}/block", headers=alice_headers).json() == {"blocked": True}
    assert send(client, alice_headers, bob_user["id"], "Hello again").status_code == 403
    assert send(client, bob_headers, alice_user["id"], "Why?").status_code == 403
    assert client.get("/api/messages/conversations", headers=alice_headers).json() == []
    assert client.get("/api/messages/conversations", headers=bob_headers).json() == []

    client.post(f"/api/users/{bob_user['id']}/block", headers=alice_headers)
    assert send(client, bob_headers, alice_user["id"], "Friends again?").status_code == 201


def test_conversation_is_private(client, alice, bob):
    _, alice_headers = alice
    bob_user, _ = bob
    msg = send(client, alice_headers, bob_user["id"], "Hello").json()
    carol = client.post("/api/auth/register", json={"username": "carol", "email": "carol@example.com", "password": "secret123"}).json()
    client.cookies.clear()
    carol_headers = {"Authorization": f"Bearer {carol['token']}"}
    res = client.get(f"/api/messages/conversations/{msg['conversation_id']}", headers=carol_headers)
    assert res.status_code == 404


def test_attachment_message(client, alice, bob):
    _, alice_headers = alice
    bob_user, _ = bob
    res = client.post(
        "/api/messages/attachments",
        data={"recipient_id": bob_user["id"], "content": "Photo of the harvest"},
        files={"files": ("harvest.png", b"\x89PNG\r\n\x1a\nfake", "image/png")},
        headers=alice_headers,
    )
    assert res.status_code == 201, res.text
    attachment = res.json()["attachments"][0]
    assert attachment["type"] == "image"
    assert attachment["filename"] == "harvest.png"
    assert attachment["url"].startswith("/uploads/messages/")


def test_unread_count_skips_blocked_conversations(client, alice, bob):
    alice_user, alice_headers = alice
    bob_user, bob_headers = bob
    send(client, alice_headers, bob_user["id"], "Hello")
    send(client, alice_headers, bob_user["id"], "Still there?")
    assert client.get("/api/messages/unread-count", headers=bob_headers).json() == {"unreadCount": 2}

    client.post(f"/api/users/{alice_user['id']}/block", headers=bob_headers)
    assert client.get("/api/messages/unread-count", headers=bob_headers).json() == {"unreadCount": 0}
    client.post(f"/api/users/{alice_user['id']}/block", headers=bob_headers)

    client.post(f"/api/users/{bob_user['id']}/block", headers=alice_headers)
    assert client.get("/api/messages/unread-count", headers=bob_headers).json() == {"unreadCount": 0}


def test_rejected_attachment_message_leaves_no_files(client, alice, bob):
    alice_user, alice_headers = alice
    bob_user, bob_headers = bob
    folder = os.path.join(UPLOAD_DIR, "messages")
    before = set(os.listdir(folder)) if os.path.isdir(folder) else set()
    photo = ("harvest.png", b"\x89PNG\r\n\x1a\nfake", "image/png")

    client.post(f"/api/users/{alice_user['id']}/block", headers=bob_headers)
    res = client.post("/api/messages/attachments", data={"recipient_id": bob_user["id"]}, files={"files": photo}, headers=alice_headers)
    assert res.status_code == 403

    res = client.post(
        "/api/messages/attachments",
        data={"recipient_id": str(ObjectId())},
        files={"files": photo},
        headers=alice_headers,
    )
    assert res.status_code == 404

    carol = register(client, "carol")[0]
    res = client.post(
        "/api/messages/attachments",
        data={"recipient_id": carol["id"]},
        files=[("files", photo), ("files", ("notes.exe", b"MZ", "application/octet-stream"))],
        headers=alice_headers,
    )
    assert res.status_code == 400

    res = client.post(
        "/api/messages/attachments",
        data={"recipient_id": carol["id"], "referenced_message_id": str(ObjectId())},
        files={"files": photo},
        headers=alice_headers,
    )
    assert res.status_code == 400

    after = set(os.listdir(folder)) if os.path.isdir(folder) else set()
    assert after == before
