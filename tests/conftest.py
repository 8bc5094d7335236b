import os
import tempfile

import mongomock
import pytest

os.environ.setdefault("DATABASE_URL", "mongodb://localhost:27017")
os.environ.setdefault("DATABASE_NAME", "cookncrop_test")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="cookncrop-uploads-")
os.environ.pop("SMTP_HOST", None)
os.environ.pop("GEMINI_API_KEY", None)

# the app opens its MongoClient at import time
_mongo_patch = mongomock.patch(servers=(("localhost", 27017),), on_new="create")
_mongo_patch.start()

from bson.objectid import ObjectId  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from database import db, ensure_indexes  # noqa: E402
from main import app  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    for name in db.list_collection_names():
        db.drop_collection(name)
    ensure_indexes()
    yield


@pytest.fixture
def client():
    return TestClient(app)


def register(client, username, email=None, password="secret123"):
    res = client.post(
        "/api/auth/register",
        json={"username": username, "email": email or f"{username}@example.com", "password": password},
    )
    assert res.status_code == 201, res.text
    # keep requests explicit about who is calling
    client.cookies.clear()
    body = res.json()
    return body["user"], {"Authorization": f"Bearer {body['token']}"}


@pytest.fixture
def alice(client):
    return register(client, "alice")


@pytest.fixture
def bob(client):
    return register(client, "bob")


@pytest.fixture
def admin(client):
    user, headers = register(client, "admin_user")
    db["user"].update_one({"_id": ObjectId(user["id"])}, {"$set": {"role": "admin"}})
    return user, headers


def make_product(**overrides):
    product = {
        "name": "Heirloom Tomatoes",
        "description": "Colorful heirloom tomatoes.",
        "price": 100.0,
        "unit": "kg",
        "category": "Vegetables",
        "count_in_stock": 20,
        "reviews": [],
        "rating": 0,
        "num_reviews": 0,
        "total_sales": 0,
    }
    product.update(overrides)
    return str(db["product"].insert_one(product).inserted_id)


def make_group(client, headers, name="Urban Gardeners", **extra):
    res = client.post("/api/groups", json={"name": name, "description": "Growing food in small spaces", **extra}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def make_post(client, headers, group_id, title="Tomato tips", content="Stake them early and water at the roots #garden", **extra):
    res = client.post(
        "/api/posts",
        json={"title": title, "content": content, "group_id": group_id, **extra},
        headers=headers,
    )
    assert res.status_code == 201, res.text
    return res.json()
