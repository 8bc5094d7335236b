import pytest

from ai_service import AIServiceError
from conftest import make_group, make_post, make_product
from database import db
from routers import chatbot


@pytest.fixture
def intent(monkeypatch):
    """Make the model pick `tool` with `params`; free-form replies echo a marker."""
    prompts = []

    def choose(tool, **params):
        monkeypatch.setattr(chatbot, "get_json_response", lambda prompt: {"tool": tool, "parameters": params})

    def fake_reply(prompt):
        prompts.append(prompt)
        return "rephrased"

    monkeypatch.setattr(chatbot, "get_chatbot_response", fake_reply)
    choose.prompts = prompts
    return choose


def ask(client, query, headers=None):
    res = client.post("/api/chatbot/query", json={"query": query}, headers=headers or {})
    assert res.status_code == 200, res.text
    return res.json()


def test_check_stock_levels(client, intent):
    make_product(name="Organic Bananas", count_in_stock=50)
    make_product(name="Raw Honey", count_in_stock=3)
    make_product(name="Apple Juice", count_in_stock=0)

    intent("check_stock", productName="bananas")
    assert ask(client, "do you have bananas?")["reply"] == "Yes, we have plenty of Organic Bananas in stock!"
    intent("check_stock", productName="honey")
    assert "Only 3 left" in ask(client, "honey?")["reply"]
    intent("check_stock", productName="apple juice")
    assert ask(client, "juice?")["reply"] == "Sorry, Apple Juice is currently out of stock."
    intent("check_stock", productName="durian")
    assert "couldn't find" in ask(client, "durian?")["reply"]


def test_cart_tools_require_login(client, intent):
    intent("add_to_cart", productName="bananas", quantity=2)
    body = ask(client, "add bananas")
    assert body["cartUpdated"] is False
    assert body["reply"] == "rephrased"
    assert "You need to log in to manage your cart." in intent.prompts[-1]


def test_add_to_cart(client, alice, intent):
    user, headers = alice
    pid = make_product(name="Organic Bananas", count_in_stock=5)
    intent("add_to_cart", productName="banana", quantity="2")
    body = ask(client, "add two bananas", headers)
    assert body["cartUpdated"] is True
    assert f"[Organic Bananas](/product/{pid})" in intent.prompts[-1]
    cart = db["cart"].find_one({"user_id": user["id"]})
    assert cart["items"] == [{"product_id": pid, "quantity": 2}]

    intent("add_to_cart", productName="banana", quantity=10)
    assert ask(client, "add ten more", headers)["cartUpdated"] is False
    assert "only have 5" in intent.prompts[-1]


def test_view_and_clear_cart(client, alice, intent):
    _, headers = alice
    pid = make_product(name="Raw Honey", price=9.5)
    client.post("/api/cart", json={"product_id": pid, "quantity": 2}, headers=headers)

    intent("view_cart")
    reply = ask(client, "what's in my cart", headers)["reply"]
    assert "2x Raw Honey at $9.50 each." in reply
    assert "Subtotal: $19.00" in reply

    intent("clear_cart")
    assert ask(client, "empty it", headers)["cartUpdated"] is True
    intent("view_cart")
    assert ask(client, "and now?", headers)["reply"] == "Your cart is currently empty."


def test_order_status_and_stats(client, alice, intent):
    user, headers = alice
    intent("get_order_status")
    assert ask(client, "where is my order", headers)["reply"] == "It looks like you haven't placed any orders yet."

    intent("get_user_stats")
    assert "placed 0 orders" in ask(client, "my stats", headers)["reply"]
    assert ask(client, "my stats")["reply"] == "You need to log in to see your stats."


def test_set_default_address(client, alice, intent):
    _, headers = alice
    address = {"full_name": "Alice Grower", "street": "1 Farm Rd", "city": "Pune", "state": "MH", "zip_code": "411001", "country": "India"}
    client.post("/api/addresses", json={**address, "label": "Home"}, headers=headers)
    client.post("/api/addresses", json={**address, "label": "Work"}, headers=headers)

    intent("set_default_address", addressLabel="work")
    assert "set your \"Work\" address as the default" in ask(client, "use work", headers)["reply"]
    intent("view_addresses")
    assert "**Work**: 1 Farm Rd, Pune (Default)" in ask(client, "addresses", headers)["reply"]


def test_unknown_tool_falls_back_to_search(client, intent):
    make_product(name="Organic Bananas")
    intent("launch_rocket")
    assert ask(client, "bananas")["reply"] == "rephrased"
    assert "PRODUCTS FOUND" in intent.prompts[-1]


def test_ai_errors_become_replies(client, monkeypatch):
    def broken(prompt):
        raise AIServiceError("The AI service is temporarily overloaded. Please try again in a moment.")

    monkeypatch.setattr(chatbot, "get_json_response", broken)
    assert ask(client, "hello")["reply"].startswith("The AI service is temporarily overloaded")

    monkeypatch.setattr(chatbot, "get_json_response", lambda prompt: ["not", "an", "object"])
    assert ask(client, "hello")["reply"] == chatbot.CONFUSED_REPLY


def test_missing_api_key_is_reported(client):
    # no GEMINI_API_KEY in the test environment
    assert ask(client, "hello")["reply"] == "Failed to get a structured response from AI."


def test_private_group_posts_stay_out_of_replies(client, alice, bob, intent):
    _, alice_headers = alice
    _, bob_headers = bob
    group = make_group(client, alice_headers, name="Seed Savers", is_private=True)
    secret = make_post(client, alice_headers, group["id"], title="Secret heirloom stash", content="Heirloom beans from grandma")
    public = make_group(client, alice_headers)
    make_post(client, alice_headers, public["id"], title="Heirloom tomatoes", content="Heirloom varieties worth growing")

    intent("get_top_content", metric="new")
    ask(client, "what's new?", bob_headers)
    assert "Heirloom tomatoes" in intent.prompts[-1]
    assert "Secret heirloom stash" not in intent.prompts[-1]

    intent("search_general")
    ask(client, "heirloom", bob_headers)
    assert "Secret heirloom stash" not in intent.prompts[-1]

    intent("save_post", postTitle="Secret heirloom stash")
    ask(client, "save the secret stash", bob_headers)
    assert secret["id"] not in db["user"].find_one({"username": "bob"}).get("saved_posts", [])

    db["user"].update_one({"username": "bob"}, {"$set": {"saved_posts": [secret["id"]]}})
    intent("view_saved_posts")
    assert ask(client, "my saved posts", bob_headers)["reply"] == "You haven't saved any posts yet."

    intent("get_top_content", metric="new")
    ask(client, "what's new?", alice_headers)
    assert "Secret heirloom stash" in intent.prompts[-1]
