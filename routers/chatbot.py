"""
CropMate, the shop assistant.

A query goes through two steps: the model picks one of TOOLS and extracts
its parameters as JSON, then the matching handler runs against the database
and produces the reply. Some replies get a second pass through the model so
they read conversationally.
"""
import json
import re
from typing import Any, Dict, List, Optional

import structlog
from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ai_service import AIServiceError, get_chatbot_response, get_json_response
from database import as_aware, db, find_by_ids
from routers.cart import get_or_create_cart, save_items
from routers.community import post_visibility_filter, readable_posts
from routers.deps import regex
from security import get_optional_user

logger = structlog.get_logger()

router = APIRouter(prefix="/api/chatbot", tags=["chatbot"])

TOOLS = {
    "search_general": "Search for products, recipes, or general information.",
    "add_to_cart": "Add one or more items to the shopping cart. Extracts item name and quantity.",
    "remove_from_cart": "Remove an item from the shopping cart. Extracts item name.",
    "view_cart": "Show the contents of the shopping cart.",
    "clear_cart": "Remove all items from the shopping cart.",
    "get_order_status": "Check the status of the most recent order.",
    "recommend_recipe": "Recommends recipes based on a list of ingredients the user has.",
    "add_to_wishlist": "Add a product to the user's wishlist. Extracts 'productName'.",
    "view_wishlist": "Shows the user's current wishlist.",
    "save_post": "Save a post or recipe to the user's saved list. Extracts 'postTitle'.",
    "view_saved_posts": "Shows the user's saved posts and recipes.",
    "get_top_content": "Find top-rated, most discussed, or newest posts/recipes. Extracts 'metric' ('top', 'discussed', 'new').",
    "get_top_products": "Finds the top-rated products in the store.",
    "chit_chat": "Responds to simple greetings or general conversation that doesn't fit other tools.",
    "check_stock": "Checks if a product is in stock. Extracts 'productName'.",
    "get_user_stats": "Retrieves the logged-in user's statistics like total orders and spending.",
    "view_addresses": "Shows the user's saved shipping addresses.",
    "set_default_address": "Sets one of the user's saved addresses as the default. Extracts 'addressLabel'.",
}

# the model's answer gets rephrased for these
REPHRASED_TOOLS = {"add_to_cart", "remove_from_cart", "clear_cart", "add_to_wishlist", "save_post"}

CONFUSED_REPLY = "I'm having a little trouble thinking straight right now. Could you try rephrasing?"

INTENT_PROMPT = """
Given the user's query and conversation history, determine the user's intent and extract parameters.
Choose one of the following tools: {tools}.
- For 'add_to_cart', extract 'productName' and 'quantity' (default to 1 if not specified).
- For 'remove_from_cart', extract 'productName'.
- For 'recommend_recipe', if the user mentions ingredients they have (e.g., "I have chicken and rice"), extract an array of strings called 'ingredients'.
- For 'add_to_wishlist', extract 'productName'.
- For 'save_post', extract 'postTitle'.
- For 'get_top_content', extract 'metric' which can be 'top', 'discussed', or 'new'.
- For 'chit_chat', if the query is a simple greeting like "hello" or "how are you", use this tool.
- For 'set_default_address', extract the 'addressLabel' (e.g., "Home", "Work").
- For all other tools, no parameters are needed.
- If the intent is unclear, default to 'search_general'.

History: {history}
User Query: "{query}"

Respond with a JSON object like: {{"tool": "tool_name", "parameters": {{"param_name": "param_value"}}}}
"""


class ChatQueryBody(BaseModel):
    query: str = Field(..., min_length=1, max_length=1000)
    history: List[Dict[str, Any]] = []


class Action(dict):
    """Outcome of a tool: `message` plus optional `products`/`posts`/`product`."""

    @property
    def ok(self) -> bool:
        return self.get("success", False)


def done(message: str, success: bool = True, **extra) -> Action:
    return Action(success=success, message=message, **extra)


def login_required(what: str) -> Action:
    return done(f"You need to log in to {what}.", success=False)


# ----------------------- Lookups -----------------------
def _name_candidates(name: str) -> List[str]:
    name = name.strip()
    words = [w for w in re.split(r"\s+", name) if len(w) > 2]
    singular = [re.sub(r"(es|s)$", "", w) for w in words]
    return [name] + [w for w in singular + words if w]


def find_product(name: Optional[str]) -> Optional[dict]:
    if not name:
        return None
    for candidate in _name_candidates(name):
        product = db["product"].find_one({"name": regex(candidate)})
        if product:
            return product
    return None


def find_post(title: Optional[str], user: Optional[dict] = None) -> Optional[dict]:
    if not title:
        return None
    visible = post_visibility_filter(user)
    for candidate in _name_candidates(title):
        post = db["post"].find_one({"title": regex(candidate), **visible})
        if post:
            return post
    return None


def _quantity(params: dict) -> int:
    try:
        return max(int(params.get("quantity") or 1), 1)
    except (TypeError, ValueError):
        return 1


# ----------------------- Tools -----------------------
def chit_chat(query, params, user):
    prompt = (
        "You are CropMate, a friendly and helpful AI assistant for a farm-to-table website called Cook-N-Crop. "
        "The user is making small talk or asking a general question. Engage in a brief, friendly, and on-brand "
        "conversational response. If they ask who you are, introduce yourself.\n"
        f'User\'s query: "{query}"\nYour response:'
    )
    return done(get_chatbot_response(prompt))


def check_stock(query, params, user):
    name = params.get("productName")
    product = find_product(name)
    if not product:
        return done(f'I couldn\'t find a product called "{name}" to check its stock.', success=False)
    stock = product.get("count_in_stock", 0)
    if stock > 10:
        return done(f"Yes, we have plenty of {product['name']} in stock!")
    if stock > 0:
        return done(f"Yes, but we're running low on {product['name']}! Only {stock} left in stock.")
    return done(f"Sorry, {product['name']} is currently out of stock.")


def get_user_stats(query, params, user):
    if not user:
        return login_required("see your stats")
    activity = user.get("activity") or {}
    return done(
        f"So far, you've placed {activity.get('total_orders', 0)} orders with us, spending a total of "
        f"${activity.get('total_spent', 0):.2f}. We appreciate your business!"
    )


def add_to_cart(query, params, user):
    if not user:
        return login_required("manage your cart")
    name = params.get("productName")
    quantity = _quantity(params)
    product = find_product(name)
    if not product:
        return done(f'I couldn\'t find a product called "{name}".', success=False)
    cart = get_or_create_cart(user["id"])
    items = cart.get("items", [])
    pid = str(product["_id"])
    existing = next((i for i in items if i["product_id"] == pid), None)
    wanted = quantity + (existing["quantity"] if existing else 0)
    if wanted > product.get("count_in_stock", 0):
        return done(f"Sorry, we only have {product.get('count_in_stock', 0)} of {product['name']} in stock.", success=False)
    if existing:
        existing["quantity"] = wanted
    else:
        items.append({"product_id": pid, "quantity": quantity})
    save_items(cart, items)
    return done(f"Added {quantity}x {product['name']} to your cart.", product=product, cart_updated=True)


def remove_from_cart(query, params, user):
    if not user:
        return login_required("manage your cart")
    name = params.get("productName")
    product = find_product(name)
    if not product:
        return done(f'I couldn\'t find "{name}" to remove.', success=False)
    cart = get_or_create_cart(user["id"])
    pid = str(product["_id"])
    items = [i for i in cart.get("items", []) if i["product_id"] != pid]
    if len(items) == len(cart.get("items", [])):
        return done(f"It looks like {product['name']} wasn't in your cart.", success=False)
    save_items(cart, items)
    return done(f"Removed {product['name']} from your cart.", cart_updated=True)


def clear_cart(query, params, user):
    if not user:
        return login_required("manage your cart")
    cart = db["cart"].find_one({"user_id": user["id"]})
    if not cart or not cart.get("items"):
        return done("Your cart is already empty.", success=False)
    save_items(cart, [])
    return done("I've cleared your cart.", cart_updated=True)


def view_cart(query, params, user):
    if not user:
        return login_required("view your cart")
    cart = db["cart"].find_one({"user_id": user["id"]})
    items = (cart or {}).get("items", [])
    products = {str(p["_id"]): p for p in find_by_ids("product", [i["product_id"] for i in items])}
    lines, subtotal = [], 0
    for item in items:
        product = products.get(item["product_id"])
        if not product:
            continue
        lines.append(f"- {item['quantity']}x {product['name']} at ${product['price']:.2f} each.")
        subtotal += item["quantity"] * product["price"]
    if not lines:
        return done("Your cart is currently empty.")
    summary = "Here's what's in your cart:\n" + "\n".join(lines)
    return done(f"{summary}\n\nSubtotal: ${subtotal:.2f}. You can go to your cart to checkout.")


def get_order_status(query, params, user):
    if not user:
        return login_required("check your order status")
    order = db["order"].find_one({"user_id": user["id"]}, sort=[("created_at", -1)])
    if not order:
        return done("It looks like you haven't placed any orders yet.", success=False)
    placed = as_aware(order["created_at"]).strftime("%a %b %d %Y")
    return done(
        f"Your latest order, Order #{str(order['_id'])[-6:]}, was placed on {placed} "
        f"and its status is currently: **{order['status']}**."
    )


def recommend_recipe(query, params, user):
    ingredients = [i for i in (params.get("ingredients") or []) if isinstance(i, str) and i.strip()]
    if not ingredients:
        return done("Please tell me what ingredients you have so I can recommend a recipe!", success=False)
    filt = {"is_recipe": True, "$and": [{"recipe_details.ingredients": regex(i)} for i in ingredients]}
    filt.update(post_visibility_filter(user))
    recipes = list(db["post"].find(filt).limit(3))
    if not recipes:
        return done(
            f"I couldn't find any recipes with all of these ingredients: {', '.join(ingredients)}. "
            "Why not try searching for one of them individually?",
            success=False,
        )
    prompt = (
        "You are CropMate. A user asked for recipe recommendations based on ingredients. Based on the following "
        "context, give a friendly response and list the recipes you found. Format recipe names as Markdown links "
        "like [Recipe Title](/post/id).\n\nRECIPES FOUND:\n"
    )
    prompt += "".join(f"- Recipe: {r['title']}, Link: /post/{r['_id']}\n" for r in recipes)
    prompt += f"\nUser's ingredients: {', '.join(ingredients)}\n\nYour response:"
    return done(get_chatbot_response(prompt))


def view_wishlist(query, params, user):
    if not user:
        return login_required("view your wishlist")
    products = find_by_ids("product", user.get("wishlist", []))
    if not products:
        return done("Your wishlist is empty. You can add products to it from their page!")
    return done("Here's what's in your wishlist:", products=products)


def add_to_wishlist(query, params, user):
    if not user:
        return login_required("have a wishlist")
    name = params.get("productName")
    product = find_product(name)
    if not product:
        return done(f'I couldn\'t find a product called "{name}".', success=False)
    pid = str(product["_id"])
    if pid in user.get("wishlist", []):
        return done(f"{product['name']} is already in your wishlist.")
    db["user"].update_one({"_id": ObjectId(user["id"])}, {"$addToSet": {"wishlist": pid}})
    return done(f"I've added {product['name']} to your wishlist.", product=product)


def view_saved_posts(query, params, user):
    if not user:
        return login_required("view your saved posts")
    posts = readable_posts(find_by_ids("post", user.get("saved_posts", [])), user)
    if not posts:
        return done("You haven't saved any posts yet.")
    return done("Here are your saved posts:", posts=posts)


def save_post(query, params, user):
    if not user:
        return login_required("save posts")
    title = params.get("postTitle")
    post = find_post(title, user)
    if not post:
        return done(f'I couldn\'t find a post titled "{title}".', success=False)
    pid = str(post["_id"])
    if pid in user.get("saved_posts", []):
        return done(f"You've already saved the post \"{post['title']}\".")
    db["user"].update_one({"_id": ObjectId(user["id"])}, {"$addToSet": {"saved_posts": pid}})
    return done(f"I've saved \"{post['title']}\" to your collection.")


def get_top_content(query, params, user):
    metric = params.get("metric") if params.get("metric") in ("top", "discussed", "new") else "new"
    posts = list(db["post"].find(post_visibility_filter(user)))
    created = lambda p: as_aware(p.get("created_at")).timestamp() if p.get("created_at") else 0
    if metric == "top":
        key = lambda p: (len(p.get("upvotes", [])), created(p))
    elif metric == "discussed":
        key = lambda p: (p.get("comment_count", 0), created(p))
    else:
        key = created
    posts.sort(key=key, reverse=True)
    return done("Here are some top posts.", posts=posts[:3], metric=metric)


def get_top_products(query, params, user):
    products = list(db["product"].find({"num_reviews": {"$gt": 0}}).sort("rating", -1).limit(3))
    if not products:
        return done("I couldn't find any top-rated products right now.", success=False)
    return done("Here are some of our top-rated products.", products=products)


def view_addresses(query, params, user):
    if not user:
        return login_required("view your addresses")
    addresses = list(db["address"].find({"user_id": user["id"]}))
    if not addresses:
        return done("You haven't saved any addresses yet. You can add one from your profile page.")
    lines = [
        f"- **{a.get('label') or 'Address'}**: {a['street']}, {a['city']}{' (Default)' if a.get('is_default') else ''}"
        for a in addresses
    ]
    return done("Here are your saved addresses:\n" + "\n".join(lines))


def set_default_address(query, params, user):
    if not user:
        return login_required("manage your addresses")
    label = params.get("addressLabel")
    if not label:
        return done(
            "Please tell me which address to set as default, for example: 'Set my Home address as default'.",
            success=False,
        )
    address = db["address"].find_one({"user_id": user["id"], "label": regex(label)})
    if not address:
        return done(f'I couldn\'t find an address with the label "{label}".', success=False)
    if address.get("is_default"):
        return done(f"Your \"{address['label']}\" address is already the default.")
    db["address"].update_many({"user_id": user["id"], "is_default": True}, {"$set": {"is_default": False}})
    db["address"].update_one({"_id": address["_id"]}, {"$set": {"is_default": True}})
    return done(f"Okay, I've set your \"{address['label']}\" address as the default for future orders.")


def search_general(query, params, user):
    products = list(db["product"].find({"$or": [{"name": regex(query)}, {"description": regex(query)}]}).limit(3))
    filt = {"$or": [{"title": regex(query)}, {"content": regex(query)}], **post_visibility_filter(user)}
    posts = list(db["post"].find(filt).limit(3))
    context = (
        "You are CropMate, Cook-N-Crop's AI. Answer the user's question based ONLY on the context. If the context "
        "is empty, say 'I'm not sure about that, but you can browse our products or recipes!'. Format "
        "product/recipe names as Markdown links like [Product Name](/product/id).\n\n"
    )
    if products:
        context += "PRODUCTS FOUND:\n"
        context += "".join(f"- Product: {p['name']}, Price: ${p['price']}, Link: /product/{p['_id']}\n" for p in products)
    if posts:
        context += "POSTS/RECIPES FOUND:\n"
        context += "".join(f"- Post: {p['title']}, Link: /post/{p['_id']}\n" for p in posts)
    return done(get_chatbot_response(f'{context}\nUser Query: "{query}"\n\nAnswer:'))


HANDLERS = {
    "search_general": search_general,
    "add_to_cart": add_to_cart,
    "remove_from_cart": remove_from_cart,
    "view_cart": view_cart,
    "clear_cart": clear_cart,
    "get_order_status": get_order_status,
    "recommend_recipe": recommend_recipe,
    "add_to_wishlist": add_to_wishlist,
    "view_wishlist": view_wishlist,
    "save_post": save_post,
    "view_saved_posts": view_saved_posts,
    "get_top_content": get_top_content,
    "get_top_products": get_top_products,
    "chit_chat": chit_chat,
    "check_stock": check_stock,
    "get_user_stats": get_user_stats,
    "view_addresses": view_addresses,
    "set_default_address": set_default_address,
}


# ----------------------- Reply shaping -----------------------
def list_reply(intro: str, heading: str, lines: List[str]) -> str:
    prompt = (
        f"You are CropMate. {intro} Based on the following context, give a friendly response and list the content "
        f"you found. Format names as Markdown links.\n\n{heading}:\n" + "".join(lines)
    )
    return get_chatbot_response(prompt)


def rephrase(query: str, tool: str, action: Action, user: Optional[dict]) -> str:
    prompt = (
        "You are CropMate, Cook-N-Crop's AI assistant. Based on the user's query and the action just performed, "
        "formulate a friendly, conversational response.\n"
        f"- The user is {user['username'] if user else 'a guest'}.\n"
        f'- User\'s query was: "{query}"\n'
        f'- The action you decided to take was: "{tool}"\n'
        f'- The result of the action was: "{action["message"]}"\n'
    )
    product = action.get("product")
    if product:
        prompt += (
            f"- The product involved was: {product['name']}\n"
            f"- When mentioning this product, you MUST format it as a Markdown link like this: "
            f"[{product['name']}](/product/{product['_id']})\n"
        )
    else:
        prompt += "- When mentioning a product or recipe, format it as a Markdown link like [Product Name](/product/id).\n"
    return get_chatbot_response(prompt + "Generate a response now.")


def compose_reply(query: str, tool: str, action: Action, user: Optional[dict]) -> str:
    if tool == "get_top_content" and action.ok and action.get("posts"):
        lines = [f"- Post: {p['title']}, Link: /post/{p['_id']}\n" for p in action["posts"]]
        return list_reply("A user asked for the top content.", f"TOP CONTENT FOUND (sorted by {action['metric']})", lines)
    if tool == "view_saved_posts" and action.ok and action.get("posts"):
        lines = [f"- Post: {p['title']}, Link: /post/{p['_id']}\n" for p in action["posts"]]
        return list_reply("A user asked for their saved posts.", "SAVED POSTS FOUND", lines)
    if tool in ("get_top_products", "view_wishlist") and action.ok and action.get("products"):
        lines = [f"- Product: {p['name']}, Link: /product/{p['_id']}\n" for p in action["products"]]
        return list_reply("A user asked to see content.", "PRODUCTS FOUND", lines)
    if tool in REPHRASED_TOOLS:
        return rephrase(query, tool, action, user)
    return action["message"]


# ----------------------- Route -----------------------
@router.post("/query")
def chatbot_query(body: ChatQueryBody, user=Depends(get_optional_user)):
    try:
        intent = get_json_response(
            INTENT_PROMPT.format(tools=", ".join(TOOLS), history=json.dumps(body.history), query=body.query)
        )
        if not isinstance(intent, dict):
            logger.warning(f"Chatbot intent was not an object: {intent!r}")
            return {"reply": CONFUSED_REPLY}
        tool = intent.get("tool") if intent.get("tool") in HANDLERS else "search_general"
        params = intent.get("parameters") if isinstance(intent.get("parameters"), dict) else {}
        logger.info(f"Chatbot tool {tool} with {params}")

        action = HANDLERS[tool](body.query, params, user)
        return {"reply": compose_reply(body.query, tool, action, user), "cartUpdated": bool(action.get("cart_updated"))}
    except AIServiceError as e:
        return {"reply": str(e)}
    except Exception as e:
        logger.error(f"Chatbot query error: {e}")
        raise HTTPException(status_code=500, detail="Server error processing chatbot query.")
