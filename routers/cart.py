from typing import List

from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from database import create_document, db, find_by_ids
from routers.deps import find_or_404
from schemas import Cart as CartSchema
from security import get_current_user

router = APIRouter(prefix="/api/cart", tags=["cart"])


class CartAddBody(BaseModel):
    product_id: str
    quantity: int = Field(1, gt=0)


class CartMultipleBody(BaseModel):
    items: List[CartAddBody]


class QuantityBody(BaseModel):
    quantity: int


def get_or_create_cart(user_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        create_document("cart", CartSchema(user_id=user_id))
        cart = db["cart"].find_one({"user_id": user_id})
    return cart


def save_items(cart: dict, items: list, saved_for_later=None):
    update = {"items": items}
    if saved_for_later is not None:
        update["saved_for_later"] = saved_for_later
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": update})


def stock_error(product: dict) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail=f"Not enough stock for {product['name']}. Only {product.get('count_in_stock', 0)} available.",
    )


def add_item(items: list, product: dict, quantity: int):
    """Add `quantity` of `product` to `items` in place, respecting stock."""
    pid = str(product["_id"])
    existing = next((i for i in items if i["product_id"] == pid), None)
    wanted = quantity + (existing["quantity"] if existing else 0)
    if wanted > product.get("count_in_stock", 0):
        raise stock_error(product)
    if existing:
        existing["quantity"] = wanted
    else:
        items.append({"product_id": pid, "quantity": quantity})


def _line(product: dict, quantity: int, adjusted: bool = False) -> dict:
    price = product.get("sale_price") or product["price"]
    return {
        "product": {
            "id": str(product["_id"]),
            "name": product["name"],
            "price": price,
            "unit": product.get("unit"),
            "image": (product.get("images") or [None])[0],
            "count_in_stock": product.get("count_in_stock", 0),
        },
        "quantity": quantity,
        "adjusted": adjusted,
    }


def cart_view(cart: dict) -> dict:
    """Reconcile the stored cart with live products and shape it for the client."""
    products = {str(p["_id"]): p for p in find_by_ids("product", [i["product_id"] for i in cart.get("items", [])])}
    kept, lines, changed = [], [], False
    for item in cart.get("items", []):
        product = products.get(item["product_id"])
        stock = product.get("count_in_stock", 0) if product else 0
        if not product or stock <= 0:
            changed = True
            continue
        quantity = min(item["quantity"], stock)
        adjusted = quantity != item["quantity"]
        changed = changed or adjusted
        kept.append({"product_id": item["product_id"], "quantity": quantity})
        lines.append(_line(product, quantity, adjusted))
    if changed:
        save_items(cart, kept)
    saved = {str(p["_id"]): p for p in find_by_ids("product", [i["product_id"] for i in cart.get("saved_for_later", [])])}
    return {
        "items": lines,
        "savedForLater": [_line(saved[i["product_id"]], i["quantity"]) for i in cart.get("saved_for_later", []) if i["product_id"] in saved],
        "subtotal": round(sum(line["product"]["price"] * line["quantity"] for line in lines), 2),
        "itemCount": sum(line["quantity"] for line in lines),
    }


def _reload(cart: dict) -> dict:
    return cart_view(db["cart"].find_one({"_id": cart["_id"]}))


@router.get("")
def get_cart(user=Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": user["id"]})
    if not cart:
        return {"items": [], "savedForLater": [], "subtotal": 0, "itemCount": 0}
    return cart_view(cart)


@router.post("")
def add_to_cart(body: CartAddBody, user=Depends(get_current_user)):
    product = find_or_404("product", body.product_id, "Product not found")
    cart = get_or_create_cart(user["id"])
    items = cart.get("items", [])
    add_item(items, product, body.quantity)
    save_items(cart, items)
    return _reload(cart)


@router.post("/add-multiple")
def add_multiple(body: CartMultipleBody, user=Depends(get_current_user)):
    cart = get_or_create_cart(user["id"])
    items = cart.get("items", [])
    # validate every line before touching the cart
    accepted, unavailable = [], []
    for line in body.items:
        product = db["product"].find_one({"_id": ObjectId(line.product_id)}) if ObjectId.is_valid(line.product_id) else None
        if not product:
            unavailable.append({"product_id": line.product_id, "reason": "Product not found"})
            continue
        in_cart = next((i["quantity"] for i in items if i["product_id"] == line.product_id), 0)
        if in_cart + line.quantity > product.get("count_in_stock", 0):
            unavailable.append(
                {
                    "product_id": line.product_id,
                    "name": product["name"],
                    "reason": f"Only {product.get('count_in_stock', 0)} available",
                }
            )
            continue
        accepted.append((product, line.quantity))
    for product, quantity in accepted:
        add_item(items, product, quantity)
    save_items(cart, items)
    return {"cart": _reload(cart), "unavailableItems": unavailable}


@router.put("/item/{product_id}")
def update_quantity(product_id: str, body: QuantityBody, user=Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": user["id"]})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    items = cart.get("items", [])
    item = next((i for i in items if i["product_id"] == product_id), None)
    if not item:
        raise HTTPException(status_code=404, detail="Item not in cart")
    if body.quantity <= 0:
        items.remove(item)
    else:
        product = find_or_404("product", product_id, "Product not found")
        if body.quantity > product.get("count_in_stock", 0):
            raise stock_error(product)
        item["quantity"] = body.quantity
    save_items(cart, items)
    return _reload(cart)


@router.delete("/item/{product_id}")
def remove_item(product_id: str, user=Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": user["id"]})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    save_items(cart, [i for i in cart.get("items", []) if i["product_id"] != product_id])
    return _reload(cart)


@router.delete("")
def clear_cart(user=Depends(get_current_user)):
    db["cart"].update_one({"user_id": user["id"]}, {"$set": {"items": []}})
    return {"items": [], "savedForLater": [], "subtotal": 0, "itemCount": 0}


@router.post("/save-for-later/{product_id}")
def save_for_later(product_id: str, user=Depends(get_current_user)):
    cart = get_or_create_cart(user["id"])
    item = next((i for i in cart.get("items", []) if i["product_id"] == product_id), None)
    if not item:
        raise HTTPException(status_code=404, detail="Item not in cart")
    items = [i for i in cart["items"] if i["product_id"] != product_id]
    saved = [i for i in cart.get("saved_for_later", []) if i["product_id"] != product_id] + [item]
    save_items(cart, items, saved)
    return _reload(cart)


@router.post("/move-to-cart/{product_id}")
def move_to_cart(product_id: str, user=Depends(get_current_user)):
    cart = get_or_create_cart(user["id"])
    item = next((i for i in cart.get("saved_for_later", []) if i["product_id"] == product_id), None)
    if not item:
        raise HTTPException(status_code=404, detail="Item not saved for later")
    product = find_or_404("product", product_id, "Product not found")
    items = cart.get("items", [])
    add_item(items, product, item["quantity"])
    save_items(cart, items, [i for i in cart["saved_for_later"] if i["product_id"] != product_id])
    return _reload(cart)
