import math
from typing import List, Literal, Optional

import structlog
from bson.objectid import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from config import ADMIN_PAGE_SIZE
from database import create_document, db, find_by_ids, serialize_doc, user_briefs, utcnow
from mailer import send_order_confirmation, send_order_status_email
from notifier import notify
from realtime import emit_admin_activity
from rewards import RedemptionError, coins_for_order, redemption_discount, tier_for_user
from routers.coupons import check_coupon
from routers.deps import ensure_owner_or_admin, find_or_404, regex
from schemas import Order as OrderSchema, PaymentResult, ShippingAddress
from security import get_current_user, require_admin

logger = structlog.get_logger()

router = APIRouter(prefix="/api/orders", tags=["orders"])

OrderStatus = Literal["Pending", "Processing", "Shipped", "Delivered", "Canceled"]


# ----------------------- Models -----------------------
class OrderItemBody(BaseModel):
    product_id: str
    qty: int = Field(..., ge=1)


class OrderCreateBody(BaseModel):
    order_items: List[OrderItemBody] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: Literal["COD", "Stripe", "PayPal"] = "COD"
    coupon_code: Optional[str] = None
    coins_to_redeem: int = Field(0, ge=0)
    delivery_time_slot: Literal["morning", "afternoon", "evening", ""] = ""
    order_notes: str = Field("", max_length=200)


class AdminOrderCreateBody(BaseModel):
    user_id: str
    order_items: List[OrderItemBody] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: Literal["COD", "Stripe", "PayPal"] = "COD"
    delivery_time_slot: Literal["morning", "afternoon", "evening", ""] = ""
    order_notes: str = Field("", max_length=200)


class AdminOrderEditBody(BaseModel):
    order_items: Optional[List[OrderItemBody]] = Field(None, min_length=1)
    shipping_address: Optional[ShippingAddress] = None
    delivery_time_slot: Optional[Literal["morning", "afternoon", "evening", ""]] = None
    order_notes: Optional[str] = Field(None, max_length=200)


class StatusBody(BaseModel):
    status: OrderStatus


# ----------------------- Stock -----------------------
def priced_items(lines: List[OrderItemBody]) -> list:
    """Snapshot name/price/image from the catalog, checking stock for every line."""
    merged = {}
    for line in lines:
        merged[line.product_id] = merged.get(line.product_id, 0) + line.qty
    products = {str(p["_id"]): p for p in find_by_ids("product", list(merged))}
    items = []
    for pid, qty in merged.items():
        product = products.get(pid)
        if not product:
            raise HTTPException(status_code=404, detail=f"Product not found: {pid}")
        if product.get("count_in_stock", 0) < qty:
            raise HTTPException(
                status_code=400,
                detail=f"Not enough stock for {product['name']}. Only {product.get('count_in_stock', 0)} left.",
            )
        items.append(
            {
                "product_id": pid,
                "name": product["name"],
                "qty": qty,
                "image": (product.get("images") or [None])[0],
                "price": product.get("sale_price") or product["price"],
                "unit": product.get("unit"),
            }
        )
    return items


def take_stock(items: list, sign: int = 1):
    """sign=1 removes items from stock, sign=-1 puts them back."""
    for item in items:
        db["product"].update_one(
            {"_id": ObjectId(item["product_id"])},
            {"$inc": {"count_in_stock": -sign * item["qty"], "total_sales": sign * item["qty"]}},
        )


def _subtotal(items: list) -> float:
    return round(sum(i["price"] * i["qty"] for i in items), 2)


def _history(status: str, user: dict) -> dict:
    return {"status": status, "changed_at": utcnow(), "changed_by": user["id"]}


def load_order(order_id: str) -> dict:
    return find_or_404("order", order_id, "Order not found")


def order_out(order: dict) -> dict:
    out = serialize_doc(order)
    out["user"] = user_briefs([order["user_id"]]).get(order["user_id"])
    return out


# ----------------------- Loyalty -----------------------
def award_coins(order: dict) -> int:
    """Credit Harvest Coins and the activity ledger once per delivered order."""
    if order.get("coins_awarded") is not None:
        return 0
    user = db["user"].find_one({"_id": ObjectId(order["user_id"])})
    if not user:
        return 0
    coins = coins_for_order(order["total_price"], tier_for_user(user))
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$inc": {
                "activity.harvest_coins": coins,
                "activity.total_spent": order["total_price"],
                "activity.total_orders": 1,
            },
            "$set": {"activity.last_activity": utcnow()},
        },
    )
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"coins_awarded": coins}})
    logger.info(f"Awarded {coins} Harvest Coins for order {order['_id']}")
    return coins


def change_status(order: dict, status: str, actor: dict, background_tasks: BackgroundTasks) -> dict:
    old = order["status"]
    if status == old:
        return order
    update = {"status": status}
    if status == "Canceled":
        take_stock(order["order_items"], sign=-1)
    elif old == "Canceled":
        for item in order["order_items"]:
            product = db["product"].find_one({"_id": ObjectId(item["product_id"])})
            if not product or product.get("count_in_stock", 0) < item["qty"]:
                raise HTTPException(
                    status_code=400,
                    detail=f"Cannot restore order: not enough stock for {item['name']}",
                )
        take_stock(order["order_items"])
    if status == "Delivered":
        update["is_delivered"] = True
        update["delivered_at"] = utcnow()
        if not order.get("is_paid"):
            # cash on delivery is settled on the doorstep
            update["is_paid"] = True
            update["paid_at"] = utcnow()
    db["order"].update_one({"_id": order["_id"]}, {"$set": update, "$push": {"status_history": _history(status, actor)}})
    order = db["order"].find_one({"_id": order["_id"]})
    if status == "Delivered":
        award_coins(order)
        order = db["order"].find_one({"_id": order["_id"]})

    customer = db["user"].find_one({"_id": ObjectId(order["user_id"])})
    sorder = serialize_doc(order)
    notify(
        background_tasks,
        order["user_id"],
        None,
        "order_status",
        message=f"Your order #{sorder['id'][-6:]} is now {status}",
        order_id=sorder["id"],
        link=f"/order/{sorder['id']}",
    )
    if customer:
        background_tasks.add_task(send_order_status_email, serialize_doc(customer), sorder)
    return order


# ----------------------- Customer -----------------------
@router.post("", status_code=201)
def create_order(body: OrderCreateBody, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    items = priced_items(body.order_items)
    subtotal = _subtotal(items)

    discount = {"code": None, "amount": 0}
    coupon = None
    if body.coupon_code:
        coupon, amount = check_coupon(body.coupon_code, subtotal, user)
        discount = {"code": coupon["code"], "amount": amount}

    coins_discount = 0
    if body.coins_to_redeem:
        balance = (user.get("activity") or {}).get("harvest_coins", 0)
        try:
            coins_discount = redemption_discount(body.coins_to_redeem, balance, subtotal - discount["amount"])
        except RedemptionError as e:
            raise HTTPException(status_code=400, detail=str(e))

    total = round(max(subtotal - discount["amount"] - coins_discount, 0), 2)
    order = OrderSchema(
        user_id=user["id"],
        order_items=items,
        shipping_address=body.shipping_address,
        payment_method=body.payment_method,
        subtotal=subtotal,
        discount=discount,
        coins_redeemed=body.coins_to_redeem,
        coins_discount=coins_discount,
        total_price=total,
        status_history=[_history("Pending", user)],
        delivery_time_slot=body.delivery_time_slot,
        order_notes=body.order_notes,
    )
    oid = create_document("order", order)

    if coupon:
        db["coupon"].update_one({"_id": coupon["_id"]}, {"$inc": {"times_used": 1}})
    if body.coins_to_redeem:
        db["user"].update_one({"_id": ObjectId(user["id"])}, {"$inc": {"activity.harvest_coins": -body.coins_to_redeem}})
    take_stock(items)
    db["cart"].update_one({"user_id": user["id"]}, {"$set": {"items": []}})

    created = serialize_doc(db["order"].find_one({"_id": ObjectId(oid)}))
    background_tasks.add_task(send_order_confirmation, user, created)
    background_tasks.add_task(
        emit_admin_activity,
        {"type": "new_order", "message": f"New order from {user['username']}: {total:.2f}", "orderId": oid},
    )
    logger.info(f"Order {oid} placed by {user['username']}")
    return created


@router.get("/myorders")
def my_orders(user=Depends(get_current_user)):
    return [serialize_doc(o) for o in db["order"].find({"user_id": user["id"]}).sort("created_at", -1)]


@router.get("/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    order = load_order(order_id)
    ensure_owner_or_admin(order["user_id"], user, "Not authorized to view this order")
    return order_out(order)


@router.put("/{order_id}/pay")
def pay_order(order_id: str, background_tasks: BackgroundTasks, body: Optional[PaymentResult] = None, user=Depends(get_current_user)):
    order = load_order(order_id)
    ensure_owner_or_admin(order["user_id"], user, "Not authorized to pay for this order")
    if order.get("is_paid"):
        raise HTTPException(status_code=400, detail="Order is already paid")
    if order["status"] == "Canceled":
        raise HTTPException(status_code=400, detail="Cannot pay for a canceled order")
    update = {"is_paid": True, "paid_at": utcnow()}
    if body is not None:
        update["payment_result"] = body.model_dump()
    db["order"].update_one({"_id": order["_id"]}, {"$set": update})
    order = db["order"].find_one({"_id": order["_id"]})
    if order["status"] == "Pending":
        order = change_status(order, "Processing", user, background_tasks)
    return order_out(order)


# ----------------------- Admin -----------------------
@router.get("")
def list_orders(q: Optional[str] = None, status: Optional[OrderStatus] = None, page: int = 1, user=Depends(require_admin)):
    filt = {}
    if status:
        filt["status"] = status
    if q:
        if ObjectId.is_valid(q):
            filt["_id"] = ObjectId(q)
        else:
            user_ids = [str(u["_id"]) for u in db["user"].find({"$or": [{"username": regex(q)}, {"email": regex(q)}]}, {"_id": 1})]
            filt["$or"] = [{"user_id": {"$in": user_ids}}, {"shipping_address.full_name": regex(q)}]
    total = db["order"].count_documents(filt)
    page = max(page, 1)
    items = list(db["order"].find(filt).sort("created_at", -1).skip((page - 1) * ADMIN_PAGE_SIZE).limit(ADMIN_PAGE_SIZE))
    briefs = user_briefs([o["user_id"] for o in items])
    orders = []
    for o in items:
        out = serialize_doc(o)
        out["user"] = briefs.get(o["user_id"])
        orders.append(out)
    return {"orders": orders, "page": page, "pages": max(math.ceil(total / ADMIN_PAGE_SIZE), 1), "total": total}


@router.post("/admin", status_code=201)
def admin_create_order(body: AdminOrderCreateBody, background_tasks: BackgroundTasks, user=Depends(require_admin)):
    customer = find_or_404("user", body.user_id, "User not found")
    items = priced_items(body.order_items)
    subtotal = _subtotal(items)
    order = OrderSchema(
        user_id=body.user_id,
        order_items=items,
        shipping_address=body.shipping_address,
        payment_method=body.payment_method,
        subtotal=subtotal,
        total_price=subtotal,
        status="Processing",
        status_history=[_history("Processing", user)],
        is_paid=True,
        paid_at=utcnow(),
        delivery_time_slot=body.delivery_time_slot,
        order_notes=body.order_notes,
    )
    oid = create_document("order", order)
    take_stock(items)
    created = serialize_doc(db["order"].find_one({"_id": ObjectId(oid)}))
    background_tasks.add_task(send_order_confirmation, serialize_doc(customer), created)
    return created


@router.put("/{order_id}")
def admin_edit_order(order_id: str, body: AdminOrderEditBody, user=Depends(require_admin)):
    order = load_order(order_id)
    update = body.model_dump(exclude_none=True, exclude={"order_items"})
    if body.order_items is not None:
        if order["status"] == "Canceled":
            raise HTTPException(status_code=400, detail="Cannot edit items of a canceled order")
        old = {i["product_id"]: i for i in order["order_items"]}
        wanted = {}
        for line in body.order_items:
            wanted[line.product_id] = wanted.get(line.product_id, 0) + line.qty
        products = {str(p["_id"]): p for p in find_by_ids("product", list(set(old) | set(wanted)))}
        changes, items = [], []
        for pid, qty in wanted.items():
            product = products.get(pid)
            if not product:
                raise HTTPException(status_code=404, detail=f"Product not found: {pid}")
            diff = qty - (old[pid]["qty"] if pid in old else 0)
            if diff > 0 and product.get("count_in_stock", 0) < diff:
                raise HTTPException(
                    status_code=400,
                    detail=f"Not enough stock for {product['name']}. Only {product.get('count_in_stock', 0)} available.",
                )
            changes.append({"product_id": pid, "qty": diff})
            base = old.get(pid) or {
                "product_id": pid,
                "name": product["name"],
                "image": (product.get("images") or [None])[0],
                "price": product.get("sale_price") or product["price"],
                "unit": product.get("unit"),
            }
            items.append({**base, "qty": qty})
        for pid, item in old.items():
            if pid not in wanted:
                changes.append({"product_id": pid, "qty": -item["qty"]})
        take_stock([c for c in changes if c["qty"]])
        subtotal = _subtotal(items)
        update["order_items"] = items
        update["subtotal"] = subtotal
        update["total_price"] = round(
            max(subtotal - order.get("discount", {}).get("amount", 0) - order.get("coins_discount", 0), 0), 2
        )
    if update:
        db["order"].update_one({"_id": order["_id"]}, {"$set": update})
    return order_out(db["order"].find_one({"_id": order["_id"]}))


@router.put("/{order_id}/deliver")
def deliver_order(order_id: str, background_tasks: BackgroundTasks, user=Depends(require_admin)):
    order = load_order(order_id)
    if order["status"] == "Canceled":
        raise HTTPException(status_code=400, detail="Cannot deliver a canceled order")
    return order_out(change_status(order, "Delivered", user, background_tasks))


@router.put("/{order_id}/status")
def update_status(order_id: str, body: StatusBody, background_tasks: BackgroundTasks, user=Depends(require_admin)):
    order = load_order(order_id)
    return order_out(change_status(order, body.status, user, background_tasks))
