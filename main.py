import asyncio
import os

import socketio
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from config import CORS_ORIGINS, UPLOAD_DIR
from database import create_document, db, ensure_indexes
from errors import register_exception_handlers
from realtime import sio, sweep_forever
from routers import (
    addresses,
    admin,
    auth,
    cart,
    chatbot,
    collections,
    comments,
    coupons,
    groups,
    loyalty,
    messages,
    notifications,
    offers,
    orders,
    posts,
    products,
    search,
    support,
    users,
)
from schemas import Product as ProductSchema, User as UserSchema
from security import hash_password, limiter
from uploads import ensure_upload_dirs

logger = structlog.get_logger()

app = FastAPI(title="Cook-N-Crop API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_exception_handlers(app)

for module in (
    auth,
    users,
    addresses,
    products,
    cart,
    orders,
    coupons,
    loyalty,
    offers,
    posts,
    comments,
    groups,
    messages,
    notifications,
    collections,
    support,
    search,
    chatbot,
    admin,
):
    app.include_router(module.router)

ensure_upload_dirs()
app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")


@app.on_event("startup")
async def startup():
    ensure_indexes()
    asyncio.create_task(sweep_forever())
    logger.info("Cook-N-Crop API started")


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Cook-N-Crop API running"}


@app.get("/api/health")
def health():
    return {"status": "ok", "database": db is not None}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Seed Demo Data -----------------------
DEMO_PRODUCTS = [
    {
        "name": "Organic Bananas",
        "brand": "Green Valley Farms",
        "description": "Sweet, ripe bananas grown without synthetic pesticides.",
        "price": 2.99,
        "unit": "dozen",
        "category": "Fruits",
        "images": ["https://images.unsplash.com/photo-1571771894821-ce9b6c11b08e"],
        "count_in_stock": 120,
        "tags": ["organic", "fruit"],
    },
    {
        "name": "Heirloom Tomatoes",
        "brand": "Sunny Acres",
        "description": "Colorful heirloom tomatoes picked at peak ripeness.",
        "price": 4.99,
        "unit": "kg",
        "category": "Vegetables",
        "images": ["https://images.unsplash.com/photo-1592924357228-91a4daadcfea"],
        "count_in_stock": 60,
        "tags": ["heirloom", "salad"],
    },
    {
        "name": "Fresh Spinach",
        "brand": "Green Valley Farms",
        "description": "Tender baby spinach leaves, washed and ready to cook.",
        "price": 3.49,
        "unit": "bunch",
        "category": "Vegetables",
        "images": ["https://images.unsplash.com/photo-1576045057995-568f588f82fb"],
        "count_in_stock": 45,
        "tags": ["greens"],
    },
    {
        "name": "Farm Fresh Eggs",
        "brand": "Happy Hen Co.",
        "description": "Free-range brown eggs from pasture-raised hens.",
        "price": 5.49,
        "unit": "dozen",
        "category": "Dairy",
        "images": ["https://images.unsplash.com/photo-1506976785307-8732e854ad03"],
        "count_in_stock": 80,
        "tags": ["free-range", "protein"],
    },
    {
        "name": "Raw Wildflower Honey",
        "brand": "Busy Bee Apiary",
        "description": "Unfiltered honey from local wildflower meadows.",
        "price": 9.99,
        "unit": "jar",
        "category": "Other",
        "images": ["https://images.unsplash.com/photo-1587049352846-4a222e784d38"],
        "count_in_stock": 30,
        "tags": ["local", "sweetener"],
    },
    {
        "name": "Stone-Ground Whole Wheat Flour",
        "brand": "Old Mill",
        "description": "Whole grain flour milled slowly to keep the bran and germ.",
        "price": 6.49,
        "unit": "kg",
        "category": "Grains",
        "images": ["https://images.unsplash.com/photo-1574323347407-f5e1ad6d020b"],
        "count_in_stock": 8,
        "tags": ["baking"],
    },
    {
        "name": "Sourdough Loaf",
        "brand": "Village Bakery",
        "description": "Naturally leavened bread with a crisp crust.",
        "price": 7.5,
        "unit": "loaf",
        "category": "Baked Goods",
        "images": ["https://images.unsplash.com/photo-1585478259715-876acc5be8eb"],
        "count_in_stock": 20,
        "tags": ["bread"],
    },
    {
        "name": "Cold-Pressed Apple Juice",
        "brand": "Orchard Lane",
        "description": "Pressed from crisp local apples with nothing added.",
        "price": 4.25,
        "unit": "litre",
        "category": "Beverages",
        "images": ["https://images.unsplash.com/photo-1600271886742-f049cd451bba"],
        "count_in_stock": 0,
        "tags": ["juice"],
    },
]


@app.post("/seed")
def seed():
    if db["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    for p in DEMO_PRODUCTS:
        create_document("product", ProductSchema(**p))
    # create admin user if none
    if db["user"].count_documents({"role": "admin"}) == 0:
        admin_user = UserSchema(
            username="admin",
            email="admin@cookncrop.com",
            password_hash=hash_password(os.getenv("ADMIN_PASSWORD", "admin123")),
            role="admin",
        )
        create_document("user", admin_user)
    return {"seeded": True, "products": db["product"].count_documents({})}


socket_app = socketio.ASGIApp(sio, other_asgi_app=app)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(socket_app, host="0.0.0.0", port=port)
