"""
Database Schemas for Cook-N-Crop

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
References to other documents are stored as string ids.
"""
from datetime import datetime
from typing import List, Optional, Literal, get_args
from pydantic import BaseModel, Field, EmailStr

from config import (
    BIO_MAX_LENGTH,
    DEFAULT_GROUP_COVER,
    DEFAULT_PROFILE_PIC,
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
    USERNAME_PATTERN,
)

Tier = Literal["bronze", "silver", "gold"]
ALL_TIERS = ["bronze", "silver", "gold"]

Category = Literal[
    "Fruits", "Vegetables", "Dairy", "Grains", "Meat", "Seafood", "Baked Goods", "Beverages", "Snacks", "Other"
]
PRODUCT_CATEGORIES = list(get_args(Category))


# ----------------------- Users -----------------------
class NotificationPreferences(BaseModel):
    email: bool = True
    push: bool = True
    marketing: bool = False


class PrivacyPreferences(BaseModel):
    profile_visibility: Literal["public", "private"] = "public"
    show_email: bool = False
    show_social_links: bool = True


class Preferences(BaseModel):
    theme: Literal["light", "dark", "system"] = "system"
    font_family: str = "Inter"
    notifications: NotificationPreferences = NotificationPreferences()
    privacy: PrivacyPreferences = PrivacyPreferences()


class Activity(BaseModel):
    total_orders: int = 0
    total_spent: float = 0
    harvest_coins: int = 0
    last_activity: Optional[datetime] = None


class SocialAccount(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    avatar: Optional[str] = None


class User(BaseModel):
    username: str = Field(..., min_length=USERNAME_MIN_LENGTH, max_length=USERNAME_MAX_LENGTH, pattern=USERNAME_PATTERN)
    email: EmailStr
    password_hash: Optional[str] = Field(None, description="Hashed password, empty for OAuth-only accounts")
    bio: str = Field("", max_length=BIO_MAX_LENGTH)
    profile_pic: str = DEFAULT_PROFILE_PIC
    role: Literal["user", "admin"] = "user"
    is_active: bool = True
    last_login: Optional[datetime] = None
    login_count: int = 0
    google: Optional[SocialAccount] = None
    github: Optional[SocialAccount] = None
    linkedin: Optional[SocialAccount] = None
    preferences: Preferences = Preferences()
    saved_posts: List[str] = []
    wishlist: List[str] = []
    subscriptions: List[str] = []
    following: List[str] = []
    followers: List[str] = []
    blocked_users: List[str] = []
    activity: Activity = Activity()
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None


class Address(BaseModel):
    user_id: str
    full_name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "India"
    label: str = "Home"
    phone: Optional[str] = None
    is_default: bool = False


# ----------------------- Store -----------------------
class Review(BaseModel):
    id: str
    user_id: str
    name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str
    upvotes: List[str] = []
    created_at: Optional[datetime] = None


class Variant(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    count_in_stock: int = 0


class Product(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    unit: str = "kg"
    images: List[str] = []
    reviews: List[Review] = []
    rating: float = Field(0, ge=0, le=5)
    num_reviews: int = 0
    category: Category
    count_in_stock: int = Field(0, ge=0)
    brand: Optional[str] = None
    tags: List[str] = []
    variants: List[Variant] = []
    badges: List[str] = []
    sale_price: Optional[float] = Field(None, ge=0)
    total_sales: int = 0
    is_featured: bool = False
    nutrition_facts: dict = {}
    recipe_suggestions: List[str] = []


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []
    saved_for_later: List[CartItem] = []


class OrderItem(BaseModel):
    product_id: str
    name: str
    qty: int = Field(..., ge=1)
    image: Optional[str] = None
    price: float
    unit: Optional[str] = None


class ShippingAddress(BaseModel):
    full_name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str
    phone: Optional[str] = None


class PaymentResult(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    update_time: Optional[str] = None
    email_address: Optional[str] = None


class OrderDiscount(BaseModel):
    code: Optional[str] = None
    amount: float = 0


class StatusChange(BaseModel):
    status: str
    changed_at: datetime
    changed_by: Optional[str] = None


class Order(BaseModel):
    user_id: str
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: Literal["COD", "Stripe", "PayPal"] = "COD"
    payment_result: Optional[PaymentResult] = None
    subtotal: float = 0
    discount: OrderDiscount = OrderDiscount()
    coins_redeemed: int = 0
    coins_discount: float = 0
    total_price: float = 0
    status: Literal["Pending", "Processing", "Shipped", "Delivered", "Canceled"] = "Pending"
    status_history: List[StatusChange] = []
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    coins_awarded: Optional[int] = Field(None, description="Set once Harvest Coins were credited for this order")
    delivery_time_slot: Literal["morning", "afternoon", "evening", ""] = ""
    order_notes: str = Field("", max_length=200)


class Coupon(BaseModel):
    code: str
    discount_type: Literal["percentage", "fixed"]
    discount_value: float = Field(..., gt=0)
    expires_at: datetime
    min_purchase: float = Field(0, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1, description="None means unlimited")
    times_used: int = 0
    is_active: bool = True
    tier_restrictions: List[Tier] = ALL_TIERS


# ----------------------- Community -----------------------
class GroupRule(BaseModel):
    id: str
    title: str = Field(..., max_length=100)
    description: str = Field("", max_length=500)


class Flair(BaseModel):
    id: str
    text: str = Field(..., max_length=30)
    color: str = "#808080"
    background_color: str = "#e0e0e0"


class Group(BaseModel):
    name: str = Field(..., max_length=30)
    slug: str
    description: str = Field(..., max_length=500)
    cover_image: str = DEFAULT_GROUP_COVER
    creator_id: str
    moderators: List[str] = []
    members: List[str] = []
    member_count: int = 0
    is_private: bool = False
    rules: List[GroupRule] = []
    flairs: List[Flair] = []
    banned_users: List[str] = []
    join_requests: List[str] = []


class Media(BaseModel):
    url: str
    media_type: Literal["image", "video"] = "image"


class RecipeDetails(BaseModel):
    prep_time: Optional[int] = Field(None, ge=0, description="Minutes")
    cook_time: Optional[int] = Field(None, ge=0, description="Minutes")
    servings: Optional[int] = Field(None, ge=1)
    ingredients: List[str] = []
    instructions: List[str] = []


class RecipeReview(BaseModel):
    id: str
    user_id: str
    name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: Optional[datetime] = None


class Report(BaseModel):
    user_id: str
    reason: str
    created_at: datetime


class Post(BaseModel):
    user_id: str
    group_id: str
    title: str = Field(..., max_length=200)
    content: str
    media: List[Media] = []
    tags: List[str] = []
    hashtags: List[str] = []
    mentions: List[str] = []
    flair: Optional[str] = None
    upvotes: List[str] = []
    downvotes: List[str] = []
    vote_score: int = 0
    comments: List[str] = []
    comment_count: int = 0
    is_recipe: bool = False
    is_featured: bool = False
    is_pinned: bool = False
    recipe_rating: float = 0
    num_recipe_reviews: int = 0
    recipe_details: Optional[RecipeDetails] = None
    tagged_products: List[str] = []
    recipe_reviews: List[RecipeReview] = []
    reports: List[Report] = []


class Comment(BaseModel):
    post_id: str
    user_id: str
    content: str = Field(..., min_length=1, max_length=2000)
    parent_id: Optional[str] = None
    replies: List[str] = []
    upvotes: List[str] = []
    mentions: List[str] = []
    reports: List[Report] = []


class Collection(BaseModel):
    name: str = Field(..., max_length=50)
    description: str = Field("", max_length=250)
    user_id: str
    posts: List[str] = []
    is_public: bool = True


class AutoJoinConfig(BaseModel):
    group_ids: List[str] = []
    is_active: bool = True
    updated_by: Optional[str] = None


# ----------------------- Messaging -----------------------
class Attachment(BaseModel):
    type: Literal["image", "video", "document", "audio"]
    url: str
    filename: str
    mimetype: Optional[str] = None
    size: int = 0


class Conversation(BaseModel):
    participants: List[str] = Field(..., min_length=2, max_length=2)
    last_message_id: Optional[str] = None


class Message(BaseModel):
    conversation_id: str
    sender_id: str
    content: str = ""
    attachments: List[Attachment] = []
    read_by: List[str] = []
    referenced_message_id: Optional[str] = None


class Notification(BaseModel):
    recipient_id: str
    sender_id: Optional[str] = None
    type: Literal[
        "comment",
        "reply",
        "post_upvote",
        "comment_upvote",
        "mention",
        "follow",
        "price_drop",
        "restock",
        "order_status",
    ]
    post_id: Optional[str] = None
    comment_id: Optional[str] = None
    product_id: Optional[str] = None
    order_id: Optional[str] = None
    message: str = ""
    link: Optional[str] = None
    is_read: bool = False


# ----------------------- Support -----------------------
class SupportReply(BaseModel):
    id: str
    user_id: str
    is_admin: bool = False
    content: str
    created_at: datetime


class SupportMessage(BaseModel):
    name: str
    email: EmailStr
    subject: Literal["General Inquiry", "Account Support", "Order Issue", "Partnership", "Feedback"]
    message: str = Field(..., min_length=1, max_length=5000)
    status: Literal["Open", "In Progress", "Closed"] = "Open"
    user_id: Optional[str] = None
    replies: List[SupportReply] = []
