"""
Database Schemas for the Fireworks Storefront

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name:
user, product, category, bundle, giftbox, order, admin.
Embedded models (addresses, cart items, order items...) live inside them.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

PINCODE_PATTERN = r"^[1-9][0-9]{5}$"
PHONE_PATTERN = r"^[6-9]\d{9}$"

OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned"]
PaymentMethod = Literal["cod", "bank_transfer"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded", "verification_pending"]
ItemType = Literal["product", "bundle", "giftbox"]
AddressType = Literal["home", "work", "other"]
AdminRole = Literal["super_admin", "admin", "moderator"]
Unit = Literal["piece", "box", "kg", "g", "oz", "l", "ml", "dozen", "pack"]

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned")
CANCELLABLE_STATUSES = ("pending", "confirmed")


# ----------------------- User -----------------------
class Address(BaseModel):
    id: str
    street: str
    city: str
    state: str
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    landmark: str = ""
    type: AddressType = "home"
    is_default: bool = False


class BundleInfo(BaseModel):
    bundle_id: str
    bundle_name: str
    bundle_price: float = Field(..., ge=0)


class GiftBoxInfo(BaseModel):
    gift_box_id: str
    gift_box_name: str
    gift_box_price: float = Field(..., ge=0)


class CartItem(BaseModel):
    kind: ItemType = "product"
    product_id: Optional[str] = None
    bundle_info: Optional[BundleInfo] = None
    gift_box_info: Optional[GiftBoxInfo] = None
    quantity: int = Field(1, ge=1)
    added_at: Optional[datetime] = None


class Otp(BaseModel):
    code: str
    expires_at: datetime
    attempts: int = 0
    last_sent_at: datetime


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    addresses: List[Address] = []
    cart: List[CartItem] = []
    otp: Optional[Otp] = None
    is_verified: bool = False
    is_active: bool = True
    last_login: Optional[datetime] = None


# ----------------------- Catalog -----------------------
class ProductImage(BaseModel):
    id: str
    url: str
    filename: str
    public_id: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class Review(BaseModel):
    id: str
    user_id: str
    user_name: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: str
    created_at: datetime


class Ratings(BaseModel):
    average: float = 0
    count: int = 0


class Product(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount: float = Field(0, ge=0, le=100)
    category_id: Optional[str] = None
    sub_categories: List[str] = []
    images: List[ProductImage] = []
    stock: int = Field(0, ge=0)
    min_order_quantity: int = Field(1, ge=1)
    max_order_quantity: int = 100
    weight: float = Field(..., ge=0, description="Weight in grams")
    unit: Unit
    safety_instructions: List[str] = []
    age_restriction: int = 18
    is_active: bool = True
    is_featured: bool = False
    tags: List[str] = []
    ratings: Ratings = Ratings()
    reviews: List[Review] = []


class SubCategory(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    image: Optional[str] = None
    is_active: bool = True


class Category(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    image: Optional[str] = None
    icon: Optional[str] = None
    sub_categories: List[SubCategory] = []
    is_active: bool = True
    sort_order: int = 0
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    seo_keywords: List[str] = []


class Cracker(BaseModel):
    name: str
    quantity: int = Field(..., ge=1)


class Bundle(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    description: str
    crackers: List[Cracker] = []
    is_active: bool = True


class GiftBox(Bundle):
    pass


# ----------------------- Order -----------------------
class OrderItem(BaseModel):
    type: ItemType
    product_id: Optional[str] = None
    bundle_id: Optional[str] = None
    gift_box_id: Optional[str] = None
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None
    stock_taken: int = 0


class ShippingAddress(BaseModel):
    street: str
    city: str
    state: str
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    landmark: Optional[str] = None
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class Pricing(BaseModel):
    subtotal: float = Field(..., ge=0)
    tax: float = Field(..., ge=0)
    shipping: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)

    @model_validator(mode="after")
    def check_total(self):
        expected = self.subtotal + self.tax + self.shipping - self.discount
        if abs(expected - self.total) > 0.01:
            raise ValueError("Pricing calculation mismatch")
        return self


class PaymentScreenshot(BaseModel):
    filename: str
    path: str
    url: Optional[str] = None
    public_id: Optional[str] = None
    original_name: Optional[str] = None
    size: Optional[int] = None
    uploaded_at: datetime


class PaymentInfo(BaseModel):
    method: PaymentMethod
    status: PaymentStatus = "pending"
    payment_screenshot: Optional[PaymentScreenshot] = None
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    admin_notes: Optional[str] = None


class StatusEntry(BaseModel):
    status: OrderStatus
    note: Optional[str] = None
    updated_by: Optional[str] = None
    timestamp: datetime


class TrackingInfo(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    pricing: Pricing
    payment_info: PaymentInfo
    status: OrderStatus = "pending"
    status_history: List[StatusEntry] = []
    tracking_info: TrackingInfo = TrackingInfo()
    delivery_date: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    notes: Optional[str] = None
    is_gift: bool = False
    gift_message: Optional[str] = None
    special_instructions: Optional[str] = None
    stock_deducted: bool = False


# ----------------------- Admin -----------------------
class Admin(BaseModel):
    name: str
    email: EmailStr
    password_hash: str = Field(..., description="bcrypt hash")
    role: AdminRole = "admin"
    permissions: List[str] = []
    is_active: bool = True
    last_login: Optional[datetime] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    created_by: Optional[str] = None
    phone: Optional[str] = None
    department: Optional[str] = None
    reset_password_token: Optional[str] = None
    reset_password_expires: Optional[datetime] = None
