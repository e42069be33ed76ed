import csv
import io
import logging
import math
import os
import random
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional, get_args

from bson.objectid import ObjectId
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, ValidationError

from auth import (
    ALL_PERMISSIONS,
    create_token,
    get_current_admin,
    get_current_user,
    hash_password,
    permissions_for_role,
    require_permission,
    verify_password,
)
from cart import aggregate_cart, find_item, item_ref, save_cart, snapshot_item
from config import (
    ADMIN_LOCK_HOURS,
    ADMIN_MAX_LOGIN_ATTEMPTS,
    APP_ENV,
    BANK_DETAILS,
    CORS_ORIGINS,
    LOG_LEVEL,
    LOW_STOCK_THRESHOLD,
    MIN_PASSWORD_LENGTH,
    OTP_COOLDOWN_SECONDS,
    OTP_MAX_ATTEMPTS,
    OTP_TTL_MINUTES,
    UPLOAD_DIR,
)
from database import as_aware, create_document, db, get_documents, serialize_doc, to_object_id, update_document
from notifications import (
    send_admin_order_notification,
    send_admin_password_reset_otp,
    send_contact_notification,
    send_low_stock_alert,
    send_order_confirmation_email,
    send_otp_email,
    send_welcome_email,
)
from orders import (
    InsufficientStock,
    ItemUnavailable,
    build_order_items,
    calculate_pricing,
    deduct_stock,
    generate_order_number,
    release_stock,
    reserve_stock,
    status_entry,
)
from realtime import order_rooms, order_socket
from schemas import (
    CANCELLABLE_STATUSES,
    ORDER_STATUSES,
    PHONE_PATTERN,
    PINCODE_PATTERN,
    AddressType,
    AdminRole,
    Admin as AdminSchema,
    Bundle as BundleSchema,
    Category as CategorySchema,
    Cracker,
    GiftBox as GiftBoxSchema,
    ItemType,
    Order as OrderSchema,
    OrderStatus,
    PaymentMethod,
    Product as ProductSchema,
    ShippingAddress,
    Unit,
    User as UserSchema,
)
from storage import delete_upload, save_upload

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(app: FastAPI):
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    if db is not None:
        db["order"].create_index("order_number", unique=True)
        db["user"].create_index("email", unique=True)
        db["admin"].create_index("email", unique=True)
        db["category"].create_index("slug", unique=True)
    yield


app = FastAPI(title="Fireworks Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-New-Token"],
)

app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR, check_dir=False), name="uploads")


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


# ----------------------- Utils -----------------------
def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower())


def get_or_404(collection: str, doc_id: str, label: str, projection: Optional[dict] = None) -> dict:
    doc = db[collection].find_one({"_id": to_object_id(doc_id)}, projection)
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def page_params(page: int, limit: int):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    return page, limit, (page - 1) * limit


def paged(key: str, items: list, total: int, page: int, limit: int) -> dict:
    return {
        key: items,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "current_page": page,
    }


def naive_utc(value: datetime) -> datetime:
    """Query filters compare against stored naive-UTC datetimes."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def attach_users(docs: List[dict], fields=("name", "email", "phone_number")) -> List[dict]:
    ids = {d.get("user_id") for d in docs if d.get("user_id")}
    oids = [ObjectId(i) for i in ids if ObjectId.is_valid(i)]
    users = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": oids}})}
    for d in docs:
        u = users.get(d.get("user_id"))
        d["user"] = {"id": d.get("user_id"), **{f: u.get(f) for f in fields}} if u else None
    return docs


def generate_otp() -> str:
    return f"{random.SystemRandom().randint(100000, 999999)}"


# ----------------------- Models -----------------------
class SendOtpBody(BaseModel):
    email: EmailStr


class VerifyOtpBody(BaseModel):
    email: EmailStr
    otp: str
    name: Optional[str] = None


class ProfileUpdateBody(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = None


class AddressBody(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    landmark: Optional[str] = None
    type: Optional[str] = None
    is_default: Optional[bool] = None


class SubCategoryBody(BaseModel):
    name: str
    description: Optional[str] = None
    image: Optional[str] = None
    is_active: bool = True


class CategoryBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    sub_categories: Optional[List[SubCategoryBody]] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    seo_keywords: Optional[List[str]] = None


class ProductCreateBody(BaseModel):
    name: str
    description: str
    price: float
    original_price: Optional[float] = None
    discount: float = 0
    category_id: Optional[str] = None
    sub_categories: List[str] = []
    stock: int = 0
    min_order_quantity: int = 1
    max_order_quantity: int = 100
    weight: float
    unit: Unit
    safety_instructions: List[str] = []
    age_restriction: int = 18
    is_active: bool = True
    is_featured: bool = False
    tags: List[str] = []


class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    original_price: Optional[float] = None
    discount: Optional[float] = None
    category_id: Optional[str] = None
    sub_categories: Optional[List[str]] = None
    stock: Optional[int] = None
    min_order_quantity: Optional[int] = None
    max_order_quantity: Optional[int] = None
    weight: Optional[float] = None
    unit: Optional[Unit] = None
    safety_instructions: Optional[List[str]] = None
    age_restriction: Optional[int] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    tags: Optional[List[str]] = None


class ReviewBody(BaseModel):
    rating: Optional[int] = None
    comment: Optional[str] = None


class ItemSetUpdateBody(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = None
    description: Optional[str] = None
    crackers: Optional[List[Cracker]] = None
    is_active: Optional[bool] = None


class CartProductBody(BaseModel):
    product_id: str
    quantity: int = 1


class CartBundleBody(BaseModel):
    bundle_id: str
    quantity: int = 1


class CartGiftBoxBody(BaseModel):
    gift_box_id: str
    quantity: int = 1


class OrderItemBody(BaseModel):
    type: ItemType = "product"
    product_id: Optional[str] = None
    bundle_id: Optional[str] = None
    gift_box_id: Optional[str] = None
    quantity: int = 1


class OrderExtras(BaseModel):
    notes: Optional[str] = None
    is_gift: bool = False
    gift_message: Optional[str] = None
    special_instructions: Optional[str] = None


class CreateOrderBody(OrderExtras):
    items: List[OrderItemBody]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod


class ManualOrderData(OrderExtras):
    items: List[OrderItemBody]
    shipping_address: ShippingAddress


class CancelOrderBody(BaseModel):
    reason: Optional[str] = None


class TrackOrderBody(BaseModel):
    order_number: Optional[str] = None
    email: Optional[str] = None


class ContactBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    subject: Optional[str] = None
    message: Optional[str] = None


class FirstAdminBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None


class AdminLoginBody(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class AdminProfileBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    department: Optional[str] = None


class ChangePasswordBody(BaseModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class ForgotPasswordBody(BaseModel):
    email: EmailStr


class ResetPasswordBody(BaseModel):
    otp: str
    new_password: str


class CreateAdminBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    role: AdminRole = "admin"
    phone: Optional[str] = None
    department: Optional[str] = None


class UpdateAdminBody(BaseModel):
    name: Optional[str] = None
    role: Optional[AdminRole] = None
    permissions: Optional[List[str]] = None
    is_active: Optional[bool] = None


class UserStatusBody(BaseModel):
    is_active: bool


class OrderStatusBody(BaseModel):
    status: OrderStatus
    note: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None


class VerifyPaymentBody(BaseModel):
    approved: bool
    admin_notes: Optional[str] = None


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Fireworks Storefront API running"}


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


# ----------------------- Customer auth (email OTP) -----------------------
@app.post("/api/auth/send-otp")
def send_otp(body: SendOtpBody, background_tasks: BackgroundTasks):
    email = body.email.strip().lower()

    now = now_utc()
    user = db["user"].find_one({"email": email})
    if user and not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated")
    last_sent = as_aware(user["otp"].get("last_sent_at")) if user and user.get("otp") else None
    if last_sent and (now - last_sent).total_seconds() < OTP_COOLDOWN_SECONDS:
        raise HTTPException(status_code=429, detail="Please wait before requesting another OTP")

    otp = generate_otp()
    otp_doc = {
        "code": otp,
        "expires_at": now + timedelta(minutes=OTP_TTL_MINUTES),
        "attempts": 0,
        "last_sent_at": now,
    }
    if user:
        update_document("user", {"_id": user["_id"]}, {"otp": otp_doc})
        name = user["name"]
    else:
        name = f"User_{int(now.timestamp() * 1000)}"
        create_document("user", UserSchema(name=name, email=email, otp=otp_doc))

    background_tasks.add_task(send_otp_email, email, otp, name)
    response = {"success": True, "message": "OTP sent to your email", "email": email}
    if APP_ENV == "development":
        response["otp"] = otp
    return response


@app.post("/api/auth/verify-otp")
def verify_otp(body: VerifyOtpBody, background_tasks: BackgroundTasks):
    email = body.email.strip().lower()
    user = db["user"].find_one({"email": email})
    if not user or not user.get("otp"):
        raise HTTPException(status_code=400, detail="No OTP requested for this email")
    otp = user["otp"]
    if otp.get("attempts", 0) >= OTP_MAX_ATTEMPTS:
        raise HTTPException(status_code=429, detail="Too many failed attempts. Please request a new OTP")
    if as_aware(otp["expires_at"]) < now_utc():
        raise HTTPException(status_code=400, detail="OTP has expired. Please request a new one")
    if body.otp.strip() != otp["code"]:
        update_document("user", {"_id": user["_id"]}, {}, inc={"otp.attempts": 1})
        left = OTP_MAX_ATTEMPTS - otp.get("attempts", 0) - 1
        raise HTTPException(status_code=400, detail=f"Invalid OTP. Attempts left: {left}")

    is_new = not user.get("is_verified", False)
    fields = {"is_verified": True, "last_login": now_utc()}
    if body.name and body.name.strip():
        fields["name"] = body.name.strip()
    update_document("user", {"_id": user["_id"]}, fields, unset={"otp": ""})
    if is_new:
        background_tasks.add_task(send_welcome_email, email, fields.get("name", user["name"]))

    user = db["user"].find_one({"_id": user["_id"]}, {"otp": 0, "cart": 0})
    token = create_token({"id": str(user["_id"]), "email": email, "type": "user"})
    return {"success": True, "token": token, "user": serialize_doc(user), "is_new_user": is_new}


@app.get("/api/auth/profile")
def get_profile(user=Depends(get_current_user)):
    user.pop("cart", None)
    return {"success": True, "user": user}


@app.put("/api/auth/profile")
def update_profile(body: ProfileUpdateBody, user=Depends(get_current_user)):
    fields = body.model_dump(exclude_none=True)
    if "name" in fields:
        fields["name"] = fields["name"].strip()
        if not fields["name"]:
            raise HTTPException(status_code=400, detail="Name cannot be empty")
    if "phone_number" in fields and not re.match(PHONE_PATTERN, fields["phone_number"]):
        raise HTTPException(status_code=400, detail="Please provide a valid 10-digit phone number")
    if fields:
        update_document("user", {"_id": ObjectId(user["id"])}, fields)
    doc = db["user"].find_one({"_id": ObjectId(user["id"])}, {"otp": 0, "cart": 0})
    return {"success": True, "message": "Profile updated", "user": serialize_doc(doc)}


# ----------------------- Addresses -----------------------
def _addresses(user_id: str) -> List[dict]:
    doc = db["user"].find_one({"_id": ObjectId(user_id)}, {"addresses": 1})
    return doc.get("addresses", []) if doc else []


def _save_addresses(user_id: str, addresses: List[dict]):
    # only one default address at a time, and one exists whenever the list is non-empty
    if addresses and not any(a.get("is_default") for a in addresses):
        addresses[0]["is_default"] = True
    update_document("user", {"_id": ObjectId(user_id)}, {"addresses": addresses})


def _check_address_fields(fields: dict):
    if "pincode" in fields and not re.match(PINCODE_PATTERN, fields["pincode"]):
        raise HTTPException(status_code=400, detail="Please provide a valid 6-digit pincode")
    if "type" in fields and fields["type"] not in get_args(AddressType):
        raise HTTPException(status_code=400, detail="Address type must be home, work or other")


@app.get("/api/addresses")
def list_addresses(user=Depends(get_current_user)):
    return {"success": True, "addresses": _addresses(user["id"])}


@app.post("/api/addresses", status_code=201)
def add_address(body: AddressBody, user=Depends(get_current_user)):
    fields = body.model_dump(exclude_none=True)
    if not all(fields.get(k, "").strip() for k in ("street", "city", "state", "pincode")):
        raise HTTPException(status_code=400, detail="Street, city, state, and pincode are required")
    _check_address_fields(fields)

    addresses = _addresses(user["id"])
    address = {
        "id": str(ObjectId()),
        "street": fields["street"].strip(),
        "city": fields["city"].strip(),
        "state": fields["state"].strip(),
        "pincode": fields["pincode"].strip(),
        "landmark": fields.get("landmark", ""),
        "type": fields.get("type", "home"),
        "is_default": bool(fields.get("is_default")) or not addresses,
    }
    if address["is_default"]:
        for a in addresses:
            a["is_default"] = False
    addresses.append(address)
    _save_addresses(user["id"], addresses)
    return {"success": True, "message": "Address added", "address": address, "addresses": addresses}


@app.put("/api/addresses/{address_id}")
def update_address(address_id: str, body: AddressBody, user=Depends(get_current_user)):
    fields = body.model_dump(exclude_none=True)
    _check_address_fields(fields)
    addresses = _addresses(user["id"])
    address = next((a for a in addresses if a["id"] == address_id), None)
    if address is None:
        raise HTTPException(status_code=404, detail="Address not found")
    if fields.get("is_default"):
        for a in addresses:
            a["is_default"] = False
    address.update(fields)
    _save_addresses(user["id"], addresses)
    return {"success": True, "message": "Address updated", "address": address, "addresses": addresses}


@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: str, user=Depends(get_current_user)):
    addresses = _addresses(user["id"])
    remaining = [a for a in addresses if a["id"] != address_id]
    if len(remaining) == len(addresses):
        raise HTTPException(status_code=404, detail="Address not found")
    _save_addresses(user["id"], remaining)
    return {"success": True, "message": "Address deleted", "addresses": remaining}


@app.put("/api/addresses/{address_id}/default")
def set_default_address(address_id: str, user=Depends(get_current_user)):
    addresses = _addresses(user["id"])
    if not any(a["id"] == address_id for a in addresses):
        raise HTTPException(status_code=404, detail="Address not found")
    for a in addresses:
        a["is_default"] = a["id"] == address_id
    _save_addresses(user["id"], addresses)
    return {"success": True, "message": "Default address updated", "addresses": addresses}


# ----------------------- Categories -----------------------
def _sub_categories(items: List[SubCategoryBody], existing: Optional[List[dict]] = None) -> List[dict]:
    known_ids = {s.get("slug"): s.get("id") for s in existing or []}
    result = []
    for s in items:
        slug = slugify(s.name)
        result.append({"id": known_ids.get(slug) or str(ObjectId()), "slug": slug, **s.model_dump()})
    return result


def _check_category_name(name: str, exclude_id: Optional[ObjectId] = None):
    query = {"$or": [{"name": name}, {"slug": slugify(name)}]}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if db["category"].find_one(query):
        raise HTTPException(status_code=400, detail="Category name already exists")


@app.get("/api/categories")
def list_categories(status: Optional[Literal["active", "inactive", "all"]] = "active",
                    sort_by: str = "sort_order", sort_order: Literal["asc", "desc"] = "asc"):
    query = {}
    if status == "active":
        query["is_active"] = True
    elif status == "inactive":
        query["is_active"] = False
    if sort_by not in ("sort_order", "name", "created_at"):
        sort_by = "sort_order"
    direction = 1 if sort_order == "asc" else -1
    categories = []
    for doc in db["category"].find(query).sort([(sort_by, direction), ("name", 1)]):
        category = serialize_doc(doc)
        category["product_count"] = db["product"].count_documents({"category_id": category["id"], "is_active": True})
        categories.append(category)
    return {"success": True, "categories": categories}


@app.get("/api/categories/{category_id}")
def get_category(category_id: str):
    category = serialize_doc(get_or_404("category", category_id, "Category"))
    category["product_count"] = db["product"].count_documents({"category_id": category["id"], "is_active": True})
    return {"success": True, "category": category}


@app.post("/api/categories", status_code=201)
def create_category(body: CategoryBody, admin=Depends(require_permission("manage_categories"))):
    if not body.name or not body.name.strip():
        raise HTTPException(status_code=400, detail="Category name is required")
    name = body.name.strip()
    _check_category_name(name)
    data = body.model_dump(exclude_none=True, exclude={"sub_categories"})
    data["name"] = name
    category = CategorySchema(slug=slugify(name), sub_categories=_sub_categories(body.sub_categories or []), **data)
    category_id = create_document("category", category)
    logger.info("Category %s created by %s", name, admin["email"])
    doc = db["category"].find_one({"_id": ObjectId(category_id)})
    return {"success": True, "message": "Category created", "category": serialize_doc(doc)}


@app.put("/api/categories/{category_id}")
def update_category(category_id: str, body: CategoryBody, admin=Depends(require_permission("manage_categories"))):
    existing = get_or_404("category", category_id, "Category")
    fields = body.model_dump(exclude_none=True, exclude={"sub_categories"})
    if "name" in fields:
        fields["name"] = fields["name"].strip()
        if not fields["name"]:
            raise HTTPException(status_code=400, detail="Category name is required")
        _check_category_name(fields["name"], existing["_id"])
        fields["slug"] = slugify(fields["name"])
    if body.sub_categories is not None:
        fields["sub_categories"] = _sub_categories(body.sub_categories, existing.get("sub_categories"))
    update_document("category", {"_id": existing["_id"]}, fields)
    doc = db["category"].find_one({"_id": existing["_id"]})
    return {"success": True, "message": "Category updated", "category": serialize_doc(doc)}


@app.post("/api/categories/{category_id}/image")
def upload_category_image(category_id: str, image: UploadFile = File(...),
                          admin=Depends(require_permission("manage_categories"))):
    existing = get_or_404("category", category_id, "Category")
    stored = save_upload(image, "categories", prefix="category")
    update_document("category", {"_id": existing["_id"]}, {"image": stored["url"]})
    return {"success": True, "message": "Category image uploaded", "image": stored["url"]}


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, admin=Depends(require_permission("manage_categories"))):
    existing = get_or_404("category", category_id, "Category")
    db["category"].delete_one({"_id": existing["_id"]})
    # products keep existing, they just lose their category
    result = db["product"].update_many({"category_id": category_id}, {"$unset": {"category_id": ""}})
    logger.info("Category %s deleted, %s products unassigned", category_id, result.modified_count)
    return {"success": True, "message": "Category deleted", "products_updated": result.modified_count}


# ----------------------- Products -----------------------
PRODUCT_SORT_FIELDS = ("created_at", "price", "name", "stock", "ratings.average")
LIST_PROJECTION = {"reviews": 0}


def _check_category_exists(category_id: Optional[str]):
    if category_id and not db["category"].find_one({"_id": to_object_id(category_id)}):
        raise HTTPException(status_code=400, detail="Category does not exist")


def _product_with_category(doc: dict) -> dict:
    product = serialize_doc(doc)
    category = None
    if product.get("category_id") and ObjectId.is_valid(product["category_id"]):
        category = db["category"].find_one({"_id": ObjectId(product["category_id"])}, {"name": 1, "slug": 1})
    product["category"] = serialize_doc(category) if category else None
    return product


@app.get("/api/products")
def list_products(
    page: int = 1,
    limit: int = 12,
    category: Optional[str] = None,
    sub_category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    search: Optional[str] = None,
    featured: Optional[bool] = None,
    stock_status: Optional[Literal["in-stock", "low-stock", "out-of-stock"]] = None,
    sort_by: str = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
):
    page, limit, skip = page_params(page, limit)
    query = {"is_active": True}
    if category:
        query["category_id"] = category
    if sub_category:
        query["sub_categories"] = sub_category
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}, {"tags": pattern}]
    if featured is not None:
        query["is_featured"] = featured
    if stock_status == "in-stock":
        query["stock"] = {"$gt": LOW_STOCK_THRESHOLD}
    elif stock_status == "low-stock":
        query["stock"] = {"$gte": 1, "$lte": LOW_STOCK_THRESHOLD}
    elif stock_status == "out-of-stock":
        query["stock"] = 0
    if sort_by not in PRODUCT_SORT_FIELDS:
        sort_by = "created_at"

    total = db["product"].count_documents(query)
    cursor = (
        db["product"].find(query, LIST_PROJECTION)
        .sort(sort_by, 1 if sort_order == "asc" else -1)
        .skip(skip)
        .limit(limit)
    )
    products = [serialize_doc(d) for d in cursor]
    result = paged("products", products, total, page, limit)
    result.update(success=True, has_next_page=page < result["total_pages"], has_prev_page=page > 1)
    return result


@app.get("/api/products/featured")
def featured_products(limit: int = 8):
    cursor = db["product"].find({"is_active": True, "is_featured": True}, LIST_PROJECTION).sort("created_at", -1).limit(limit)
    return {"success": True, "products": [serialize_doc(d) for d in cursor]}


@app.get("/api/products/search")
def search_products(q: Optional[str] = None, limit: int = 20):
    if not q or not q.strip():
        raise HTTPException(status_code=400, detail="Search query is required")
    pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
    query = {"is_active": True, "$or": [{"name": pattern}, {"description": pattern}, {"tags": pattern}]}
    cursor = db["product"].find(query, LIST_PROJECTION).limit(limit)
    products = [serialize_doc(d) for d in cursor]
    return {"success": True, "products": products, "count": len(products)}


@app.get("/api/products/category/{category_id}")
def products_by_category(category_id: str, limit: int = 20):
    cursor = db["product"].find({"category_id": category_id, "is_active": True}, LIST_PROJECTION).limit(limit)
    return {"success": True, "products": [serialize_doc(d) for d in cursor]}


@app.get("/api/products/reviews/recent")
def recent_reviews(limit: int = 6):
    reviews = []
    for product in db["product"].find({"is_active": True, "reviews": {"$ne": []}}, {"name": 1, "reviews": 1, "images": 1}):
        images = product.get("images") or []
        for review in product.get("reviews", []):
            reviews.append({
                **review,
                "product_id": str(product["_id"]),
                "product_name": product["name"],
                "product_image": images[0].get("url") if images else None,
            })
    reviews.sort(key=lambda r: as_aware(r["created_at"]), reverse=True)
    return {"success": True, "reviews": [serialize_doc(r) for r in reviews[:limit]]}


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    doc = get_or_404("product", product_id, "Product")
    return {"success": True, "product": _product_with_category(doc)}


@app.get("/api/products/{product_id}/reviews")
def list_reviews(product_id: str):
    doc = get_or_404("product", product_id, "Product", {"reviews": 1, "ratings": 1})
    reviews = sorted(doc.get("reviews", []), key=lambda r: as_aware(r["created_at"]), reverse=True)
    return {"success": True, "reviews": [serialize_doc(r) for r in reviews], "ratings": doc.get("ratings")}


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, body: ReviewBody, user=Depends(get_current_user)):
    if body.rating is None or not 1 <= body.rating <= 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")
    comment = (body.comment or "").strip()
    if len(comment) < 10:
        raise HTTPException(status_code=400, detail="Review comment must be at least 10 characters")
    product = get_or_404("product", product_id, "Product")
    reviews = product.get("reviews", [])
    if any(r.get("user_id") == user["id"] for r in reviews):
        raise HTTPException(status_code=400, detail="You have already reviewed this product")

    review = {
        "id": str(ObjectId()),
        "user_id": user["id"],
        "user_name": user.get("name"),
        "rating": body.rating,
        "comment": comment,
        "created_at": now_utc(),
    }
    reviews.append(review)
    average = math.floor(sum(r["rating"] for r in reviews) / len(reviews) * 10 + 0.5) / 10
    update_document(
        "product", {"_id": product["_id"]},
        {"ratings": {"average": average, "count": len(reviews)}},
        push={"reviews": review},
    )
    return {"success": True, "message": "Review added", "review": serialize_doc(review),
            "ratings": {"average": average, "count": len(reviews)}}


@app.post("/api/products", status_code=201)
def create_product(body: ProductCreateBody, admin=Depends(require_permission("manage_products"))):
    _check_category_exists(body.category_id)
    product_id = create_document("product", ProductSchema(**body.model_dump()))
    logger.info("Product %s created by %s", body.name, admin["email"])
    return {"success": True, "message": "Product created", "product": _product_with_category(
        db["product"].find_one({"_id": ObjectId(product_id)}))}


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, admin=Depends(require_permission("manage_products"))):
    existing = get_or_404("product", product_id, "Product")
    fields = body.model_dump(exclude_none=True)
    _check_category_exists(fields.get("category_id"))
    merged = {**existing, **fields}
    merged.pop("_id")
    try:
        ProductSchema(**merged)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors()[0]["msg"])
    update_document("product", {"_id": existing["_id"]}, fields)
    return {"success": True, "message": "Product updated",
            "product": _product_with_category(db["product"].find_one({"_id": existing["_id"]}))}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin=Depends(require_permission("manage_products"))):
    existing = get_or_404("product", product_id, "Product")
    db["product"].delete_one({"_id": existing["_id"]})
    for image in existing.get("images", []):
        delete_upload(os.path.join(UPLOAD_DIR, "products", image["filename"]), image.get("public_id"))
    logger.info("Product %s deleted by %s", product_id, admin["email"])
    return {"success": True, "message": "Product deleted"}


@app.post("/api/products/{product_id}/images")
def upload_product_images(product_id: str, images: List[UploadFile] = File(...),
                          admin=Depends(require_permission("manage_products"))):
    existing = get_or_404("product", product_id, "Product")
    if len(images) > 5:
        raise HTTPException(status_code=400, detail="At most 5 images per upload")
    added = []
    for upload in images:
        stored = save_upload(upload, "products", prefix="product")
        added.append({"id": str(ObjectId()), "url": stored["url"], "filename": stored["filename"],
                      "public_id": stored["public_id"], "uploaded_at": stored["uploaded_at"]})
    update_document("product", {"_id": existing["_id"]}, {}, push={"images": {"$each": added}})
    doc = db["product"].find_one({"_id": existing["_id"]}, {"images": 1})
    return {"success": True, "message": "Images uploaded", "images": serialize_doc(doc)["images"]}


@app.delete("/api/products/{product_id}/images/{image_id}")
def delete_product_image(product_id: str, image_id: str, admin=Depends(require_permission("manage_products"))):
    existing = get_or_404("product", product_id, "Product")
    images = existing.get("images", [])
    remaining = [i for i in images if i.get("id") != image_id]
    if len(remaining) == len(images):
        raise HTTPException(status_code=404, detail="Image not found")
    update_document("product", {"_id": existing["_id"]}, {"images": remaining})
    for image in images:
        if image.get("id") == image_id:
            delete_upload(os.path.join(UPLOAD_DIR, "products", image["filename"]), image.get("public_id"))
    return {"success": True, "message": "Image deleted", "images": serialize_doc({"images": remaining})["images"]}


# ----------------------- Bundles & gift boxes -----------------------
def _list_sets(collection: str, active_only: bool) -> List[dict]:
    query = {"is_active": True} if active_only else {}
    return [serialize_doc(d) for d in get_documents(collection, query, sort=[("created_at", -1)])]


def _create_set(collection: str, body: BundleSchema) -> dict:
    set_id = create_document(collection, body)
    return serialize_doc(db[collection].find_one({"_id": ObjectId(set_id)}))


def _update_set(collection: str, set_id: str, body: ItemSetUpdateBody, label: str) -> dict:
    existing = get_or_404(collection, set_id, label)
    fields = body.model_dump(exclude_none=True)
    if "price" in fields and fields["price"] < 0:
        raise HTTPException(status_code=400, detail="Price cannot be negative")
    update_document(collection, {"_id": existing["_id"]}, fields)
    return serialize_doc(db[collection].find_one({"_id": existing["_id"]}))


def _delete_set(collection: str, set_id: str, label: str):
    existing = get_or_404(collection, set_id, label)
    db[collection].delete_one({"_id": existing["_id"]})


@app.get("/api/bundles")
def list_bundles():
    return {"success": True, "bundles": _list_sets("bundle", active_only=True)}


@app.get("/api/admin/bundles")
def admin_list_bundles(admin=Depends(require_permission("manage_products"))):
    return {"success": True, "bundles": _list_sets("bundle", active_only=False)}


@app.get("/api/bundles/{bundle_id}")
def get_bundle(bundle_id: str):
    return {"success": True, "bundle": serialize_doc(get_or_404("bundle", bundle_id, "Bundle"))}


@app.post("/api/bundles", status_code=201)
def create_bundle(body: BundleSchema, admin=Depends(require_permission("manage_products"))):
    return {"success": True, "message": "Bundle created", "bundle": _create_set("bundle", body)}


@app.put("/api/bundles/{bundle_id}")
def update_bundle(bundle_id: str, body: ItemSetUpdateBody, admin=Depends(require_permission("manage_products"))):
    return {"success": True, "message": "Bundle updated", "bundle": _update_set("bundle", bundle_id, body, "Bundle")}


@app.delete("/api/bundles/{bundle_id}")
def delete_bundle(bundle_id: str, admin=Depends(require_permission("manage_products"))):
    _delete_set("bundle", bundle_id, "Bundle")
    return {"success": True, "message": "Bundle deleted"}


@app.get("/api/giftboxes")
def list_gift_boxes():
    return {"success": True, "gift_boxes": _list_sets("giftbox", active_only=True)}


@app.get("/api/admin/giftboxes")
def admin_list_gift_boxes(admin=Depends(require_permission("manage_products"))):
    return {"success": True, "gift_boxes": _list_sets("giftbox", active_only=False)}


@app.get("/api/giftboxes/{gift_box_id}")
def get_gift_box(gift_box_id: str):
    return {"success": True, "gift_box": serialize_doc(get_or_404("giftbox", gift_box_id, "Gift box"))}


@app.post("/api/giftboxes", status_code=201)
def create_gift_box(body: GiftBoxSchema, admin=Depends(require_permission("manage_products"))):
    return {"success": True, "message": "Gift box created", "gift_box": _create_set("giftbox", body)}


@app.put("/api/giftboxes/{gift_box_id}")
def update_gift_box(gift_box_id: str, body: ItemSetUpdateBody, admin=Depends(require_permission("manage_products"))):
    return {"success": True, "message": "Gift box updated",
            "gift_box": _update_set("giftbox", gift_box_id, body, "Gift box")}


@app.delete("/api/giftboxes/{gift_box_id}")
def delete_gift_box(gift_box_id: str, admin=Depends(require_permission("manage_products"))):
    _delete_set("giftbox", gift_box_id, "Gift box")
    return {"success": True, "message": "Gift box deleted"}


# ----------------------- Cart -----------------------
SET_LABELS = {"bundle": "Bundle", "giftbox": "Gift box"}


def _raw_user(user: dict) -> dict:
    return db["user"].find_one({"_id": ObjectId(user["id"])}, {"cart": 1})


def _cart_response(user: dict, message: Optional[str] = None, **extra) -> dict:
    response = {"success": True, **aggregate_cart(_raw_user(user)), **extra}
    if message:
        response["message"] = message
    return response


def _active_product(product_id: str) -> dict:
    product = get_or_404("product", product_id, "Product")
    if not product.get("is_active", True):
        raise HTTPException(status_code=400, detail="Product is not available")
    return product


def _active_set(kind: str, set_id: str) -> dict:
    source = get_or_404(kind, set_id, SET_LABELS[kind])
    if not source.get("is_active", True):
        raise HTTPException(status_code=400, detail=f"{SET_LABELS[kind]} is not available")
    return source


def _check_quantity(quantity: int):
    if quantity < 1:
        raise HTTPException(status_code=400, detail="Quantity must be greater than 0")


@app.get("/api/cart")
def get_cart(user=Depends(get_current_user)):
    return _cart_response(user)


@app.post("/api/cart/add")
def add_to_cart(body: CartProductBody, user=Depends(get_current_user)):
    _check_quantity(body.quantity)
    product = _active_product(body.product_id)
    product_id = str(product["_id"])
    cart = _raw_user(user).get("cart", [])
    existing = find_item(cart, "product", product_id)
    total_quantity = body.quantity + (existing["quantity"] if existing else 0)
    if total_quantity > product.get("stock", 0):
        raise HTTPException(status_code=400, detail=f"Insufficient stock. Available: {product.get('stock', 0)}")
    if existing:
        existing["quantity"] = total_quantity
    else:
        cart.append({"kind": "product", "product_id": product_id, "quantity": body.quantity, "added_at": now_utc()})
    save_cart(user["id"], cart)
    return _cart_response(user, "Product added to cart", added_quantity=body.quantity,
                          total_quantity_in_cart=total_quantity)


@app.put("/api/cart/update")
def update_cart_item(body: CartProductBody, user=Depends(get_current_user)):
    _check_quantity(body.quantity)
    product = _active_product(body.product_id)
    cart = _raw_user(user).get("cart", [])
    existing = find_item(cart, "product", str(product["_id"]))
    if existing is None:
        raise HTTPException(status_code=404, detail="Product not in cart")
    if body.quantity > product.get("stock", 0):
        raise HTTPException(status_code=400, detail=f"Insufficient stock. Available: {product.get('stock', 0)}")
    existing["quantity"] = body.quantity
    save_cart(user["id"], cart)
    return _cart_response(user, "Cart updated")


@app.delete("/api/cart/remove/{product_id}")
def remove_from_cart(product_id: str, user=Depends(get_current_user)):
    return _remove_item(user, "product", product_id, "Product")


def _remove_item(user: dict, kind: str, ref_id: str, label: str) -> dict:
    cart = _raw_user(user).get("cart", [])
    remaining = [i for i in cart if item_ref(i) != (kind, ref_id)]
    if len(remaining) == len(cart):
        raise HTTPException(status_code=404, detail=f"{label} not in cart")
    save_cart(user["id"], remaining)
    return _cart_response(user, f"{label} removed from cart")


def _add_set(user: dict, kind: str, set_id: str, quantity: int) -> dict:
    _check_quantity(quantity)
    source = _active_set(kind, set_id)
    cart = _raw_user(user).get("cart", [])
    existing = find_item(cart, kind, str(source["_id"]))
    if existing:
        existing["quantity"] += quantity
    else:
        cart.append(snapshot_item(kind, source, quantity))
    save_cart(user["id"], cart)
    return _cart_response(user, f"{SET_LABELS[kind]} added to cart")


def _update_set_quantity(user: dict, kind: str, set_id: str, quantity: int) -> dict:
    _check_quantity(quantity)
    cart = _raw_user(user).get("cart", [])
    existing = find_item(cart, kind, set_id)
    if existing is None:
        raise HTTPException(status_code=404, detail=f"{SET_LABELS[kind]} not in cart")
    existing["quantity"] = quantity
    save_cart(user["id"], cart)
    return _cart_response(user, "Cart updated")


@app.post("/api/cart/add-bundle")
def add_bundle_to_cart(body: CartBundleBody, user=Depends(get_current_user)):
    return _add_set(user, "bundle", body.bundle_id, body.quantity)


@app.put("/api/cart/update-bundle")
def update_bundle_in_cart(body: CartBundleBody, user=Depends(get_current_user)):
    return _update_set_quantity(user, "bundle", body.bundle_id, body.quantity)


@app.delete("/api/cart/remove-bundle/{bundle_id}")
def remove_bundle_from_cart(bundle_id: str, user=Depends(get_current_user)):
    return _remove_item(user, "bundle", bundle_id, "Bundle")


@app.post("/api/cart/add-giftbox")
def add_gift_box_to_cart(body: CartGiftBoxBody, user=Depends(get_current_user)):
    return _add_set(user, "giftbox", body.gift_box_id, body.quantity)


@app.put("/api/cart/update-giftbox")
def update_gift_box_in_cart(body: CartGiftBoxBody, user=Depends(get_current_user)):
    return _update_set_quantity(user, "giftbox", body.gift_box_id, body.quantity)


@app.delete("/api/cart/remove-giftbox/{gift_box_id}")
def remove_gift_box_from_cart(gift_box_id: str, user=Depends(get_current_user)):
    return _remove_item(user, "giftbox", gift_box_id, "Gift box")


@app.delete("/api/cart/clear")
def clear_cart(user=Depends(get_current_user)):
    save_cart(user["id"], [])
    return {"success": True, "message": "Cart cleared", "cart": [], "cart_total": 0, "item_count": 0}


# ----------------------- Orders -----------------------
def _notify_new_order(order: dict, customer: dict, low_stock: List[dict]):
    # bank transfers are confirmed to the customer once the payment is approved
    if order["payment_info"]["method"] == "cod":
        send_order_confirmation_email(customer["email"], customer["name"], order)
    payment_verification = order["payment_info"]["status"] == "verification_pending"
    send_admin_order_notification(order, customer, payment_verification=payment_verification)
    for product in low_stock:
        send_low_stock_alert(product)


def _place_order(user: dict, data: OrderExtras, items: List[OrderItemBody], shipping_address: ShippingAddress,
                 payment_method: str, background_tasks: BackgroundTasks, screenshot: Optional[dict] = None) -> dict:
    """
    Validate items, price the order and persist it. Cash on delivery takes
    stock right away and confirms the order; bank transfers wait for an admin
    to approve the payment before any stock moves.
    """
    try:
        order_items, subtotal = build_order_items([i.model_dump() for i in items])
    except (ItemUnavailable, InsufficientStock) as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    pricing = calculate_pricing(subtotal)
    item_dicts = [i.model_dump() for i in order_items]

    status = "pending"
    history = [status_entry("pending", "Order placed")]
    payment_info = {"method": payment_method, "status": "pending"}
    low_stock = []
    stock_deducted = False
    if payment_method == "cod":
        try:
            low_stock = reserve_stock(item_dicts)
        except InsufficientStock as e:
            raise HTTPException(status_code=e.status_code, detail=str(e))
        stock_deducted = True
        status = "confirmed"
        history.append(status_entry("confirmed", "Cash on delivery order confirmed"))
    elif screenshot is not None:
        payment_info["status"] = "verification_pending"
        payment_info["payment_screenshot"] = screenshot

    try:
        order = OrderSchema(
            order_number=generate_order_number(),
            user_id=user["id"],
            items=item_dicts,
            shipping_address=shipping_address,
            pricing=pricing,
            payment_info=payment_info,
            status=status,
            status_history=history,
            stock_deducted=stock_deducted,
            **data.model_dump(include=set(OrderExtras.model_fields)),
        )
        order_id = create_document("order", order)
    except Exception:
        if stock_deducted:
            release_stock(item_dicts)
        raise

    update_document("user", {"_id": ObjectId(user["id"])}, {"cart": []})
    saved = serialize_doc(db["order"].find_one({"_id": ObjectId(order_id)}))
    logger.info("Order %s placed by %s (%s)", saved["order_number"], user["email"], payment_method)
    background_tasks.add_task(_notify_new_order, saved, user, low_stock)
    return saved


def _own_order(order_id: str, user: dict) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id), "user_id": user["id"]})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _tracking_view(order: dict) -> dict:
    return {
        "order_number": order["order_number"],
        "status": order["status"],
        "status_history": order.get("status_history", []),
        "tracking_info": order.get("tracking_info"),
        "delivery_date": order.get("delivery_date"),
        "created_at": order.get("created_at"),
        "items": order.get("items", []),
        "pricing": order.get("pricing"),
        "payment_status": order.get("payment_info", {}).get("status"),
    }


@app.post("/api/orders", status_code=201)
def create_order(body: CreateOrderBody, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    order = _place_order(user, body, body.items, body.shipping_address, body.payment_method, background_tasks)
    return {"success": True, "message": "Order placed successfully", "order": order}


@app.post("/api/orders/manual-payment", status_code=201)
def create_manual_payment_order(
    background_tasks: BackgroundTasks,
    order_data: str = Form(...),
    payment_screenshot: UploadFile = File(...),
    user=Depends(get_current_user),
):
    try:
        data = ManualOrderData.model_validate_json(order_data)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid order data: {e.errors()[0]['msg']}")
    screenshot = save_upload(payment_screenshot, "payment-screenshots", prefix="payment")
    try:
        order = _place_order(user, data, data.items, data.shipping_address, "bank_transfer", background_tasks,
                             screenshot=screenshot)
    except HTTPException:
        delete_upload(screenshot["path"], screenshot.get("public_id"))
        raise
    return {"success": True, "message": "Order placed. Payment will be verified shortly", "order": order}


@app.post("/api/orders/{order_id}/payment-screenshot")
def upload_payment_screenshot(order_id: str, background_tasks: BackgroundTasks,
                              payment_screenshot: UploadFile = File(...), user=Depends(get_current_user)):
    order = _own_order(order_id, user)
    if order["payment_info"]["method"] != "bank_transfer":
        raise HTTPException(status_code=400, detail="Payment screenshot only applies to bank transfer orders")
    if order["payment_info"]["status"] != "pending" or order["status"] == "cancelled":
        raise HTTPException(status_code=400, detail="Payment for this order can no longer be updated")
    screenshot = save_upload(payment_screenshot, "payment-screenshots", prefix="payment")
    update_document("order", {"_id": order["_id"]}, {
        "payment_info.status": "verification_pending",
        "payment_info.payment_screenshot": screenshot,
    })
    saved = serialize_doc(db["order"].find_one({"_id": order["_id"]}))
    background_tasks.add_task(send_admin_order_notification, saved, user, True)
    return {"success": True, "message": "Payment screenshot uploaded", "order": saved}


@app.get("/api/orders")
def list_my_orders(page: int = 1, limit: int = 10, status: Optional[OrderStatus] = None,
                   user=Depends(get_current_user)):
    page, limit, skip = page_params(page, limit)
    query = {"user_id": user["id"]}
    if status:
        query["status"] = status
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort("created_at", -1).skip(skip).limit(limit)
    result = paged("orders", [serialize_doc(o) for o in cursor], total, page, limit)
    result["success"] = True
    return result


@app.post("/api/orders/track")
def track_order(body: TrackOrderBody):
    if not body.order_number or not body.email:
        raise HTTPException(status_code=400, detail="Order number and email are required")
    order = db["order"].find_one({"order_number": body.order_number.strip()})
    customer = None
    if order and ObjectId.is_valid(order["user_id"]):
        customer = db["user"].find_one({"_id": ObjectId(order["user_id"])}, {"email": 1})
    if not customer or customer["email"] != body.email.strip().lower():
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "order": serialize_doc(_tracking_view(order))}


@app.get("/api/orders/{order_id}")
def get_my_order(order_id: str, user=Depends(get_current_user)):
    return {"success": True, "order": serialize_doc(_own_order(order_id, user))}


@app.get("/api/orders/{order_id}/tracking")
def order_tracking(order_id: str):
    order = get_or_404("order", order_id, "Order")
    return {"success": True, "tracking": serialize_doc(_tracking_view(order))}


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: CancelOrderBody, background_tasks: BackgroundTasks,
                 user=Depends(get_current_user)):
    order = _own_order(order_id, user)
    if order["status"] not in CANCELLABLE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Order cannot be cancelled once it is {order['status']}")
    reason = (body.reason or "").strip() or "Cancelled by customer"
    payment_status = order["payment_info"].get("status")
    fields = {
        "status": "cancelled",
        "cancel_reason": reason,
        "stock_deducted": False,
        "items": [{**item, "stock_taken": 0} for item in order["items"]],
    }
    if payment_status == "verification_pending":
        fields["payment_info.status"] = "failed"
        fields["payment_info.failure_reason"] = "Order cancelled by customer"
    result = update_document(
        "order",
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}, "payment_info.status": payment_status},
        fields,
        push={"status_history": status_entry("cancelled", reason, user["name"])},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=409, detail="Order status changed, please refresh")
    if order.get("stock_deducted"):
        release_stock(order["items"])
    background_tasks.add_task(order_rooms.order_status_update, str(order["_id"]), "cancelled", reason)
    return {"success": True, "message": "Order cancelled",
            "order": serialize_doc(db["order"].find_one({"_id": order["_id"]}))}


# ----------------------- Payment & contact -----------------------
@app.get("/api/payment/bank-details")
def bank_details():
    return {"success": True, "bank_details": BANK_DETAILS}


@app.post("/api/contact")
def contact(body: ContactBody, background_tasks: BackgroundTasks):
    fields = {k: (v or "").strip() for k, v in body.model_dump().items()}
    if not all(fields.values()):
        raise HTTPException(status_code=400, detail="Name, email, subject and message are required")
    background_tasks.add_task(send_contact_notification, fields)
    return {"success": True, "message": "Thank you for contacting us. We will get back to you soon."}


# ----------------------- Admin auth -----------------------
ADMIN_PROJECTION = {"password_hash": 0, "reset_password_token": 0, "reset_password_expires": 0}


def _admin_view(admin_id) -> dict:
    return serialize_doc(db["admin"].find_one({"_id": admin_id}, ADMIN_PROJECTION))


def _check_new_admin_fields(email: Optional[str], password: Optional[str]):
    if not email:
        raise HTTPException(status_code=400, detail="Email is required")
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


@app.post("/api/admin/create-first", status_code=201)
def create_first_admin(body: FirstAdminBody):
    if db["admin"].count_documents({}) > 0:
        raise HTTPException(status_code=403, detail="Admin already exists")
    if not body.name or not body.name.strip():
        raise HTTPException(status_code=400, detail="Name is required")
    _check_new_admin_fields(body.email, body.password)
    admin = AdminSchema(
        name=body.name.strip(),
        email=body.email.strip().lower(),
        password_hash=hash_password(body.password),
        role="super_admin",
        permissions=permissions_for_role("super_admin"),
    )
    admin_id = create_document("admin", admin)
    logger.info("First admin %s created", admin.email)
    token = create_token({"id": admin_id, "email": admin.email, "type": "admin"})
    return {"success": True, "message": "Super admin created", "token": token,
            "admin": _admin_view(ObjectId(admin_id))}


@app.post("/api/admin/login")
def admin_login(body: AdminLoginBody):
    if not body.email or not body.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    admin = db["admin"].find_one({"email": body.email.strip().lower()})
    if not admin:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not admin.get("is_active", True):
        raise HTTPException(status_code=401, detail="Admin account is deactivated")

    now = now_utc()
    lock_until = as_aware(admin.get("lock_until"))
    if lock_until and lock_until > now:
        raise HTTPException(status_code=423, detail="Account locked due to too many failed login attempts. Try again later")

    if not verify_password(body.password, admin.get("password_hash")):
        # an expired lock starts a fresh count
        attempts = 1 if lock_until else admin.get("login_attempts", 0) + 1
        fields = {"login_attempts": attempts, "lock_until": None}
        if attempts >= ADMIN_MAX_LOGIN_ATTEMPTS:
            fields["lock_until"] = now + timedelta(hours=ADMIN_LOCK_HOURS)
            logger.warning("Admin %s locked after %s failed logins", admin["email"], attempts)
        update_document("admin", {"_id": admin["_id"]}, fields)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    update_document("admin", {"_id": admin["_id"]}, {"login_attempts": 0, "lock_until": None, "last_login": now})
    token = create_token({"id": str(admin["_id"]), "email": admin["email"], "type": "admin"})
    return {"success": True, "message": "Login successful", "token": token, "admin": _admin_view(admin["_id"])}


@app.post("/api/admin/logout")
def admin_logout(admin=Depends(get_current_admin)):
    return {"success": True, "message": "Logged out"}


@app.get("/api/admin/profile")
def admin_profile(admin=Depends(get_current_admin)):
    return {"success": True, "admin": admin}


@app.put("/api/admin/profile")
def update_admin_profile(body: AdminProfileBody, admin=Depends(get_current_admin)):
    fields = body.model_dump(exclude_none=True)
    if "email" in fields:
        fields["email"] = fields["email"].strip().lower()
        if db["admin"].find_one({"email": fields["email"], "_id": {"$ne": ObjectId(admin["id"])}}):
            raise HTTPException(status_code=400, detail="Email already exists")
    if fields:
        update_document("admin", {"_id": ObjectId(admin["id"])}, fields)
    return {"success": True, "message": "Profile updated", "admin": _admin_view(ObjectId(admin["id"]))}


@app.put("/api/admin/change-password")
def change_admin_password(body: ChangePasswordBody, admin=Depends(get_current_admin)):
    if not body.current_password or not body.new_password:
        raise HTTPException(status_code=400, detail="Current and new password are required")
    if len(body.new_password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    stored = db["admin"].find_one({"_id": ObjectId(admin["id"])}, {"password_hash": 1})
    if not verify_password(body.current_password, stored.get("password_hash")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    update_document("admin", {"_id": stored["_id"]}, {"password_hash": hash_password(body.new_password)})
    return {"success": True, "message": "Password changed"}


@app.post("/api/admin/forgot-password")
def admin_forgot_password(body: ForgotPasswordBody, background_tasks: BackgroundTasks):
    admin = db["admin"].find_one({"email": body.email.strip().lower(), "is_active": True})
    if not admin:
        raise HTTPException(status_code=404, detail="No admin account with that email")
    otp = generate_otp()
    update_document("admin", {"_id": admin["_id"]}, {
        "reset_password_token": otp,
        "reset_password_expires": now_utc() + timedelta(minutes=OTP_TTL_MINUTES),
    })
    background_tasks.add_task(send_admin_password_reset_otp, admin["email"], otp, admin["name"])
    response = {"success": True, "message": "Password reset OTP sent to your email"}
    if APP_ENV == "development":
        response["otp"] = otp
    return response


@app.post("/api/admin/reset-password")
def admin_reset_password(body: ResetPasswordBody):
    if len(body.new_password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    now = now_utc()
    admin = next(
        (a for a in db["admin"].find({"reset_password_token": body.otp.strip()})
         if a.get("reset_password_expires") and as_aware(a["reset_password_expires"]) > now),
        None,
    )
    if not admin:
        raise HTTPException(status_code=400, detail="Invalid or expired OTP")
    update_document(
        "admin", {"_id": admin["_id"]},
        {"password_hash": hash_password(body.new_password), "reset_password_token": None,
         "reset_password_expires": None, "login_attempts": 0, "lock_until": None},
    )
    return {"success": True, "message": "Password reset successful"}


# ----------------------- Admin: admins -----------------------
@app.get("/api/admin/admins")
def list_admins(admin=Depends(require_permission("manage_admins"))):
    admins = [serialize_doc(a) for a in db["admin"].find({}, ADMIN_PROJECTION).sort("created_at", -1)]
    return {"success": True, "admins": admins}


@app.get("/api/admin/admins/stats")
def admin_stats(admin=Depends(require_permission("manage_admins"))):
    by_role = {role: db["admin"].count_documents({"role": role}) for role in get_args(AdminRole)}
    return {
        "success": True,
        "stats": {
            "total": db["admin"].count_documents({}),
            "active": db["admin"].count_documents({"is_active": True}),
            "by_role": by_role,
        },
    }


@app.get("/api/admin/admins/{admin_id}")
def get_admin(admin_id: str, admin=Depends(require_permission("manage_admins"))):
    return {"success": True, "admin": serialize_doc(get_or_404("admin", admin_id, "Admin", ADMIN_PROJECTION))}


@app.post("/api/admin/admins", status_code=201)
def create_admin(body: CreateAdminBody, admin=Depends(require_permission("manage_admins"))):
    if not body.name or not body.name.strip():
        raise HTTPException(status_code=400, detail="Name is required")
    _check_new_admin_fields(body.email, body.password)
    if body.role == "super_admin" and admin["role"] != "super_admin":
        raise HTTPException(status_code=403, detail="Only super admins can create super admins")
    email = body.email.strip().lower()
    if db["admin"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already exists")
    new_admin = AdminSchema(
        name=body.name.strip(),
        email=email,
        password_hash=hash_password(body.password),
        role=body.role,
        permissions=permissions_for_role(body.role),
        created_by=admin["id"],
        phone=body.phone,
        department=body.department,
    )
    admin_id = create_document("admin", new_admin)
    logger.info("Admin %s (%s) created by %s", email, body.role, admin["email"])
    return {"success": True, "message": "Admin created", "admin": _admin_view(ObjectId(admin_id))}


@app.put("/api/admin/admins/{admin_id}")
def update_admin(admin_id: str, body: UpdateAdminBody, admin=Depends(require_permission("manage_admins"))):
    target = get_or_404("admin", admin_id, "Admin", ADMIN_PROJECTION)
    is_self = str(target["_id"]) == admin["id"]
    fields = body.model_dump(exclude_none=True)
    if is_self and fields.get("role") not in (None, admin["role"]):
        raise HTTPException(status_code=400, detail="You cannot change your own role")
    if is_self and fields.get("is_active") is False:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    touches_super = target.get("role") == "super_admin" or fields.get("role") == "super_admin"
    if touches_super and admin["role"] != "super_admin":
        raise HTTPException(status_code=403, detail="Only super admins can modify super admins")

    if "role" in fields and fields["role"] != target.get("role"):
        fields["permissions"] = permissions_for_role(fields["role"])
    elif "permissions" in fields:
        unknown = set(fields["permissions"]) - set(ALL_PERMISSIONS)
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown permissions: {', '.join(sorted(unknown))}")
    if "name" in fields:
        fields["name"] = fields["name"].strip()
    update_document("admin", {"_id": target["_id"]}, fields)
    return {"success": True, "message": "Admin updated", "admin": _admin_view(target["_id"])}


@app.delete("/api/admin/admins/{admin_id}")
def delete_admin(admin_id: str, admin=Depends(require_permission("manage_admins"))):
    target = get_or_404("admin", admin_id, "Admin", ADMIN_PROJECTION)
    if str(target["_id"]) == admin["id"]:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    if target.get("role") == "super_admin":
        if admin["role"] != "super_admin":
            raise HTTPException(status_code=403, detail="Only super admins can delete super admins")
        if db["admin"].count_documents({"role": "super_admin"}) <= 1:
            raise HTTPException(status_code=400, detail="Cannot delete the last super admin")
    db["admin"].delete_one({"_id": target["_id"]})
    logger.info("Admin %s deleted by %s", target["email"], admin["email"])
    return {"success": True, "message": "Admin deleted"}


# ----------------------- Admin: users -----------------------
@app.get("/api/admin/users")
def list_users(page: int = 1, limit: int = 20, search: Optional[str] = None,
               status: Optional[Literal["active", "inactive"]] = None,
               admin=Depends(require_permission("manage_users"))):
    page, limit, skip = page_params(page, limit)
    admin_emails = [a["email"] for a in db["admin"].find({}, {"email": 1})]
    query = {"email": {"$nin": admin_emails}}
    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}, {"phone_number": pattern}]
    if status:
        query["is_active"] = status == "active"
    total = db["user"].count_documents(query)
    cursor = db["user"].find(query, {"otp": 0, "cart": 0}).sort("created_at", -1).skip(skip).limit(limit)
    users = []
    for doc in cursor:
        user = serialize_doc(doc)
        user["order_count"] = db["order"].count_documents({"user_id": user["id"]})
        users.append(user)
    result = paged("users", users, total, page, limit)
    result["success"] = True
    return result


@app.get("/api/admin/users/stats")
def user_stats(admin=Depends(require_permission("manage_users"))):
    now = now_utc()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    created = [as_aware(u.get("created_at")) for u in db["user"].find({}, {"created_at": 1})]
    user_ids = {str(u["_id"]) for u in db["user"].find({}, {"_id": 1})}
    with_orders = user_ids & set(db["order"].distinct("user_id"))
    return {
        "success": True,
        "stats": {
            "total": len(created),
            "active": db["user"].count_documents({"is_active": True}),
            "verified": db["user"].count_documents({"is_verified": True}),
            "new_this_month": sum(1 for c in created if c and c >= month_start),
            "with_orders": len(with_orders),
        },
    }


@app.put("/api/admin/users/{user_id}/status")
def set_user_status(user_id: str, body: UserStatusBody, admin=Depends(require_permission("manage_users"))):
    target = get_or_404("user", user_id, "User", {"otp": 0, "cart": 0})
    update_document("user", {"_id": target["_id"]}, {"is_active": body.is_active})
    logger.info("User %s %s by %s", target["email"], "activated" if body.is_active else "deactivated", admin["email"])
    target["is_active"] = body.is_active
    return {"success": True, "message": "User status updated", "user": serialize_doc(target)}


# ----------------------- Admin: dashboard -----------------------
@app.get("/api/admin/dashboard")
def dashboard(admin=Depends(require_permission("view_analytics"))):
    now = now_utc()
    year_ago = now - timedelta(days=365)
    revenue = 0.0
    monthly = {}
    for order in db["order"].find({"payment_info.status": "completed"}, {"pricing.total": 1, "created_at": 1}):
        total = order.get("pricing", {}).get("total", 0)
        revenue += total
        created = as_aware(order.get("created_at"))
        if created and created >= year_ago:
            key = (created.year, created.month)
            bucket = monthly.setdefault(key, {"year": created.year, "month": created.month, "revenue": 0.0, "orders": 0})
            bucket["revenue"] = round(bucket["revenue"] + total, 2)
            bucket["orders"] += 1

    recent = [serialize_doc(o) for o in db["order"].find({}, {"status_history": 0}).sort("created_at", -1).limit(5)]
    low_stock = db["product"].find(
        {"is_active": True, "stock": {"$lt": LOW_STOCK_THRESHOLD}}, {"name": 1, "stock": 1, "price": 1}
    ).sort("stock", 1).limit(10)
    return {
        "success": True,
        "stats": {
            "total_users": db["user"].count_documents({}),
            "total_products": db["product"].count_documents({}),
            "active_products": db["product"].count_documents({"is_active": True}),
            "total_orders": db["order"].count_documents({}),
            "orders_by_status": {s: db["order"].count_documents({"status": s}) for s in ORDER_STATUSES},
            "pending_payments": db["order"].count_documents({"payment_info.status": "verification_pending"}),
            "total_revenue": round(revenue, 2),
        },
        "monthly_revenue": [monthly[k] for k in sorted(monthly)],
        "recent_orders": attach_users(recent, fields=("name", "email")),
        "low_stock_products": [serialize_doc(p) for p in low_stock],
    }


# ----------------------- Admin: orders -----------------------
def _admin_order_query(status: Optional[str], payment_status: Optional[str], payment_method: Optional[str],
                       search: Optional[str], start_date: Optional[datetime], end_date: Optional[datetime]) -> dict:
    query = {}
    if status:
        query["status"] = status
    if payment_status:
        query["payment_info.status"] = payment_status
    if payment_method:
        query["payment_info.method"] = payment_method
    if search and search.strip():
        query["order_number"] = {"$regex": re.escape(search.strip()), "$options": "i"}
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = naive_utc(start_date)
        if end_date:
            query["created_at"]["$lte"] = naive_utc(end_date)
    return query


@app.get("/api/admin/orders")
def admin_list_orders(
    page: int = 1,
    limit: int = 20,
    status: Optional[OrderStatus] = None,
    payment_status: Optional[str] = None,
    payment_method: Optional[PaymentMethod] = None,
    search: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    admin=Depends(require_permission("manage_orders")),
):
    page, limit, skip = page_params(page, limit)
    query = _admin_order_query(status, payment_status, payment_method, search, start_date, end_date)
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort("created_at", -1).skip(skip).limit(limit)
    orders = attach_users([serialize_doc(o) for o in cursor])
    result = paged("orders", orders, total, page, limit)
    result["success"] = True
    return result


@app.get("/api/admin/orders/export")
def export_orders(
    status: Optional[OrderStatus] = None,
    payment_status: Optional[str] = None,
    payment_method: Optional[PaymentMethod] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    admin=Depends(require_permission("manage_orders")),
):
    query = _admin_order_query(status, payment_status, payment_method, None, start_date, end_date)
    orders = attach_users([serialize_doc(o) for o in db["order"].find(query).sort("created_at", -1)])
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["Order Number", "Customer Name", "Email", "Phone", "Date", "Status", "Payment Method",
                     "Payment Status", "Total Amount", "Items Count"])
    for o in orders:
        customer = o.get("user") or {}
        writer.writerow([
            o["order_number"],
            customer.get("name") or "",
            customer.get("email") or "",
            o["shipping_address"].get("phone_number") or customer.get("phone_number") or "",
            o.get("created_at", "")[:10],
            o["status"],
            o["payment_info"]["method"],
            o["payment_info"]["status"],
            o["pricing"]["total"],
            len(o.get("items", [])),
        ])
    filename = f"orders-{now_utc().strftime('%Y-%m-%d')}.csv"
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/admin/orders/pending-payments")
def pending_payments(admin=Depends(require_permission("manage_orders"))):
    query = {"payment_info.status": "verification_pending", "status": {"$ne": "cancelled"}}
    cursor = db["order"].find(query).sort("created_at", 1)
    orders = attach_users([serialize_doc(o) for o in cursor])
    return {"success": True, "orders": orders, "count": len(orders)}


@app.get("/api/admin/orders/{order_id}")
def admin_get_order(order_id: str, admin=Depends(require_permission("manage_orders"))):
    order = attach_users([serialize_doc(get_or_404("order", order_id, "Order"))])[0]
    verified_by = order["payment_info"].get("verified_by")
    if verified_by and ObjectId.is_valid(verified_by):
        verifier = db["admin"].find_one({"_id": ObjectId(verified_by)}, {"name": 1, "email": 1})
        order["payment_info"]["verified_by_admin"] = serialize_doc(verifier) if verifier else None
    return {"success": True, "order": order}


@app.put("/api/admin/orders/{order_id}/status")
def admin_update_order_status(order_id: str, body: OrderStatusBody, background_tasks: BackgroundTasks,
                              admin=Depends(require_permission("manage_orders"))):
    order = get_or_404("order", order_id, "Order")
    fields = {"status": body.status}
    for key in ("tracking_number", "carrier", "tracking_url"):
        value = getattr(body, key)
        if value:
            fields[f"tracking_info.{key}"] = value
    if body.status == "delivered":
        fields["delivery_date"] = now_utc()
    note = body.note or f"Status updated to {body.status}"
    update_document("order", {"_id": order["_id"]}, fields,
                    push={"status_history": status_entry(body.status, note, admin["name"])})
    logger.info("Order %s moved %s -> %s by %s", order["order_number"], order["status"], body.status, admin["email"])
    background_tasks.add_task(order_rooms.order_status_update, order_id, body.status, note, body.tracking_number)
    saved = attach_users([serialize_doc(db["order"].find_one({"_id": order["_id"]}))])[0]
    return {"success": True, "message": "Order status updated", "order": saved}


@app.put("/api/admin/orders/{order_id}/verify-payment")
def verify_payment(order_id: str, body: VerifyPaymentBody, background_tasks: BackgroundTasks,
                   admin=Depends(require_permission("manage_orders"))):
    order = get_or_404("order", order_id, "Order")
    if order["payment_info"].get("status") != "verification_pending" or order["status"] == "cancelled":
        raise HTTPException(status_code=400, detail="Order is not awaiting payment verification")

    now = now_utc()
    fields = {
        "payment_info.verified_by": admin["id"],
        "payment_info.verified_at": now,
        "payment_info.admin_notes": body.admin_notes,
    }
    items = order["items"]
    low_stock = []
    if body.approved:
        new_status = "confirmed"
        note = "Payment verified and approved"
        low_stock = deduct_stock(items)
        fields.update({"payment_info.status": "completed", "payment_info.paid_at": now, "status": new_status,
                       "items": items, "stock_deducted": any(i.get("stock_taken") for i in items)})
    else:
        new_status = "cancelled"
        note = f"Payment rejected: {body.admin_notes}" if body.admin_notes else "Payment rejected"
        fields.update({"payment_info.status": "failed", "status": new_status,
                       "payment_info.failure_reason": body.admin_notes or "Payment rejected",
                       "cancel_reason": "Payment verification failed"})

    result = update_document(
        "order",
        {"_id": order["_id"], "payment_info.status": "verification_pending", "status": {"$ne": "cancelled"}},
        fields,
        push={"status_history": status_entry(new_status, note, admin["name"])},
    )
    if result.matched_count == 0:
        release_stock(items)
        raise HTTPException(status_code=409, detail="Payment was already processed")

    saved = serialize_doc(db["order"].find_one({"_id": order["_id"]}))
    logger.info("Payment for %s %s by %s", order["order_number"], "approved" if body.approved else "rejected",
                admin["email"])

    customer = db["user"].find_one({"_id": to_object_id(order["user_id"])}, {"name": 1, "email": 1})
    if body.approved and customer:
        background_tasks.add_task(send_order_confirmation_email, customer["email"], customer["name"], saved)
    for product in low_stock:
        background_tasks.add_task(send_low_stock_alert, product)
    background_tasks.add_task(order_rooms.order_status_update, order_id, new_status, note)
    return {"success": True, "message": f"Payment {'approved' if body.approved else 'rejected'}", "order": saved}


# ----------------------- Live order updates -----------------------
@app.websocket("/ws/orders")
async def orders_socket(websocket: WebSocket):
    await order_socket(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
