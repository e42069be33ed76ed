"""
Order domain helpers: item validation, pricing, order numbers and stock.

Stock is only ever changed with single-document atomic updates. Taking stock
uses a guarded decrement ({"stock": {"$gte": qty}}), so two concurrent
orders can never push a product below zero; a multi-product reservation that
fails part way gives back what it already took.
"""
import logging
import random
import string
import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pymongo import ReturnDocument

from config import FREE_SHIPPING_ABOVE, LOW_STOCK_THRESHOLD, SHIPPING_FEE, TAX_RATE
from database import db, next_sequence
from schemas import OrderItem, Pricing, StatusEntry

logger = logging.getLogger(__name__)


class ItemUnavailable(ValueError):
    status_code = 400


class ItemNotFound(ItemUnavailable):
    status_code = 404


class InsufficientStock(ValueError):
    status_code = 400


def round_money(value: float) -> float:
    return round(value, 2)


def calculate_pricing(subtotal: float, discount: float = 0) -> Pricing:
    """18% tax on the subtotal; shipping is free above 1000, otherwise 50."""
    subtotal = round_money(subtotal)
    tax = round_money(subtotal * TAX_RATE)
    shipping = 0 if subtotal > FREE_SHIPPING_ABOVE else SHIPPING_FEE
    total = round_money(subtotal + tax + shipping - discount)
    return Pricing(subtotal=subtotal, tax=tax, shipping=shipping, discount=discount, total=total)


def generate_order_number() -> str:
    """ORD + last 8 digits of the ms timestamp + 4 digit sequence + 3 char suffix."""
    timestamp = str(int(time.time() * 1000))[-8:]
    seq = next_sequence("order_number") % 10000
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=3))
    return f"ORD{timestamp}{seq:04d}{suffix}"


def status_entry(status: str, note: Optional[str] = None, updated_by: Optional[str] = None) -> dict:
    return StatusEntry(
        status=status, note=note, updated_by=updated_by, timestamp=datetime.now(timezone.utc)
    ).model_dump()


def _lookup(collection: str, ref_id: Optional[str]) -> Optional[dict]:
    try:
        return db[collection].find_one({"_id": ObjectId(ref_id)})
    except (InvalidId, TypeError):
        return None


def build_order_items(items: List[dict]) -> Tuple[List[OrderItem], float]:
    """
    Resolve requested items {type, product_id|bundle_id|gift_box_id, quantity}
    against the catalog, checking availability. Returns the denormalized
    order items and the subtotal. Stock is checked here but not taken.
    """
    if not items:
        raise ItemUnavailable("Order must contain at least one item")

    order_items = []
    subtotal = 0.0
    for item in items:
        kind = item.get("type", "product")
        quantity = int(item.get("quantity") or 0)
        if quantity < 1:
            raise ItemUnavailable("Quantity must be greater than 0")

        if kind == "product":
            product = _lookup("product", item.get("product_id"))
            if not product:
                raise ItemNotFound(f"Product {item.get('product_id')} not found")
            if not product.get("is_active", True):
                raise ItemUnavailable(f"Product {product['name']} is not available")
            if product.get("stock", 0) < quantity:
                raise InsufficientStock(
                    f"Insufficient stock for {product['name']}. "
                    f"Available: {product.get('stock', 0)}, Requested: {quantity}"
                )
            images = product.get("images") or []
            order_items.append(OrderItem(
                type="product",
                product_id=str(product["_id"]),
                name=product["name"],
                price=product["price"],
                quantity=quantity,
                image=images[0].get("url") if images else None,
            ))
            subtotal += product["price"] * quantity
        elif kind in ("bundle", "giftbox"):
            id_field = "bundle_id" if kind == "bundle" else "gift_box_id"
            label = "Bundle" if kind == "bundle" else "Gift box"
            source = _lookup(kind, item.get(id_field))
            if not source:
                raise ItemUnavailable(f"{label} not found")
            if not source.get("is_active", True):
                raise ItemUnavailable(f"{label} {source['name']} is not available")
            order_items.append(OrderItem(
                type=kind,
                name=source["name"],
                price=source["price"],
                quantity=quantity,
                **{id_field: str(source["_id"])},
            ))
            subtotal += source["price"] * quantity
        else:
            raise ItemUnavailable("Invalid item type or missing item data")

    return order_items, subtotal


def _product_items(order_items: List[dict]) -> List[dict]:
    return [i for i in order_items if i.get("type", "product") == "product" and i.get("product_id")]


def _take(product_id: ObjectId, quantity: int) -> Optional[dict]:
    return db["product"].find_one_and_update(
        {"_id": product_id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}},
        return_document=ReturnDocument.AFTER,
    )


def reserve_stock(order_items: List[dict]) -> List[dict]:
    """
    Take stock for every product line or none, recording each line's
    `stock_taken`. Raises InsufficientStock after giving back anything
    already taken. Returns the products that ended up at or below the
    low-stock threshold.
    """
    low = []
    lines = _product_items(order_items)
    for item in lines:
        product_id, quantity = ObjectId(item["product_id"]), int(item["quantity"])
        updated = _take(product_id, quantity)
        if updated is None:
            release_stock(lines)
            current = db["product"].find_one({"_id": product_id}, {"name": 1, "stock": 1}) or {}
            logger.warning("Stock reservation failed for product %s", product_id)
            raise InsufficientStock(
                f"Insufficient stock for {current.get('name', product_id)}. "
                f"Available: {current.get('stock', 0)}, Requested: {quantity}"
            )
        item["stock_taken"] = quantity
        if 0 < updated.get("stock", 0) <= LOW_STOCK_THRESHOLD:
            low.append(updated)
    return low


def deduct_stock(order_items: List[dict]) -> List[dict]:
    """
    Take stock for an order whose payment was already accepted. Lines that
    cannot be covered are logged and left with stock_taken 0 rather than
    failing the order.
    """
    low = []
    for item in _product_items(order_items):
        product_id, quantity = ObjectId(item["product_id"]), int(item["quantity"])
        updated = _take(product_id, quantity)
        if updated is None:
            logger.warning("Stock shortfall deducting %s units of product %s", quantity, product_id)
            item["stock_taken"] = 0
            continue
        item["stock_taken"] = quantity
        if 0 < updated.get("stock", 0) <= LOW_STOCK_THRESHOLD:
            low.append(updated)
    return low


def release_stock(order_items: List[dict]):
    """Give back exactly what each line took and reset its stock_taken."""
    for item in _product_items(order_items):
        quantity = int(item.get("stock_taken") or 0)
        if quantity:
            db["product"].update_one({"_id": ObjectId(item["product_id"])}, {"$inc": {"stock": quantity}})
        item["stock_taken"] = 0
