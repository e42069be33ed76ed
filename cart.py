"""
Cart aggregation.

A user's cart holds three kinds of items: product references, and bundle /
gift box snapshots (id, name, price taken when they were added). Reading
the cart re-validates every item against its source collection, drops what
is gone or deactivated, refreshes snapshots and computes the totals.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from bson.errors import InvalidId
from bson.objectid import ObjectId

from database import db, serialize_doc, update_document

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = {
    "bundle": ("bundle_info", "bundle_id", "bundle_name", "bundle_price", "bundle"),
    "giftbox": ("gift_box_info", "gift_box_id", "gift_box_name", "gift_box_price", "giftbox"),
}


def _oid(value) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def item_ref(item: dict) -> Tuple[str, Optional[str]]:
    """(kind, referenced id) of a stored cart item."""
    kind = item.get("kind", "product")
    if kind == "product":
        return kind, item.get("product_id")
    info_field, id_field = SNAPSHOT_FIELDS[kind][:2]
    return kind, (item.get(info_field) or {}).get(id_field)


def find_item(cart: List[dict], kind: str, ref_id: str) -> Optional[dict]:
    for item in cart:
        if item_ref(item) == (kind, ref_id):
            return item
    return None


def snapshot_item(kind: str, source: dict, quantity: int) -> dict:
    info_field, id_field, name_field, price_field, _ = SNAPSHOT_FIELDS[kind]
    return {
        "kind": kind,
        "product_id": None,
        info_field: {
            id_field: str(source["_id"]),
            name_field: source["name"],
            price_field: source["price"],
        },
        "quantity": quantity,
        "added_at": datetime.now(timezone.utc),
    }


def save_cart(user_id: str, cart: List[dict]):
    update_document("user", {"_id": ObjectId(user_id)}, {"cart": cart})


def _resolve_product(item: dict) -> Optional[dict]:
    pid = _oid(item.get("product_id"))
    if pid is None:
        return None
    product = db["product"].find_one(
        {"_id": pid}, {"name": 1, "price": 1, "images": 1, "stock": 1, "is_active": 1}
    )
    if not product or not product.get("is_active", True):
        return None
    product = serialize_doc(product)
    return {
        "kind": "product",
        "product_id": product["id"],
        "product": product,
        "name": product["name"],
        "price": product["price"],
        "quantity": item["quantity"],
        "added_at": item.get("added_at"),
    }


def _resolve_snapshot(item: dict) -> Tuple[Optional[dict], bool]:
    """Returns (resolved item, snapshot changed)."""
    kind = item["kind"]
    info_field, id_field, name_field, price_field, collection = SNAPSHOT_FIELDS[kind]
    info = item.get(info_field) or {}
    source_id = _oid(info.get(id_field))
    source = db[collection].find_one({"_id": source_id}) if source_id else None
    if not source or not source.get("is_active", True):
        return None, True
    fresh = {id_field: str(source["_id"]), name_field: source["name"], price_field: source["price"]}
    changed = fresh != {id_field: info.get(id_field), name_field: info.get(name_field), price_field: info.get(price_field)}
    return {
        "kind": kind,
        info_field: fresh,
        "name": source["name"],
        "price": source["price"],
        "quantity": item["quantity"],
        "added_at": item.get("added_at"),
    }, changed


def aggregate_cart(user: dict) -> dict:
    """
    Validate the stored cart of `user` (a raw user document) and compute
    cart_total and item_count. Products count by quantity, bundles and gift
    boxes count as one item each. A pruned or refreshed cart is written back.
    """
    stored = user.get("cart", [])
    resolved = []
    kept = []
    dirty = False
    for item in stored:
        if item.get("kind", "product") == "product":
            entry, changed = _resolve_product(item), False
        else:
            entry, changed = _resolve_snapshot(item)
        if entry is None:
            logger.info("Dropping stale %s from cart of user %s", item.get("kind", "product"), user["_id"])
            dirty = True
            continue
        dirty = dirty or changed
        resolved.append(entry)
        if item.get("kind", "product") == "product":
            kept.append(item)
        else:
            info_field = SNAPSHOT_FIELDS[item["kind"]][0]
            kept.append({**item, info_field: entry[info_field]})

    if dirty:
        save_cart(str(user["_id"]), kept)

    cart_total = 0.0
    item_count = 0
    for entry in resolved:
        entry["line_total"] = round(entry["price"] * entry["quantity"], 2)
        cart_total += entry["line_total"]
        item_count += entry["quantity"] if entry["kind"] == "product" else 1

    return {
        "cart": [serialize_doc(e) for e in resolved],
        "cart_total": round(cart_total, 2),
        "item_count": item_count,
    }
