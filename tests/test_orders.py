import json
import os
import re

import pytest
from bson.objectid import ObjectId
from pydantic import ValidationError

from config import UPLOAD_DIR
from conftest import SHIPPING_ADDRESS
from orders import InsufficientStock, calculate_pricing, generate_order_number, reserve_stock
from schemas import Pricing

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def place_cod_order(client, user, items):
    return client.post("/api/orders", headers=user["headers"], json={
        "items": items,
        "shipping_address": SHIPPING_ADDRESS,
        "payment_method": "cod",
    })


def place_manual_order(client, user, items):
    order_data = json.dumps({"items": items, "shipping_address": SHIPPING_ADDRESS})
    return client.post(
        "/api/orders/manual-payment",
        headers=user["headers"],
        data={"order_data": order_data},
        files={"payment_screenshot": ("receipt.png", PNG, "image/png")},
    )


def stock_of(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]


# ----------------------- Pricing & numbering -----------------------
def test_pricing_adds_tax_and_shipping_below_threshold():
    pricing = calculate_pricing(400)
    assert pricing.tax == 72
    assert pricing.shipping == 50
    assert pricing.total == 522


def test_pricing_free_shipping_only_above_threshold():
    assert calculate_pricing(1000).shipping == 50
    pricing = calculate_pricing(1500)
    assert pricing.shipping == 0
    assert pricing.total == 1770


def test_pricing_rejects_inconsistent_total():
    with pytest.raises(ValidationError):
        Pricing(subtotal=100, tax=18, shipping=50, total=200)


def test_order_numbers_are_well_formed_and_unique():
    numbers = [generate_order_number() for _ in range(50)]
    assert all(re.match(r"^ORD\d{12}[A-Z0-9]{3}$", n) for n in numbers)
    assert len(set(numbers)) == len(numbers)


def test_reserve_stock_gives_back_partial_reservation(db, make_product):
    plenty = make_product(name="Sparklers", stock=20)
    scarce = make_product(name="Rockets", stock=1)
    items = [
        {"type": "product", "product_id": plenty, "quantity": 5},
        {"type": "product", "product_id": scarce, "quantity": 2},
    ]
    with pytest.raises(InsufficientStock):
        reserve_stock(items)
    assert stock_of(db, plenty) == 20
    assert stock_of(db, scarce) == 1


# ----------------------- Checkout -----------------------
def test_insufficient_stock_persists_nothing(client, db, user, make_product):
    product_id = make_product(stock=1)
    res = place_cod_order(client, user, [{"product_id": product_id, "quantity": 3}])
    assert res.status_code == 400
    assert "Insufficient stock" in res.json()["detail"]
    assert db["order"].count_documents({}) == 0
    assert stock_of(db, product_id) == 1


def test_unknown_product_is_404(client, user):
    res = place_cod_order(client, user, [{"product_id": str(ObjectId()), "quantity": 1}])
    assert res.status_code == 404


def test_cod_order_takes_stock_and_confirms(client, db, user, make_product):
    product_id = make_product(price=200, stock=10)
    res = place_cod_order(client, user, [{"product_id": product_id, "quantity": 2}])
    assert res.status_code == 201
    order = res.json()["order"]
    assert order["status"] == "confirmed"
    assert order["stock_deducted"] is True
    assert order["pricing"] == {"subtotal": 400, "tax": 72, "shipping": 50, "discount": 0, "total": 522}
    assert [h["status"] for h in order["status_history"]] == ["pending", "confirmed"]
    assert stock_of(db, product_id) == 8


def test_order_mixes_products_and_bundles(client, db, user, make_product, make_bundle):
    product_id = make_product(price=100, stock=5)
    bundle_id = make_bundle(price=1499)
    res = place_cod_order(client, user, [
        {"product_id": product_id, "quantity": 1},
        {"type": "bundle", "bundle_id": bundle_id, "quantity": 1},
    ])
    assert res.status_code == 201
    order = res.json()["order"]
    assert {i["type"] for i in order["items"]} == {"product", "bundle"}
    assert order["pricing"]["shipping"] == 0
    assert stock_of(db, product_id) == 4


def test_order_clears_cart(client, db, user, make_product):
    product_id = make_product()
    client.post("/api/cart/add", headers=user["headers"], json={"product_id": product_id, "quantity": 1})
    place_cod_order(client, user, [{"product_id": product_id, "quantity": 1}])
    assert db["user"].find_one({"_id": ObjectId(user["id"])})["cart"] == []


def test_bank_transfer_leaves_stock_until_approved(client, db, user, admin, make_product):
    product_id = make_product(stock=10)
    res = place_manual_order(client, user, [{"product_id": product_id, "quantity": 3}])
    assert res.status_code == 201
    order = res.json()["order"]
    assert order["status"] == "pending"
    assert order["payment_info"]["status"] == "verification_pending"
    assert order["payment_info"]["payment_screenshot"]["url"].startswith("/uploads/payment-screenshots/")
    assert stock_of(db, product_id) == 10

    res = client.put(f"/api/admin/orders/{order['id']}/verify-payment", headers=admin["headers"],
                     json={"approved": True, "admin_notes": "UTR matched"})
    assert res.status_code == 200
    approved = res.json()["order"]
    assert approved["status"] == "confirmed"
    assert approved["payment_info"]["status"] == "completed"
    assert approved["payment_info"]["verified_at"]
    assert approved["payment_info"]["verified_by"] == admin["id"]
    assert approved["stock_deducted"] is True
    assert stock_of(db, product_id) == 7


def test_rejected_payment_cancels_order(client, db, user, admin, make_product):
    product_id = make_product(stock=10)
    order = place_manual_order(client, user, [{"product_id": product_id, "quantity": 1}]).json()["order"]
    res = client.put(f"/api/admin/orders/{order['id']}/verify-payment", headers=admin["headers"],
                     json={"approved": False, "admin_notes": "Amount does not match"})
    assert res.status_code == 200
    rejected = res.json()["order"]
    assert rejected["status"] == "cancelled"
    assert rejected["payment_info"]["status"] == "failed"
    assert rejected["payment_info"]["admin_notes"] == "Amount does not match"
    assert stock_of(db, product_id) == 10


def test_payment_cannot_be_verified_twice(client, user, admin, make_product):
    product_id = make_product()
    order = place_manual_order(client, user, [{"product_id": product_id, "quantity": 1}]).json()["order"]
    url = f"/api/admin/orders/{order['id']}/verify-payment"
    assert client.put(url, headers=admin["headers"], json={"approved": True}).status_code == 200
    assert client.put(url, headers=admin["headers"], json={"approved": True}).status_code == 400


def test_screenshot_upload_moves_payment_to_verification(client, db, user, make_product):
    product_id = make_product()
    res = client.post("/api/orders", headers=user["headers"], json={
        "items": [{"product_id": product_id, "quantity": 1}],
        "shipping_address": SHIPPING_ADDRESS,
        "payment_method": "bank_transfer",
    })
    order = res.json()["order"]
    assert order["payment_info"]["status"] == "pending"

    res = client.post(f"/api/orders/{order['id']}/payment-screenshot", headers=user["headers"],
                      files={"payment_screenshot": ("proof.png", PNG, "image/png")})
    assert res.status_code == 200
    assert res.json()["order"]["payment_info"]["status"] == "verification_pending"


def test_screenshot_must_be_an_image(client, user, make_product):
    product_id = make_product()
    order_data = json.dumps({"items": [{"product_id": product_id, "quantity": 1}], "shipping_address": SHIPPING_ADDRESS})
    res = client.post("/api/orders/manual-payment", headers=user["headers"], data={"order_data": order_data},
                      files={"payment_screenshot": ("proof.pdf", b"%PDF-1.4", "application/pdf")})
    assert res.status_code == 400


def test_manual_order_rejected_for_stock_keeps_no_screenshot(client, db, user, make_product):
    folder = os.path.join(UPLOAD_DIR, "payment-screenshots")
    before = set(os.listdir(folder)) if os.path.isdir(folder) else set()
    res = place_manual_order(client, user, [{"product_id": make_product(stock=1), "quantity": 5}])
    assert res.status_code == 400
    after = set(os.listdir(folder)) if os.path.isdir(folder) else set()
    assert after == before
    assert db["order"].count_documents({}) == 0


def test_confirmation_email_waits_for_payment_approval(client, monkeypatch, user, admin, make_product):
    sent = []
    monkeypatch.setattr("main.send_order_confirmation_email", lambda email, name, order: sent.append(order["id"]))
    product_id = make_product()
    place_cod_order(client, user, [{"product_id": product_id, "quantity": 1}])
    assert len(sent) == 1

    res = client.post("/api/orders", headers=user["headers"], json={
        "items": [{"product_id": product_id, "quantity": 1}],
        "shipping_address": SHIPPING_ADDRESS,
        "payment_method": "bank_transfer",
    })
    assert res.status_code == 201
    manual = place_manual_order(client, user, [{"product_id": product_id, "quantity": 1}]).json()["order"]
    assert len(sent) == 1

    client.put(f"/api/admin/orders/{manual['id']}/verify-payment", headers=admin["headers"], json={"approved": True})
    assert sent[-1] == manual["id"]
    assert len(sent) == 2


def test_approval_shortfall_is_not_given_back_on_cancel(client, db, user, admin, make_product):
    short = make_product(name="Rockets", stock=10)
    plenty = make_product(name="Sparklers", stock=10)
    order = place_manual_order(client, user, [
        {"product_id": short, "quantity": 4},
        {"product_id": plenty, "quantity": 2},
    ]).json()["order"]
    db["product"].update_one({"_id": ObjectId(short)}, {"$set": {"stock": 1}})

    res = client.put(f"/api/admin/orders/{order['id']}/verify-payment", headers=admin["headers"],
                     json={"approved": True})
    assert res.status_code == 200
    approved = res.json()["order"]
    assert approved["stock_deducted"] is True
    assert [i["stock_taken"] for i in approved["items"]] == [0, 2]
    assert stock_of(db, short) == 1
    assert stock_of(db, plenty) == 8

    res = client.put(f"/api/orders/{order['id']}/cancel", headers=user["headers"], json={})
    assert res.status_code == 200
    assert stock_of(db, short) == 1
    assert stock_of(db, plenty) == 10


def test_cancelled_order_cannot_be_approved(client, db, user, admin, make_product):
    product_id = make_product(stock=10)
    order = place_manual_order(client, user, [{"product_id": product_id, "quantity": 3}]).json()["order"]
    cancelled = client.put(f"/api/orders/{order['id']}/cancel", headers=user["headers"], json={}).json()["order"]
    assert cancelled["payment_info"]["status"] == "failed"

    pending = client.get("/api/admin/orders/pending-payments", headers=admin["headers"]).json()
    assert pending["count"] == 0
    res = client.put(f"/api/admin/orders/{order['id']}/verify-payment", headers=admin["headers"],
                     json={"approved": True})
    assert res.status_code == 400
    assert db["order"].find_one({"_id": ObjectId(order["id"])})["status"] == "cancelled"
    assert stock_of(db, product_id) == 10


def test_admin_cancellation_keeps_stock_out(client, db, user, admin, make_product):
    product_id = make_product(stock=10)
    order = place_cod_order(client, user, [{"product_id": product_id, "quantity": 4}]).json()["order"]
    res = client.put(f"/api/admin/orders/{order['id']}/status", headers=admin["headers"],
                     json={"status": "cancelled", "note": "Courier unavailable"})
    assert res.status_code == 200
    assert res.json()["order"]["status"] == "cancelled"
    assert stock_of(db, product_id) == 6


# ----------------------- Cancellation & tracking -----------------------
def test_cancel_restores_taken_stock(client, db, user, make_product):
    product_id = make_product(stock=10)
    order = place_cod_order(client, user, [{"product_id": product_id, "quantity": 4}]).json()["order"]
    res = client.put(f"/api/orders/{order['id']}/cancel", headers=user["headers"], json={"reason": "Changed my mind"})
    assert res.status_code == 200
    cancelled = res.json()["order"]
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancel_reason"] == "Changed my mind"
    assert stock_of(db, product_id) == 10


def test_cancel_bank_transfer_does_not_add_stock(client, db, user, make_product):
    product_id = make_product(stock=10)
    order = place_manual_order(client, user, [{"product_id": product_id, "quantity": 4}]).json()["order"]
    client.put(f"/api/orders/{order['id']}/cancel", headers=user["headers"], json={})
    assert stock_of(db, product_id) == 10


def test_shipped_order_cannot_be_cancelled(client, user, admin, make_product):
    order = place_cod_order(client, user, [{"product_id": make_product(), "quantity": 1}]).json()["order"]
    client.put(f"/api/admin/orders/{order['id']}/status", headers=admin["headers"], json={"status": "shipped"})
    res = client.put(f"/api/orders/{order['id']}/cancel", headers=user["headers"], json={})
    assert res.status_code == 400


def test_orders_are_private_to_their_owner(client, make_user, make_product):
    owner = make_user()
    other = make_user(email="ravi@gmail.com", name="Ravi")
    order = place_cod_order(client, owner, [{"product_id": make_product(), "quantity": 1}]).json()["order"]
    assert client.get(f"/api/orders/{order['id']}", headers=other["headers"]).status_code == 404
    listing = client.get("/api/orders", headers=owner["headers"]).json()
    assert listing["total"] == 1
    assert listing["orders"][0]["id"] == order["id"]


def test_status_update_records_history_and_tracking(client, user, admin, make_product):
    order = place_cod_order(client, user, [{"product_id": make_product(), "quantity": 1}]).json()["order"]
    res = client.put(f"/api/admin/orders/{order['id']}/status", headers=admin["headers"], json={
        "status": "shipped", "tracking_number": "TRK123", "carrier": "DTDC",
    })
    assert res.status_code == 200
    updated = res.json()["order"]
    assert updated["status_history"][-1]["status"] == "shipped"
    assert updated["tracking_info"]["tracking_number"] == "TRK123"

    res = client.put(f"/api/admin/orders/{order['id']}/status", headers=admin["headers"], json={"status": "delivered"})
    assert res.json()["order"]["delivery_date"]


def test_track_order_requires_matching_email(client, user, make_product):
    order = place_cod_order(client, user, [{"product_id": make_product(), "quantity": 1}]).json()["order"]
    res = client.post("/api/orders/track", json={"order_number": order["order_number"], "email": "PRIYA@gmail.com"})
    assert res.status_code == 200
    assert res.json()["order"]["status"] == "confirmed"
    res = client.post("/api/orders/track", json={"order_number": order["order_number"], "email": "someone@gmail.com"})
    assert res.status_code == 404


def test_public_tracking_view(client, user, make_product):
    order = place_cod_order(client, user, [{"product_id": make_product(), "quantity": 1}]).json()["order"]
    tracking = client.get(f"/api/orders/{order['id']}/tracking").json()["tracking"]
    assert tracking["order_number"] == order["order_number"]
    assert len(tracking["status_history"]) == 2


# ----------------------- Back office -----------------------
def test_admin_order_listing_and_export(client, user, admin, make_product):
    order = place_cod_order(client, user, [{"product_id": make_product(), "quantity": 1}]).json()["order"]
    listing = client.get("/api/admin/orders", headers=admin["headers"], params={"status": "confirmed"}).json()
    assert listing["total"] == 1
    assert listing["orders"][0]["user"]["email"] == user["email"]

    res = client.get("/api/admin/orders/export", headers=admin["headers"])
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    lines = res.text.strip().splitlines()
    assert lines[0].startswith("Order Number,Customer Name,Email")
    assert order["order_number"] in lines[1]


def test_pending_payments_and_dashboard_revenue(client, user, admin, make_product):
    order = place_manual_order(client, user, [{"product_id": make_product(price=200), "quantity": 2}]).json()["order"]
    pending = client.get("/api/admin/orders/pending-payments", headers=admin["headers"]).json()
    assert pending["count"] == 1

    client.put(f"/api/admin/orders/{order['id']}/verify-payment", headers=admin["headers"], json={"approved": True})
    dashboard = client.get("/api/admin/dashboard", headers=admin["headers"]).json()
    assert dashboard["stats"]["total_revenue"] == 522
    assert dashboard["stats"]["pending_payments"] == 0
    assert dashboard["monthly_revenue"][-1]["orders"] == 1
