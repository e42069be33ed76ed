"""
Outgoing email.

Sends through SMTP when EMAIL_USER / EMAIL_PASSWORD are configured,
otherwise logs a summary of the message (provider "mock"). Every sender
returns {"success": bool, "provider": str} and never raises: email is
best-effort and must not fail the request that triggered it.
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Iterable, List, Optional

from config import EMAIL_PASSWORD, EMAIL_USER, SHOP_NAME, SMTP_PORT, SMTP_SERVER
from database import db

logger = logging.getLogger(__name__)

ORDER_NOTIFY_ROLES = ["admin", "super_admin", "moderator"]
STAFF_ROLES = ["admin", "super_admin"]


def email_configured() -> bool:
    return bool(EMAIL_USER and EMAIL_PASSWORD)


def send_email(to: str, subject: str, html: str, text: Optional[str] = None) -> dict:
    if not email_configured():
        logger.info("MOCK EMAIL to=%s subject=%s", to, subject)
        return {"success": True, "provider": "mock"}
    try:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{SHOP_NAME} <{EMAIL_USER}>"
        msg["To"] = to
        if text:
            msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))

        server = smtplib.SMTP(SMTP_SERVER, SMTP_PORT, timeout=15)
        try:
            server.starttls()
            server.login(EMAIL_USER, EMAIL_PASSWORD)
            server.send_message(msg)
        finally:
            server.quit()
        logger.info("Email sent to %s: %s", to, subject)
        return {"success": True, "provider": "smtp"}
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Error sending email to %s: %s", to, e)
        return {"success": False, "provider": "smtp", "error": str(e)}


def _active_admin_emails(roles: List[str]) -> List[str]:
    admins = db["admin"].find({"is_active": True, "role": {"$in": roles}}, {"email": 1})
    return [a["email"] for a in admins if a.get("email")]


def _items_rows(items: Iterable[dict]) -> str:
    rows = []
    for item in items:
        line_total = float(item.get("price", 0)) * int(item.get("quantity", 0))
        rows.append(
            f"<tr><td>{item.get('name')}</td>"
            f"<td style=\"text-align:center\">{item.get('quantity')}</td>"
            f"<td style=\"text-align:right\">&#8377;{line_total:.2f}</td></tr>"
        )
    return "".join(rows)


def _pricing_block(pricing: dict) -> str:
    return (
        f"<p>Subtotal: &#8377;{pricing.get('subtotal', 0):.2f}<br/>"
        f"Tax: &#8377;{pricing.get('tax', 0):.2f}<br/>"
        f"Shipping: &#8377;{pricing.get('shipping', 0):.2f}<br/>"
        f"<strong>Total: &#8377;{pricing.get('total', 0):.2f}</strong></p>"
    )


def send_otp_email(email: str, otp: str, name: str = "User") -> dict:
    html = (
        f"<h2>{SHOP_NAME}</h2><p>Hello {name},</p>"
        f"<p>Your login code is <strong>{otp}</strong>. It expires in 10 minutes.</p>"
    )
    return send_email(email, f"Your {SHOP_NAME} login code", html, text=f"Your login code is {otp}")


def send_welcome_email(email: str, name: str) -> dict:
    html = f"<h2>Welcome to {SHOP_NAME}, {name}!</h2><p>Your account is ready. Happy celebrations!</p>"
    return send_email(email, f"Welcome to {SHOP_NAME}", html)


def send_order_confirmation_email(email: str, name: str, order: dict) -> dict:
    html = (
        f"<h2>Thank you for your order, {name}!</h2>"
        f"<p>Order number: <strong>{order['order_number']}</strong></p>"
        f"<table>{_items_rows(order.get('items', []))}</table>"
        f"{_pricing_block(order.get('pricing', {}))}"
    )
    return send_email(email, f"Order Confirmation - {order['order_number']}", html)


def send_admin_order_notification(order: dict, customer: dict, payment_verification: bool = False) -> dict:
    recipients = _active_admin_emails(ORDER_NOTIFY_ROLES)
    if not recipients:
        logger.warning("No active admins found for order notification")
        return {"success": False, "provider": "none"}

    if payment_verification:
        subject = f"Payment Verification Required - {order['order_number']}"
    else:
        subject = f"New Order Alert - {order['order_number']}"
    screenshot = (order.get("payment_info") or {}).get("payment_screenshot") or {}
    html = (
        f"<h2>{subject}</h2>"
        f"<p>Customer: {customer.get('name')} ({customer.get('email')})</p>"
        f"<p>Payment: {order['payment_info']['method']} / {order['payment_info']['status']}</p>"
        f"<table>{_items_rows(order.get('items', []))}</table>"
        f"{_pricing_block(order.get('pricing', {}))}"
    )
    if screenshot.get("url"):
        html += f"<p>Payment screenshot: <a href=\"{screenshot['url']}\">view</a></p>"

    results = [send_email(to, subject, html) for to in recipients]
    return {"success": all(r["success"] for r in results), "provider": results[0]["provider"]}


def send_low_stock_alert(product: dict) -> dict:
    recipients = _active_admin_emails(STAFF_ROLES)
    if not recipients:
        return {"success": False, "provider": "none"}
    subject = f"Low Stock Alert - {product.get('name')}"
    html = (
        f"<h2>Low Stock Alert</h2><p>Product: {product.get('name')}</p>"
        f"<p>Current stock: {product.get('stock')} units</p><p>Price: &#8377;{product.get('price')}</p>"
    )
    results = [send_email(to, subject, html) for to in recipients]
    return {"success": all(r["success"] for r in results), "provider": results[0]["provider"]}


def send_admin_password_reset_otp(email: str, otp: str, name: str) -> dict:
    html = (
        f"<h2>{SHOP_NAME} admin password reset</h2><p>Hello {name},</p>"
        f"<p>Your reset code is <strong>{otp}</strong>. It expires in 10 minutes.</p>"
    )
    return send_email(email, "Admin password reset code", html)


def send_contact_notification(contact: dict) -> dict:
    recipients = _active_admin_emails(STAFF_ROLES)
    if not recipients:
        logger.info("No active admins found for contact notification")
        return {"success": False, "provider": "none"}
    subject = f"New contact message: {contact['subject']}"
    html = (
        f"<p>From: {escape(contact['name'])} ({escape(contact['email'])})</p>"
        f"<p>{escape(contact['message'])}</p>"
    )
    results = [send_email(to, subject, html) for to in recipients]
    return {"success": all(r["success"] for r in results), "provider": results[0]["provider"]}
