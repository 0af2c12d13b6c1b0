import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import resend
from flask import current_app, render_template

from .helpers import normalize_email, safe_float, safe_non_negative_int

TEST_EMAIL_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^guest",
        r"test",
        r"demo",
        r"temp",
        r"fake",
        r"example",
        r"sample",
        r"dummy",
        r"spam",
        r"trash",
    )
]

DISPOSABLE_DOMAINS = {
    "10minutemail.com",
    "guerrillamail.com",
    "tempmail.org",
    "mailinator.com",
    "yopmail.com",
    "sharklasers.com",
    "getairmail.com",
    "mailnesia.com",
    "maildrop.cc",
    "tempmailaddress.com",
    "throwaway.email",
    "mailmetrash.com",
    "mailnull.com",
    "spam4.me",
    "bccto.me",
    "chacuo.net",
    "dispostable.com",
    "fakeinbox.com",
    "mailcatch.com",
    "mailinator2.com",
}

TEST_DOMAIN_MARKERS = ("test", "example", "localhost", "invalid")


def get_email_rejection_reason(email: Optional[str]) -> Optional[str]:
    if not email or not isinstance(email, str):
        return "Invalid email format"

    normalized = normalize_email(email)
    for pattern in TEST_EMAIL_PATTERNS:
        if pattern.search(normalized):
            return f"Email matches test pattern: {pattern.pattern}"

    domain = normalized.split("@", 1)[1] if "@" in normalized else ""
    if domain in DISPOSABLE_DOMAINS:
        return f"Disposable email domain: {domain}"

    if domain and any(marker in domain for marker in TEST_DOMAIN_MARKERS):
        return f"Test domain detected: {domain}"

    return None


def should_send_email(email: Optional[str]) -> bool:
    return get_email_rejection_reason(email) is None


def send_email_via_resend(payload: Dict[str, object], api_key: str):
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def _deliver(recipient_email: str, subject: str, html_body: str, text_body: str):
    reason = get_email_rejection_reason(recipient_email)
    if reason:
        current_app.logger.info("Skipping email to %s: %s", recipient_email, reason)
        return False, reason

    payload: Dict[str, object] = {
        "from": current_app.config["EMAIL_SENDER"],
        "to": [recipient_email],
        "subject": subject,
        "html": html_body,
        "text": text_body,
    }
    sent, error = send_email_via_resend(payload, current_app.config["RESEND_API_KEY"])
    if not sent:
        current_app.logger.warning("Email delivery to %s failed: %s", recipient_email, error)
    return sent, error


def send_welcome_email(user_document: Dict) -> Tuple[bool, Optional[str]]:
    recipient_email = normalize_email(user_document.get("email"))
    name = user_document.get("name") or "there"
    html_body = render_template("emails/welcome.html", name=name)
    text_body = (
        f"Hi {name},\n\nYour Shopy account is ready. "
        "Browse the catalog and check out whenever you like.\n\nThe Shopy Team"
    )
    return _deliver(recipient_email, "Welcome to Shopy!", html_body, text_body)


def normalize_order_email_items(items: List[Dict]) -> List[Dict]:
    normalized_items: List[Dict] = []
    for entry in items or []:
        if not isinstance(entry, dict):
            continue
        product = entry.get("product") or {}
        quantity = safe_non_negative_int(entry.get("quantity"), 1) or 1
        price_value = round(safe_float(product.get("price"), 0.0), 2)
        normalized_items.append(
            {
                "name": str(product.get("name") or "").strip() or "Item",
                "quantity": quantity,
                "price": price_value,
                "line_total": round(safe_float(entry.get("total"), price_value * quantity), 2),
            }
        )
    return normalized_items


def send_order_confirmation_email(
    order_document: Dict[str, object], recipient_email: str
) -> Tuple[bool, Optional[str]]:
    normalized_email = normalize_email(recipient_email)
    if not normalized_email:
        return False, "Missing customer email for the order receipt."

    normalized_items = normalize_order_email_items(order_document.get("items"))
    total_value = round(safe_float(order_document.get("total"), 0.0), 2)
    currency_code = str(order_document.get("currency") or "USD").upper()
    order_identifier = str(order_document.get("_id") or "Order")

    created_at_value = order_document.get("created_at")
    if not isinstance(created_at_value, datetime):
        created_at_value = datetime.utcnow()

    html_body = render_template(
        "emails/order_confirmation.html",
        order_id=order_identifier,
        items=normalized_items,
        subtotal=round(safe_float(order_document.get("subtotal"), 0.0), 2),
        tax_total=round(safe_float(order_document.get("tax_total"), 0.0), 2),
        total=total_value,
        currency=currency_code,
        created_at=created_at_value,
    )
    item_lines = ", ".join(
        f"{item['name']} x{item['quantity']} ({currency_code} {item['price']:.2f})"
        for item in normalized_items
    )
    text_body = (
        f"Thank you for your purchase! Order {order_identifier} on "
        f"{created_at_value.strftime('%Y-%m-%d %H:%M')}.\n"
        f"Items: {item_lines}.\n"
        f"Total: {currency_code} {total_value:.2f}.\n\n"
        "The Shopy Team"
    )
    return _deliver(normalized_email, "Thank you for your order", html_body, text_body)
