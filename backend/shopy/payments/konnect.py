import re
from datetime import datetime, timedelta
from typing import Dict, Optional
from uuid import uuid4

import requests
from flask import current_app

from . import PaymentProviderError

KONNECT_PLACEHOLDER_API_KEY = "your-konnect-api-key"
KONNECT_DEMO_CHECKOUT_URL = "https://pay.konnect.local/checkout"
KONNECT_CURRENCY = "TND"
KONNECT_REQUEST_TIMEOUT = 30
DEMO_TOKEN_PATTERN = re.compile(r"^[A-F0-9]{32}$")
DEMO_PAYMENT_TTL = timedelta(hours=24)


def validate_konnect_config(config: Optional[Dict]) -> bool:
    if not config:
        return False
    api_key = config.get("apiKey") or ""
    if not api_key or api_key == KONNECT_PLACEHOLDER_API_KEY:
        return False
    return bool(config.get("merchantId") and config.get("baseUrl"))


def generate_demo_token() -> str:
    return uuid4().hex.upper()


def is_demo_token(token: str) -> bool:
    return bool(DEMO_TOKEN_PATTERN.match(str(token or "")))


def _create_demo_payment(db, amount: float, note: str, reference: Optional[str]) -> Dict:
    token = generate_demo_token()
    now = datetime.utcnow()
    db.demo_payments.insert_one(
        {
            "_id": token,
            "status": "pending",
            "amount": amount,
            "created_at": now,
            "expires_at": now + DEMO_PAYMENT_TTL,
        }
    )
    current_app.logger.info("Konnect demo payment %s created for %s", token, amount)
    return {
        "token": token,
        "payment_url": f"{KONNECT_DEMO_CHECKOUT_URL}/{token}",
        "amount": amount,
        "note": f"{note} - Ref: {reference or token}",
        "reference": reference or token,
        "status": "pending",
        "demo": True,
    }


def create_konnect_payment(
    db,
    config: Optional[Dict],
    amount: float,
    note: str,
    email: str,
    first_name: str,
    last_name: str,
    reference: Optional[str] = None,
    return_url: Optional[str] = None,
    webhook_url: Optional[str] = None,
    demo_mode: bool = True,
) -> Dict:
    if amount is None or amount <= 0:
        raise PaymentProviderError("Amount must be greater than 0", status_code=400)

    if not validate_konnect_config(config):
        if not demo_mode:
            raise PaymentProviderError("Konnect configuration not found or incomplete")
        return _create_demo_payment(db, amount, note, reference)

    reference = reference or generate_demo_token()
    payment_data = {
        "amount": amount,
        "currency": KONNECT_CURRENCY,
        "merchant_id": config["merchantId"],
        "customer": {
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
        },
        "description": note,
        "reference": reference,
        "return_url": return_url or f"{config.get('webhookUrl') or config['baseUrl']}/payment/return",
        "webhook_url": webhook_url or config.get("webhookUrl") or f"{config['baseUrl']}/webhook",
    }

    try:
        response = requests.post(
            f"{config['baseUrl']}/payments/create",
            json=payment_data,
            headers={
                "Authorization": f"Bearer {config['apiKey']}",
                "Content-Type": "application/json",
            },
            timeout=KONNECT_REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        if demo_mode:
            current_app.logger.warning(
                "Konnect API error, falling back to demo payment: %s", exc
            )
            return _create_demo_payment(db, amount, note, reference)
        raise PaymentProviderError("Failed to create Konnect payment", details=str(exc))

    payload = data.get("data") if isinstance(data, dict) else None
    if not isinstance(data, dict) or not data.get("success") or not isinstance(payload, dict):
        if demo_mode:
            current_app.logger.warning(
                "Konnect API rejected payment %s, using demo payment", reference
            )
            return _create_demo_payment(db, amount, note, reference)
        raise PaymentProviderError("Failed to create Konnect payment", details=data)

    nested = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    return {
        "token": payload.get("token") or nested.get("token") or reference,
        "payment_url": payload.get("payment_url")
        or nested.get("payment_url")
        or payload.get("redirect_url"),
        "amount": amount,
        "note": f"{note} - Ref: {reference}",
        "reference": reference,
        "status": "pending",
        "demo": False,
    }


def check_konnect_payment_status(
    db, config: Optional[Dict], token: str, demo_mode: bool = True
) -> Dict:
    """Return ``{"token", "payment_status", "amount"}`` for a Konnect payment.

    Demo tokens are looked up in ``db.demo_payments``; the first check of a
    pending demo payment settles it as paid.
    """
    if not token:
        raise PaymentProviderError("Token is required", status_code=400)

    if validate_konnect_config(config) and not is_demo_token(token):
        try:
            response = requests.get(
                f"{config['baseUrl']}/payments/{token}/status",
                headers={
                    "Authorization": f"Bearer {config['apiKey']}",
                    "Content-Type": "application/json",
                },
                timeout=KONNECT_REQUEST_TIMEOUT,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise PaymentProviderError("Failed to check Konnect payment status", details=str(exc))

        payload = data.get("data") if isinstance(data, dict) else None
        if not isinstance(data, dict) or not data.get("success") or not isinstance(payload, dict):
            raise PaymentProviderError("Failed to check Konnect payment status", details=data)
        return {
            "token": token,
            "payment_status": payload.get("status") == "paid",
            "amount": payload.get("amount"),
        }

    if not demo_mode:
        raise PaymentProviderError("Konnect configuration not found or incomplete")

    demo_payment = db.demo_payments.find_one({"_id": token})
    if not demo_payment:
        raise PaymentProviderError("Unknown payment token", status_code=404)

    if demo_payment.get("status") == "pending":
        db.demo_payments.update_one({"_id": token}, {"$set": {"status": "paid"}})
        demo_payment["status"] = "paid"
        current_app.logger.info("Konnect demo payment %s marked as paid", token)

    return {
        "token": token,
        "payment_status": demo_payment["status"] == "paid",
        "amount": demo_payment.get("amount"),
    }
