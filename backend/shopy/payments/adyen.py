import base64
import binascii
import hashlib
import hmac
from typing import Dict, List, Optional
from uuid import uuid4

import requests

from . import PaymentProviderError

ADYEN_API_VERSION = "v71"
ADYEN_TEST_CHECKOUT_URL = f"https://checkout-test.adyen.com/{ADYEN_API_VERSION}"
ADYEN_REQUEST_TIMEOUT = 30

HMAC_SIGNED_FIELDS = (
    "pspReference",
    "originalReference",
    "merchantAccountCode",
    "merchantReference",
)


def require_adyen_config(config: Optional[Dict]) -> Dict:
    if not config:
        raise PaymentProviderError("Adyen configuration not found or inactive")
    if not config.get("apiKey"):
        raise PaymentProviderError("Adyen API Key is not configured")
    if not config.get("merchantAccount"):
        raise PaymentProviderError("Adyen Merchant Account is not configured")
    return config


def get_checkout_base_url(config: Dict) -> str:
    if str(config.get("environment") or "").upper() != "LIVE":
        return ADYEN_TEST_CHECKOUT_URL

    prefix = str(config.get("liveEndpointUrlPrefix") or "").strip()
    if not prefix:
        raise PaymentProviderError("Adyen live endpoint prefix is not configured")
    return f"https://{prefix}-checkout-live.adyenpayments.com/checkout/{ADYEN_API_VERSION}"


def _post(config: Dict, path: str, payload: Dict, idempotency_key: Optional[str] = None):
    headers = {
        "X-API-Key": config["apiKey"],
        "Content-Type": "application/json",
    }
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key

    try:
        response = requests.post(
            f"{get_checkout_base_url(config)}{path}",
            json=payload,
            headers=headers,
            timeout=ADYEN_REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise PaymentProviderError("Unable to reach Adyen", details=str(exc))

    try:
        data = response.json()
    except ValueError:
        data = {}

    if response.status_code not in (200, 201):
        message = data.get("message") if isinstance(data, dict) else None
        raise PaymentProviderError(
            message or f"Adyen request failed with status {response.status_code}",
            details=data,
            status_code=response.status_code,
        )
    return data


def create_checkout_session(
    config: Optional[Dict],
    amount: int,
    currency: str,
    country_code: str,
    return_url: str,
    reference: Optional[str] = None,
    line_items: Optional[List[Dict]] = None,
    store: Optional[str] = None,
) -> Dict:
    """Create an Adyen Drop-in session. ``amount`` is in minor units."""
    config = require_adyen_config(config)
    payload: Dict[str, object] = {
        "reference": reference or str(uuid4()),
        "amount": {"currency": currency, "value": int(amount)},
        "merchantAccount": config["merchantAccount"],
        "countryCode": country_code,
        "returnUrl": return_url,
        "channel": "Web",
        "shopperInteraction": "Ecommerce",
    }
    if line_items:
        payload["lineItems"] = line_items
    if store:
        payload["store"] = store

    return _post(config, "/sessions", payload, idempotency_key=str(uuid4()))


def get_payment_methods(
    config: Optional[Dict], amount: int, currency: str, country_code: str
) -> Dict:
    config = require_adyen_config(config)
    payload = {
        "merchantAccount": config["merchantAccount"],
        "countryCode": country_code,
        "amount": {"currency": currency, "value": int(amount)},
        "channel": "Web",
    }
    return _post(config, "/paymentMethods", payload)


def build_hmac_payload(notification_item: Dict) -> str:
    amount = notification_item.get("amount") or {}
    values = [str(notification_item.get(field) or "") for field in HMAC_SIGNED_FIELDS]
    values.extend(
        [
            str(amount.get("value", "")),
            str(amount.get("currency") or ""),
            str(notification_item.get("eventCode") or ""),
            str(notification_item.get("success") or ""),
        ]
    )
    return ":".join(values)


def verify_notification_hmac(notification_item: Dict, hmac_key: str) -> bool:
    additional_data = notification_item.get("additionalData") or {}
    received_signature = additional_data.get("hmacSignature")
    if not received_signature or not hmac_key:
        return False

    try:
        key_bytes = binascii.unhexlify(hmac_key)
    except (binascii.Error, ValueError):
        return False

    digest = hmac.new(
        key_bytes, build_hmac_payload(notification_item).encode("utf-8"), hashlib.sha256
    ).digest()
    expected_signature = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected_signature, received_signature)
