import time
from typing import Dict, Optional

import requests

from . import PaymentProviderError
from ..pricing import generate_payment_reference, normalize_payment_amount

PAYMEE_GATEWAY_URL = "https://sandbox.paymee.tn/gateway"
PAYMEE_REQUEST_TIMEOUT = 30
PAYMEE_STATUS_RETRIES = 3
PAYMEE_RETRY_DELAY_SECONDS = 2


def validate_paymee_config(config: Optional[Dict]) -> bool:
    if not config:
        return False
    return bool(config.get("apiToken") and config.get("baseUrl") and config.get("vendorId"))


def _headers(config: Dict) -> Dict[str, str]:
    return {
        "Authorization": f"Token {config['apiToken']}",
        "Content-Type": "application/json",
    }


def _require_config(config: Optional[Dict]) -> Dict:
    if not config:
        raise PaymentProviderError("Paymee configuration not found or inactive")
    if not config.get("apiToken"):
        raise PaymentProviderError("Paymee API Token is not configured")
    if not config.get("vendorId"):
        raise PaymentProviderError("Paymee Vendor ID is not configured")
    return config


def _api_error_message(response, fallback: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return fallback
    if not isinstance(data, dict):
        return fallback
    return str(data.get("message") or data.get("error") or fallback)


def create_paymee_payment(
    config: Optional[Dict],
    amount,
    note: str,
    email: str,
    first_name: str,
    last_name: str,
    reference: Optional[str] = None,
    return_url: Optional[str] = None,
    webhook_url: Optional[str] = None,
) -> Dict:
    config = _require_config(config)

    try:
        amount_value = normalize_payment_amount(amount)
    except ValueError as exc:
        raise PaymentProviderError(str(exc), status_code=400)

    for label, value in (
        ("Note", note),
        ("Customer email", email),
        ("Customer first name", first_name),
        ("Customer last name", last_name),
    ):
        if not str(value or "").strip():
            raise PaymentProviderError(f"{label} is required", status_code=400)

    reference = reference or generate_payment_reference("PAYMEE")
    payment_data: Dict[str, object] = {
        "vendor": config["vendorId"],
        "amount": amount_value,
        "note": f"{note.strip()} - Ref: {reference}",
        "email": email.strip(),
        "first_name": first_name.strip(),
        "last_name": last_name.strip(),
        "webhook_url": webhook_url
        or config.get("webhookUrl")
        or f"{config['baseUrl']}/webhook/paymee",
    }
    # Paymee only accepts public HTTPS return targets.
    if return_url and "localhost" not in return_url:
        payment_data["return_url"] = return_url
        payment_data["cancel_url"] = return_url

    try:
        response = requests.post(
            f"{config['baseUrl']}/payments/create",
            json=payment_data,
            headers=_headers(config),
            timeout=PAYMEE_REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise PaymentProviderError(
            "Network error: Unable to connect to Paymee API", details=str(exc)
        )

    if response.status_code >= 400:
        message = _api_error_message(response, "Payment creation failed")
        raise PaymentProviderError(f"Paymee API Error: {message}", status_code=502)

    try:
        data = response.json()
    except ValueError:
        raise PaymentProviderError("Invalid response from Paymee API", status_code=502)

    if not isinstance(data, dict):
        raise PaymentProviderError("Invalid response from Paymee API", status_code=502)

    if data.get("status") is False:
        message = data.get("message") or "Payment creation failed"
        errors = data.get("errors") or []
        details = ", ".join(
            ": ".join(str(value) for value in entry.values())
            for entry in errors
            if isinstance(entry, dict)
        )
        if details:
            message = f"{message} - {details}"
        raise PaymentProviderError(f"Paymee API Error: {message}", status_code=502)

    payload = data.get("data")
    if not isinstance(payload, dict) or not payload.get("token"):
        raise PaymentProviderError("Invalid response from Paymee API", status_code=502)

    token = payload["token"]
    return {
        "token": token,
        "payment_url": payload.get("payment_url") or f"{PAYMEE_GATEWAY_URL}/{token}",
        "amount": amount_value,
        "vendor": config["vendorId"],
        "note": payment_data["note"],
        "reference": reference,
        "status": "pending",
    }


def check_paymee_payment_status(
    config: Optional[Dict],
    token: str,
    max_retries: int = PAYMEE_STATUS_RETRIES,
    retry_delay: float = PAYMEE_RETRY_DELAY_SECONDS,
    sleep=time.sleep,
) -> Dict:
    if not config:
        raise PaymentProviderError("Paymee configuration not found or inactive")
    if not config.get("apiToken"):
        raise PaymentProviderError("Paymee API Token is not configured")
    if not str(token or "").strip():
        raise PaymentProviderError("Payment token is required", status_code=400)

    url = f"{config['baseUrl']}/payments/{token}/check"
    response = None
    for attempt in range(1, max_retries + 1):
        try:
            response = requests.get(url, headers=_headers(config), timeout=PAYMEE_REQUEST_TIMEOUT)
            break
        except requests.ConnectionError as exc:
            if attempt < max_retries:
                sleep(retry_delay)
                continue
            raise PaymentProviderError(
                "Network error: Unable to connect to Paymee API", details=str(exc)
            )
        except requests.RequestException as exc:
            raise PaymentProviderError(
                "Network error: Unable to connect to Paymee API", details=str(exc)
            )

    if response.status_code >= 400:
        message = _api_error_message(response, "Status check failed")
        raise PaymentProviderError(f"Paymee API Error: {message}", status_code=502)

    try:
        data = response.json()
    except ValueError:
        data = None
    payload = data.get("data") if isinstance(data, dict) else None
    if not isinstance(payload, dict):
        raise PaymentProviderError("Invalid response from Paymee API", status_code=502)

    payment_status = payload.get("payment_status")
    return {
        "token": token,
        "payment_status": payment_status is True or payment_status == "true",
        "amount": payload.get("amount"),
        "vendor": payload.get("vendor"),
        "note": payload.get("note"),
        "transaction_id": payload.get("transaction_id"),
        "payment_date": payload.get("payment_date"),
    }
