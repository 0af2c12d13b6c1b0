import base64
import binascii
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

SENSITIVE_CONFIG_FIELDS = (
    "apiKey",
    "apiToken",
    "merchantAccount",
    "merchantId",
    "vendorId",
    "clientKey",
    "hmacKey",
)

DEFAULT_PAYMEE_BASE_URL = "https://sandbox.paymee.tn/api/v2"
DEFAULT_KONNECT_BASE_URL = "https://api.konnect.network"

DEFAULT_PROVIDER_CONFIGS = {
    "adyen": {
        "apiKey": "",
        "merchantAccount": "",
        "environment": "test",
        "clientKey": "",
        "hmacKey": "",
    },
    "paymee": {
        "apiToken": "",
        "baseUrl": DEFAULT_PAYMEE_BASE_URL,
        "vendorId": "",
        "environment": "sandbox",
    },
    "konnect": {
        "apiKey": "",
        "merchantId": "",
        "baseUrl": DEFAULT_KONNECT_BASE_URL,
        "environment": "test",
    },
}
GENERIC_DEFAULT_CONFIG = {"apiKey": "", "merchantId": "", "environment": "test"}

ALLOWED_ENVIRONMENTS = {
    "adyen": ("test", "live"),
    "paymee": ("test", "sandbox", "live"),
    "konnect": ("test", "live"),
}
GENERIC_ALLOWED_ENVIRONMENTS = ("test", "live", "sandbox")


def encode_secret(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def decode_secret(value: str) -> str:
    try:
        return base64.b64decode(value.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return value


def encode_payment_config(config: Optional[Dict]) -> Dict:
    encoded = dict(config or {})
    for field in SENSITIVE_CONFIG_FIELDS:
        value = encoded.get(field)
        if value and isinstance(value, str):
            encoded[field] = encode_secret(value)
    return encoded


def decode_payment_config(config: Optional[Dict]) -> Dict:
    decoded = dict(config or {})
    for field in SENSITIVE_CONFIG_FIELDS:
        value = decoded.get(field)
        if value and isinstance(value, str):
            decoded[field] = decode_secret(value)
    return decoded


def default_config(provider_code: str) -> Dict:
    template = DEFAULT_PROVIDER_CONFIGS.get(
        str(provider_code or "").lower(), GENERIC_DEFAULT_CONFIG
    )
    return dict(template)


def _parse_vendor_id(value) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def parse_provider_config(provider_code: str, config: Dict) -> Dict:
    """Normalize a decoded config into the fields a provider client reads."""
    config = config or {}
    base_config = {
        "apiKey": config.get("apiKey") or "",
        "environment": config.get("environment") or "test",
    }
    code = str(provider_code or "").lower()

    if code == "adyen":
        environment = str(config.get("environment") or "").lower()
        base_config.update(
            {
                "merchantAccount": config.get("merchantAccount")
                or config.get("merchantId")
                or "",
                "environment": "LIVE" if environment == "live" else "TEST",
                "clientKey": config.get("clientKey") or "",
                "hmacKey": config.get("hmacKey") or "",
                "liveEndpointUrlPrefix": config.get("liveEndpointUrlPrefix") or "",
            }
        )
        return base_config

    if code == "paymee":
        base_config.update(
            {
                "apiToken": config.get("apiToken") or config.get("apiKey") or "",
                "vendorId": _parse_vendor_id(config.get("vendorId") or config.get("vendor")),
                "baseUrl": (config.get("baseUrl") or DEFAULT_PAYMEE_BASE_URL).rstrip("/"),
                "environment": config.get("environment") or "sandbox",
                "webhookUrl": config.get("webhookUrl") or "",
            }
        )
        return base_config

    if code == "konnect":
        base_config.update(
            {
                "merchantId": config.get("merchantId")
                or config.get("merchantAccount")
                or "",
                "baseUrl": (config.get("baseUrl") or DEFAULT_KONNECT_BASE_URL).rstrip("/"),
                "webhookUrl": config.get("webhookUrl") or "",
            }
        )
        return base_config

    parsed = dict(config)
    parsed.update(base_config)
    parsed["merchantId"] = config.get("merchantId") or config.get("merchantAccount") or ""
    return parsed


def validate_provider_config(provider_code: str, config: Optional[Dict]) -> Tuple[bool, List[str]]:
    config = config or {}
    code = str(provider_code or "").lower()
    environment = str(config.get("environment") or "").lower()
    errors: List[str] = []

    if code == "adyen":
        if not config.get("apiKey"):
            errors.append("API Key is required")
        if not config.get("merchantAccount") and not config.get("merchantId"):
            errors.append("Merchant Account is required")
    elif code == "paymee":
        if not config.get("apiToken") and not config.get("apiKey"):
            errors.append("API Token is required")
        if not config.get("vendorId") and not config.get("vendor"):
            errors.append("Vendor ID is required")
    elif code == "konnect":
        if not config.get("apiKey"):
            errors.append("API Key is required")
        if not config.get("merchantId") and not config.get("merchantAccount"):
            errors.append("Merchant ID is required")
    elif not config.get("apiKey"):
        errors.append("API Key is required")

    allowed = ALLOWED_ENVIRONMENTS.get(code, GENERIC_ALLOWED_ENVIRONMENTS)
    if environment not in allowed:
        quoted = [f'"{value}"' for value in allowed]
        if len(quoted) > 1:
            choices = ", ".join(quoted[:-1]) + f" or {quoted[-1]}"
        else:
            choices = quoted[0]
        errors.append(f"Environment must be {choices}")

    return not errors, errors


class PaymentConfigService:
    """Loads active provider credentials from ``payment_methods`` with a short cache."""

    def __init__(self, db, cache_seconds: int = 300, logger=None):
        self.db = db
        self.cache_seconds = cache_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._cache: Dict[str, Dict] = {}

    def get_provider_config(self, provider_code: str) -> Optional[Dict]:
        code = str(provider_code or "").lower()
        now = datetime.utcnow()
        cached = self._cache.get(code)
        if cached and cached["expires_at"] > now:
            return cached["config"]

        payment_method = self.db.payment_methods.find_one({"code": code})
        if not payment_method:
            self.logger.info("Payment method %s is not configured", code)
            return None
        if not payment_method.get("is_active"):
            self.logger.info("Payment method %s is not active", code)
            return None

        decoded = decode_payment_config(payment_method.get("config"))
        config = parse_provider_config(code, decoded)
        self._cache[code] = {
            "config": config,
            "expires_at": now + timedelta(seconds=self.cache_seconds),
        }
        return config

    def clear_cache(self, provider_code: Optional[str] = None) -> None:
        if provider_code:
            self._cache.pop(str(provider_code).lower(), None)
        else:
            self._cache.clear()
