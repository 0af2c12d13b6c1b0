import math
import re
from datetime import datetime, timedelta
from typing import Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
hex_color_regex = re.compile(r"^#[0-9a-fA-F]{6}$")

ADDRESS_FIELDS = ("street", "city", "zipCode", "country")
ADDRESS_FIELD_ALIASES = {
    "street": ("street", "line1", "address1", "addressLine1"),
    "city": ("city", "town"),
    "zipCode": ("zipCode", "zip_code", "zip", "postcode", "postalCode", "postal_code"),
    "country": ("country", "countryName", "country_name"),
}


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_non_negative_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(0, numeric)


def parse_bool(value, default=False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def parse_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        return None


def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", ""))
    except ValueError:
        return None
    if end_of_day and len(str(value).strip()) <= 10:
        parsed = parsed + timedelta(days=1)
    return parsed


def isoformat(value) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat() + "Z"
    return None


def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(payload, dict):
        return {}

    normalized: Dict[str, str] = {}
    for field in ADDRESS_FIELDS:
        value = None
        for alias in ADDRESS_FIELD_ALIASES.get(field, (field,)):
            if alias in payload:
                value = payload.get(alias)
                break
        if value is None:
            continue
        trimmed = str(value).strip()
        if trimmed:
            normalized[field] = trimmed
    return normalized


def extract_address(payload: Dict) -> Optional[Dict[str, str]]:
    """Read an address from ``payload['address']`` or from flat top-level fields."""
    if isinstance(payload.get("address"), dict):
        return normalize_address_payload(payload["address"])
    flat = normalize_address_payload(payload)
    return flat or None


def serialize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
    normalized = normalize_address_payload(payload)
    return {field: normalized.get(field, "") for field in ADDRESS_FIELDS}


def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(metadata, dict):
        return {}
    sanitized: Dict[str, str] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        sanitized[str(key)] = str(value)
    return sanitized
