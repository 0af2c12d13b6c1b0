import os
from datetime import timedelta
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

_configured_admin_email = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@shopy.local") or "admin@shopy.local"
DEFAULT_ADMIN_EMAIL = _configured_admin_email.strip().lower()

RESEND_API_KEY = (os.getenv("RESEND_API_KEY") or "").strip()
EMAIL_SENDER = (os.getenv("EMAIL_SENDER") or "Shopy <no-reply@shopy.store>").strip()


def _read_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _read_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _read_flag(name: str, default: bool) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def build_allowed_origins() -> List[str]:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        os.getenv("FRONTEND_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    return [origin for origin in allowed_origins if origin]


def load_settings(root_path: str, overrides: Optional[Dict] = None) -> Dict[str, object]:
    """Collect application settings from the environment.

    ``overrides`` wins over every environment value, which is how tests pin
    secrets, the upload folder and demo mode.
    """
    max_upload_mb = _read_int("MAX_UPLOAD_SIZE_MB", 16)
    settings: Dict[str, object] = {
        "JWT_SECRET_KEY": os.getenv("JWT_SECRET_KEY", "change-me-in-production"),
        "JWT_ACCESS_TOKEN_EXPIRES": timedelta(
            minutes=_read_int("JWT_ACCESS_TOKEN_MINUTES", 60)
        ),
        "JWT_REFRESH_TOKEN_EXPIRES": timedelta(days=_read_int("JWT_REFRESH_TOKEN_DAYS", 7)),
        "MONGO_URI": os.getenv("MONGO_URI", "mongodb://localhost:27017/shopy"),
        "MAX_CONTENT_LENGTH": max_upload_mb * 1024 * 1024,
        "UPLOAD_FOLDER": os.getenv("UPLOAD_FOLDER") or os.path.join(root_path, "uploads"),
        "ALLOWED_IMAGE_EXTENSIONS": {"png", "jpg", "jpeg", "gif", "webp"},
        "BACKEND_URL": (os.getenv("BACKEND_URL") or "").strip().rstrip("/"),
        "PAYMENT_DEMO_MODE": _read_flag("PAYMENT_DEMO_MODE", True),
        "DEFAULT_TAX_RATE": _read_float("DEFAULT_TAX_RATE", 4.0),
        "PAYMENT_CONFIG_CACHE_SECONDS": _read_int("PAYMENT_CONFIG_CACHE_SECONDS", 300),
        "TRUSTED_PROXY_HOPS": _read_int("TRUSTED_PROXY_HOPS", 1),
        "RESEND_API_KEY": RESEND_API_KEY,
        "EMAIL_SENDER": EMAIL_SENDER,
        "DEFAULT_ADMIN_EMAIL": DEFAULT_ADMIN_EMAIL,
        "SEED_DEFAULTS": True,
    }
    if overrides:
        settings.update(overrides)
    return settings
