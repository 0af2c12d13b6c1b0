from typing import Dict, Iterable, Optional

from bson import ObjectId

from .helpers import safe_float


def get_setting(db, key: str, default=None):
    document = db.settings.find_one({"_id": key})
    if not document or document.get("value") is None:
        return default
    return document["value"]


def set_setting(db, key: str, value) -> None:
    db.settings.update_one({"_id": key}, {"$set": {"value": value}}, upsert=True)


def get_default_tax_rate(db, fallback: float) -> float:
    return safe_float(get_setting(db, "tax", fallback), fallback)


def get_base_currency(db) -> Optional[Dict]:
    return db.currencies.find_one({"is_base": True})


def find_currency_by_code(db, code: Optional[str]) -> Optional[Dict]:
    normalized = str(code or "").strip().upper()
    if not normalized:
        return None
    return db.currencies.find_one({"code": normalized})


def load_tax_map(db, tax_ids: Iterable) -> Dict[ObjectId, Dict]:
    object_ids = list({tax_id for tax_id in tax_ids if isinstance(tax_id, ObjectId)})
    if not object_ids:
        return {}
    return {document["_id"]: document for document in db.taxes.find({"_id": {"$in": object_ids}})}
