from typing import Dict, List, Optional

from .helpers import isoformat, serialize_address_payload
from .payments.config_service import decode_payment_config
from .pricing import calculate_item_total_with_tax, convert_currency

PUBLIC_PAYMENT_CONFIG_FIELDS = ("clientKey", "environment")


def serialize_user(user_document, role: Optional[str] = None) -> Dict[str, object]:
    if not user_document:
        return {}

    address = user_document.get("address")
    return {
        "id": str(user_document.get("_id")),
        "email": user_document.get("email", ""),
        "name": user_document.get("name", ""),
        "role": role or user_document.get("role", "user"),
        "phone": user_document.get("phone", ""),
        "address": serialize_address_payload(address) if address else None,
        "createdAt": isoformat(user_document.get("created_at")),
        "updatedAt": isoformat(user_document.get("updated_at")),
    }


def serialize_tax(tax_document) -> Dict[str, object]:
    if not tax_document:
        return {}
    return {
        "id": str(tax_document.get("_id")),
        "name": tax_document.get("name", ""),
        "rate": tax_document.get("rate", 0),
        "isActive": bool(tax_document.get("is_active")),
        "createdAt": isoformat(tax_document.get("created_at")),
        "updatedAt": isoformat(tax_document.get("updated_at")),
    }


def serialize_product(
    product_document,
    tax_document=None,
    currency_document=None,
    base_currency=None,
) -> Dict[str, object]:
    if not product_document:
        return {}

    price = float(product_document.get("price") or 0)
    tax_rate = float(tax_document.get("rate")) if tax_document else None
    serialized = {
        "id": str(product_document.get("_id")),
        "name": product_document.get("name", ""),
        "price": price,
        "description": product_document.get("description", ""),
        "category": product_document.get("category", ""),
        "subcategory": product_document.get("subcategory", ""),
        "image": product_document.get("image", ""),
        "stock": product_document.get("stock", 0),
        "rating": product_document.get("rating", 0),
        "reviews": product_document.get("reviews", 0),
        "taxId": str(product_document["tax_id"]) if product_document.get("tax_id") else None,
        "taxRate": tax_rate,
        "taxName": tax_document.get("name") if tax_document else None,
        "priceWithTax": round(calculate_item_total_with_tax(price, tax_rate or 0), 2),
        "createdAt": isoformat(product_document.get("created_at")),
        "updatedAt": isoformat(product_document.get("updated_at")),
    }

    if currency_document:
        from_rate = float((base_currency or {}).get("exchange_rate") or 1)
        to_rate = float(currency_document.get("exchange_rate") or 1)
        serialized["currency"] = currency_document.get("code")
        serialized["convertedPrice"] = convert_currency(price, from_rate, to_rate)
        serialized["convertedPriceWithTax"] = convert_currency(
            serialized["priceWithTax"], from_rate, to_rate
        )

    return serialized


def serialize_review(review_document) -> Dict[str, object]:
    if not review_document:
        return {}
    return {
        "id": str(review_document.get("_id")),
        "productId": review_document.get("product_id", ""),
        "userId": review_document.get("user_id", ""),
        "userName": review_document.get("user_name", ""),
        "rating": review_document.get("rating", 0),
        "comment": review_document.get("comment", ""),
        "createdAt": isoformat(review_document.get("created_at")),
        "updatedAt": isoformat(review_document.get("updated_at")),
    }


def serialize_payment_method(method_document, public: bool = False) -> Dict[str, object]:
    if not method_document:
        return {}

    config = decode_payment_config(method_document.get("config"))
    if public:
        config = {
            key: config[key] for key in PUBLIC_PAYMENT_CONFIG_FIELDS if config.get(key)
        }

    return {
        "id": str(method_document.get("_id")),
        "name": method_document.get("name", ""),
        "code": method_document.get("code", ""),
        "description": method_document.get("description", ""),
        "isActive": bool(method_document.get("is_active")),
        "config": config,
        "createdAt": isoformat(method_document.get("created_at")),
        "updatedAt": isoformat(method_document.get("updated_at")),
    }


def serialize_currency(currency_document) -> Dict[str, object]:
    if not currency_document:
        return {}
    return {
        "id": str(currency_document.get("_id")),
        "name": currency_document.get("name", ""),
        "code": currency_document.get("code", ""),
        "symbol": currency_document.get("symbol", ""),
        "isActive": bool(currency_document.get("is_active")),
        "exchangeRate": currency_document.get("exchange_rate", 1),
        "isBase": bool(currency_document.get("is_base")),
        "createdAt": isoformat(currency_document.get("created_at")),
        "updatedAt": isoformat(currency_document.get("updated_at")),
    }


def serialize_order_items(items: Optional[List[Dict]]) -> List[Dict[str, object]]:
    serialized: List[Dict[str, object]] = []
    for entry in items or []:
        if not isinstance(entry, dict):
            continue
        serialized.append(
            {
                "product": dict(entry.get("product") or {}),
                "quantity": entry.get("quantity", 0),
                "taxRate": entry.get("tax_rate"),
                "taxAmount": entry.get("tax_amount"),
                "subtotal": entry.get("subtotal"),
                "total": entry.get("total"),
            }
        )
    return serialized


def serialize_order(order_document) -> Dict[str, object]:
    if not order_document:
        return {}

    payment = order_document.get("payment") or {}
    return {
        "id": str(order_document.get("_id")),
        "userId": order_document.get("user_id"),
        "items": serialize_order_items(order_document.get("items")),
        "subtotal": order_document.get("subtotal", 0),
        "taxTotal": order_document.get("tax_total", 0),
        "total": order_document.get("total", 0),
        "currency": order_document.get("currency", ""),
        "status": order_document.get("status", "pending"),
        "shippingAddress": serialize_address_payload(order_document.get("shipping_address")),
        "payment": {
            "method": payment.get("method", ""),
            "reference": payment.get("reference", ""),
            "token": payment.get("token", ""),
            "status": payment.get("status", "pending"),
            "paidAt": isoformat(payment.get("paid_at")),
        },
        "createdAt": isoformat(order_document.get("created_at")),
        "updatedAt": isoformat(order_document.get("updated_at")),
    }
