"""Tax, currency and payment-amount arithmetic shared by the storefront routes."""

import math
import secrets
import string
import time
from typing import Dict, List, Optional

CURRENCY_EXPONENTS = {
    "BHD": 3,
    "JOD": 3,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "JPY": 0,
    "KRW": 0,
    "CLP": 0,
    "VND": 0,
}
PRICE_TOLERANCE = 0.01
REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def calculate_item_tax(base_price: float, tax_rate: float) -> float:
    return base_price * tax_rate / 100


def calculate_item_total_with_tax(base_price: float, tax_rate: float) -> float:
    return base_price + calculate_item_tax(base_price, tax_rate)


def calculate_cart_totals(
    items: List[Dict],
    tax_rates: Optional[Dict[str, Optional[float]]] = None,
    default_tax_rate: float = 0.0,
) -> Dict[str, object]:
    """Sum a cart line by line.

    Each item needs ``id``, ``price`` and ``quantity``. ``tax_rates`` maps an
    item id to its rate in percent; an id that is missing or mapped to None
    uses ``default_tax_rate``.
    """
    tax_rates = tax_rates or {}
    subtotal = 0.0
    total_tax = 0.0
    breakdown: List[Dict[str, object]] = []

    for item in items:
        item_id = str(item.get("id") or "")
        price = float(item.get("price") or 0)
        quantity = int(item.get("quantity") or 0)
        rate = tax_rates.get(item_id)
        if rate is None:
            rate = default_tax_rate

        item_subtotal = price * quantity
        item_tax = calculate_item_tax(item_subtotal, rate)
        subtotal += item_subtotal
        total_tax += item_tax
        breakdown.append(
            {
                "id": item_id,
                "quantity": quantity,
                "unitPrice": round(price, 2),
                "taxRate": rate,
                "subtotal": round(item_subtotal, 2),
                "taxAmount": round(item_tax, 2),
                "total": round(item_subtotal + item_tax, 2),
            }
        )

    return {
        "subtotal": round(subtotal, 2),
        "totalTax": round(total_tax, 2),
        "totalWithTax": round(subtotal + total_tax, 2),
        "itemBreakdown": breakdown,
    }


def validate_price_calculation(
    base_price: float,
    tax_rate: float,
    expected_total: float,
    tolerance: float = PRICE_TOLERANCE,
) -> bool:
    calculated = calculate_item_total_with_tax(base_price, tax_rate)
    return abs(calculated - expected_total) <= tolerance


def convert_currency(amount: float, from_rate: float, to_rate: float) -> float:
    if from_rate <= 0 or to_rate <= 0:
        raise ValueError("Exchange rates must be greater than zero.")
    if from_rate == to_rate:
        return round(amount, 2)
    return round(amount / from_rate * to_rate, 2)


def get_rate_to_base(currency: Optional[Dict], base_currency: Optional[Dict]) -> float:
    """Rate of ``currency`` relative to ``base_currency``, from their stored rates."""
    if not currency or not base_currency:
        return 1.0
    if currency.get("code") == base_currency.get("code"):
        return 1.0
    base_rate = float(base_currency.get("exchange_rate") or 1)
    rate = float(currency.get("exchange_rate") or 1)
    return rate / base_rate if base_rate > 0 else 1.0


def currency_exponent(currency: Optional[str]) -> int:
    return CURRENCY_EXPONENTS.get(str(currency or "").upper(), 2)


def to_minor_units(amount: float, currency: Optional[str] = None) -> int:
    return int(round(float(amount) * 10 ** currency_exponent(currency)))


def format_price(amount: float, symbol: str = "$", currency: Optional[str] = None) -> str:
    decimals = currency_exponent(currency) if currency else 2
    return f"{symbol}{float(amount):,.{decimals}f}"


def normalize_payment_amount(amount) -> float:
    try:
        numeric = round(float(amount), 2)
    except (TypeError, ValueError):
        raise ValueError("Amount must be a valid number.")
    if not math.isfinite(numeric) or numeric <= 0:
        raise ValueError("Amount must be a positive number.")
    return numeric


def generate_payment_reference(prefix: str = "PAY") -> str:
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"
