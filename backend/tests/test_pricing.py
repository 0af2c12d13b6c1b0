import re

import pytest

from shopy.pricing import (
    calculate_cart_totals,
    calculate_item_tax,
    calculate_item_total_with_tax,
    convert_currency,
    format_price,
    generate_payment_reference,
    get_rate_to_base,
    normalize_payment_amount,
    to_minor_units,
    validate_price_calculation,
)


def test_item_tax_and_total():
    assert calculate_item_tax(100, 20) == 20
    assert calculate_item_total_with_tax(100, 20) == 120
    assert calculate_item_total_with_tax(50, 0) == 50


def test_cart_totals_use_per_item_rates_and_default():
    totals = calculate_cart_totals(
        [
            {"id": "a", "price": 10, "quantity": 2},
            {"id": "b", "price": 5.5, "quantity": 1},
            {"id": "c", "price": 3, "quantity": 3},
        ],
        {"a": 20, "b": None},
        default_tax_rate=10,
    )

    assert totals["subtotal"] == 34.5
    assert totals["totalTax"] == pytest.approx(4 + 0.55 + 0.9)
    assert totals["totalWithTax"] == pytest.approx(39.95)
    breakdown = {line["id"]: line for line in totals["itemBreakdown"]}
    assert breakdown["a"]["taxRate"] == 20
    assert breakdown["b"]["taxRate"] == 10
    assert breakdown["c"]["taxRate"] == 10
    assert breakdown["a"]["total"] == 24


def test_cart_totals_keep_zero_rate():
    totals = calculate_cart_totals([{"id": "x", "price": 12, "quantity": 1}], {"x": 0}, 25)

    assert totals["totalTax"] == 0
    assert totals["itemBreakdown"][0]["taxRate"] == 0


def test_cart_totals_empty_cart():
    totals = calculate_cart_totals([])

    assert totals == {"subtotal": 0, "totalTax": 0, "totalWithTax": 0, "itemBreakdown": []}


def test_validate_price_calculation_tolerance():
    assert validate_price_calculation(19.99, 19, 23.79)
    assert not validate_price_calculation(19.99, 19, 23.9)


def test_convert_currency():
    assert convert_currency(100, 1, 3.1) == 310
    assert convert_currency(310, 3.1, 1) == 100
    assert convert_currency(9.999, 2, 2) == 10.0

    with pytest.raises(ValueError):
        convert_currency(10, 0, 1)
    with pytest.raises(ValueError):
        convert_currency(10, 1, -2)


def test_rate_to_base_uses_stored_rates():
    usd = {"code": "USD", "is_base": True, "exchange_rate": 2}
    eur = {"code": "EUR", "exchange_rate": 1}

    assert get_rate_to_base(None, usd) == 1.0
    assert get_rate_to_base(usd, usd) == 1.0
    assert get_rate_to_base(eur, usd) == 0.5
    assert get_rate_to_base(usd, eur) == 2.0
    assert convert_currency(100, usd["exchange_rate"], eur["exchange_rate"]) == 100 * get_rate_to_base(eur, usd)


def test_minor_units_follow_currency_exponent():
    assert to_minor_units(12.34, "EUR") == 1234
    assert to_minor_units(12.345, "TND") == 12345
    assert to_minor_units(1200, "JPY") == 1200
    assert to_minor_units(0.1 + 0.2, "USD") == 30


def test_format_price():
    assert format_price(1234.5) == "$1,234.50"
    assert format_price(12.5, "DT ", "TND") == "DT 12.500"


def test_normalize_payment_amount():
    assert normalize_payment_amount("19.999") == 20.0
    for invalid in (0, -3, "abc", None, float("nan"), float("inf")):
        with pytest.raises(ValueError):
            normalize_payment_amount(invalid)


def test_payment_reference_format():
    reference = generate_payment_reference("PAYMEE")

    assert re.match(r"^PAYMEE-\d{13}-[A-Z0-9]{6}$", reference)
    assert reference != generate_payment_reference("PAYMEE")
