from typing import Dict, List, Optional

from flask import render_template

from .helpers import isoformat, safe_float, safe_non_negative_int, serialize_address_payload
from .pricing import calculate_item_tax, convert_currency

INVOICE_SETTINGS_ID = "invoice"
INVOICE_SETTINGS_DEFAULTS = {
    "companyName": "E-Shop",
    "companyTagline": "Your Trusted Online Store",
    "companyEmail": "contact@e-shop.com",
    "companyWebsite": "e-shop.com",
    "companyAddress": "123 Business Street",
    "companyCity": "Tunis",
    "companyCountry": "Tunisia",
    "companyPhone": "+216 71 234 567",
    "companyQuote": "",
    "paymentText": "Payment to E-Shop",
    "logoUrl": "",
    "primaryColor": "#8B5CF6",
    "secondaryColor": "#EC4899",
    "accentColor": "#3B82F6",
    "fiscalNumber": "",
    "taxRegistrationNumber": "",
    "siretNumber": "",
    "fiscalInformation": "",
}
INVOICE_COLOR_FIELDS = ("primaryColor", "secondaryColor", "accentColor")


def load_invoice_settings(db) -> Dict[str, str]:
    stored = db.invoice_settings.find_one({"_id": INVOICE_SETTINGS_ID}) or {}
    settings = dict(INVOICE_SETTINGS_DEFAULTS)
    for key in INVOICE_SETTINGS_DEFAULTS:
        if stored.get(key) is not None:
            settings[key] = stored[key]
    return settings


def build_invoice_number(order_document) -> str:
    order_id = str(order_document.get("_id") or "")
    created_at = order_document.get("created_at")
    date_part = created_at.strftime("%Y%m%d") if created_at else "00000000"
    return f"INV-{date_part}-{order_id[-6:].upper()}"


def _line_subtotal(entry: Dict) -> float:
    if entry.get("subtotal") is not None:
        return safe_float(entry.get("subtotal"), 0.0)
    product = entry.get("product") or {}
    quantity = safe_non_negative_int(entry.get("quantity"), 0)
    return safe_float(product.get("price"), 0.0) * quantity


def build_invoice_lines(order_document, default_tax_rate: float) -> List[Dict[str, object]]:
    """Compute invoice lines, deriving tax for orders stored without a per-line split."""
    items = [entry for entry in order_document.get("items") or [] if isinstance(entry, dict)]
    subtotal = sum(_line_subtotal(entry) for entry in items)
    has_line_tax = all(entry.get("tax_amount") is not None for entry in items)

    derived_tax = 0.0
    if not has_line_tax:
        derived_tax = safe_float(order_document.get("total"), 0.0) - subtotal

    lines: List[Dict[str, object]] = []
    for entry in items:
        product = entry.get("product") or {}
        quantity = safe_non_negative_int(entry.get("quantity"), 0)
        line_subtotal = _line_subtotal(entry)

        if has_line_tax:
            tax_amount = safe_float(entry.get("tax_amount"), 0.0)
            tax_rate = safe_float(entry.get("tax_rate"), 0.0)
        elif derived_tax > 0 and subtotal > 0:
            tax_amount = derived_tax * line_subtotal / subtotal
            tax_rate = round(derived_tax / subtotal * 100, 2)
        else:
            tax_rate = default_tax_rate
            tax_amount = calculate_item_tax(line_subtotal, tax_rate)

        lines.append(
            {
                "productId": product.get("id", ""),
                "name": product.get("name") or "Item",
                "quantity": quantity,
                "unitPrice": round(safe_float(product.get("price"), 0.0), 2),
                "taxRate": tax_rate,
                "subtotal": round(line_subtotal, 2),
                "taxAmount": round(tax_amount, 2),
                "total": round(line_subtotal + tax_amount, 2),
            }
        )
    return lines


def _convert_line(line: Dict, from_rate: float, to_rate: float) -> Dict:
    converted = dict(line)
    for key in ("unitPrice", "subtotal", "taxAmount", "total"):
        converted[key] = convert_currency(line[key], from_rate, to_rate)
    return converted


def build_invoice(
    order_document,
    settings: Dict[str, str],
    currency: Optional[Dict] = None,
    base_currency: Optional[Dict] = None,
    customer: Optional[Dict] = None,
    default_tax_rate: float = 0.0,
) -> Dict[str, object]:
    lines = build_invoice_lines(order_document, default_tax_rate)

    currency = currency or base_currency or {}
    from_rate = safe_float((base_currency or {}).get("exchange_rate"), 1.0) or 1.0
    to_rate = safe_float(currency.get("exchange_rate"), 1.0) or 1.0
    if from_rate != to_rate:
        lines = [_convert_line(line, from_rate, to_rate) for line in lines]

    subtotal = round(sum(line["subtotal"] for line in lines), 2)
    tax_total = round(sum(line["taxAmount"] for line in lines), 2)

    return {
        "invoiceNumber": build_invoice_number(order_document),
        "orderId": str(order_document.get("_id")),
        "issuedAt": isoformat(order_document.get("created_at")),
        "status": order_document.get("status", "pending"),
        "paymentStatus": (order_document.get("payment") or {}).get("status", "pending"),
        "company": {
            "name": settings["companyName"],
            "tagline": settings["companyTagline"],
            "email": settings["companyEmail"],
            "website": settings["companyWebsite"],
            "address": settings["companyAddress"],
            "city": settings["companyCity"],
            "country": settings["companyCountry"],
            "phone": settings["companyPhone"],
            "quote": settings["companyQuote"],
            "paymentText": settings["paymentText"],
            "logoUrl": settings["logoUrl"],
            "primaryColor": settings["primaryColor"],
            "secondaryColor": settings["secondaryColor"],
            "accentColor": settings["accentColor"],
        },
        "fiscal": {
            "fiscalNumber": settings["fiscalNumber"],
            "taxRegistrationNumber": settings["taxRegistrationNumber"],
            "siretNumber": settings["siretNumber"],
            "fiscalInformation": settings["fiscalInformation"],
        },
        "customer": customer,
        "shippingAddress": serialize_address_payload(order_document.get("shipping_address")),
        "currency": {
            "code": currency.get("code") or order_document.get("currency") or "",
            "symbol": currency.get("symbol") or "",
        },
        "lines": lines,
        "totals": {
            "subtotal": subtotal,
            "tax": tax_total,
            "total": round(subtotal + tax_total, 2),
        },
    }


def render_invoice_html(invoice: Dict[str, object]) -> str:
    return render_template("invoice.html", invoice=invoice)
