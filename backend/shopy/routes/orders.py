from datetime import datetime
from typing import Dict, List, Optional, Tuple

from flask import Response, jsonify, request
from flask_jwt_extended import jwt_required, verify_jwt_in_request

from ..audit import record_audit_log
from ..auth import can_access_user, is_admin, load_current_user, require_admin_user
from ..emails import send_order_confirmation_email
from ..helpers import (
    extract_address,
    normalize_email,
    parse_object_id,
    safe_non_negative_int,
)
from ..invoices import build_invoice, load_invoice_settings, render_invoice_html
from ..lookups import (
    find_currency_by_code,
    get_base_currency,
    get_default_tax_rate,
    get_setting,
    load_tax_map,
)
from ..pricing import calculate_cart_totals, currency_exponent
from ..serializers import serialize_order

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed")


def normalize_order_item(payload) -> Optional[Dict[str, object]]:
    if not isinstance(payload, dict):
        return None

    product = payload.get("product")
    product_identifier = (
        payload.get("productId")
        or payload.get("product_id")
        or (product.get("id") if isinstance(product, dict) else product)
        or payload.get("id")
    )
    product_id = str(product_identifier or "").strip()
    if not product_id:
        return None

    quantity = safe_non_negative_int(payload.get("quantity"), 1) or 1
    return {"product_id": product_id, "quantity": quantity}


def apply_payment_update(
    db,
    query: Dict,
    status: str,
    provider: Optional[str] = None,
    details: Optional[Dict] = None,
):
    """Record a provider payment result on the matching order.

    A paid order stays paid. Paying a pending order moves it to processing.
    """
    order_document = db.orders.find_one(query)
    if not order_document:
        return None

    payment = order_document.get("payment") or {}
    if payment.get("status") == "paid":
        return order_document

    now = datetime.utcnow()
    updates: Dict[str, object] = {"payment.status": status, "updated_at": now}
    if provider:
        updates["payment.method"] = provider
    if details:
        updates["payment.details"] = details
    if status == "paid":
        updates["payment.paid_at"] = now
        if order_document.get("status") == "pending":
            updates["status"] = "processing"

    db.orders.update_one({"_id": order_document["_id"]}, {"$set": updates})
    return db.orders.find_one({"_id": order_document["_id"]})


def expected_payment(order_document) -> Tuple[float, str]:
    payment = order_document.get("payment") or {}
    amount = payment.get("amount", order_document.get("total", 0))
    currency = payment.get("currency") or order_document.get("currency") or ""
    return round(float(amount or 0), currency_exponent(currency)), str(currency).upper()


def payment_amount_matches(order_document, amount, currency: Optional[str] = None) -> bool:
    """Compare a provider-confirmed amount with what the order expects.

    Providers that report no amount cannot be compared and are accepted.
    """
    if amount in (None, ""):
        return True
    expected_amount, expected_currency = expected_payment(order_document)
    if currency and expected_currency and str(currency).upper() != expected_currency:
        return False
    try:
        confirmed = round(float(amount), currency_exponent(expected_currency))
    except (TypeError, ValueError):
        return False
    return confirmed == expected_amount


def confirm_order_payment(
    db,
    query: Dict,
    provider: str,
    amount=None,
    currency: Optional[str] = None,
    details: Optional[Dict] = None,
):
    """Mark the matching order paid when the confirmed amount checks out.

    Returns ``(order_document, error)``. On a mismatch the order is left
    untouched and ``error`` describes the difference.
    """
    order_document = db.orders.find_one(query)
    if not order_document:
        return None, None
    if not payment_amount_matches(order_document, amount, currency):
        expected_amount, expected_currency = expected_payment(order_document)
        confirmed_label = f"{amount} {currency or expected_currency}".strip()
        expected_label = f"{expected_amount} {expected_currency}".strip()
        return order_document, f"confirmed amount {confirmed_label} does not match {expected_label}"
    order_document = apply_payment_update(
        db, {"_id": order_document["_id"]}, "paid", provider, details
    )
    return order_document, None


def register_order_routes(app, db):
    def fetch_order(order_id: str):
        object_id = parse_object_id(order_id)
        order_document = db.orders.find_one({"_id": object_id}) if object_id else None
        if not order_document:
            return None, (jsonify({"error": "Order not found"}), 404)
        return order_document, None

    def can_view_order(user_document, order_document) -> bool:
        if not user_document:
            return False
        if is_admin(user_document):
            return True
        return bool(order_document.get("user_id")) and order_document.get("user_id") == str(
            user_document["_id"]
        )

    def build_order_lines(raw_items):
        """Price the requested items from the catalog, returning (lines, totals, error)."""
        normalized_items = [item for item in map(normalize_order_item, raw_items or []) if item]
        if not normalized_items:
            return None, None, (jsonify({"error": "Missing required fields"}), 400)

        product_docs: Dict[str, Dict] = {}
        for item in normalized_items:
            product_id = item["product_id"]
            object_id = parse_object_id(product_id)
            product_document = db.products.find_one({"_id": object_id}) if object_id else None
            if not product_document:
                return None, None, (jsonify({"error": f"Product {product_id} not found"}), 400)
            product_docs[product_id] = product_document

        tax_map = load_tax_map(db, (document.get("tax_id") for document in product_docs.values()))
        tax_rates = {}
        for product_id, document in product_docs.items():
            tax_document = tax_map.get(document.get("tax_id"))
            tax_rates[product_id] = float(tax_document["rate"]) if tax_document else None

        totals = calculate_cart_totals(
            [
                {
                    "id": item["product_id"],
                    "price": product_docs[item["product_id"]].get("price", 0),
                    "quantity": item["quantity"],
                }
                for item in normalized_items
            ],
            tax_rates,
            get_default_tax_rate(db, app.config["DEFAULT_TAX_RATE"]),
        )

        lines: List[Dict[str, object]] = []
        for item, breakdown in zip(normalized_items, totals["itemBreakdown"]):
            product_document = product_docs[item["product_id"]]
            lines.append(
                {
                    "product": {
                        "id": item["product_id"],
                        "name": product_document.get("name", ""),
                        "price": breakdown["unitPrice"],
                        "description": product_document.get("description", ""),
                        "category": product_document.get("category", ""),
                        "subcategory": product_document.get("subcategory", ""),
                        "image": product_document.get("image", ""),
                    },
                    "quantity": item["quantity"],
                    "tax_rate": breakdown["taxRate"],
                    "tax_amount": breakdown["taxAmount"],
                    "subtotal": breakdown["subtotal"],
                    "total": breakdown["total"],
                }
            )
        return lines, totals, None

    def adjust_stock(lines: List[Dict], direction: int) -> None:
        for line in lines or []:
            object_id = parse_object_id((line.get("product") or {}).get("id"))
            if object_id:
                db.products.update_one(
                    {"_id": object_id},
                    {"$inc": {"stock": direction * int(line.get("quantity") or 0)}},
                )

    def resolve_order_currency() -> str:
        # Catalog prices are stored in the base currency.
        base_currency = get_base_currency(db)
        if base_currency:
            return base_currency["code"]
        return str(get_setting(db, "currency", "USD")).upper()

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        user = load_current_user(db)
        if not user:
            return jsonify({"error": "User not found"}), 404

        query: Dict[str, object] = {}
        if is_admin(user):
            if request.args.get("userId"):
                query["user_id"] = request.args["userId"]
        else:
            query["user_id"] = str(user["_id"])

        status = str(request.args.get("status") or "").strip().lower()
        if status:
            if status not in ORDER_STATUSES:
                return jsonify({"error": "Invalid status"}), 400
            query["status"] = status

        orders = [serialize_order(document) for document in db.orders.find(query).sort("created_at", -1)]
        return jsonify({"orders": orders})

    @app.route("/api/orders/user/<user_id>", methods=["GET"])
    @jwt_required()
    def list_user_orders(user_id: str):
        user = load_current_user(db)
        if not can_access_user(user, user_id):
            return jsonify({"error": "You can only view your own orders"}), 403

        orders = [
            serialize_order(document)
            for document in db.orders.find({"user_id": user_id}).sort("created_at", -1)
        ]
        return jsonify({"orders": orders})

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        user = load_current_user(db)
        order_document, load_error = fetch_order(order_id)
        if load_error:
            return load_error
        if not can_view_order(user, order_document):
            return jsonify({"error": "You can only view your own orders"}), 403
        return jsonify({"order": serialize_order(order_document)})

    @app.route("/api/orders", methods=["POST"])
    def create_order():
        verify_jwt_in_request(optional=True)
        caller = load_current_user(db)
        payload = request.get_json(silent=True) or {}

        shipping_address = extract_address({"address": payload.get("shippingAddress")})
        if not payload.get("items") or not shipping_address:
            return jsonify({"error": "Missing required fields"}), 400

        user_document = None
        requested_user_id = str(payload.get("userId") or "").strip()
        if requested_user_id:
            if caller and not can_access_user(caller, requested_user_id):
                return jsonify({"error": "You can only place orders for your own account"}), 403
            object_id = parse_object_id(requested_user_id)
            user_document = db.users.find_one({"_id": object_id}) if object_id else None
            if not user_document:
                return jsonify({"error": "User not found"}), 404
        elif caller:
            user_document = caller

        lines, totals, pricing_error = build_order_lines(payload.get("items"))
        if pricing_error:
            return pricing_error

        status = "pending"
        requested_status = str(payload.get("status") or "").strip().lower()
        if requested_status in ORDER_STATUSES and is_admin(caller):
            status = requested_status

        payment_payload = payload.get("payment") if isinstance(payload.get("payment"), dict) else {}
        now = datetime.utcnow()
        order_document = {
            "user_id": str(user_document["_id"]) if user_document else None,
            "email": normalize_email(
                (user_document or {}).get("email") or payload.get("email")
            ),
            "items": lines,
            "subtotal": totals["subtotal"],
            "tax_total": totals["totalTax"],
            "total": totals["totalWithTax"],
            "currency": resolve_order_currency(),
            "status": status,
            "shipping_address": shipping_address,
            "payment": {
                "method": str(payment_payload.get("method") or "").strip().lower(),
                "reference": str(payment_payload.get("reference") or "").strip(),
                "token": str(payment_payload.get("token") or "").strip(),
                "status": "pending",
            },
            "created_at": now,
            "updated_at": now,
        }
        result = db.orders.insert_one(order_document)
        order_document["_id"] = result.inserted_id
        adjust_stock(lines, -1)

        if order_document["email"]:
            send_order_confirmation_email(order_document, order_document["email"])

        return (
            jsonify(
                {"message": "Order created successfully", "order": serialize_order(order_document)}
            ),
            201,
        )

    @app.route("/api/orders/<order_id>/status", methods=["PATCH"])
    @jwt_required()
    def update_order_status(order_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        order_document, load_error = fetch_order(order_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        status = str(payload.get("status") or "").strip().lower()
        if status not in ORDER_STATUSES:
            return jsonify({"error": "Invalid status"}), 400

        db.orders.update_one(
            {"_id": order_document["_id"]},
            {"$set": {"status": status, "updated_at": datetime.utcnow()}},
        )
        record_audit_log(
            db, admin_user, "Updated order status", {"order_id": order_id, "status": status}
        )
        updated = db.orders.find_one({"_id": order_document["_id"]})
        return jsonify({"message": "Order status updated", "order": serialize_order(updated)})

    @app.route("/api/orders/<order_id>", methods=["PUT"])
    @jwt_required()
    def update_order(order_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        order_document, load_error = fetch_order(order_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {}

        if "shippingAddress" in payload:
            shipping_address = extract_address({"address": payload.get("shippingAddress")})
            if not shipping_address:
                return jsonify({"error": "Shipping address cannot be empty"}), 400
            updates["shipping_address"] = shipping_address

        if "status" in payload:
            status = str(payload.get("status") or "").strip().lower()
            if status not in ORDER_STATUSES:
                return jsonify({"error": "Invalid status"}), 400
            updates["status"] = status

        if "paymentStatus" in payload:
            payment_status = str(payload.get("paymentStatus") or "").strip().lower()
            if payment_status not in PAYMENT_STATUSES:
                return jsonify({"error": "Invalid payment status"}), 400
            updates["payment.status"] = payment_status

        new_lines = None
        if "items" in payload:
            new_lines, totals, pricing_error = build_order_lines(payload.get("items"))
            if pricing_error:
                return pricing_error
            updates.update(
                {
                    "items": new_lines,
                    "subtotal": totals["subtotal"],
                    "tax_total": totals["totalTax"],
                    "total": totals["totalWithTax"],
                }
            )

        if not updates:
            return jsonify({"error": "No valid fields to update"}), 400

        if new_lines is not None:
            adjust_stock(order_document.get("items"), 1)
            adjust_stock(new_lines, -1)

        updates["updated_at"] = datetime.utcnow()
        db.orders.update_one({"_id": order_document["_id"]}, {"$set": updates})
        record_audit_log(
            db,
            admin_user,
            "Updated order",
            {"order_id": order_id, "fields": ",".join(sorted(updates))},
        )
        updated = db.orders.find_one({"_id": order_document["_id"]})
        return jsonify({"message": "Order updated successfully", "order": serialize_order(updated)})

    @app.route("/api/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    def delete_order(order_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        order_document, load_error = fetch_order(order_id)
        if load_error:
            return load_error

        db.orders.delete_one({"_id": order_document["_id"]})
        record_audit_log(db, admin_user, "Deleted order", {"order_id": order_id})
        return jsonify({"message": "Order deleted successfully"})

    @app.route("/api/orders/<order_id>/invoice", methods=["GET"])
    @jwt_required()
    def get_order_invoice(order_id: str):
        user = load_current_user(db)
        order_document, load_error = fetch_order(order_id)
        if load_error:
            return load_error
        if not can_view_order(user, order_document):
            return jsonify({"error": "You can only view your own orders"}), 403

        base_currency = get_base_currency(db)
        currency = base_currency
        if request.args.get("currency"):
            currency = find_currency_by_code(db, request.args["currency"])
            if not currency:
                code = request.args["currency"].upper()
                return jsonify({"error": f"Currency {code} not found"}), 404

        customer = None
        owner_id = parse_object_id(order_document.get("user_id"))
        owner = db.users.find_one({"_id": owner_id}) if owner_id else None
        if owner:
            customer = {"name": owner.get("name", ""), "email": owner.get("email", "")}
        elif order_document.get("email"):
            customer = {"name": "", "email": order_document["email"]}

        invoice = build_invoice(
            order_document,
            load_invoice_settings(db),
            currency=currency,
            base_currency=base_currency,
            customer=customer,
            default_tax_rate=get_default_tax_rate(db, app.config["DEFAULT_TAX_RATE"]),
        )

        if request.args.get("format") == "html":
            return Response(render_invoice_html(invoice), mimetype="text/html")
        return jsonify({"invoice": invoice})
