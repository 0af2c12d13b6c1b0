import re
from datetime import datetime
from typing import Dict

from flask import jsonify, request
from flask_jwt_extended import jwt_required
from pymongo.errors import DuplicateKeyError

from ..audit import record_audit_log
from ..auth import require_admin_user
from ..helpers import hex_color_regex, parse_bool, parse_object_id, safe_float
from ..invoices import (
    INVOICE_COLOR_FIELDS,
    INVOICE_SETTINGS_DEFAULTS,
    INVOICE_SETTINGS_ID,
    load_invoice_settings,
)
from ..lookups import find_currency_by_code, get_base_currency, get_setting, set_setting
from ..payments import PROVIDER_CODES
from ..pricing import convert_currency, get_rate_to_base
from ..serializers import serialize_currency, serialize_tax
from ..uploads import build_upload_url, remove_image, save_image

currency_code_regex = re.compile(r"^[A-Z]{3}$")


def register_settings_routes(app, db):
    config_service = app.extensions["payment_config"]

    def require_settings_admin():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return None, (jsonify({"error": "Forbidden: Admins only"}), 403)
        return admin_user, None

    def fetch_currency(currency_id: str):
        object_id = parse_object_id(currency_id)
        currency_document = db.currencies.find_one({"_id": object_id}) if object_id else None
        if not currency_document:
            return None, (jsonify({"error": "Currency not found"}), 404)
        return currency_document, None

    def parse_exchange_rate(raw_value):
        rate = safe_float(raw_value, None)
        if rate is None or rate <= 0:
            return None, "Exchange rate must be a number greater than 0"
        return rate, None

    def duplicate_currency_error(code: str):
        return jsonify({"error": f"Currency with code '{code}' already exists"}), 400

    def clear_other_bases(currency_id=None) -> None:
        query: Dict[str, object] = {"is_base": True}
        if currency_id is not None:
            query["_id"] = {"$ne": currency_id}
        db.currencies.update_many(
            query, {"$set": {"is_base": False, "updated_at": datetime.utcnow()}}
        )

    def deactivate_other_currencies(currency_id) -> None:
        db.currencies.update_many(
            {"_id": {"$ne": currency_id}, "is_active": True},
            {"$set": {"is_active": False, "updated_at": datetime.utcnow()}},
        )

    @app.route("/api/settings/payment-method", methods=["GET"])
    def get_active_payment_method():
        return jsonify({"activePaymentMethod": get_setting(db, "payment_method", "adyen")})

    @app.route("/api/settings/payment-method", methods=["POST"])
    @jwt_required()
    def set_active_payment_method():
        admin_user, admin_error = require_settings_admin()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        method = str(payload.get("method") or "").strip().lower()
        if method not in PROVIDER_CODES:
            return jsonify({"error": "Invalid payment method"}), 400

        set_setting(db, "payment_method", method)
        method_document = db.payment_methods.find_one({"code": method})
        if method_document:
            now = datetime.utcnow()
            db.payment_methods.update_many(
                {"_id": {"$ne": method_document["_id"]}, "is_active": True},
                {"$set": {"is_active": False, "updated_at": now}},
            )
            db.payment_methods.update_one(
                {"_id": method_document["_id"]},
                {"$set": {"is_active": True, "updated_at": now}},
            )
        config_service.clear_cache()

        record_audit_log(db, admin_user, "Changed active payment method", {"method": method})
        return jsonify({"message": "Payment method updated", "activePaymentMethod": method})

    @app.route("/api/settings/currency", methods=["GET"])
    def get_currency_setting():
        return jsonify({"currency": get_setting(db, "currency", "USD")})

    @app.route("/api/settings/currency", methods=["POST"])
    @jwt_required()
    def set_currency_setting():
        admin_user, admin_error = require_settings_admin()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        currency = payload.get("currency")
        if not currency or not isinstance(currency, str):
            return jsonify({"error": "Invalid currency"}), 400

        currency = currency.strip().upper()
        set_setting(db, "currency", currency)
        record_audit_log(db, admin_user, "Changed display currency", {"currency": currency})
        return jsonify({"message": "Currency updated", "currency": currency})

    @app.route("/api/settings/tax", methods=["GET"])
    def get_tax_setting():
        return jsonify({"tax": get_setting(db, "tax", app.config["DEFAULT_TAX_RATE"])})

    @app.route("/api/settings/tax", methods=["POST"])
    @jwt_required()
    def set_tax_setting():
        admin_user, admin_error = require_settings_admin()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        tax = safe_float(payload.get("tax"), None)
        if tax is None or isinstance(payload.get("tax"), bool):
            return jsonify({"error": "Invalid tax value"}), 400

        set_setting(db, "tax", tax)
        record_audit_log(db, admin_user, "Changed default tax", {"tax": tax})
        return jsonify({"message": "Tax updated", "tax": tax})

    @app.route("/api/settings/taxes", methods=["GET"])
    def list_setting_taxes():
        return jsonify(
            {"taxes": [serialize_tax(document) for document in db.taxes.find().sort("rate", 1)]}
        )

    @app.route("/api/settings/taxes/active", methods=["GET"])
    def list_setting_active_taxes():
        return jsonify(
            {
                "taxes": [
                    serialize_tax(document)
                    for document in db.taxes.find({"is_active": True}).sort("rate", 1)
                ]
            }
        )

    @app.route("/api/settings/currencies", methods=["GET"])
    def list_currencies():
        currencies = db.currencies.find().sort([("is_base", -1), ("name", 1)])
        return jsonify({"currencies": [serialize_currency(document) for document in currencies]})

    @app.route("/api/settings/currencies/active", methods=["GET"])
    def list_active_currencies():
        currencies = db.currencies.find({"is_active": True}).sort([("is_base", -1), ("name", 1)])
        return jsonify({"currencies": [serialize_currency(document) for document in currencies]})

    @app.route("/api/settings/currencies/base", methods=["GET"])
    def get_base_currency_route():
        base_currency = get_base_currency(db)
        if not base_currency:
            return jsonify({"error": "No base currency configured"}), 404
        return jsonify({"currency": serialize_currency(base_currency)})

    @app.route("/api/settings/currencies/convert", methods=["GET"])
    def convert_currency_amount():
        amount = safe_float(request.args.get("amount"), None)
        if amount is None:
            return jsonify({"error": "Amount must be a valid number"}), 400

        from_code = str(request.args.get("from") or "").strip().upper()
        to_code = str(request.args.get("to") or "").strip().upper()
        if not from_code or not to_code:
            return jsonify({"error": "Both from and to currencies are required"}), 400

        from_currency = find_currency_by_code(db, from_code)
        to_currency = find_currency_by_code(db, to_code)
        for code, document in ((from_code, from_currency), (to_code, to_currency)):
            if not document:
                return jsonify({"error": f"Currency {code} not found"}), 404

        try:
            converted = convert_currency(
                amount,
                float(from_currency.get("exchange_rate") or 1),
                float(to_currency.get("exchange_rate") or 1),
            )
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        return jsonify(
            {
                "amount": amount,
                "from": from_code,
                "to": to_code,
                "rate": round(get_rate_to_base(to_currency, from_currency), 6),
                "converted": converted,
            }
        )

    @app.route("/api/settings/currencies", methods=["POST"])
    @jwt_required()
    def create_currency():
        admin_user, admin_error = require_settings_admin()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        name = str(payload.get("name") or "").strip()
        code = str(payload.get("code") or "").strip().upper()
        symbol = str(payload.get("symbol") or "").strip()
        if not name or not code or not symbol:
            return jsonify({"error": "Name, code, and symbol are required"}), 400
        if not currency_code_regex.match(code):
            return jsonify({"error": "Currency code must be 3 letters"}), 400
        if find_currency_by_code(db, code):
            return duplicate_currency_error(code)

        exchange_rate = 1.0
        if payload.get("exchangeRate") not in (None, ""):
            exchange_rate, rate_error = parse_exchange_rate(payload.get("exchangeRate"))
            if rate_error:
                return jsonify({"error": rate_error}), 400

        is_base = parse_bool(payload.get("isBase"))
        is_active = parse_bool(payload.get("isActive"), True)
        now = datetime.utcnow()
        currency_document = {
            "name": name,
            "code": code,
            "symbol": symbol,
            "exchange_rate": exchange_rate,
            "is_base": is_base,
            "is_active": is_active,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = db.currencies.insert_one(currency_document)
        except DuplicateKeyError:
            return duplicate_currency_error(code)
        currency_document["_id"] = result.inserted_id

        if is_base:
            clear_other_bases(result.inserted_id)
        if is_active:
            deactivate_other_currencies(result.inserted_id)

        record_audit_log(db, admin_user, "Created currency", {"code": code})
        return (
            jsonify(
                {
                    "message": "Currency created successfully",
                    "currency": serialize_currency(currency_document),
                }
            ),
            201,
        )

    @app.route("/api/settings/currencies/<currency_id>", methods=["PUT"])
    @jwt_required()
    def update_currency(currency_id: str):
        admin_user, admin_error = require_settings_admin()
        if admin_error:
            return admin_error

        currency_document, load_error = fetch_currency(currency_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {}

        for field in ("name", "symbol"):
            if field in payload:
                value = str(payload.get(field) or "").strip()
                if not value:
                    return jsonify({"error": f"{field.capitalize()} cannot be empty"}), 400
                updates[field] = value

        if "code" in payload:
            code = str(payload.get("code") or "").strip().upper()
            if not currency_code_regex.match(code):
                return jsonify({"error": "Currency code must be 3 letters"}), 400
            if db.currencies.find_one({"code": code, "_id": {"$ne": currency_document["_id"]}}):
                return duplicate_currency_error(code)
            updates["code"] = code

        if "exchangeRate" in payload:
            exchange_rate, rate_error = parse_exchange_rate(payload.get("exchangeRate"))
            if rate_error:
                return jsonify({"error": rate_error}), 400
            updates["exchange_rate"] = exchange_rate

        if "isActive" in payload:
            updates["is_active"] = parse_bool(payload.get("isActive"))
        if "isBase" in payload:
            updates["is_base"] = parse_bool(payload.get("isBase"))

        if not updates:
            return jsonify({"error": "No valid fields to update"}), 400

        # The base currency only changes through set-base or toggle.
        if currency_document.get("is_base"):
            if updates.get("is_base") is False:
                return (
                    jsonify(
                        {
                            "error": "Cannot unset the base currency. "
                            "Set another currency as base instead."
                        }
                    ),
                    400,
                )
            if updates.get("is_active") is False:
                return (
                    jsonify(
                        {
                            "error": "Cannot deactivate the base currency. "
                            "Use toggle to move the base to another currency."
                        }
                    ),
                    400,
                )

        if updates.get("is_base"):
            clear_other_bases(currency_document["_id"])
        if updates.get("is_active"):
            deactivate_other_currencies(currency_document["_id"])

        updates["updated_at"] = datetime.utcnow()
        try:
            db.currencies.update_one({"_id": currency_document["_id"]}, {"$set": updates})
        except DuplicateKeyError:
            return duplicate_currency_error(updates.get("code", currency_document.get("code")))

        record_audit_log(
            db,
            admin_user,
            "Updated currency",
            {"code": updates.get("code", currency_document.get("code"))},
        )
        updated = db.currencies.find_one({"_id": currency_document["_id"]})
        return jsonify(
            {"message": "Currency updated successfully", "currency": serialize_currency(updated)}
        )

    @app.route("/api/settings/currencies/<currency_id>", methods=["DELETE"])
    @jwt_required()
    def delete_currency(currency_id: str):
        admin_user, admin_error = require_settings_admin()
        if admin_error:
            return admin_error

        currency_document, load_error = fetch_currency(currency_id)
        if load_error:
            return load_error
        if currency_document.get("is_base"):
            return jsonify({"error": "Cannot delete the base currency"}), 400

        db.currencies.delete_one({"_id": currency_document["_id"]})
        record_audit_log(db, admin_user, "Deleted currency", {"code": currency_document.get("code")})
        return jsonify({"message": "Currency deleted successfully"})

    @app.route("/api/settings/currencies/<currency_id>/toggle", methods=["POST"])
    @jwt_required()
    def toggle_currency(currency_id: str):
        admin_user, admin_error = require_settings_admin()
        if admin_error:
            return admin_error

        currency_document, load_error = fetch_currency(currency_id)
        if load_error:
            return load_error

        now = datetime.utcnow()
        is_active = not currency_document.get("is_active")
        updates: Dict[str, object] = {"is_active": is_active, "updated_at": now}

        if currency_document.get("is_base") and not is_active:
            replacement = db.currencies.find_one(
                {"is_active": True, "_id": {"$ne": currency_document["_id"]}},
                sort=[("created_at", 1)],
            )
            if not replacement:
                return (
                    jsonify(
                        {
                            "error": "Cannot deactivate the only active currency. "
                            "Please activate another currency first."
                        }
                    ),
                    400,
                )
            db.currencies.update_one(
                {"_id": replacement["_id"]}, {"$set": {"is_base": True, "updated_at": now}}
            )
            updates["is_base"] = False

        if is_active:
            deactivate_other_currencies(currency_document["_id"])
        db.currencies.update_one({"_id": currency_document["_id"]}, {"$set": updates})

        record_audit_log(
            db,
            admin_user,
            "Toggled currency",
            {"code": currency_document.get("code"), "active": is_active},
        )
        updated = db.currencies.find_one({"_id": currency_document["_id"]})
        return jsonify(
            {
                "message": "Currency activated" if is_active else "Currency deactivated",
                "currency": serialize_currency(updated),
            }
        )

    @app.route("/api/settings/currencies/<currency_id>/set-base", methods=["POST"])
    @jwt_required()
    def set_base_currency(currency_id: str):
        admin_user, admin_error = require_settings_admin()
        if admin_error:
            return admin_error

        currency_document, load_error = fetch_currency(currency_id)
        if load_error:
            return load_error

        now = datetime.utcnow()
        db.currencies.update_many(
            {"_id": {"$ne": currency_document["_id"]}},
            {"$set": {"is_base": False, "is_active": False, "updated_at": now}},
        )
        db.currencies.update_one(
            {"_id": currency_document["_id"]},
            {"$set": {"is_base": True, "is_active": True, "updated_at": now}},
        )

        record_audit_log(db, admin_user, "Set base currency", {"code": currency_document.get("code")})
        updated = db.currencies.find_one({"_id": currency_document["_id"]})
        return jsonify(
            {"message": "Base currency updated", "currency": serialize_currency(updated)}
        )

    @app.route("/api/settings/invoice", methods=["GET"])
    def get_invoice_settings():
        return jsonify({"settings": load_invoice_settings(db)})

    @app.route("/api/settings/invoice", methods=["PUT"])
    @jwt_required()
    def update_invoice_settings():
        admin_user, admin_error = require_settings_admin()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, str] = {}
        for key in INVOICE_SETTINGS_DEFAULTS:
            if key not in payload:
                continue
            value = str(payload.get(key) or "").strip()
            if key in INVOICE_COLOR_FIELDS and not hex_color_regex.match(value):
                return jsonify({"error": f"{key} must be a hex color like #1A2B3C"}), 400
            updates[key] = value

        if not updates:
            return jsonify({"error": "No valid fields to update"}), 400

        db.invoice_settings.update_one(
            {"_id": INVOICE_SETTINGS_ID}, {"$set": updates}, upsert=True
        )
        record_audit_log(
            db, admin_user, "Updated invoice settings", {"fields": ",".join(sorted(updates))}
        )
        return jsonify(
            {"message": "Invoice settings updated", "settings": load_invoice_settings(db)}
        )

    @app.route("/api/settings/upload-logo", methods=["POST"])
    @jwt_required()
    def upload_invoice_logo():
        admin_user, admin_error = require_settings_admin()
        if admin_error:
            return admin_error

        logo_file = request.files.get("logo") if request.files else None
        if not logo_file:
            return jsonify({"error": "No logo file provided"}), 400

        saved_filename, image_error = save_image(logo_file, prefix="logo-")
        if image_error:
            return jsonify({"error": image_error}), 400

        previous = db.invoice_settings.find_one({"_id": INVOICE_SETTINGS_ID}) or {}
        previous_logo = str(previous.get("logoFile") or "")
        logo_url = build_upload_url(saved_filename)
        db.invoice_settings.update_one(
            {"_id": INVOICE_SETTINGS_ID},
            {"$set": {"logoUrl": logo_url, "logoFile": saved_filename}},
            upsert=True,
        )
        if previous_logo:
            remove_image(previous_logo)

        record_audit_log(db, admin_user, "Uploaded invoice logo", {"file": saved_filename})
        return jsonify({"message": "Logo uploaded successfully", "logoUrl": logo_url})
