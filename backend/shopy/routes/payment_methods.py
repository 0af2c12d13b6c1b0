from datetime import datetime

from flask import jsonify, request
from flask_jwt_extended import jwt_required
from pymongo.errors import DuplicateKeyError

from ..audit import record_audit_log
from ..auth import require_admin_user
from ..helpers import parse_bool, parse_object_id
from ..payments import PaymentProviderError
from ..payments.adyen import get_payment_methods
from ..payments.config_service import (
    decode_payment_config,
    default_config,
    encode_payment_config,
    parse_provider_config,
    validate_provider_config,
)
from ..payments.konnect import validate_konnect_config
from ..payments.paymee import validate_paymee_config
from ..serializers import serialize_payment_method


def register_payment_method_routes(app, db):
    config_service = app.extensions["payment_config"]

    def fetch_payment_method(method_id: str):
        object_id = parse_object_id(method_id)
        method_document = db.payment_methods.find_one({"_id": object_id}) if object_id else None
        if not method_document:
            return None, (jsonify({"error": "Payment method not found"}), 404)
        return method_document, None

    def deactivate_others(method_id) -> None:
        db.payment_methods.update_many(
            {"_id": {"$ne": method_id}, "is_active": True},
            {"$set": {"is_active": False, "updated_at": datetime.utcnow()}},
        )

    def duplicate_code_error(code: str):
        return jsonify({"error": f"Payment method with code '{code}' already exists"}), 400

    @app.route("/api/payment-methods", methods=["GET"])
    @jwt_required()
    def list_payment_methods():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        methods = [
            serialize_payment_method(document)
            for document in db.payment_methods.find().sort("name", 1)
        ]
        return jsonify({"paymentMethods": methods})

    @app.route("/api/payment-methods/active", methods=["GET"])
    def list_active_payment_methods():
        methods = [
            serialize_payment_method(document, public=True)
            for document in db.payment_methods.find({"is_active": True})
        ]
        return jsonify({"paymentMethods": methods})

    @app.route("/api/payment-methods/<method_id>", methods=["GET"])
    @jwt_required()
    def get_payment_method(method_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        method_document, load_error = fetch_payment_method(method_id)
        if load_error:
            return load_error
        return jsonify({"paymentMethod": serialize_payment_method(method_document)})

    @app.route("/api/payment-methods", methods=["POST"])
    @jwt_required()
    def create_payment_method():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        name = str(payload.get("name") or "").strip()
        code = str(payload.get("code") or "").strip().lower()
        if not name or not code:
            return jsonify({"error": "Name and code are required"}), 400

        if db.payment_methods.find_one({"code": code}):
            return duplicate_code_error(code)

        config = payload.get("config")
        if config is not None and not isinstance(config, dict):
            return jsonify({"error": "Config must be an object"}), 400
        config = config or default_config(code)

        is_active = parse_bool(payload.get("isActive"), True)
        now = datetime.utcnow()
        method_document = {
            "name": name,
            "code": code,
            "description": str(payload.get("description") or "").strip(),
            "is_active": is_active,
            "config": encode_payment_config(config),
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = db.payment_methods.insert_one(method_document)
        except DuplicateKeyError:
            return duplicate_code_error(code)
        method_document["_id"] = result.inserted_id

        if is_active:
            deactivate_others(result.inserted_id)
        config_service.clear_cache()

        record_audit_log(db, admin_user, "Created payment method", {"code": code})
        return (
            jsonify(
                {
                    "message": "Payment method created successfully",
                    "paymentMethod": serialize_payment_method(method_document),
                }
            ),
            201,
        )

    @app.route("/api/payment-methods/<method_id>", methods=["PUT"])
    @jwt_required()
    def update_payment_method(method_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        method_document, load_error = fetch_payment_method(method_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        updates = {}

        if "name" in payload:
            name = str(payload.get("name") or "").strip()
            if not name:
                return jsonify({"error": "Name cannot be empty"}), 400
            updates["name"] = name

        if "code" in payload:
            code = str(payload.get("code") or "").strip().lower()
            if not code:
                return jsonify({"error": "Code cannot be empty"}), 400
            if db.payment_methods.find_one({"code": code, "_id": {"$ne": method_document["_id"]}}):
                return duplicate_code_error(code)
            updates["code"] = code

        if "description" in payload:
            updates["description"] = str(payload.get("description") or "").strip()

        if "config" in payload:
            config = payload.get("config")
            if not isinstance(config, dict):
                return jsonify({"error": "Config must be an object"}), 400
            updates["config"] = encode_payment_config(config)

        if "isActive" in payload:
            updates["is_active"] = parse_bool(payload.get("isActive"))

        if not updates:
            return jsonify({"error": "No valid fields to update"}), 400

        updates["updated_at"] = datetime.utcnow()
        try:
            db.payment_methods.update_one({"_id": method_document["_id"]}, {"$set": updates})
        except DuplicateKeyError:
            return duplicate_code_error(updates.get("code", method_document.get("code")))

        if updates.get("is_active"):
            deactivate_others(method_document["_id"])
        config_service.clear_cache()

        record_audit_log(
            db,
            admin_user,
            "Updated payment method",
            {"code": updates.get("code", method_document.get("code"))},
        )
        updated = db.payment_methods.find_one({"_id": method_document["_id"]})
        return jsonify(
            {
                "message": "Payment method updated successfully",
                "paymentMethod": serialize_payment_method(updated),
            }
        )

    @app.route("/api/payment-methods/<method_id>", methods=["DELETE"])
    @jwt_required()
    def delete_payment_method(method_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        method_document, load_error = fetch_payment_method(method_id)
        if load_error:
            return load_error

        db.payment_methods.delete_one({"_id": method_document["_id"]})
        config_service.clear_cache()

        record_audit_log(
            db, admin_user, "Deleted payment method", {"code": method_document.get("code")}
        )
        return jsonify({"message": "Payment method deleted successfully"})

    @app.route("/api/payment-methods/<method_id>/toggle", methods=["POST"])
    @jwt_required()
    def toggle_payment_method(method_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        method_document, load_error = fetch_payment_method(method_id)
        if load_error:
            return load_error

        is_active = not method_document.get("is_active")
        db.payment_methods.update_one(
            {"_id": method_document["_id"]},
            {"$set": {"is_active": is_active, "updated_at": datetime.utcnow()}},
        )
        if is_active:
            deactivate_others(method_document["_id"])
        config_service.clear_cache()

        record_audit_log(
            db,
            admin_user,
            "Toggled payment method",
            {"code": method_document.get("code"), "active": is_active},
        )
        updated = db.payment_methods.find_one({"_id": method_document["_id"]})
        return jsonify(
            {
                "message": "Payment method activated (others deactivated)"
                if is_active
                else "Payment method deactivated",
                "paymentMethod": serialize_payment_method(updated),
            }
        )

    @app.route("/api/payment-methods/<method_id>/validate", methods=["POST"])
    @jwt_required()
    def validate_payment_method(method_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        method_document, load_error = fetch_payment_method(method_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        config = payload.get("config")
        if not isinstance(config, dict):
            config = decode_payment_config(method_document.get("config"))

        is_valid, errors = validate_provider_config(method_document.get("code"), config)
        if not is_valid:
            return jsonify({"valid": False, "errors": errors}), 400
        return jsonify({"valid": True, "message": "Configuration is valid"})

    @app.route("/api/payment-methods/<method_id>/test", methods=["POST"])
    @jwt_required()
    def test_payment_method(method_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        method_document, load_error = fetch_payment_method(method_id)
        if load_error:
            return load_error

        if not method_document.get("is_active"):
            return jsonify({"error": "Payment method must be active to test"}), 400

        code = method_document.get("code")
        config = parse_provider_config(code, decode_payment_config(method_document.get("config")))

        if code == "adyen":
            try:
                response = get_payment_methods(config, amount=100, currency="EUR", country_code="NL")
            except PaymentProviderError as exc:
                app.logger.warning("Adyen connection test failed: %s", exc.message)
                return jsonify({"success": False, "message": exc.message, "details": exc.details})
            return jsonify(
                {
                    "success": True,
                    "message": "Adyen connection successful",
                    "paymentMethods": len(response.get("paymentMethods") or []),
                }
            )

        if code == "paymee":
            valid = validate_paymee_config(config)
            return jsonify(
                {
                    "success": valid,
                    "message": "Paymee configuration is valid"
                    if valid
                    else "Paymee configuration is incomplete",
                }
            )

        if code == "konnect":
            valid = validate_konnect_config(config)
            return jsonify(
                {
                    "success": valid,
                    "message": "Konnect configuration is valid"
                    if valid
                    else "Konnect configuration is incomplete",
                }
            )

        return jsonify({"success": False, "message": "Unknown payment provider"})
