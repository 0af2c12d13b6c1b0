from datetime import datetime

from flask import jsonify, request
from flask_jwt_extended import jwt_required
from pymongo.errors import DuplicateKeyError

from ..audit import record_audit_log
from ..auth import require_admin_user
from ..helpers import parse_bool, parse_object_id, safe_float
from ..serializers import serialize_tax


def format_rate(rate: float) -> str:
    return f"{rate:g}"


def register_tax_routes(app, db):
    def fetch_tax(tax_id: str):
        object_id = parse_object_id(tax_id)
        tax_document = db.taxes.find_one({"_id": object_id}) if object_id else None
        if not tax_document:
            return None, (jsonify({"error": "Tax not found"}), 404)
        return tax_document, None

    def parse_rate(raw_value):
        if raw_value in (None, ""):
            return None, "Rate is required"
        rate = safe_float(raw_value, None)
        if rate is None:
            return None, "Rate must be a number"
        if rate < 0 or rate > 100:
            return None, "Rate must be between 0 and 100"
        return rate, None

    def products_using(tax_document):
        return list(db.products.find({"tax_id": tax_document["_id"]}, {"name": 1}))

    def duplicate_rate_error(rate: float):
        return jsonify({"error": f"Tax with rate {format_rate(rate)}% already exists"}), 400

    @app.route("/api/taxes", methods=["GET"])
    @jwt_required()
    def list_taxes():
        taxes = [serialize_tax(document) for document in db.taxes.find().sort("rate", 1)]
        return jsonify({"taxes": taxes})

    @app.route("/api/taxes/active", methods=["GET"])
    def list_active_taxes():
        taxes = [
            serialize_tax(document)
            for document in db.taxes.find({"is_active": True}).sort("rate", 1)
        ]
        return jsonify({"taxes": taxes})

    @app.route("/api/taxes/<tax_id>", methods=["GET"])
    def get_tax(tax_id: str):
        tax_document, load_error = fetch_tax(tax_id)
        if load_error:
            return load_error
        return jsonify({"tax": serialize_tax(tax_document)})

    @app.route("/api/taxes/<tax_id>/check-delete", methods=["GET"])
    @jwt_required()
    def check_tax_delete(tax_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        tax_document, load_error = fetch_tax(tax_id)
        if load_error:
            return load_error

        products = products_using(tax_document)
        can_delete = not products
        return jsonify(
            {
                "canDelete": can_delete,
                "products": [
                    {"id": str(document["_id"]), "name": document.get("name", "")}
                    for document in products
                ],
                "message": "Tax can be deleted"
                if can_delete
                else f"Tax is being used by {len(products)} product(s)",
            }
        )

    @app.route("/api/taxes", methods=["POST"])
    @jwt_required()
    def create_tax():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        rate, rate_error = parse_rate(payload.get("rate"))
        if rate_error:
            return jsonify({"error": rate_error}), 400

        if db.taxes.find_one({"rate": rate}):
            return duplicate_rate_error(rate)

        now = datetime.utcnow()
        tax_document = {
            "name": f"{format_rate(rate)}%",
            "rate": rate,
            "is_active": parse_bool(payload.get("isActive"), True),
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = db.taxes.insert_one(tax_document)
        except DuplicateKeyError:
            return duplicate_rate_error(rate)
        tax_document["_id"] = result.inserted_id

        record_audit_log(db, admin_user, "Created tax", {"tax_id": str(result.inserted_id), "rate": rate})
        return jsonify({"message": "Tax created successfully", "tax": serialize_tax(tax_document)}), 201

    @app.route("/api/taxes/<tax_id>", methods=["PUT"])
    @jwt_required()
    def update_tax(tax_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        tax_document, load_error = fetch_tax(tax_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        updates = {}

        if "rate" in payload:
            rate, rate_error = parse_rate(payload.get("rate"))
            if rate_error:
                return jsonify({"error": rate_error}), 400
            if db.taxes.find_one({"rate": rate, "_id": {"$ne": tax_document["_id"]}}):
                return duplicate_rate_error(rate)
            updates["rate"] = rate
            updates["name"] = f"{format_rate(rate)}%"

        if "isActive" in payload:
            updates["is_active"] = parse_bool(payload.get("isActive"))

        if not updates:
            return jsonify({"error": "No valid fields to update"}), 400

        updates["updated_at"] = datetime.utcnow()
        try:
            db.taxes.update_one({"_id": tax_document["_id"]}, {"$set": updates})
        except DuplicateKeyError:
            return duplicate_rate_error(updates["rate"])

        record_audit_log(db, admin_user, "Updated tax", {"tax_id": tax_id})
        updated = db.taxes.find_one({"_id": tax_document["_id"]})
        return jsonify({"message": "Tax updated successfully", "tax": serialize_tax(updated)})

    @app.route("/api/taxes/<tax_id>", methods=["DELETE"])
    @jwt_required()
    def delete_tax(tax_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        tax_document, load_error = fetch_tax(tax_id)
        if load_error:
            return load_error

        products = products_using(tax_document)
        if products:
            return (
                jsonify(
                    {
                        "error": (
                            f"Cannot delete tax. It is being used by {len(products)} product(s). "
                            "Please reassign or delete those products first."
                        ),
                        "products": [
                            {"id": str(document["_id"]), "name": document.get("name", "")}
                            for document in products
                        ],
                    }
                ),
                400,
            )

        db.taxes.delete_one({"_id": tax_document["_id"]})
        record_audit_log(
            db, admin_user, "Deleted tax", {"tax_id": tax_id, "rate": tax_document.get("rate")}
        )
        return jsonify({"message": "Tax deleted successfully"})
