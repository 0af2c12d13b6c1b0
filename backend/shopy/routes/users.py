from datetime import datetime

from flask import jsonify, request
from flask_jwt_extended import jwt_required, verify_jwt_in_request
from pymongo.errors import DuplicateKeyError

from ..audit import record_audit_log
from ..auth import (
    ALLOWED_USER_ROLES,
    MIN_PASSWORD_LENGTH,
    can_access_user,
    get_user_role,
    hash_password,
    is_admin,
    issue_tokens,
    load_current_user,
    require_admin_user,
)
from ..emails import send_welcome_email
from ..helpers import (
    extract_address,
    is_valid_email,
    normalize_email,
    parse_bool,
    parse_object_id,
)
from ..serializers import serialize_user
from .reviews import refresh_product_ratings


def register_user_routes(app, db):
    def serialize_with_role(user_document):
        return serialize_user(user_document, role=get_user_role(user_document))

    def fetch_user(user_id: str):
        object_id = parse_object_id(user_id)
        user_document = db.users.find_one({"_id": object_id}) if object_id else None
        if not user_document:
            return None, (jsonify({"error": "User not found"}), 404)
        return user_document, None

    def count_user_dependencies(user_document):
        user_id = str(user_document["_id"])
        return (
            db.orders.count_documents({"user_id": user_id}),
            db.reviews.count_documents({"user_id": user_id}),
        )

    def current_user_if_authenticated():
        verify_jwt_in_request(optional=True)
        return load_current_user(db)

    @app.route("/api/users", methods=["GET"])
    @jwt_required()
    def list_users():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        users = [
            serialize_with_role(document)
            for document in db.users.find().sort("created_at", -1)
        ]
        return jsonify({"users": users})

    @app.route("/api/users/me", methods=["GET"])
    @jwt_required()
    def get_current_user():
        user = load_current_user(db)
        if not user:
            return jsonify({"error": "User not found"}), 404
        return jsonify({"user": serialize_with_role(user)})

    @app.route("/api/users/<user_id>", methods=["GET"])
    @jwt_required()
    def get_user(user_id: str):
        current_user = load_current_user(db)
        if not can_access_user(current_user, user_id):
            return jsonify({"error": "You can only view your own account"}), 403

        user_document, load_error = fetch_user(user_id)
        if load_error:
            return load_error
        return jsonify({"user": serialize_with_role(user_document)})

    @app.route("/api/users", methods=["POST"])
    def create_user():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        name = str(payload.get("name", "")).strip()
        password = str(payload.get("password", ""))

        if not email or not name or not password:
            return jsonify({"error": "Email, password, and name are required"}), 400

        if not is_valid_email(email):
            return jsonify({"error": "Please provide a valid email address"}), 400

        if len(password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {"error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}
                ),
                400,
            )

        if db.users.find_one({"email": email}):
            return jsonify({"error": "User already exists"}), 400

        actor = current_user_if_authenticated()
        role = "user"
        requested_role = str(payload.get("role") or "").strip().lower()
        if requested_role in ALLOWED_USER_ROLES and is_admin(actor):
            role = requested_role

        now = datetime.utcnow()
        user_document = {
            "email": email,
            "name": name,
            "password": hash_password(password),
            "role": role,
            "created_at": now,
            "updated_at": now,
        }
        address = extract_address(payload)
        if address:
            user_document["address"] = address
        phone = str(payload.get("phone") or "").strip()
        if phone:
            user_document["phone"] = phone

        try:
            result = db.users.insert_one(user_document)
        except DuplicateKeyError:
            return jsonify({"error": "User already exists"}), 400
        user_document["_id"] = result.inserted_id

        send_welcome_email(user_document)
        if actor:
            record_audit_log(db, actor, "Created user", {"user_id": str(result.inserted_id)})

        return (
            jsonify(
                {
                    "message": "User created successfully",
                    "user": serialize_with_role(user_document),
                    **issue_tokens(user_document),
                }
            ),
            201,
        )

    @app.route("/api/users/<user_id>", methods=["PATCH"])
    @jwt_required()
    def update_user(user_id: str):
        current_user = load_current_user(db)
        if not can_access_user(current_user, user_id):
            return jsonify({"error": "You can only update your own account"}), 403

        user_document, load_error = fetch_user(user_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        updates = {}

        if "name" in payload:
            name = str(payload.get("name") or "").strip()
            if not name:
                return jsonify({"error": "Name cannot be empty"}), 400
            updates["name"] = name

        if "email" in payload:
            email = normalize_email(payload.get("email"))
            if not is_valid_email(email):
                return jsonify({"error": "Please provide a valid email address"}), 400
            if db.users.find_one({"email": email, "_id": {"$ne": user_document["_id"]}}):
                return jsonify({"error": "Email already in use"}), 400
            updates["email"] = email

        address = extract_address(payload)
        if address is not None:
            updates["address"] = address

        if "phone" in payload:
            updates["phone"] = str(payload.get("phone") or "").strip()

        if payload.get("password"):
            password = str(payload["password"])
            if len(password) < MIN_PASSWORD_LENGTH:
                return (
                    jsonify(
                        {"error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}
                    ),
                    400,
                )
            updates["password"] = hash_password(password)

        if "role" in payload:
            if not is_admin(current_user):
                return jsonify({"error": "Admin access required"}), 403
            role = str(payload.get("role") or "").strip().lower()
            if role not in ALLOWED_USER_ROLES:
                return jsonify({"error": "Invalid role"}), 400
            updates["role"] = role

        if not updates:
            return jsonify({"error": "No valid fields to update"}), 400

        updates["updated_at"] = datetime.utcnow()
        db.users.update_one({"_id": user_document["_id"]}, {"$set": updates})
        updated = db.users.find_one({"_id": user_document["_id"]})

        if is_admin(current_user) and str(current_user["_id"]) != user_id:
            record_audit_log(
                db,
                current_user,
                "Updated user",
                {"user_id": user_id, "fields": ",".join(sorted(updates))},
            )

        return jsonify({"message": "User updated successfully", "user": serialize_with_role(updated)})

    @app.route("/api/users/<user_id>/check-delete", methods=["GET"])
    @jwt_required()
    def check_user_delete(user_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        user_document, load_error = fetch_user(user_id)
        if load_error:
            return load_error

        order_count, review_count = count_user_dependencies(user_document)
        can_delete = order_count == 0 and review_count == 0
        message = (
            "User can be deleted"
            if can_delete
            else f"User has {order_count} order(s) and {review_count} review(s)"
        )
        return jsonify(
            {
                "canDelete": can_delete,
                "orders": order_count,
                "reviews": review_count,
                "message": message,
            }
        )

    @app.route("/api/users/<user_id>", methods=["DELETE"])
    @jwt_required()
    def delete_user(user_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        user_document, load_error = fetch_user(user_id)
        if load_error:
            return load_error

        if str(admin_user["_id"]) == user_id:
            return jsonify({"error": "You cannot delete your own account"}), 400

        force = parse_bool(request.args.get("force"))
        order_count, review_count = count_user_dependencies(user_document)
        if (order_count or review_count) and not force:
            return (
                jsonify(
                    {
                        "error": (
                            f"Cannot delete user. They have {order_count} order(s) and "
                            f"{review_count} review(s). Use force=true to delete them as well."
                        ),
                        "orders": order_count,
                        "reviews": review_count,
                    }
                ),
                400,
            )

        product_ids = db.reviews.distinct("product_id", {"user_id": user_id})
        db.reviews.delete_many({"user_id": user_id})
        db.orders.delete_many({"user_id": user_id})
        db.users.delete_one({"_id": user_document["_id"]})
        refresh_product_ratings(db, product_ids)

        record_audit_log(
            db,
            admin_user,
            "Deleted user",
            {
                "user_id": user_id,
                "email": user_document.get("email"),
                "orders": order_count,
                "reviews": review_count,
            },
        )
        return jsonify({"message": "User deleted successfully"})
