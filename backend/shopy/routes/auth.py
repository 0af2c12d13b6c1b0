from datetime import datetime

from flask import jsonify, request
from flask_jwt_extended import decode_token, get_jwt, jwt_required
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError
from pymongo.errors import DuplicateKeyError

from ..auth import (
    MIN_PASSWORD_LENGTH,
    check_password,
    get_user_role,
    hash_password,
    is_token_revoked,
    issue_tokens,
    load_current_user,
    revoke_token,
)
from ..helpers import extract_address, is_valid_email, normalize_email, parse_object_id
from ..serializers import serialize_user


def register_auth_routes(app, db):
    def serialize_with_role(user_document):
        return serialize_user(user_document, role=get_user_role(user_document))

    @app.route("/api/auth/register", methods=["POST"])
    def register():
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

        now = datetime.utcnow()
        user_document = {
            "email": email,
            "name": name,
            "password": hash_password(password),
            "role": "user",
            "created_at": now,
            "updated_at": now,
        }
        address = extract_address(payload)
        if address:
            user_document["address"] = address

        try:
            result = db.users.insert_one(user_document)
        except DuplicateKeyError:
            return jsonify({"error": "User already exists"}), 400
        user_document["_id"] = result.inserted_id

        return (
            jsonify(
                {
                    "message": f"Welcome {name}, your account has been created",
                    "user": serialize_with_role(user_document),
                    **issue_tokens(user_document),
                }
            ),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"error": "Email and password are required"}), 400

        user = db.users.find_one({"email": email})
        if not user or not check_password(password, user.get("password")):
            return jsonify({"error": "Invalid credentials"}), 400

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"last_login_at": datetime.utcnow()}},
        )

        return jsonify(
            {
                "message": "Login successful",
                "user": serialize_with_role(user),
                **issue_tokens(user),
            }
        )

    @app.route("/api/auth/refresh", methods=["POST"])
    def refresh():
        payload = request.get_json(silent=True) or {}
        refresh_token = str(payload.get("refreshToken") or "").strip()
        if not refresh_token:
            return jsonify({"error": "Refresh token required"}), 401

        try:
            decoded = decode_token(refresh_token)
        except (JWTExtendedException, PyJWTError):
            return jsonify({"error": "Invalid refresh token"}), 403

        if decoded.get("type") != "refresh" or is_token_revoked(db, decoded.get("jti")):
            return jsonify({"error": "Invalid refresh token"}), 403

        user_id = parse_object_id(decoded.get("sub"))
        user = db.users.find_one({"_id": user_id}) if user_id else None
        if not user:
            return jsonify({"error": "User not found"}), 404

        # Rotate: the presented refresh token cannot be reused.
        revoke_token(db, decoded)
        return jsonify(issue_tokens(user))

    @app.route("/api/auth/verify", methods=["GET"])
    @jwt_required()
    def verify_token():
        user = load_current_user(db)
        if not user:
            return jsonify({"error": "User not found"}), 404
        return jsonify({"user": serialize_with_role(user), "message": "Token is valid"})

    @app.route("/api/auth/profile", methods=["GET", "PUT"])
    @jwt_required()
    def manage_profile():
        user = load_current_user(db)
        if not user:
            return jsonify({"error": "User not found"}), 404

        if request.method == "GET":
            return jsonify({"user": serialize_with_role(user)})

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
            existing = db.users.find_one({"email": email, "_id": {"$ne": user["_id"]}})
            if existing:
                return jsonify({"error": "Email already in use"}), 400
            updates["email"] = email

        address = extract_address(payload)
        if address is not None:
            updates["address"] = address

        if "phone" in payload:
            updates["phone"] = str(payload.get("phone") or "").strip()

        if updates:
            updates["updated_at"] = datetime.utcnow()
            db.users.update_one({"_id": user["_id"]}, {"$set": updates})
            user = db.users.find_one({"_id": user["_id"]})

        return jsonify(
            {"message": "Profile updated successfully", "user": serialize_with_role(user)}
        )

    @app.route("/api/auth/change-password", methods=["PUT"])
    @jwt_required()
    def change_password():
        user = load_current_user(db)
        if not user:
            return jsonify({"error": "User not found"}), 404

        payload = request.get_json(silent=True) or {}
        current_password = str(payload.get("currentPassword") or "")
        new_password = str(payload.get("newPassword") or "")

        if not current_password or not new_password:
            return jsonify({"error": "Current password and new password are required"}), 400

        if not check_password(current_password, user.get("password")):
            return jsonify({"error": "Current password is incorrect"}), 400

        if len(new_password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {"error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}
                ),
                400,
            )

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password": hash_password(new_password), "updated_at": datetime.utcnow()}},
        )
        return jsonify({"message": "Password changed successfully"})

    @app.route("/api/auth/logout", methods=["POST"])
    @jwt_required()
    def logout():
        revoke_token(db, get_jwt())

        payload = request.get_json(silent=True) or {}
        refresh_token = str(payload.get("refreshToken") or "").strip()
        if refresh_token:
            try:
                revoke_token(db, decode_token(refresh_token))
            except (JWTExtendedException, PyJWTError):
                app.logger.info("Ignoring invalid refresh token on logout")

        return jsonify({"message": "Logged out successfully"})
