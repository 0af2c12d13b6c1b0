from datetime import datetime
from typing import Dict, Optional

import bcrypt
from flask import current_app, jsonify
from flask_jwt_extended import (
    create_access_token,
    create_refresh_token,
    get_jwt_identity,
)

from .helpers import normalize_email, parse_object_id

ALLOWED_USER_ROLES = {"admin", "user"}
MIN_PASSWORD_LENGTH = 6


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else "user"


def get_user_role(user_document) -> str:
    if not user_document:
        return "user"

    email = normalize_email(user_document.get("email"))
    if email and email == current_app.config["DEFAULT_ADMIN_EMAIL"]:
        return "admin"

    return normalize_role(user_document.get("role", "user"))


def hash_password(password: str) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())


def check_password(password: str, hashed) -> bool:
    if not hashed:
        return False
    if isinstance(hashed, str):
        hashed = hashed.encode("utf-8")
    return bcrypt.checkpw(password.encode("utf-8"), hashed)


def issue_tokens(user_document) -> Dict[str, str]:
    identity = str(user_document["_id"])
    claims = {
        "email": normalize_email(user_document.get("email")),
        "role": get_user_role(user_document),
    }
    return {
        "token": create_access_token(identity=identity, additional_claims=claims),
        "refreshToken": create_refresh_token(identity=identity, additional_claims=claims),
    }


def load_current_user(db):
    user_id = parse_object_id(get_jwt_identity())
    if not user_id:
        return None
    return db.users.find_one({"_id": user_id})


def require_role(db, *roles: str):
    allowed = {normalize_role(role) for role in roles if role}

    current_user = load_current_user(db)
    if not current_user:
        return None, (jsonify({"error": "User not found"}), 404)

    user_role = get_user_role(current_user)
    if user_role == "admin" or not allowed or user_role in allowed:
        return current_user, None

    return None, (jsonify({"error": "Admin access required"}), 403)


def require_admin_user(db):
    return require_role(db, "admin")


def is_admin(user_document) -> bool:
    return get_user_role(user_document) == "admin"


def can_access_user(current_user, user_id: str) -> bool:
    if not current_user:
        return False
    return is_admin(current_user) or str(current_user.get("_id")) == str(user_id)


def revoke_token(db, decoded_token: Dict) -> None:
    jti = decoded_token.get("jti")
    if not jti:
        return
    expires_at = datetime.utcfromtimestamp(decoded_token.get("exp", 0))
    db.token_blocklist.update_one(
        {"jti": jti},
        {"$set": {"jti": jti, "expires_at": expires_at, "type": decoded_token.get("type")}},
        upsert=True,
    )


def is_token_revoked(db, jti: Optional[str]) -> bool:
    if not jti:
        return False
    return db.token_blocklist.find_one({"jti": jti}) is not None


def register_jwt_handlers(jwt, db) -> None:
    @jwt.token_in_blocklist_loader
    def check_if_token_revoked(jwt_header, jwt_payload):
        return is_token_revoked(db, jwt_payload.get("jti"))

    @jwt.unauthorized_loader
    def missing_token_callback(reason):
        return jsonify({"error": "Access token required"}), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(reason):
        return jsonify({"error": "Invalid token"}), 403

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({"error": "Token expired"}), 403

    @jwt.revoked_token_loader
    def revoked_token_callback(jwt_header, jwt_payload):
        return jsonify({"error": "Token has been revoked"}), 401

