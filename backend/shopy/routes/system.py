import re
from datetime import datetime
from typing import Dict

from flask import jsonify, request
from flask_jwt_extended import jwt_required

from ..audit import list_audit_logs, record_audit_log
from ..auth import require_admin_user
from ..helpers import parse_iso_date, safe_non_negative_int

API_ENDPOINTS = {
    "auth": "/api/auth",
    "users": "/api/users",
    "products": "/api/products",
    "orders": "/api/orders",
    "reviews": "/api/products/<id>/reviews",
    "taxes": "/api/taxes",
    "paymentMethods": "/api/payment-methods",
    "payments": "/api/payments",
    "settings": "/api/settings",
    "health": "/api/health",
}


def build_created_filter(start_param, end_param):
    """Return ``(filter, error)`` for a ``created_at`` range.

    Blank bounds are open; a bound that is given but does not parse is an error.
    """
    start_date = parse_iso_date(start_param)
    end_date = parse_iso_date(end_param, end_of_day=True)
    for raw_value, parsed in ((start_param, start_date), (end_param, end_date)):
        if str(raw_value or "").strip() and not parsed:
            return None, f"Invalid date: {raw_value}"
    if not start_date and not end_date:
        return {}, None
    created_filter: Dict[str, datetime] = {}
    if start_date:
        created_filter["$gte"] = start_date
    if end_date:
        created_filter["$lt"] = end_date
    return {"created_at": created_filter}, None


def register_system_routes(app, db):
    @app.route("/", methods=["GET"])
    def api_info():
        return jsonify(
            {
                "message": "Shopy storefront API",
                "version": "1.0.0",
                "endpoints": API_ENDPOINTS,
            }
        )

    @app.route("/api/health", methods=["GET"])
    def api_health():
        return jsonify({"status": "OK", "timestamp": datetime.utcnow().isoformat() + "Z"})

    @app.route("/api/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        page = max(safe_non_negative_int(request.args.get("page"), 1), 1)
        limit = min(max(safe_non_negative_int(request.args.get("limit"), 50), 1), 200)

        query: Dict[str, object] = {}
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = {"$regex": re.escape(search_term), "$options": "i"}
            query["$or"] = [{"user_email": regex}, {"user_name": regex}, {"action": regex}]
        created_filter, date_error = build_created_filter(
            request.args.get("start") or request.args.get("from"),
            request.args.get("end") or request.args.get("to"),
        )
        if date_error:
            return jsonify({"error": date_error}), 400
        query.update(created_filter)

        return jsonify(list_audit_logs(db, query, page, limit))

    @app.route("/api/admin/logs", methods=["DELETE"])
    @jwt_required()
    def admin_delete_logs():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        delete_query, date_error = build_created_filter(
            payload.get("from") or payload.get("start"),
            payload.get("to") or payload.get("end"),
        )
        if date_error:
            return jsonify({"error": date_error}), 400
        result = db.audit_logs.delete_many(delete_query)

        record_audit_log(
            db,
            admin_user,
            "Deleted audit logs",
            {
                "count": str(result.deleted_count),
                "range": "filtered" if delete_query else "all",
            },
        )
        return jsonify(
            {
                "message": f"Removed {result.deleted_count} audit log entries.",
                "deleted": result.deleted_count,
            }
        )

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Route not found"}), 404

    @app.errorhandler(413)
    def payload_too_large(error):
        return jsonify({"error": "Uploaded file is too large"}), 413

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error("Unhandled error: %s", getattr(error, "original_exception", error))
        return jsonify({"error": "Something went wrong!"}), 500
