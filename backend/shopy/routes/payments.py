from datetime import datetime
from typing import Dict, Optional
from urllib.parse import urljoin

from flask import jsonify, request
from flask_jwt_extended import verify_jwt_in_request

from ..auth import can_access_user, load_current_user
from ..helpers import parse_bool, parse_object_id, safe_float
from ..payments import PaymentProviderError
from ..payments.adyen import create_checkout_session, verify_notification_hmac
from ..payments.konnect import check_konnect_payment_status, create_konnect_payment
from ..payments.paymee import (
    check_paymee_payment_status,
    create_paymee_payment,
    validate_paymee_config,
)
from ..pricing import (
    currency_exponent,
    generate_payment_reference,
    normalize_payment_amount,
    to_minor_units,
)
from .orders import apply_payment_update, confirm_order_payment

HOSTED_PAYMENT_FIELDS = ("amount", "note", "email", "first_name", "last_name")
KONNECT_FAILED_STATUSES = ("failed", "canceled", "cancelled", "expired")


def provider_error_response(exc: PaymentProviderError, error: Optional[str] = None):
    body: Dict[str, object] = {"success": False, "error": error or exc.message}
    if error:
        body["details"] = exc.message if exc.details is None else exc.details
    elif exc.details is not None:
        body["details"] = exc.details
    return jsonify(body), exc.status_code


def register_payment_routes(app, db):
    config_service = app.extensions["payment_config"]

    def callback_url(path: str) -> str:
        base_url = app.config.get("BACKEND_URL") or request.host_url
        return urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))

    def fetch_linked_order(raw_order_id):
        """Resolve an optional ``orderId`` the caller is allowed to pay for."""
        if not raw_order_id:
            return None, None
        object_id = parse_object_id(str(raw_order_id))
        order_document = db.orders.find_one({"_id": object_id}) if object_id else None
        if not order_document:
            return None, (jsonify({"error": "Order not found"}), 404)

        verify_jwt_in_request(optional=True)
        caller = load_current_user(db)
        owner_id = order_document.get("user_id")
        if owner_id and caller and not can_access_user(caller, owner_id):
            return None, (jsonify({"error": "You can only pay for your own orders"}), 403)
        if order_document.get("status") == "cancelled":
            return None, (jsonify({"error": "Order has been cancelled"}), 400)
        return order_document, None

    def link_order_payment(order_document, method: str, reference: str, token: str = "") -> None:
        if not order_document:
            return
        updates = {
            "payment.method": method,
            "payment.reference": reference,
            "payment.status": "pending",
            "payment.amount": safe_float(order_document.get("total")),
            "payment.currency": str(order_document.get("currency") or "").upper(),
            "updated_at": datetime.utcnow(),
        }
        if token:
            updates["payment.token"] = token
        db.orders.update_one({"_id": order_document["_id"]}, {"$set": updates})

    def missing_hosted_fields(payload) -> bool:
        return any(not payload.get(field) for field in HOSTED_PAYMENT_FIELDS)

    def mark_token_paid(
        provider: str, token: str, amount=None, details: Optional[Dict] = None
    ) -> None:
        order_document, error = confirm_order_payment(
            db, {"payment.token": token}, provider, amount, details=details
        )
        if error:
            app.logger.warning(
                "%s payment %s not applied to order %s: %s",
                provider,
                token,
                order_document["_id"],
                error,
            )
        elif order_document:
            app.logger.info(
                "%s payment %s confirmed for order %s", provider, token, order_document["_id"]
            )

    @app.route("/api/payments/session", methods=["POST"])
    def create_adyen_session():
        payload = request.get_json(silent=True) or {}
        currency = str(payload.get("currency") or "").strip().upper()
        country_code = str(payload.get("countryCode") or "").strip().upper()
        return_url = str(payload.get("returnUrl") or "").strip()
        amount = payload.get("amount")

        order_document, order_error = fetch_linked_order(payload.get("orderId"))
        if order_error:
            return order_error
        if order_document:
            order_currency = str(order_document.get("currency") or "").upper()
            if currency and order_currency and currency != order_currency:
                return (
                    jsonify({"error": f"Currency must match the order currency ({order_currency})"}),
                    400,
                )
            currency = currency or order_currency
            if currency:
                amount = to_minor_units(order_document.get("total", 0), currency)

        if amount in (None, "") or not currency or not country_code or not return_url:
            return (
                jsonify(
                    {"error": "Missing required fields: amount, currency, countryCode, returnUrl"}
                ),
                400,
            )

        try:
            minor_amount = int(amount)
        except (TypeError, ValueError):
            return jsonify({"error": "Amount must be an integer in minor units"}), 400
        if minor_amount <= 0:
            return jsonify({"error": "Amount must be greater than 0"}), 400

        reference = str(payload.get("reference") or "").strip() or generate_payment_reference(
            "ADYEN"
        )
        config = config_service.get_provider_config("adyen")
        try:
            session = create_checkout_session(
                config,
                amount=minor_amount,
                currency=currency,
                country_code=country_code,
                return_url=return_url,
                reference=reference,
                line_items=payload.get("lineItems")
                if isinstance(payload.get("lineItems"), list)
                else None,
            )
        except PaymentProviderError as exc:
            app.logger.error("Adyen session creation failed: %s", exc.message)
            if not config:
                return jsonify({"error": exc.message}), 500
            return provider_error_response(exc, "Failed to create Adyen session")

        link_order_payment(order_document, "adyen", reference)
        return jsonify(
            {
                "session": session,
                "clientKey": (config or {}).get("clientKey", ""),
                "reference": reference,
            }
        )

    @app.route("/api/payments/adyen/webhook", methods=["POST"])
    def adyen_webhook():
        payload = request.get_json(silent=True) or {}
        config = config_service.get_provider_config("adyen")
        if not config:
            app.logger.warning("Adyen webhook received while Adyen is not configured")
            return "[accepted]"

        hmac_key = config.get("hmacKey")
        for entry in payload.get("notificationItems") or []:
            item = (entry or {}).get("NotificationRequestItem") or {}
            reference = item.get("merchantReference")
            if hmac_key and not verify_notification_hmac(item, hmac_key):
                app.logger.warning("Adyen webhook: invalid HMAC signature for %s", reference)
                continue
            if item.get("eventCode") != "AUTHORISATION" or not reference:
                continue

            success = str(item.get("success") or "").lower() == "true"
            details = {"pspReference": item.get("pspReference")}
            if not success:
                order_document = apply_payment_update(
                    db, {"payment.reference": reference}, "failed", "adyen", details
                )
            else:
                amount = item.get("amount") if isinstance(item.get("amount"), dict) else {}
                confirmed_currency = amount.get("currency")
                # Adyen reports minor units; anything non-numeric fails the match.
                confirmed_amount = amount.get("value")
                minor_value = safe_float(confirmed_amount, None)
                if minor_value is not None:
                    confirmed_amount = minor_value / 10 ** currency_exponent(confirmed_currency)
                order_document, error = confirm_order_payment(
                    db,
                    {"payment.reference": reference},
                    "adyen",
                    confirmed_amount,
                    confirmed_currency,
                    details,
                )
                if error:
                    app.logger.warning(
                        "Adyen webhook: payment %s not applied: %s", reference, error
                    )
                    continue
            if not order_document:
                app.logger.warning("Adyen webhook: no order for reference %s", reference)
            else:
                app.logger.info(
                    "Adyen webhook: payment %s for %s", "authorised" if success else "refused", reference
                )

        return "[accepted]"

    @app.route("/api/payments/paymee/create", methods=["POST"])
    def paymee_create_payment():
        payload = request.get_json(silent=True) or {}
        order_document, order_error = fetch_linked_order(payload.get("orderId"))
        if order_error:
            return order_error
        if order_document:
            payload["amount"] = order_document.get("total")

        if missing_hosted_fields(payload):
            return (
                jsonify(
                    {"error": "Missing required fields: amount, note, email, first_name, last_name"}
                ),
                400,
            )

        config = config_service.get_provider_config("paymee")
        if not validate_paymee_config(config):
            return (
                jsonify(
                    {
                        "error": "Paymee configuration is invalid. "
                        "Please configure the Paymee payment method."
                    }
                ),
                500,
            )

        try:
            payment = create_paymee_payment(
                config,
                amount=payload.get("amount"),
                note=str(payload.get("note")),
                email=str(payload.get("email")),
                first_name=str(payload.get("first_name")),
                last_name=str(payload.get("last_name")),
                reference=payload.get("reference"),
                return_url=payload.get("returnUrl"),
                webhook_url=callback_url("/api/payments/paymee/webhook"),
            )
        except PaymentProviderError as exc:
            app.logger.error("Paymee payment creation failed: %s", exc.message)
            return provider_error_response(exc)

        link_order_payment(order_document, "paymee", payment["reference"], payment["token"])
        return jsonify({"success": True, "data": payment})

    @app.route("/api/payments/paymee/status/<token>", methods=["GET"])
    def paymee_payment_status(token: str):
        config = config_service.get_provider_config("paymee")
        try:
            status = check_paymee_payment_status(config, token)
        except PaymentProviderError as exc:
            app.logger.error("Paymee status check failed for %s: %s", token, exc.message)
            return provider_error_response(exc)

        if status["payment_status"]:
            mark_token_paid(
                "paymee",
                token,
                status.get("amount"),
                {"transactionId": status.get("transaction_id")},
            )
        return jsonify({"success": True, "data": status})

    @app.route("/api/payments/paymee/config", methods=["GET"])
    def paymee_config_status():
        config = config_service.get_provider_config("paymee")
        is_valid = validate_paymee_config(config)
        return jsonify(
            {
                "success": is_valid,
                "message": "Paymee configuration is valid"
                if is_valid
                else "Paymee configuration is invalid",
                "environment": (config or {}).get("environment", "sandbox"),
            }
        )

    @app.route("/api/payments/paymee/webhook", methods=["POST"])
    def paymee_webhook():
        payload = request.get_json(silent=True) or request.form.to_dict()
        token = str(payload.get("token") or "").strip()
        if not token or payload.get("payment_status") in (None, ""):
            app.logger.warning("Paymee webhook: invalid payload")
            return jsonify({"error": "Invalid webhook data"}), 400

        if not parse_bool(payload.get("payment_status")):
            apply_payment_update(db, {"payment.token": token}, "failed", "paymee")
            return jsonify({"success": True, "message": "Webhook received successfully"})

        # Confirm with Paymee rather than trusting the notification body.
        config = config_service.get_provider_config("paymee")
        try:
            status = check_paymee_payment_status(config, token)
        except PaymentProviderError as exc:
            app.logger.error("Paymee webhook verification failed for %s: %s", token, exc.message)
            return jsonify({"error": "Verification failed"}), 502

        if status["payment_status"]:
            mark_token_paid(
                "paymee",
                token,
                status.get("amount"),
                {"transactionId": status.get("transaction_id")},
            )
        else:
            app.logger.warning("Paymee webhook: payment %s is not confirmed as paid", token)
        return jsonify({"success": True, "message": "Webhook received successfully"})

    @app.route("/api/payments/konnect/create", methods=["POST"])
    def konnect_create_payment():
        payload = request.get_json(silent=True) or {}
        order_document, order_error = fetch_linked_order(payload.get("orderId"))
        if order_error:
            return order_error
        if order_document:
            payload["amount"] = order_document.get("total")

        if missing_hosted_fields(payload):
            return (
                jsonify(
                    {"error": "Missing required fields: amount, note, email, first_name, last_name"}
                ),
                400,
            )

        try:
            amount = normalize_payment_amount(payload.get("amount"))
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        try:
            payment = create_konnect_payment(
                db,
                config_service.get_provider_config("konnect"),
                amount=amount,
                note=str(payload.get("note")),
                email=str(payload.get("email")),
                first_name=str(payload.get("first_name")),
                last_name=str(payload.get("last_name")),
                reference=payload.get("reference"),
                return_url=payload.get("returnUrl"),
                webhook_url=callback_url("/api/payments/konnect/webhook"),
                demo_mode=app.config["PAYMENT_DEMO_MODE"],
            )
        except PaymentProviderError as exc:
            app.logger.error("Konnect payment creation failed: %s", exc.message)
            return provider_error_response(exc)

        link_order_payment(order_document, "konnect", payment["reference"], payment["token"])
        return jsonify({"success": True, "data": payment})

    @app.route("/api/payments/konnect/status/<token>", methods=["GET"])
    def konnect_payment_status(token: str):
        try:
            status = check_konnect_payment_status(
                db,
                config_service.get_provider_config("konnect"),
                token,
                demo_mode=app.config["PAYMENT_DEMO_MODE"],
            )
        except PaymentProviderError as exc:
            app.logger.error("Konnect status check failed for %s: %s", token, exc.message)
            return provider_error_response(exc)

        if status["payment_status"]:
            mark_token_paid("konnect", token, status.get("amount"))
        return jsonify({"success": True, "data": status})

    @app.route("/api/payments/konnect/webhook", methods=["GET", "POST"])
    def konnect_webhook():
        payload = request.get_json(silent=True) or {}
        token = str(
            payload.get("token")
            or payload.get("payment_ref")
            or request.args.get("payment_ref")
            or ""
        ).strip()
        if not token:
            return jsonify({"error": "Invalid webhook data"}), 400

        reported_status = str(payload.get("status") or "").strip().lower()
        if reported_status in KONNECT_FAILED_STATUSES:
            apply_payment_update(db, {"payment.token": token}, "failed", "konnect")
            return jsonify({"success": True})

        try:
            status = check_konnect_payment_status(
                db,
                config_service.get_provider_config("konnect"),
                token,
                demo_mode=app.config["PAYMENT_DEMO_MODE"],
            )
        except PaymentProviderError as exc:
            app.logger.error("Konnect webhook verification failed for %s: %s", token, exc.message)
            return provider_error_response(exc, "Failed to process Konnect webhook")

        if status["payment_status"]:
            mark_token_paid("konnect", token, status.get("amount"))
        return jsonify({"success": True})
