import re
from datetime import datetime
from typing import Dict, List, Optional

from flask import jsonify, request, send_from_directory
from flask_jwt_extended import jwt_required

from ..audit import record_audit_log
from ..auth import require_admin_user
from ..helpers import parse_object_id, safe_float
from ..lookups import find_currency_by_code, get_base_currency, load_tax_map
from ..serializers import serialize_product
from ..uploads import build_upload_url, remove_image, save_image

DEFAULT_PRODUCT_TAX_RATE = 10


def contains_pattern(value: str) -> Dict[str, str]:
    return {"$regex": re.escape(value.strip()), "$options": "i"}


def register_product_routes(app, db):
    def resolve_display_currency():
        code = request.args.get("currency")
        if not code:
            return None, None, None
        currency = find_currency_by_code(db, code)
        if not currency:
            return None, None, (jsonify({"error": f"Currency {code.upper()} not found"}), 404)
        return currency, get_base_currency(db), None

    def serialize_products(product_docs: List[Dict], currency=None, base_currency=None):
        tax_map = load_tax_map(db, (document.get("tax_id") for document in product_docs))
        return [
            serialize_product(
                document,
                tax_document=tax_map.get(document.get("tax_id")),
                currency_document=currency,
                base_currency=base_currency,
            )
            for document in product_docs
        ]

    def fetch_product(product_id: str):
        object_id = parse_object_id(product_id)
        product_document = db.products.find_one({"_id": object_id}) if object_id else None
        if not product_document:
            return None, (jsonify({"error": "Product not found"}), 404)
        return product_document, None

    def read_payload() -> Dict:
        if request.form:
            return request.form.to_dict()
        return request.get_json(silent=True) or {}

    def parse_price(raw_value):
        price_value = safe_float(raw_value, None)
        if price_value is None:
            return None, "Price must be a valid number."
        if price_value < 0:
            return None, "Price cannot be negative."
        return round(price_value, 2), None

    def parse_stock(raw_value):
        try:
            stock_value = float(raw_value)
        except (TypeError, ValueError):
            return None, "Stock must be a whole number."
        if not stock_value.is_integer() or stock_value < 0:
            return None, "Stock must be a whole number."
        return int(stock_value), None

    def resolve_tax_id(raw_tax_id):
        if raw_tax_id in (None, ""):
            default_tax = db.taxes.find_one({"rate": DEFAULT_PRODUCT_TAX_RATE})
            if not default_tax:
                return None, (
                    jsonify({"error": "Default 10% tax not found. Please create it first."}),
                    500,
                )
            return default_tax["_id"], None

        tax_id = parse_object_id(raw_tax_id)
        if not tax_id or not db.taxes.find_one({"_id": tax_id}):
            return None, (jsonify({"error": "Tax not found"}), 400)
        return tax_id, None

    def product_response(product_document) -> Dict:
        tax_map = load_tax_map(db, [product_document.get("tax_id")])
        return serialize_product(
            product_document, tax_document=tax_map.get(product_document.get("tax_id"))
        )

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    @app.route("/api/products", methods=["GET"])
    def list_products():
        currency, base_currency, currency_error = resolve_display_currency()
        if currency_error:
            return currency_error

        query: Dict[str, object] = {}
        search = str(request.args.get("search") or "").strip()
        if search:
            query["$or"] = [
                {"name": contains_pattern(search)},
                {"description": contains_pattern(search)},
            ]
        category = str(request.args.get("category") or "").strip()
        if category:
            query["category"] = contains_pattern(category)
        subcategory = str(request.args.get("subcategory") or "").strip()
        if subcategory:
            query["subcategory"] = contains_pattern(subcategory)

        product_docs = list(db.products.find(query).sort("created_at", -1))
        return jsonify({"products": serialize_products(product_docs, currency, base_currency)})

    @app.route("/api/products/categories", methods=["GET"])
    def list_categories():
        categories: Dict[str, set] = {}
        for document in db.products.find({}, {"category": 1, "subcategory": 1}):
            name = str(document.get("category") or "").strip()
            if not name:
                continue
            subcategories = categories.setdefault(name, set())
            subcategory = str(document.get("subcategory") or "").strip()
            if subcategory:
                subcategories.add(subcategory)

        return jsonify(
            {
                "categories": [
                    {"name": name, "subcategories": sorted(categories[name])}
                    for name in sorted(categories, key=str.lower)
                ]
            }
        )

    @app.route("/api/products/category/<category>", methods=["GET"])
    @app.route("/api/products/category/<category>/<subcategory>", methods=["GET"])
    def list_products_by_category(category: str, subcategory: Optional[str] = None):
        currency, base_currency, currency_error = resolve_display_currency()
        if currency_error:
            return currency_error

        query: Dict[str, object] = {"category": contains_pattern(category)}
        if subcategory:
            query["subcategory"] = contains_pattern(subcategory)

        product_docs = list(db.products.find(query).sort("created_at", -1))
        if not product_docs:
            return jsonify({"error": "No products found in this category"}), 404
        return jsonify({"products": serialize_products(product_docs, currency, base_currency)})

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        currency, base_currency, currency_error = resolve_display_currency()
        if currency_error:
            return currency_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error
        return jsonify(
            {"product": serialize_products([product_document], currency, base_currency)[0]}
        )

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload = read_payload()
        name = str(payload.get("name", "")).strip()
        description = str(payload.get("description", "")).strip()
        category = str(payload.get("category", "")).strip()
        raw_price = payload.get("price")

        if not name or raw_price in (None, "") or not description or not category:
            return (
                jsonify({"error": "Name, price, description, and category are required"}),
                400,
            )

        price_value, price_error = parse_price(raw_price)
        if price_error:
            return jsonify({"error": price_error}), 400

        stock_value = 0
        if payload.get("stock") not in (None, ""):
            stock_value, stock_error = parse_stock(payload.get("stock"))
            if stock_error:
                return jsonify({"error": stock_error}), 400

        tax_id, tax_error = resolve_tax_id(payload.get("taxId"))
        if tax_error:
            return tax_error

        image_filename = ""
        image_file = request.files.get("image") if request.files else None
        if image_file:
            saved_filename, image_error = save_image(image_file)
            if image_error:
                return jsonify({"error": image_error}), 400
            image_filename = saved_filename

        now = datetime.utcnow()
        product_document = {
            "name": name,
            "price": price_value,
            "description": description,
            "category": category,
            "subcategory": str(payload.get("subcategory") or "").strip(),
            "image": image_filename or str(payload.get("image") or "").strip(),
            "stock": stock_value,
            "rating": 0,
            "reviews": 0,
            "tax_id": tax_id,
            "created_at": now,
            "updated_at": now,
            "created_by": str(admin_user["_id"]),
        }
        result = db.products.insert_one(product_document)
        product_document["_id"] = result.inserted_id

        record_audit_log(
            db,
            admin_user,
            "Created product",
            {"product_id": str(result.inserted_id), "product_name": name},
        )

        return (
            jsonify(
                {
                    "message": "Product created successfully",
                    "product": product_response(product_document),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PATCH", "PUT"])
    @jwt_required()
    def update_product(product_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        payload = read_payload()
        updates: Dict[str, object] = {}

        for field in ("name", "description", "category"):
            if field in payload:
                value = str(payload.get(field) or "").strip()
                if not value:
                    return jsonify({"error": f"{field.capitalize()} cannot be empty"}), 400
                updates[field] = value

        for field in ("subcategory", "image"):
            if field in payload:
                updates[field] = str(payload.get(field) or "").strip()

        if "price" in payload:
            price_value, price_error = parse_price(payload.get("price"))
            if price_error:
                return jsonify({"error": price_error}), 400
            updates["price"] = price_value

        if "stock" in payload:
            stock_value, stock_error = parse_stock(payload.get("stock"))
            if stock_error:
                return jsonify({"error": stock_error}), 400
            updates["stock"] = stock_value

        if "taxId" in payload:
            tax_id, tax_error = resolve_tax_id(payload.get("taxId"))
            if tax_error:
                return tax_error
            updates["tax_id"] = tax_id

        if not updates:
            return jsonify({"error": "No valid fields to update"}), 400

        updates["updated_at"] = datetime.utcnow()
        db.products.update_one({"_id": product_document["_id"]}, {"$set": updates})
        updated = db.products.find_one({"_id": product_document["_id"]})

        record_audit_log(
            db,
            admin_user,
            "Updated product",
            {"product_id": product_id, "fields": ",".join(sorted(updates))},
        )
        return jsonify(
            {"message": "Product updated successfully", "product": product_response(updated)}
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        db.products.delete_one({"_id": product_document["_id"]})
        db.reviews.delete_many({"product_id": str(product_document["_id"])})
        remove_image(product_document.get("image"))

        record_audit_log(
            db,
            admin_user,
            "Deleted product",
            {"product_id": product_id, "product_name": product_document.get("name")},
        )
        return jsonify({"message": "Product deleted successfully"})

    @app.route("/api/products/<product_id>/image", methods=["POST"])
    @jwt_required()
    def upload_product_image(product_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        image_file = request.files.get("image") if request.files else None
        if not image_file:
            return jsonify({"error": "No image file provided"}), 400

        saved_filename, image_error = save_image(image_file)
        if image_error:
            return jsonify({"error": image_error}), 400

        remove_image(product_document.get("image"))
        db.products.update_one(
            {"_id": product_document["_id"]},
            {"$set": {"image": saved_filename, "updated_at": datetime.utcnow()}},
        )
        updated = db.products.find_one({"_id": product_document["_id"]})

        record_audit_log(
            db, admin_user, "Uploaded product image", {"product_id": product_id}
        )
        return jsonify(
            {
                "message": "Image uploaded successfully",
                "imageUrl": build_upload_url(saved_filename),
                "product": product_response(updated),
            }
        )
