from datetime import datetime
from typing import Iterable, Optional

from flask import jsonify, request
from flask_jwt_extended import jwt_required

from ..auth import is_admin, load_current_user
from ..helpers import parse_object_id
from ..serializers import serialize_review


def review_product_key(product_id) -> Optional[str]:
    """Canonical string form of a product id as stored on reviews."""
    object_id = parse_object_id(product_id)
    return str(object_id) if object_id else None


def refresh_product_ratings(db, product_ids: Iterable[str]) -> None:
    """Recompute the cached ``rating`` and ``reviews`` counters of each product."""
    for product_key in {review_product_key(product_id) for product_id in product_ids or []}:
        if not product_key:
            continue
        ratings = [
            document.get("rating", 0)
            for document in db.reviews.find({"product_id": product_key}, {"rating": 1})
        ]
        average = round(sum(ratings) / len(ratings), 1) if ratings else 0
        db.products.update_one(
            {"_id": parse_object_id(product_key)},
            {"$set": {"rating": average, "reviews": len(ratings)}},
        )


def parse_rating(value):
    if isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not numeric.is_integer() or numeric < 1 or numeric > 5:
        return None
    return int(numeric)


def register_review_routes(app, db):
    def fetch_review(review_id: str):
        object_id = parse_object_id(review_id)
        review_document = db.reviews.find_one({"_id": object_id}) if object_id else None
        if not review_document:
            return None, (jsonify({"error": "Review not found"}), 404)
        return review_document, None

    def existing_product_key(product_id: str) -> Optional[str]:
        product_key = review_product_key(product_id)
        if product_key and db.products.find_one({"_id": parse_object_id(product_key)}, {"_id": 1}):
            return product_key
        return None

    @app.route("/api/products/<product_id>/reviews", methods=["GET"])
    def list_product_reviews(product_id: str):
        product_key = existing_product_key(product_id)
        if not product_key:
            return jsonify({"error": "Product not found"}), 404

        reviews = [
            serialize_review(document)
            for document in db.reviews.find({"product_id": product_key}).sort("created_at", -1)
        ]
        return jsonify({"reviews": reviews})

    @app.route("/api/products/<product_id>/reviews", methods=["POST"])
    @jwt_required()
    def create_review(product_id: str):
        user = load_current_user(db)
        if not user:
            return jsonify({"error": "User not found"}), 404

        product_key = existing_product_key(product_id)
        if not product_key:
            return jsonify({"error": "Product not found"}), 404

        payload = request.get_json(silent=True) or {}
        rating = parse_rating(payload.get("rating"))
        if rating is None:
            return jsonify({"error": "Rating must be between 1 and 5"}), 400

        comment = str(payload.get("comment") or "").strip()
        if not comment:
            return jsonify({"error": "Comment is required"}), 400

        user_id = str(user["_id"])
        if db.reviews.find_one({"product_id": product_key, "user_id": user_id}):
            return jsonify({"error": "You have already reviewed this product"}), 400

        now = datetime.utcnow()
        review_document = {
            "product_id": product_key,
            "user_id": user_id,
            "user_name": user.get("name", ""),
            "rating": rating,
            "comment": comment,
            "created_at": now,
            "updated_at": now,
        }
        result = db.reviews.insert_one(review_document)
        review_document["_id"] = result.inserted_id
        refresh_product_ratings(db, [product_key])

        return (
            jsonify(
                {"message": "Review added successfully", "review": serialize_review(review_document)}
            ),
            201,
        )

    @app.route("/api/reviews/<review_id>", methods=["PUT"])
    @jwt_required()
    def update_review(review_id: str):
        user = load_current_user(db)
        review_document, load_error = fetch_review(review_id)
        if load_error:
            return load_error

        if not user or (
            review_document.get("user_id") != str(user["_id"]) and not is_admin(user)
        ):
            return jsonify({"error": "You can only edit your own reviews"}), 403

        payload = request.get_json(silent=True) or {}
        updates = {}
        if "rating" in payload:
            rating = parse_rating(payload.get("rating"))
            if rating is None:
                return jsonify({"error": "Rating must be between 1 and 5"}), 400
            updates["rating"] = rating
        if "comment" in payload:
            comment = str(payload.get("comment") or "").strip()
            if not comment:
                return jsonify({"error": "Comment is required"}), 400
            updates["comment"] = comment

        if not updates:
            return jsonify({"error": "No valid fields to update"}), 400

        updates["updated_at"] = datetime.utcnow()
        db.reviews.update_one({"_id": review_document["_id"]}, {"$set": updates})
        refresh_product_ratings(db, [review_document.get("product_id")])

        updated = db.reviews.find_one({"_id": review_document["_id"]})
        return jsonify({"message": "Review updated successfully", "review": serialize_review(updated)})

    @app.route("/api/reviews/<review_id>", methods=["DELETE"])
    @jwt_required()
    def delete_review(review_id: str):
        user = load_current_user(db)
        review_document, load_error = fetch_review(review_id)
        if load_error:
            return load_error

        if not user or (
            review_document.get("user_id") != str(user["_id"]) and not is_admin(user)
        ):
            return jsonify({"error": "You can only delete your own reviews"}), 403

        db.reviews.delete_one({"_id": review_document["_id"]})
        refresh_product_ratings(db, [review_document.get("product_id")])
        return jsonify({"message": "Review deleted successfully"})
