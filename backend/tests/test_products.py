import io
import os


def _auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _create_product(client, token, **overrides):
    payload = {
        "name": "Harissa Jar",
        "price": 4.5,
        "description": "Spicy chili paste",
        "category": "Pantry",
        "subcategory": "Sauces",
        "stock": 12,
    }
    payload.update(overrides)
    return client.post("/api/products", json=payload, headers=_auth_headers(token))


def test_create_product_defaults_to_ten_percent_tax(client, admin_token):
    response = _create_product(client, admin_token)

    assert response.status_code == 201, response.get_json()
    product = response.get_json()["product"]
    assert product["taxRate"] == 10
    assert product["taxName"] == "10%"
    assert product["priceWithTax"] == 4.95
    assert product["stock"] == 12
    assert product["rating"] == 0


def test_create_product_with_explicit_tax(client, db, admin_token):
    tax = db.taxes.find_one({"rate": 20})

    response = _create_product(client, admin_token, taxId=str(tax["_id"]), price=10)

    assert response.get_json()["product"]["taxRate"] == 20
    assert response.get_json()["product"]["priceWithTax"] == 12


def test_create_product_validation(client, admin_token, user_token):
    assert _create_product(client, user_token).status_code == 403
    assert _create_product(client, admin_token, name="").status_code == 400
    assert _create_product(client, admin_token, price="free").status_code == 400
    assert _create_product(client, admin_token, price=-1).status_code == 400
    assert _create_product(client, admin_token, stock=1.5).status_code == 400
    assert _create_product(client, admin_token, taxId="64b7f0c2a1b2c3d4e5f60718").status_code == 400


def test_create_product_without_default_tax(client, db, admin_token):
    db.taxes.delete_many({"rate": 10})

    response = _create_product(client, admin_token)

    assert response.status_code == 500
    assert "Default 10% tax not found" in response.get_json()["error"]


def test_list_search_and_categories(client, admin_token):
    _create_product(client, admin_token)
    _create_product(client, admin_token, name="Dates Deglet Nour", category="Fruit", subcategory="Dried")

    search = client.get("/api/products?search=harissa").get_json()["products"]
    assert [product["name"] for product in search] == ["Harissa Jar"]

    by_category = client.get("/api/products/category/fruit").get_json()["products"]
    assert [product["name"] for product in by_category] == ["Dates Deglet Nour"]

    assert client.get("/api/products/category/Toys").status_code == 404

    categories = client.get("/api/products/categories").get_json()["categories"]
    assert categories == [
        {"name": "Fruit", "subcategories": ["Dried"]},
        {"name": "Pantry", "subcategories": ["Sauces"]},
    ]


def test_list_products_in_another_currency(client, db, admin_token):
    _create_product(client, admin_token, price=10)
    db.currencies.insert_one(
        {"name": "Euro", "code": "EUR", "symbol": "€", "exchange_rate": 0.5, "is_active": False}
    )

    product = client.get("/api/products?currency=eur").get_json()["products"][0]
    assert product["currency"] == "EUR"
    assert product["convertedPrice"] == 5
    assert product["convertedPriceWithTax"] == 5.5

    assert client.get("/api/products?currency=XYZ").status_code == 404


def test_update_and_delete_product(client, db, admin_token):
    product_id = _create_product(client, admin_token).get_json()["product"]["id"]

    updated = client.put(
        f"/api/products/{product_id}",
        json={"price": 6, "stock": 3},
        headers=_auth_headers(admin_token),
    )
    assert updated.status_code == 200
    assert updated.get_json()["product"]["price"] == 6
    assert updated.get_json()["product"]["stock"] == 3

    empty = client.patch(f"/api/products/{product_id}", json={}, headers=_auth_headers(admin_token))
    assert empty.status_code == 400

    db.reviews.insert_one({"product_id": product_id, "user_id": "x", "rating": 5})
    deleted = client.delete(f"/api/products/{product_id}", headers=_auth_headers(admin_token))
    assert deleted.status_code == 200
    assert db.reviews.count_documents({"product_id": product_id}) == 0
    assert client.get(f"/api/products/{product_id}").status_code == 404


def test_upload_product_image(client, app, admin_token):
    product_id = _create_product(client, admin_token).get_json()["product"]["id"]

    rejected = client.post(
        f"/api/products/{product_id}/image",
        data={"image": (io.BytesIO(b"GIF89a"), "notes.txt")},
        headers=_auth_headers(admin_token),
        content_type="multipart/form-data",
    )
    assert rejected.status_code == 400

    response = client.post(
        f"/api/products/{product_id}/image",
        data={"image": (io.BytesIO(b"\x89PNG\r\n"), "jar.png")},
        headers=_auth_headers(admin_token),
        content_type="multipart/form-data",
    )
    assert response.status_code == 200
    filename = response.get_json()["product"]["image"]
    assert filename.endswith(".png")
    assert response.get_json()["imageUrl"].endswith(f"/uploads/{filename}")
    assert os.path.exists(os.path.join(app.config["UPLOAD_FOLDER"], filename))

    served = client.get(f"/uploads/{filename}")
    assert served.status_code == 200
    assert served.data == b"\x89PNG\r\n"
