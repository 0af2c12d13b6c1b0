import io
import os

import pytest


def _auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def euro(client, admin_token):
    response = client.post(
        "/api/settings/currencies",
        json={"name": "Euro", "code": "eur", "symbol": "€", "exchangeRate": 0.9, "isActive": False},
        headers=_auth_headers(admin_token),
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["currency"]


def test_payment_method_setting_activates_provider(client, db, admin_token, user_token):
    assert client.get("/api/settings/payment-method").get_json() == {"activePaymentMethod": "adyen"}

    forbidden = client.post(
        "/api/settings/payment-method", json={"method": "konnect"}, headers=_auth_headers(user_token)
    )
    assert forbidden.status_code == 403
    assert forbidden.get_json()["error"] == "Forbidden: Admins only"

    invalid = client.post(
        "/api/settings/payment-method", json={"method": "cash"}, headers=_auth_headers(admin_token)
    )
    assert invalid.status_code == 400

    response = client.post(
        "/api/settings/payment-method", json={"method": "Konnect"}, headers=_auth_headers(admin_token)
    )
    assert response.get_json() == {"message": "Payment method updated", "activePaymentMethod": "konnect"}
    assert client.get("/api/settings/payment-method").get_json()["activePaymentMethod"] == "konnect"
    active = [method["code"] for method in db.payment_methods.find({"is_active": True})]
    assert active == ["konnect"]


def test_currency_and_tax_settings(client, admin_token):
    assert client.get("/api/settings/currency").get_json() == {"currency": "USD"}
    assert client.get("/api/settings/tax").get_json() == {"tax": 4.0}

    currency = client.post(
        "/api/settings/currency", json={"currency": "tnd"}, headers=_auth_headers(admin_token)
    )
    assert currency.get_json()["currency"] == "TND"
    assert client.post(
        "/api/settings/currency", json={"currency": 7}, headers=_auth_headers(admin_token)
    ).status_code == 400

    tax = client.post("/api/settings/tax", json={"tax": "19"}, headers=_auth_headers(admin_token))
    assert tax.get_json() == {"message": "Tax updated", "tax": 19.0}
    assert client.get("/api/settings/tax").get_json() == {"tax": 19.0}
    for invalid in ("abc", True, None):
        response = client.post("/api/settings/tax", json={"tax": invalid}, headers=_auth_headers(admin_token))
        assert response.status_code == 400

    taxes = client.get("/api/settings/taxes").get_json()["taxes"]
    assert [tax["rate"] for tax in taxes] == [0, 5, 10, 15, 20, 25]


def test_create_currency_validation(client, admin_token, euro):
    assert euro["code"] == "EUR"
    assert euro["isActive"] is False

    duplicate = client.post(
        "/api/settings/currencies",
        json={"name": "Euro", "code": "EUR", "symbol": "€"},
        headers=_auth_headers(admin_token),
    )
    assert duplicate.get_json()["error"] == "Currency with code 'EUR' already exists"

    for payload in (
        {"name": "Dinar", "code": "TN", "symbol": "DT"},
        {"name": "Dinar", "code": "TND"},
        {"name": "Dinar", "code": "TND", "symbol": "DT", "exchangeRate": 0},
    ):
        response = client.post("/api/settings/currencies", json=payload, headers=_auth_headers(admin_token))
        assert response.status_code == 400


def test_creating_active_currency_deactivates_others(client, db, admin_token):
    response = client.post(
        "/api/settings/currencies",
        json={"name": "Tunisian Dinar", "code": "TND", "symbol": "DT", "exchangeRate": 3.1},
        headers=_auth_headers(admin_token),
    )

    assert response.get_json()["currency"]["isActive"] is True
    active = client.get("/api/settings/currencies/active").get_json()["currencies"]
    assert [currency["code"] for currency in active] == ["TND"]
    assert db.currencies.find_one({"code": "USD"})["is_base"] is True


def test_convert_between_currencies(client, euro):
    response = client.get("/api/settings/currencies/convert?amount=100&from=usd&to=EUR")
    assert response.get_json() == {
        "amount": 100.0,
        "from": "USD",
        "to": "EUR",
        "rate": 0.9,
        "converted": 90.0,
    }

    back = client.get("/api/settings/currencies/convert?amount=90&from=EUR&to=USD")
    assert back.get_json()["converted"] == 100.0

    assert client.get("/api/settings/currencies/convert?amount=x&from=USD&to=EUR").status_code == 400
    assert client.get("/api/settings/currencies/convert?amount=1&from=USD").status_code == 400
    missing = client.get("/api/settings/currencies/convert?amount=1&from=USD&to=JPY")
    assert missing.status_code == 404
    assert missing.get_json()["error"] == "Currency JPY not found"


def test_convert_uses_stored_base_rate_like_product_prices(client, db, admin_token, euro):
    db.currencies.update_one({"code": "USD"}, {"$set": {"exchange_rate": 2}})
    db.currencies.update_one({"code": "EUR"}, {"$set": {"exchange_rate": 1}})
    created = client.post(
        "/api/products",
        json={"name": "Olive Oil", "price": 100, "description": "Cold pressed", "category": "Pantry", "stock": 3},
        headers=_auth_headers(admin_token),
    )
    assert created.status_code == 201, created.get_json()

    converted = client.get("/api/settings/currencies/convert?amount=100&from=USD&to=EUR").get_json()
    product = client.get("/api/products?currency=EUR").get_json()["products"][0]

    assert converted["converted"] == 50.0
    assert converted["rate"] == 0.5
    assert product["convertedPrice"] == converted["converted"]


def test_update_cannot_unset_or_deactivate_base_currency(client, db, admin_token):
    usd = client.get("/api/settings/currencies/base").get_json()["currency"]

    unset = client.put(
        f"/api/settings/currencies/{usd['id']}", json={"isBase": False}, headers=_auth_headers(admin_token)
    )
    assert unset.status_code == 400
    assert "Set another currency as base" in unset.get_json()["error"]

    inactive = client.put(
        f"/api/settings/currencies/{usd['id']}", json={"isActive": False}, headers=_auth_headers(admin_token)
    )
    assert inactive.status_code == 400

    assert db.currencies.count_documents({"is_base": True}) == 1
    assert db.currencies.find_one({"code": "USD"})["is_active"] is True

    renamed = client.put(
        f"/api/settings/currencies/{usd['id']}",
        json={"name": "US Dollar", "isBase": True},
        headers=_auth_headers(admin_token),
    )
    assert renamed.status_code == 200
    assert renamed.get_json()["currency"]["isBase"] is True


def test_toggle_base_currency_moves_base(client, db, admin_token, euro):
    usd = client.get("/api/settings/currencies/base").get_json()["currency"]

    blocked = client.post(
        f"/api/settings/currencies/{usd['id']}/toggle", headers=_auth_headers(admin_token)
    )
    assert blocked.status_code == 400

    db.currencies.update_one({"code": "EUR"}, {"$set": {"is_active": True}})
    response = client.post(
        f"/api/settings/currencies/{usd['id']}/toggle", headers=_auth_headers(admin_token)
    )
    assert response.get_json()["message"] == "Currency deactivated"
    assert response.get_json()["currency"]["isBase"] is False
    assert client.get("/api/settings/currencies/base").get_json()["currency"]["code"] == "EUR"
    assert db.currencies.count_documents({"is_base": True}) == 1


def test_set_base_and_delete_currency(client, db, admin_token, euro):
    response = client.post(
        f"/api/settings/currencies/{euro['id']}/set-base", headers=_auth_headers(admin_token)
    )
    assert response.get_json()["message"] == "Base currency updated"
    assert response.get_json()["currency"]["isBase"] is True
    assert db.currencies.find_one({"code": "USD"})["is_active"] is False

    base_delete = client.delete(f"/api/settings/currencies/{euro['id']}", headers=_auth_headers(admin_token))
    assert base_delete.status_code == 400

    usd_id = str(db.currencies.find_one({"code": "USD"})["_id"])
    renamed = client.put(
        f"/api/settings/currencies/{usd_id}",
        json={"name": "Dollar", "exchangeRate": 1.1},
        headers=_auth_headers(admin_token),
    )
    assert renamed.get_json()["currency"]["name"] == "Dollar"

    deleted = client.delete(f"/api/settings/currencies/{usd_id}", headers=_auth_headers(admin_token))
    assert deleted.status_code == 200
    assert client.delete(f"/api/settings/currencies/{usd_id}", headers=_auth_headers(admin_token)).status_code == 404


def test_invoice_settings(client, admin_token):
    defaults = client.get("/api/settings/invoice").get_json()["settings"]
    assert defaults["companyName"] == "E-Shop"

    bad_color = client.put(
        "/api/settings/invoice", json={"primaryColor": "purple"}, headers=_auth_headers(admin_token)
    )
    assert bad_color.status_code == 400
    assert bad_color.get_json()["error"] == "primaryColor must be a hex color like #1A2B3C"

    unknown = client.put("/api/settings/invoice", json={"theme": "dark"}, headers=_auth_headers(admin_token))
    assert unknown.status_code == 400

    response = client.put(
        "/api/settings/invoice",
        json={"companyName": "Souk Online", "primaryColor": "#112233"},
        headers=_auth_headers(admin_token),
    )
    settings = response.get_json()["settings"]
    assert settings["companyName"] == "Souk Online"
    assert settings["primaryColor"] == "#112233"
    assert settings["companyCity"] == "Tunis"


def test_upload_logo_replaces_previous_file(client, app, admin_token):
    def upload(name):
        return client.post(
            "/api/settings/upload-logo",
            data={"logo": (io.BytesIO(b"\x89PNG\r\n"), name)},
            headers=_auth_headers(admin_token),
            content_type="multipart/form-data",
        )

    assert client.post("/api/settings/upload-logo", headers=_auth_headers(admin_token)).status_code == 400

    first = upload("logo.png").get_json()["logoUrl"]
    second = upload("logo-v2.png").get_json()["logoUrl"]

    upload_folder = app.config["UPLOAD_FOLDER"]
    assert not os.path.exists(os.path.join(upload_folder, first.rsplit("/", 1)[-1]))
    assert os.path.exists(os.path.join(upload_folder, second.rsplit("/", 1)[-1]))
    assert client.get("/api/settings/invoice").get_json()["settings"]["logoUrl"] == second
