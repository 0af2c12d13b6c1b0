import mongomock

ADMIN_EMAIL = "owner@shopy.store"


def _auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_register_returns_user_and_tokens(client):
    response = client.post(
        "/api/auth/register",
        json={
            "email": "  Karim@Shopy.Store ",
            "name": "Karim",
            "password": "secret123",
            "address": {"street": "12 Rue de Marseille", "city": "Tunis", "zipCode": "1000"},
        },
    )

    assert response.status_code == 201, response.get_json()
    body = response.get_json()
    assert body["user"]["email"] == "karim@shopy.store"
    assert body["user"]["role"] == "user"
    assert body["user"]["address"]["city"] == "Tunis"
    assert body["token"]
    assert body["refreshToken"]
    assert "password" not in body["user"]


def test_register_validation(client, register):
    register("karim@shopy.store")

    missing = client.post("/api/auth/register", json={"email": "a@shopy.store"})
    assert missing.status_code == 400

    invalid = client.post(
        "/api/auth/register", json={"email": "not-an-email", "name": "K", "password": "secret123"}
    )
    assert invalid.get_json()["error"] == "Please provide a valid email address"

    short = client.post(
        "/api/auth/register", json={"email": "k2@shopy.store", "name": "K", "password": "123"}
    )
    assert short.status_code == 400

    duplicate = client.post(
        "/api/auth/register",
        json={"email": "KARIM@shopy.store", "name": "K", "password": "secret123"},
    )
    assert duplicate.status_code == 400
    assert duplicate.get_json()["error"] == "User already exists"


def test_login_and_verify(client, register):
    register("karim@shopy.store", password="secret123")

    wrong = client.post(
        "/api/auth/login", json={"email": "karim@shopy.store", "password": "nope-nope"}
    )
    assert wrong.status_code == 400
    assert wrong.get_json()["error"] == "Invalid credentials"

    login = client.post(
        "/api/auth/login", json={"email": "karim@shopy.store", "password": "secret123"}
    )
    assert login.status_code == 200
    token = login.get_json()["token"]

    verify = client.get("/api/auth/verify", headers=_auth_headers(token))
    assert verify.status_code == 200
    assert verify.get_json()["user"]["email"] == "karim@shopy.store"


def test_default_admin_email_gets_admin_role(register):
    body = register(ADMIN_EMAIL)

    assert body["user"]["role"] == "admin"


def test_missing_and_invalid_tokens(client):
    missing = client.get("/api/auth/verify")
    assert missing.status_code == 401
    assert missing.get_json()["error"] == "Access token required"

    invalid = client.get("/api/auth/verify", headers=_auth_headers("garbage"))
    assert invalid.status_code == 403
    assert invalid.get_json()["error"] == "Invalid token"


def test_refresh_rotates_tokens(client, user_account):
    refresh_token = user_account["refreshToken"]

    refreshed = client.post("/api/auth/refresh", json={"refreshToken": refresh_token})
    assert refreshed.status_code == 200
    assert refreshed.get_json()["token"]
    assert refreshed.get_json()["refreshToken"] != refresh_token

    reused = client.post("/api/auth/refresh", json={"refreshToken": refresh_token})
    assert reused.status_code == 403


def test_refresh_rejects_access_tokens_and_missing_body(client, user_account):
    assert client.post("/api/auth/refresh", json={}).status_code == 401

    response = client.post("/api/auth/refresh", json={"refreshToken": user_account["token"]})
    assert response.status_code == 403
    assert response.get_json()["error"] == "Invalid refresh token"


def test_profile_update(client, user_token, register):
    register("taken@shopy.store")

    response = client.put(
        "/api/auth/profile",
        json={"name": "Nadia B.", "phone": "+216 20 000 000", "city": "Sfax"},
        headers=_auth_headers(user_token),
    )
    assert response.status_code == 200
    user = response.get_json()["user"]
    assert user["name"] == "Nadia B."
    assert user["phone"] == "+216 20 000 000"
    assert user["address"]["city"] == "Sfax"

    conflict = client.put(
        "/api/auth/profile",
        json={"email": "taken@shopy.store"},
        headers=_auth_headers(user_token),
    )
    assert conflict.status_code == 400
    assert conflict.get_json()["error"] == "Email already in use"


def test_change_password(client, user_token):
    wrong = client.put(
        "/api/auth/change-password",
        json={"currentPassword": "wrong-one", "newPassword": "brand-new-1"},
        headers=_auth_headers(user_token),
    )
    assert wrong.status_code == 400

    changed = client.put(
        "/api/auth/change-password",
        json={"currentPassword": "secret123", "newPassword": "brand-new-1"},
        headers=_auth_headers(user_token),
    )
    assert changed.status_code == 200

    login = client.post(
        "/api/auth/login", json={"email": "nadia@shopy.store", "password": "brand-new-1"}
    )
    assert login.status_code == 200


def test_logout_revokes_access_and_refresh_tokens(client, user_account):
    token = user_account["token"]

    response = client.post(
        "/api/auth/logout",
        json={"refreshToken": user_account["refreshToken"]},
        headers=_auth_headers(token),
    )
    assert response.status_code == 200

    revoked = client.get("/api/auth/verify", headers=_auth_headers(token))
    assert revoked.status_code == 401
    assert revoked.get_json()["error"] == "Token has been revoked"

    refresh = client.post(
        "/api/auth/refresh", json={"refreshToken": user_account["refreshToken"]}
    )
    assert refresh.status_code == 403


def test_register_race_on_same_email_returns_400(client, register, monkeypatch):
    register("yasmine@shopy.store")
    original_find_one = mongomock.collection.Collection.find_one

    def find_one_missing_email(self, filter=None, *args, **kwargs):
        # A concurrent request that passed the existence check before the insert.
        if self.name == "users" and isinstance(filter, dict) and "email" in filter:
            return None
        return original_find_one(self, filter, *args, **kwargs)

    monkeypatch.setattr(mongomock.collection.Collection, "find_one", find_one_missing_email)

    response = client.post(
        "/api/auth/register",
        json={"email": "Yasmine@shopy.store", "name": "Yasmine", "password": "secret123"},
    )

    assert response.status_code == 400
    assert response.get_json() == {"error": "User already exists"}
