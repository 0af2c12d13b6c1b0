import mongomock


def _auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_create_user_sends_welcome_email(client, sent_emails):
    response = client.post(
        "/api/users",
        json={"email": "leila@shopy.store", "name": "Leila", "password": "secret123"},
    )

    assert response.status_code == 201, response.get_json()
    body = response.get_json()
    assert body["user"]["role"] == "user"
    assert body["token"]
    assert len(sent_emails) == 1
    assert sent_emails[0]["to"] == ["leila@shopy.store"]
    assert sent_emails[0]["subject"] == "Welcome to Shopy!"


def test_create_user_skips_placeholder_addresses(client, sent_emails):
    response = client.post(
        "/api/users",
        json={"email": "guest123@shopy.store", "name": "Guest", "password": "secret123"},
    )

    assert response.status_code == 201
    assert sent_emails == []


def test_only_admin_can_assign_role_on_create(client, admin_token, user_token):
    payload = {"email": "amine@shopy.store", "name": "Amine", "password": "secret123", "role": "admin"}

    as_user = client.post("/api/users", json=payload, headers=_auth_headers(user_token))
    assert as_user.get_json()["user"]["role"] == "user"

    payload["email"] = "sonia@shopy.store"
    as_admin = client.post("/api/users", json=payload, headers=_auth_headers(admin_token))
    assert as_admin.get_json()["user"]["role"] == "admin"


def test_list_users_requires_admin(client, admin_token, user_token):
    forbidden = client.get("/api/users", headers=_auth_headers(user_token))
    assert forbidden.status_code == 403
    assert forbidden.get_json()["error"] == "Admin access required"

    response = client.get("/api/users", headers=_auth_headers(admin_token))
    assert response.status_code == 200
    emails = {user["email"] for user in response.get_json()["users"]}
    assert {"owner@shopy.store", "nadia@shopy.store"} <= emails


def test_users_can_only_read_and_update_themselves(client, user_account, register):
    other = register("walid@shopy.store")
    token = user_account["token"]
    own_id = user_account["user"]["id"]

    me = client.get("/api/users/me", headers=_auth_headers(token))
    assert me.get_json()["user"]["id"] == own_id

    assert client.get(f"/api/users/{other['user']['id']}", headers=_auth_headers(token)).status_code == 403

    updated = client.patch(
        f"/api/users/{own_id}", json={"name": "Nadia K."}, headers=_auth_headers(token)
    )
    assert updated.status_code == 200
    assert updated.get_json()["user"]["name"] == "Nadia K."

    promote = client.patch(
        f"/api/users/{own_id}", json={"role": "admin"}, headers=_auth_headers(token)
    )
    assert promote.status_code == 403


def test_admin_updates_role(client, admin_token, user_account):
    user_id = user_account["user"]["id"]

    response = client.patch(
        f"/api/users/{user_id}", json={"role": "admin"}, headers=_auth_headers(admin_token)
    )
    assert response.status_code == 200
    assert response.get_json()["user"]["role"] == "admin"

    invalid = client.patch(
        f"/api/users/{user_id}", json={"role": "owner"}, headers=_auth_headers(admin_token)
    )
    assert invalid.status_code == 400


def test_delete_user_with_dependencies_needs_force(client, db, admin_token, user_account):
    user_id = user_account["user"]["id"]
    db.orders.insert_one({"user_id": user_id, "items": [], "total": 0})

    check = client.get(f"/api/users/{user_id}/check-delete", headers=_auth_headers(admin_token))
    assert check.get_json()["canDelete"] is False
    assert check.get_json()["orders"] == 1

    blocked = client.delete(f"/api/users/{user_id}", headers=_auth_headers(admin_token))
    assert blocked.status_code == 400

    forced = client.delete(f"/api/users/{user_id}?force=true", headers=_auth_headers(admin_token))
    assert forced.status_code == 200
    assert db.orders.count_documents({"user_id": user_id}) == 0
    assert db.audit_logs.count_documents({"action": "Deleted user"}) == 1


def test_admin_cannot_delete_self_or_unknown_user(client, admin_token):
    me = client.get("/api/users/me", headers=_auth_headers(admin_token)).get_json()["user"]

    own = client.delete(f"/api/users/{me['id']}", headers=_auth_headers(admin_token))
    assert own.status_code == 400

    missing = client.delete("/api/users/not-an-id", headers=_auth_headers(admin_token))
    assert missing.status_code == 404


def test_create_user_race_on_same_email_returns_400(client, db, register, monkeypatch):
    register("yasmine@shopy.store")
    original_find_one = mongomock.collection.Collection.find_one

    def find_one_missing_email(self, filter=None, *args, **kwargs):
        if self.name == "users" and isinstance(filter, dict) and "email" in filter:
            return None
        return original_find_one(self, filter, *args, **kwargs)

    monkeypatch.setattr(mongomock.collection.Collection, "find_one", find_one_missing_email)

    response = client.post(
        "/api/users",
        json={"email": "yasmine@shopy.store", "name": "Yasmine", "password": "secret123"},
    )

    assert response.status_code == 400
    assert response.get_json() == {"error": "User already exists"}
    assert db.users.count_documents({"email": "yasmine@shopy.store"}) == 1
