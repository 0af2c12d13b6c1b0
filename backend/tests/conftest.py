import mongomock
import pytest

from shopy import create_app

ADMIN_EMAIL = "owner@shopy.store"
TEST_SETTINGS = {
    "TESTING": True,
    "JWT_SECRET_KEY": "shopy-test-secret-key-with-enough-length-for-hs256",
    "DEFAULT_ADMIN_EMAIL": ADMIN_EMAIL,
    "RESEND_API_KEY": "re_configured",
    "EMAIL_SENDER": "Shopy <no-reply@shopy.store>",
    "BACKEND_URL": "https://api.shopy.store",
    "PAYMENT_DEMO_MODE": True,
    "PAYMENT_CONFIG_CACHE_SECONDS": 0,
    "TRUSTED_PROXY_HOPS": 0,
}


@pytest.fixture
def db():
    return mongomock.MongoClient().shopy


@pytest.fixture
def sent_emails(monkeypatch):
    sent = []

    def fake_send(payload, api_key):
        sent.append(payload)
        return True, None

    monkeypatch.setattr("shopy.emails.send_email_via_resend", fake_send)
    return sent


@pytest.fixture
def app(db, tmp_path, sent_emails):
    settings = dict(TEST_SETTINGS, UPLOAD_FOLDER=str(tmp_path / "uploads"))
    return create_app(settings, database=db)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def register(client):
    def _register(email: str, name: str = "Nadia", password: str = "secret123"):
        response = client.post(
            "/api/auth/register",
            json={"email": email, "name": name, "password": password},
        )
        assert response.status_code == 201, response.get_json()
        return response.get_json()

    return _register


@pytest.fixture
def admin_token(register):
    return register(ADMIN_EMAIL, name="Store Owner")["token"]


@pytest.fixture
def user_account(register):
    return register("nadia@shopy.store")


@pytest.fixture
def user_token(user_account):
    return user_account["token"]
