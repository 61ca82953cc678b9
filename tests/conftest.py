from datetime import datetime

import pytest
from flask_jwt_extended import create_access_token

from backend.app import create_app
from backend.settings import GatewaySettings, Settings

from .fakes import FakeDatabase, StubGateway

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret_key="test-jwt-secret-that-is-long-enough-for-hs256",
        gateway=GatewaySettings(
            key_id="rzp_test_1234567890",
            key_secret=KEY_SECRET,
            webhook_secret=WEBHOOK_SECRET,
        ),
    )


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def app(settings, fake_db, gateway):
    app = create_app(settings, database=fake_db, gateway=gateway)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def make_token(app, user, is_admin=False):
    claims = {"email": user["email"]}
    if is_admin:
        claims["is_admin"] = True
    with app.app_context():
        return create_access_token(identity=str(user["_id"]), additional_claims=claims)


@pytest.fixture
def user(fake_db):
    document = {
        "email": "shopper@example.com",
        "password": None,
        "display_name": "Shopper",
        "is_admin": False,
        "created_at": datetime.utcnow(),
    }
    fake_db.users.insert_one(document)
    return document


@pytest.fixture
def admin(fake_db):
    document = {
        "email": "admin@example.com",
        "password": None,
        "display_name": "Admin",
        "is_admin": True,
        "created_at": datetime.utcnow(),
    }
    fake_db.users.insert_one(document)
    return document


@pytest.fixture
def auth_headers(app, user):
    return {"Authorization": f"Bearer {make_token(app, user)}"}


@pytest.fixture
def admin_headers(app, admin):
    return {"Authorization": f"Bearer {make_token(app, admin, is_admin=True)}"}


@pytest.fixture
def pending_order(fake_db, user):
    document = {
        "user_id": str(user["_id"]),
        "items": [
            {"product_id": "7", "quantity": 2, "category": "Rings", "unit_price": 500.0}
        ],
        "subtotal": 1000.0,
        "discount": 0,
        "total": 1000.0,
        "status": "Pending",
        "payment_status": "Pending",
        "created_at": datetime.utcnow(),
    }
    fake_db.orders.insert_one(document)
    return document
