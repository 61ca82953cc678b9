"""Tests for account creation, login and admin provisioning."""

from dataclasses import replace

import bcrypt
from google.auth.exceptions import TransportError

from backend import app as app_module
from backend.create_admin import upsert_admin

from .fakes import FakeDatabase


def test_signup_then_login(client, fake_db):
    signup = client.post(
        "/api/auth/signup",
        json={"email": "New@Example.com ", "password": "hunter22", "displayName": "New"},
    )
    assert signup.status_code == 200
    assert signup.get_json()["user"]["email"] == "new@example.com"
    assert fake_db.carts.count_documents({}) == 1

    assert client.post(
        "/api/auth/signup", json={"email": "new@example.com", "password": "x"}
    ).status_code == 400

    login = client.post("/api/auth/login", json={"email": "new@example.com", "password": "hunter22"})
    assert login.status_code == 200
    assert login.get_json()["token"]

    wrong = client.post("/api/auth/login", json={"email": "new@example.com", "password": "nope"})
    assert wrong.status_code == 401


def test_admin_login_requires_admin_flag(client, fake_db):
    hashed_pw = bcrypt.hashpw(b"secret123", bcrypt.gensalt())
    fake_db.users.insert_one({"email": "plain@example.com", "password": hashed_pw})
    response = client.post(
        "/api/admin/login", json={"email": "plain@example.com", "password": "secret123"}
    )
    assert response.status_code == 403


def test_google_login_disabled_without_client_id(client):
    response = client.post("/api/auth/google", json={"idToken": "token"})
    assert response.status_code == 500


def test_google_login_with_client_id(fake_db, gateway, monkeypatch, settings):
    monkeypatch.setattr(
        app_module,
        "verify_google_identity",
        lambda token, client_id: ("google.user@example.com", "Google User"),
    )
    configured = replace(settings, google_client_id="client-id")
    client = app_module.create_app(configured, database=fake_db, gateway=gateway).test_client()

    response = client.post("/api/auth/google", json={"idToken": "token"})
    assert response.status_code == 200
    assert response.get_json()["user"]["displayName"] == "Google User"
    assert fake_db.users.find_one({"email": "google.user@example.com"})["password"] is None


def test_google_login_when_certificates_are_unreachable(
    fake_db, gateway, monkeypatch, settings
):
    def unreachable(token, client_id):
        raise TransportError("could not fetch certificates")

    monkeypatch.setattr(app_module, "verify_google_identity", unreachable)
    configured = replace(settings, google_client_id="client-id")
    client = app_module.create_app(configured, database=fake_db, gateway=gateway).test_client()

    response = client.post("/api/auth/google", json={"idToken": "token"})
    assert response.status_code == 502
    assert response.get_json() == {"error": "Could not verify Google sign-in. Please try again."}
    assert fake_db.users.count_documents({}) == 0


def test_upsert_admin_creates_then_promotes():
    db = FakeDatabase()
    assert upsert_admin(db, "Boss@Example.com", "secret123") == "created"
    assert db.users.find_one({"email": "boss@example.com"})["is_admin"] is True

    db.users.insert_one({"email": "staff@example.com", "is_admin": False})
    assert upsert_admin(db, "staff@example.com", "secret123") == "promoted"
    promoted = db.users.find_one({"email": "staff@example.com"})
    assert promoted["is_admin"] is True
    assert bcrypt.checkpw(b"secret123", promoted["password"])
