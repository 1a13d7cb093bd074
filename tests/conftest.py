"""
Shared test fixtures.

Every test gets a fresh app bound to its own in-memory SQLite database,
a Flask test client, a direct store session and user factories.
"""

import uuid

import pytest

import password_routes
from records import create_record
from store import SessionLocal, User
from vaultapp import create_app


@pytest.fixture
def app():
    app = create_app({
        "DATABASE_URL": "sqlite://",
        "JWT_SECRET": "test-secret-for-the-vault-suite-0123456789",
        "TESTING": True,
    })
    yield app
    SessionLocal.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    password_routes._rate_limit_store.clear()
    yield
    password_routes._rate_limit_store.clear()


@pytest.fixture
def make_user(db):
    """Insert a user directly (no bcrypt) and return it."""

    def _make(name=None, email=None):
        name = name or f"user_{uuid.uuid4().hex[:6]}"
        user = User(name=name, email=(email or f"{name}@example.test").lower(), password_hash="x")
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_record(db):
    def _make(owner, title="Gmail", **fields):
        values = {"title": title, "username": "someone", "password": "s3cret"}
        values.update(fields)
        return create_record(db, owner.id, values)

    return _make


@pytest.fixture
def register(client):
    """Register through the API; returns (token, user dict)."""

    def _register(name, email, password="correct-horse"):
        resp = client.post("/register", json={"name": name, "email": email, "password": password})
        assert resp.status_code == 201, resp.get_json()
        body = resp.get_json()
        return body["token"], body["user"]

    return _register
