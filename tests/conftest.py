"""Pytest configuration and fixtures.

Every test gets a fresh app from create_app(TestingConfig):
- SQLite in memory, tables created by the factory
- rate limiting off, blacklist sweeper off, bcrypt rounds lowered
- its own RealtimeHub, so socket handlers never leak between tests
"""

import os

# Set test environment variables before importing app modules
os.environ.setdefault("FLASK_ENV", "testing")

import pytest

from app import create_app
from config import TestingConfig
from models import db, User

DEFAULT_PASSWORD = "correct-horse-battery"


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    ctx = app.app_context()
    ctx.push()

    yield app

    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def authenticator(app):
    return app.extensions["session_authenticator"]


@pytest.fixture
def hub(app):
    return app.extensions["realtime_hub"]


@pytest.fixture
def make_user(authenticator):
    """Create a user directly in the database (verified by default)."""

    def _make_user(email="alice@example.com", name="Alice", password=DEFAULT_PASSWORD,
                   role="user", verified=True):
        user = User(
            name=name,
            email=email.lower(),
            password_hash=authenticator.hash_password(password),
            role=role,
            is_verified=verified,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    def _auth_headers(token):
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


@pytest.fixture
def login(client):
    """Log in through the HTTP API and return the session token."""

    def _login(email, password=DEFAULT_PASSWORD):
        response = client.post("/auth/login", json={"email": email, "password": password})
        assert response.status_code == 200, response.get_json()
        return response.get_json()["data"]["token"]

    return _login


@pytest.fixture
def socket_client(app, hub):
    """Factory for Flask-SocketIO test clients authenticated with a token."""
    clients = []

    def _connect(token):
        test_client = hub.socketio.test_client(app, auth={"token": token} if token else None)
        clients.append(test_client)
        return test_client

    yield _connect

    for test_client in clients:
        if test_client.is_connected():
            test_client.disconnect()


def received_events(test_client, name):
    """Payloads of every event called `name` the client has received so far."""
    return [msg["args"][0] for msg in test_client.get_received() if msg["name"] == name]


@pytest.fixture
def events():
    return received_events
