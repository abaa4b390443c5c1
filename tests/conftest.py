"""Pytest configuration shared across the suite."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from urllib.parse import urlencode

import pytest

from taskbridge.core import create_app
from taskbridge.crypto import CredentialVault, Provider
from taskbridge.database import init_db
from taskbridge.social_auth import Identity, SocialAuthBridge, SocialAuthError
from taskbridge.users import ROLE_ORG_ADMIN, ROLE_USER, STATUS_APPROVED, STATUS_PENDING, UserRepository

TEST_MASTER_KEY = "test-master-key"


class DummySocialAuth(SocialAuthBridge):
    """Identity provider stand-in: hands back a fixed identity."""

    key = "dummy"

    def __init__(self) -> None:
        self.identity = Identity(email="alice@acme.test", name="Alice", id="idp-1")
        self.error: str | None = None
        self.callbacks: list[str] = []

    def get_authorization_url(self, callback_url=None) -> dict:
        state = secrets.token_urlsafe(8)
        query = urlencode({"state": state, "redirect_uri": callback_url or ""})
        return {"url": f"https://idp.test/authorize?{query}", "state": state}

    def handle_callback(self, code, state, expected_state, callback_url=None) -> Identity:
        self.check_state(state, expected_state)
        self.callbacks.append(code)
        if self.error:
            raise SocialAuthError(self.error)
        return self.identity


class FixedClock:
    """Injectable clock for TokenService."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


@pytest.fixture
def dummy_auth() -> DummySocialAuth:
    return DummySocialAuth()


@pytest.fixture
def app(tmp_path, dummy_auth):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "DB_PATH": tmp_path / "taskbridge.db",
        "MASTER_KEY": TEST_MASTER_KEY,
        "CODE_STORE_BACKEND": "sqlite",
        "RATELIMIT_ENABLED": False,
    })
    app.extensions["taskbridge"].social_auth = dummy_auth
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["taskbridge"]


@pytest.fixture
def db_path(tmp_path):
    return init_db(tmp_path / "standalone.db")


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_MASTER_KEY)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


def _seed(users: UserRepository):
    org = users.create_organization("Acme", Provider.REDMINE, {"url": "https://redmine.acme.test"})
    alice = users.create_user("alice@acme.test", org.id, name="Alice", status=STATUS_APPROVED)
    return org, alice


@pytest.fixture
def org_and_user(services):
    """Approved user without stored provider credentials, inside the app DB."""
    return _seed(services.users)


@pytest.fixture
def standalone_user(db_path):
    """Organization + user in a bare database (no Flask app)."""
    return _seed(UserRepository(db_path))


@pytest.fixture
def admin_user(services, org_and_user):
    org, _ = org_and_user
    return services.users.create_user(
        "boss@acme.test", org.id, name="Boss",
        roles=[ROLE_USER, ROLE_ORG_ADMIN], status=STATUS_APPROVED,
    )


@pytest.fixture
def pending_user(services, org_and_user):
    org, _ = org_and_user
    return services.users.create_user("new@acme.test", org.id, status=STATUS_PENDING)
