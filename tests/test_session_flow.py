"""Tests for the social-auth session flow manager (plain dict session)."""

from __future__ import annotations

import pytest

from taskbridge.session_flow import (
    AUTH_PROVIDER,
    AUTH_STATE,
    FLOW,
    AdminLogin,
    Idle,
    Invite,
    McpOAuth,
    SessionExpiredError,
    SessionFlowManager,
    Signup,
)
from taskbridge.social_auth import Identity, SocialAuthError


@pytest.fixture
def session() -> dict:
    return {}


@pytest.fixture
def manager(dummy_auth, session) -> SessionFlowManager:
    return SessionFlowManager(dummy_auth, session)


IDENTITY = Identity(email="bob@acme.test", name="Bob", id="idp-2")


def test_start_auth_stores_state_and_provider(manager, session) -> None:
    url = manager.start_auth("http://localhost/oauth/callback")

    assert url.startswith("https://idp.test/authorize?")
    assert session[AUTH_STATE] in url
    assert session[AUTH_PROVIDER] == "dummy"
    assert manager.provider_key == "dummy"


def test_handle_callback_without_pending_state_is_session_expired(manager) -> None:
    with pytest.raises(SessionExpiredError, match="Session expired"):
        manager.handle_callback("code", "any-state")


def test_handle_callback_rejects_state_mismatch(manager, session) -> None:
    manager.start_auth()

    with pytest.raises(SocialAuthError):
        manager.handle_callback("code", "wrong-state")
    assert AUTH_STATE in session


def test_handle_callback_returns_identity_and_consumes_state(manager, session, dummy_auth) -> None:
    manager.start_auth()

    identity = manager.handle_callback("idp-code", session[AUTH_STATE])

    assert identity == dummy_auth.identity
    assert AUTH_STATE not in session
    with pytest.raises(SessionExpiredError):
        manager.handle_callback("idp-code", "replayed")


def test_default_flow_is_idle(manager) -> None:
    assert manager.current_flow() == Idle()
    assert manager.get_mcp_oauth_params() is None
    assert manager.get_invite_token() is None
    assert manager.get_signup_user() is None


def test_signup_flow(manager) -> None:
    manager.mark_as_signup_flow()
    assert manager.is_signup_flow()
    assert manager.get_signup_user() is None

    manager.store_signup_user(IDENTITY)
    assert not manager.is_signup_flow()
    assert manager.current_flow() == Signup(user=IDENTITY.to_dict())
    assert manager.get_signup_user() == IDENTITY

    manager.clear_signup_flow()
    assert not manager.is_signup_flow()
    assert manager.get_signup_user() is None


def test_admin_login_flow(manager, session) -> None:
    manager.mark_as_admin_login()
    assert manager.is_admin_login()
    assert isinstance(manager.current_flow(), AdminLogin)

    manager.start_auth()
    manager.clear_admin_login()

    assert not manager.is_admin_login()
    assert AUTH_STATE not in session
    assert AUTH_PROVIDER not in session


def test_invite_flow(manager) -> None:
    manager.store_invite_token("invite-123")
    assert manager.get_invite_token() == "invite-123"
    assert manager.current_flow() == Invite(token="invite-123")

    manager.store_invite_user(IDENTITY)
    assert manager.get_invite_user() == IDENTITY

    manager.clear_invite_flow()
    assert manager.get_invite_token() is None
    assert manager.get_invite_user() is None


def test_mcp_oauth_flow(manager, session) -> None:
    manager.store_mcp_oauth_params("mcp-1", "http://localhost:3000/callback", "xyz")

    assert manager.get_mcp_oauth_params() == {
        "client_id": "mcp-1",
        "redirect_uri": "http://localhost:3000/callback",
        "state": "xyz",
    }
    assert manager.current_flow() == McpOAuth("mcp-1", "http://localhost:3000/callback", "xyz")

    manager.store_mcp_user(IDENTITY)
    assert manager.get_mcp_user() == IDENTITY

    manager.clear_mcp_oauth_flow()
    assert manager.get_mcp_oauth_params() is None
    assert manager.get_mcp_user() is None
    assert FLOW not in session


def test_only_one_flow_is_active_at_a_time(manager) -> None:
    manager.mark_as_signup_flow()
    manager.store_mcp_oauth_params("mcp-1", "http://localhost/cb", "")

    assert not manager.is_signup_flow()
    assert manager.get_mcp_oauth_params()["client_id"] == "mcp-1"

    manager.mark_as_admin_login()
    assert manager.get_mcp_oauth_params() is None
    assert manager.is_admin_login()


@pytest.mark.parametrize(
    "stored",
    [
        "not-a-dict",
        {"kind": "unknown"},
        {"kind": "invite", "unexpected": "field"},
    ],
)
def test_malformed_flow_state_reads_as_idle(manager, session, stored) -> None:
    session[FLOW] = stored

    assert manager.current_flow() == Idle()


def test_malformed_identity_is_ignored(manager, session) -> None:
    session[FLOW] = {"kind": "mcp_oauth", "redirect_uri": "x", "user": {"email": "", "id": "x"}}

    assert manager.get_mcp_user() is None


def test_identity_cannot_be_stored_outside_its_flow(manager) -> None:
    with pytest.raises(SessionExpiredError):
        manager.store_mcp_user(IDENTITY)
    with pytest.raises(SessionExpiredError):
        manager.store_invite_user(IDENTITY)

    manager.store_invite_token("invite-123")
    with pytest.raises(SessionExpiredError):
        manager.store_mcp_user(IDENTITY)
    assert manager.current_flow() == Invite(token="invite-123")


def test_replacing_a_flow_drops_its_identity(manager) -> None:
    manager.store_invite_token("invite-123")
    manager.store_invite_user(IDENTITY)

    manager.store_mcp_oauth_params("mcp-1", "http://localhost/cb", "s")

    assert manager.get_invite_user() is None
    assert manager.get_mcp_user() is None
    assert manager.current_flow() == McpOAuth("mcp-1", "http://localhost/cb", "s")


def test_identity_is_kept_with_the_flow_payload(manager, session) -> None:
    manager.store_mcp_oauth_params("mcp-1", "http://localhost/cb", "s")
    manager.store_mcp_user(IDENTITY)

    assert session[FLOW]["user"] == IDENTITY.to_dict()
    assert manager.get_mcp_oauth_params()["state"] == "s"
