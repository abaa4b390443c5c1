"""Tests for opaque token issuance, validation, rotation and revocation."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from taskbridge.crypto import CredentialsBundle, Provider
from taskbridge.database import get_connection
from taskbridge.tokens import (
    ACCESS_TOKEN_TTL,
    REFRESH_TOKEN_TTL,
    Token,
    TokenKind,
    TokenRepository,
    TokenService,
    hash_token,
)


BUNDLE = CredentialsBundle(
    provider=Provider.REDMINE,
    org_config={"url": "https://redmine.acme.test"},
    user_credentials={"api_key": "redmine-secret"},
)


@pytest.fixture
def service(db_path, vault, clock) -> TokenService:
    return TokenService(TokenRepository(db_path), vault, clock=clock)


def test_issue_pair_returns_two_distinct_valid_tokens(service, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE, client_id="mcp-1")

    assert pair.access_token != pair.refresh_token
    assert len(pair.access_token) == 64
    assert pair.to_dict()["token_type"] == "Bearer"
    assert pair.to_dict()["expires_in"] == 86400

    access = service.validate_access(pair.access_token)
    refresh = service.validate_refresh(pair.refresh_token)
    assert access is not None and access.kind is TokenKind.ACCESS
    assert refresh is not None and refresh.parent_id == access.id
    assert access.client_id == refresh.client_id == "mcp-1"


def test_kinds_are_not_interchangeable(service, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)

    assert service.validate_access(pair.refresh_token) is None
    assert service.validate_refresh(pair.access_token) is None
    assert service.validate_access("") is None
    assert service.validate_access("0" * 64) is None


def test_only_hashes_are_persisted(service, db_path, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)

    conn = get_connection(db_path)
    try:
        rows = conn.execute("SELECT token_hash, credentials FROM access_tokens").fetchall()
    finally:
        conn.close()

    hashes = {r["token_hash"] for r in rows}
    assert hashes == {hash_token(pair.access_token), hash_token(pair.refresh_token)}
    assert all("redmine-secret" not in r["credentials"] for r in rows)


def test_token_lifetimes_are_exact(service, clock, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)

    clock.advance(ACCESS_TOKEN_TTL - timedelta(microseconds=1))
    assert service.validate_access(pair.access_token) is not None

    clock.advance(timedelta(microseconds=1))
    assert service.validate_access(pair.access_token) is None
    assert service.validate_refresh(pair.refresh_token) is not None

    refresh = service.validate_refresh(pair.refresh_token)
    assert refresh.expires_at == refresh.issued_at + REFRESH_TOKEN_TTL

    clock.advance(REFRESH_TOKEN_TTL - ACCESS_TOKEN_TTL - timedelta(microseconds=1))
    assert service.validate_refresh(pair.refresh_token) is not None

    clock.advance(timedelta(microseconds=1))
    assert service.validate_refresh(pair.refresh_token) is None


def test_rotation_between_lookup_and_touch_is_not_undone(service, standalone_user, monkeypatch) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)
    refresh_token = service.validate_refresh(pair.refresh_token)
    lookup = service.repository.find_valid_by_hash

    def lookup_then_rotate(token_hash, now=None):
        token = lookup(token_hash, now)
        monkeypatch.setattr(service.repository, "find_valid_by_hash", lookup)
        assert service.refresh(refresh_token) is not None
        return token

    monkeypatch.setattr(service.repository, "find_valid_by_hash", lookup_then_rotate)

    assert service.validate_access(pair.access_token) is None
    assert service.validate_access(pair.access_token) is None
    assert service.repository.find_by_hash(hash_token(pair.access_token)).is_revoked


def test_validate_access_records_last_use(service, clock, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)
    clock.advance(timedelta(minutes=5))

    token = service.validate_access(pair.access_token)

    stored = service.repository.find_by_id(token.id)
    assert stored.last_used_at == clock.now


def test_extract_credentials_returns_bundle(service, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)

    token = service.validate_access(pair.access_token)

    assert service.extract_credentials(token) == BUNDLE


def test_refresh_rotates_the_whole_pair(service, standalone_user) -> None:
    _, user = standalone_user
    old = service.issue_pair(user.id, BUNDLE, client_id="mcp-1")

    new = service.refresh(service.validate_refresh(old.refresh_token))

    assert new is not None
    assert service.validate_access(old.access_token) is None
    assert service.validate_refresh(old.refresh_token) is None

    access = service.validate_access(new.access_token)
    assert access.client_id == "mcp-1"
    assert service.extract_credentials(access) == BUNDLE


def test_refresh_token_is_single_use(service, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)
    token = service.validate_refresh(pair.refresh_token)

    assert service.refresh(token) is not None
    # A stale in-memory copy loses against the stored revocation
    assert service.refresh(token) is None


def test_concurrent_refresh_yields_one_new_pair(service, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)
    copies = [service.validate_refresh(pair.refresh_token) for _ in range(10)]
    barrier = threading.Barrier(len(copies))
    results = []
    lock = threading.Lock()

    def worker(token: Token) -> None:
        barrier.wait()
        result = service.refresh(token)
        with lock:
            results.append(result)

    threads = [threading.Thread(target=worker, args=(t,)) for t in copies]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len([r for r in results if r is not None]) == 1


def test_revoke_refresh_token_also_revokes_its_access_token(service, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)

    assert service.revoke(pair.refresh_token) is True

    assert service.validate_refresh(pair.refresh_token) is None
    assert service.validate_access(pair.access_token) is None


def test_revoke_access_token_keeps_refresh_token(service, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)

    assert service.revoke(pair.access_token) is True

    assert service.validate_access(pair.access_token) is None
    assert service.validate_refresh(pair.refresh_token) is not None


def test_revoke_unknown_or_already_revoked_returns_false(service, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)

    assert service.revoke("f" * 64) is False
    assert service.revoke("") is False
    assert service.revoke(pair.access_token) is True
    assert service.revoke(pair.access_token) is False


def test_revoke_all_for_user(service, clock, standalone_user) -> None:
    _, user = standalone_user
    first = service.issue_pair(user.id, BUNDLE)
    second = service.issue_pair(user.id, BUNDLE)

    assert len(service.repository.find_active_by_user(user.id, clock.now)) == 4
    assert service.revoke_all_for_user(user.id) == 4

    for plain in (first.access_token, second.access_token):
        assert service.validate_access(plain) is None
    assert service.repository.find_active_by_user(user.id, clock.now) == []


def test_token_parent_must_be_access_token_of_same_user() -> None:
    access = Token.create(user_id=1, token_hash="a", credentials="c")
    refresh = Token.create(user_id=1, token_hash="b", credentials="c", kind=TokenKind.REFRESH, parent=access)

    assert refresh.parent_id == access.id
    assert refresh.expires_at - refresh.issued_at == REFRESH_TOKEN_TTL

    with pytest.raises(ValueError):
        Token.create(user_id=1, token_hash="d", credentials="c", kind=TokenKind.REFRESH, parent=refresh)
    with pytest.raises(ValueError):
        Token.create(user_id=2, token_hash="e", credentials="c", kind=TokenKind.REFRESH, parent=access)


def test_token_pair_repr_hides_tokens(service, standalone_user) -> None:
    _, user = standalone_user
    pair = service.issue_pair(user.id, BUNDLE)

    assert pair.access_token not in repr(pair)
