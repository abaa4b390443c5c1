"""
Opaque bearer tokens for MCP clients.

Tokens are random 256-bit secrets. Only their SHA-256 hash is persisted,
the plaintext is handed to the client exactly once. Each token carries the
vault-encrypted credentials bundle so the API gateway can act on the user's
behalf against their provider.

Pairs:
- access token (24h) - presented on every MCP request
- refresh token (30d) - parent_id points at the access token it was issued with

Refreshing rotates: both ends of the old pair are revoked and an unrelated
new pair is issued, so a leaked refresh token works at most once.
"""

import uuid
import hashlib
import secrets
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .crypto import CredentialVault, CredentialsBundle
from .database import get_connection

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TTL = timedelta(hours=24)
REFRESH_TOKEN_TTL = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: Optional[datetime]) -> Optional[str]:
    # Fixed width so expires_at compares correctly as text in SQL
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds') if value else None


def _from_db(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class TokenKind(str, Enum):
    ACCESS = 'access'
    REFRESH = 'refresh'

    @property
    def lifetime(self) -> timedelta:
        return REFRESH_TOKEN_TTL if self is TokenKind.REFRESH else ACCESS_TOKEN_TTL


def hash_token(plain_token: str) -> str:
    return hashlib.sha256(plain_token.encode('utf-8')).hexdigest()


def generate_token() -> str:
    return secrets.token_hex(32)


@dataclass
class Token:
    """One issued access or refresh token (never the plaintext)."""
    id: str
    token_hash: str
    user_id: int
    credentials: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    parent_id: Optional[str] = None
    client_id: Optional[str] = None
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def create(cls, user_id: int, token_hash: str, credentials: str,
               kind: TokenKind = TokenKind.ACCESS, parent: Optional['Token'] = None,
               issued_at: Optional[datetime] = None,
               client_id: Optional[str] = None) -> 'Token':
        if parent is not None:
            if parent.kind is not TokenKind.ACCESS:
                raise ValueError("A token's parent must be an access token")
            if parent.user_id != user_id:
                raise ValueError("A token's parent must belong to the same user")

        now = issued_at or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            user_id=user_id,
            credentials=credentials,
            kind=kind,
            issued_at=now,
            expires_at=now + kind.lifetime,
            parent_id=parent.id if parent else None,
            client_id=client_id,
        )

    @property
    def is_access_token(self) -> bool:
        return self.kind is TokenKind.ACCESS

    @property
    def is_refresh_token(self) -> bool:
        return self.kind is TokenKind.REFRESH

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def revoke(self, at: Optional[datetime] = None) -> None:
        self.revoked_at = at or utcnow()

    def touch(self, at: Optional[datetime] = None) -> None:
        self.last_used_at = at or utcnow()

    @classmethod
    def from_row(cls, row) -> 'Token':
        return cls(
            id=row['id'],
            token_hash=row['token_hash'],
            user_id=row['user_id'],
            credentials=row['credentials'],
            kind=TokenKind(row['kind']),
            issued_at=_from_db(row['issued_at']),
            expires_at=_from_db(row['expires_at']),
            parent_id=row['parent_id'],
            client_id=row['client_id'],
            revoked_at=_from_db(row['revoked_at']),
            last_used_at=_from_db(row['last_used_at']),
        )


class TokenRepository:
    """SQLite persistence for tokens, keyed by token_hash."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def add(self, token: Token) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO access_tokens (id, token_hash, user_id, credentials, kind, parent_id,
                                           client_id, issued_at, expires_at, revoked_at, last_used_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    token.id, token.token_hash, token.user_id, token.credentials,
                    token.kind.value, token.parent_id, token.client_id,
                    _to_db(token.issued_at), _to_db(token.expires_at),
                    _to_db(token.revoked_at), _to_db(token.last_used_at),
                )
            )
            conn.commit()
        finally:
            conn.close()

    def touch(self, token_id: str, at: datetime) -> bool:
        """Record a use of a still-live token.

        Only last_used_at is written, and only while the row is unrevoked, so
        a revocation committed after the lookup always wins.
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE access_tokens SET last_used_at = ? WHERE id = ? AND revoked_at IS NULL",
                (_to_db(at), token_id)
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def _find_one(self, column: str, value) -> Optional[Token]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT * FROM access_tokens WHERE {column} = ?", (value,)
            ).fetchone()
        finally:
            conn.close()
        return Token.from_row(row) if row else None

    def find_by_hash(self, token_hash: str) -> Optional[Token]:
        return self._find_one('token_hash', token_hash)

    def find_by_id(self, token_id: str) -> Optional[Token]:
        return self._find_one('id', token_id)

    def find_valid_by_hash(self, token_hash: str, now: Optional[datetime] = None) -> Optional[Token]:
        token = self.find_by_hash(token_hash)
        if token is None or not token.is_valid(now):
            return None
        return token

    def find_active_by_user(self, user_id: int, now: Optional[datetime] = None) -> list[Token]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT * FROM access_tokens
                WHERE user_id = ? AND revoked_at IS NULL AND expires_at > ?
                ORDER BY issued_at DESC
                """,
                (user_id, _to_db(now or utcnow()))
            ).fetchall()
        finally:
            conn.close()
        return [Token.from_row(r) for r in rows]

    def revoke_if_active(self, token_id: str, at: Optional[datetime] = None) -> bool:
        """Atomically revoke a token unless it is already revoked.

        Returns True only for the caller whose UPDATE flipped the row, so
        concurrent rotations of one refresh token have a single winner.
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE access_tokens SET revoked_at = ? WHERE id = ? AND revoked_at IS NULL",
                (_to_db(at or utcnow()), token_id)
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def revoke_all_for_user(self, user_id: int, at: Optional[datetime] = None) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE access_tokens SET revoked_at = ? WHERE user_id = ? AND revoked_at IS NULL",
                (_to_db(at or utcnow()), user_id)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


@dataclass(frozen=True)
class TokenPair:
    """Plaintext access/refresh pair, shown to the client once."""
    access_token: str
    refresh_token: str
    expires_in: int = int(ACCESS_TOKEN_TTL.total_seconds())

    def to_dict(self) -> dict:
        return {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token,
            'token_type': 'Bearer',
            'expires_in': self.expires_in,
        }

    def __repr__(self) -> str:
        return f"TokenPair(expires_in={self.expires_in})"


class TokenService:
    """Issues, validates, rotates and revokes token pairs."""

    def __init__(self, repository: TokenRepository, vault: CredentialVault,
                 clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self.vault = vault
        self.clock = clock or utcnow

    def issue_pair(self, user_id: int, bundle: CredentialsBundle,
                   client_id: Optional[str] = None) -> TokenPair:
        now = self.clock()
        access_plain = generate_token()
        refresh_plain = generate_token()

        # Encrypted once, shared by both rows
        encrypted = self.vault.encrypt_bundle(bundle)

        access = Token.create(
            user_id=user_id,
            token_hash=hash_token(access_plain),
            credentials=encrypted,
            kind=TokenKind.ACCESS,
            issued_at=now,
            client_id=client_id,
        )
        self.repository.add(access)

        refresh = Token.create(
            user_id=user_id,
            token_hash=hash_token(refresh_plain),
            credentials=encrypted,
            kind=TokenKind.REFRESH,
            parent=access,
            issued_at=now,
            client_id=client_id,
        )
        self.repository.add(refresh)

        logger.info(f"Issued token pair for user {user_id} (client={client_id}, access={access.id})")

        return TokenPair(access_plain, refresh_plain)

    def validate_access(self, plain_token: str) -> Optional[Token]:
        """Hot path for the API gateway: O(1) lookup by hash."""
        if not plain_token:
            return None

        now = self.clock()
        token = self.repository.find_valid_by_hash(hash_token(plain_token), now)
        if token is None or not token.is_access_token:
            return None

        if not self.repository.touch(token.id, now):
            # Revoked between the lookup and the touch
            return None
        token.touch(now)
        return token

    def validate_refresh(self, plain_token: str) -> Optional[Token]:
        if not plain_token:
            return None

        token = self.repository.find_valid_by_hash(hash_token(plain_token), self.clock())
        if token is None or not token.is_refresh_token:
            return None
        return token

    def extract_credentials(self, token: Token) -> CredentialsBundle:
        """Decrypt the bundle carried by a token.

        Raises:
            CredentialDecryptionError: the stored blob is corrupted
            InvalidCredentialsBundle: the decrypted blob has the wrong shape
        """
        return self.vault.decrypt_bundle(token.credentials)

    def refresh(self, refresh_token: Token) -> Optional[TokenPair]:
        """Rotate a refresh token into a brand-new pair.

        Returns None when another request already rotated this token.
        """
        now = self.clock()
        bundle = self.extract_credentials(refresh_token)

        if not self.repository.revoke_if_active(refresh_token.id, now):
            logger.warning(f"Refresh token {refresh_token.id} already rotated (concurrent refresh?)")
            return None
        refresh_token.revoke(now)

        if refresh_token.parent_id:
            if self.repository.revoke_if_active(refresh_token.parent_id, now):
                logger.debug(f"Revoked parent access token {refresh_token.parent_id}")

        logger.info(f"Rotating token pair for user {refresh_token.user_id}")
        return self.issue_pair(refresh_token.user_id, bundle, client_id=refresh_token.client_id)

    def revoke(self, plain_token: str) -> bool:
        """Revoke a token by value; True iff a live token was found."""
        if not plain_token:
            return False

        now = self.clock()
        token = self.repository.find_valid_by_hash(hash_token(plain_token), now)
        if token is None:
            return False

        revoked = self.repository.revoke_if_active(token.id, now)

        # Revoking a refresh token kills the access token it was issued with
        if token.is_refresh_token and token.parent_id:
            self.repository.revoke_if_active(token.parent_id, now)

        if revoked:
            logger.info(f"Revoked {token.kind.value} token {token.id} for user {token.user_id}")
        return revoked

    def revoke_all_for_user(self, user_id: int) -> int:
        count = self.repository.revoke_all_for_user(user_id, self.clock())
        logger.info(f"Revoked {count} tokens for user {user_id}")
        return count
