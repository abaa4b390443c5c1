"""
One-time authorization codes.

Codes live in a small TTL cache keyed by sha256(code), with the payload
encrypted by the credential vault. Consumption is guarded by a short lease
lock held in the same cache, so two requests racing on one code (e.g. a
retried HTTP request hitting another instance) cannot both redeem it.

The lock is a lease with bounded staleness, not a true distributed lock:
if a consumer dies mid-claim the lock simply expires after LOCK_TTL seconds.
The delete that hands out the payload is itself conditional, so even a
stale lease cannot yield the payload twice.
"""

import json
import time
import hashlib
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .crypto import CredentialVault, CredentialsBundle
from .database import get_connection

logger = logging.getLogger(__name__)

CODE_TTL = 600  # 10 minutes
LOCK_TTL = 5  # seconds; comfortably above the consume critical section


class CodeCache:
    """Minimal TTL key/value store used for codes and their locks."""

    def add(self, key: str, value: str, ttl: float) -> bool:
        """Create key only if absent (or expired). Atomic."""
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: float) -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        """Delete key; True if this call removed a live entry."""
        raise NotImplementedError

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        raise NotImplementedError


class MemoryCodeCache(CodeCache):
    """In-process cache for single-instance deployments and tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._items: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            del self._items[key]
            return None
        return value

    def add(self, key: str, value: str, ttl: float) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._items[key] = (value, self._clock() + ttl)
            return True

    def _sweep(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._items.items() if now >= expires_at]
        for k in expired:
            del self._items[k]
        return len(expired)

    def set(self, key: str, value: str, ttl: float) -> None:
        with self._lock:
            # Unredeemed codes would otherwise stay forever
            self._sweep()
            self._items[key] = (value, self._clock() + ttl)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def delete(self, key: str) -> bool:
        with self._lock:
            live = self._live(key) is not None
            self._items.pop(key, None)
            return live

    def purge_expired(self) -> int:
        with self._lock:
            return self._sweep()


class SqliteCodeCache(CodeCache):
    """Cache rows in the shared sqlite database (cache_items table).

    Every operation opens its own connection; sqlite's file locking makes
    add() exclusive across threads, processes and app instances sharing
    the volume.
    """

    def __init__(self, db_path: Path, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self._clock = clock

    def add(self, key: str, value: str, ttl: float) -> bool:
        now = self._clock()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "DELETE FROM cache_items WHERE key = ? AND expires_at <= ?",
                (key, now)
            )
            cursor = conn.execute(
                "INSERT OR IGNORE INTO cache_items (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, now + ttl)
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def set(self, key: str, value: str, ttl: float) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO cache_items (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, value, self._clock() + ttl)
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM cache_items WHERE key = ? AND expires_at > ?",
                (key, self._clock())
            ).fetchone()
            return row['value'] if row else None
        finally:
            conn.close()

    def delete(self, key: str) -> bool:
        now = self._clock()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM cache_items WHERE key = ? AND expires_at > ?",
                (key, now)
            )
            # Expired leftovers go too, they just don't count
            conn.execute("DELETE FROM cache_items WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def purge_expired(self) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM cache_items WHERE expires_at <= ?", (self._clock(),)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


@dataclass(frozen=True)
class AuthorizationCodePayload:
    """Everything a code is bound to."""
    user_id: int
    client_id: str
    redirect_uri: str
    bundle: CredentialsBundle

    def to_dict(self) -> dict:
        return {
            'user_id': self.user_id,
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'bundle': self.bundle.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'AuthorizationCodePayload':
        return cls(
            user_id=data['user_id'],
            client_id=data.get('client_id') or '',
            redirect_uri=data['redirect_uri'],
            bundle=CredentialsBundle.from_dict(data['bundle']),
        )


class AuthorizationCodeStore:
    """Issues and atomically consumes one-time authorization codes."""

    def __init__(self, cache: CodeCache, vault: CredentialVault):
        self.cache = cache
        self.vault = vault

    @staticmethod
    def _cache_key(code: str) -> str:
        return 'oauth_code_' + hashlib.sha256(code.encode('utf-8')).hexdigest()

    def store(self, code: str, payload: AuthorizationCodePayload) -> None:
        encrypted = self.vault.encrypt(json.dumps(payload.to_dict()))
        purged = self.cache.purge_expired()
        if purged:
            logger.debug(f"Purged {purged} expired code cache entries")
        self.cache.set(self._cache_key(code), encrypted, CODE_TTL)
        logger.debug(f"Stored authorization code for user {payload.user_id}, client {payload.client_id}")

    def consume_once(self, code: str) -> Optional[AuthorizationCodePayload]:
        """Retrieve and delete a code. Only one concurrent caller wins.

        Raises:
            CredentialDecryptionError: the stored payload was tampered with
        """
        if not code:
            return None

        key = self._cache_key(code)
        lock_key = key + '_lock'

        if not self.cache.add(lock_key, '1', LOCK_TTL):
            # Another request is mid-consumption; don't wait, don't retry
            logger.warning("Authorization code is already being consumed by another request")
            return None

        try:
            encrypted = self.cache.get(key)
            if encrypted is None:
                return None
            if not self.cache.delete(key):
                return None
        finally:
            self.cache.delete(lock_key)

        data = json.loads(self.vault.decrypt(encrypted))
        return AuthorizationCodePayload.from_dict(data)

    def exists(self, code: str) -> bool:
        """Non-destructive check, for diagnostics only."""
        return bool(code) and self.cache.has(self._cache_key(code))


def create_code_cache(backend: str, db_path: Path) -> CodeCache:
    if backend == 'memory':
        logger.info("Using in-memory authorization code cache (single instance only)")
        return MemoryCodeCache()
    if backend == 'sqlite':
        return SqliteCodeCache(db_path)
    raise ValueError(f"Unknown CODE_STORE_BACKEND: {backend}")
