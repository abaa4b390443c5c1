"""
SQLite Database Setup for Taskbridge

Single shared database (taskbridge.db):
- access_tokens: issued access/refresh tokens (hashes only)
- cache_items: authorization codes and their consume locks (TTL rows)
- organizations / users: identity + provider configuration
- system_config: generated master key and other bootstrap values
"""

import os
import sqlite3
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default database path - can be overridden by FLY_VOLUME_PATH or TASKBRIDGE_DB_PATH
DEFAULT_DB_DIR = Path(__file__).parent.parent.parent / "data"
FLY_VOLUME_PATH = os.environ.get("FLY_VOLUME_PATH", "/data")


def get_db_dir() -> Path:
    """Get the database directory, preferring Fly volume if available."""
    if os.path.exists(FLY_VOLUME_PATH) and os.access(FLY_VOLUME_PATH, os.W_OK):
        return Path(FLY_VOLUME_PATH)

    # Fallback to local data directory
    DEFAULT_DB_DIR.mkdir(parents=True, exist_ok=True)
    return DEFAULT_DB_DIR


def get_db_path(db_name: str = "taskbridge.db") -> Path:
    """Get path for a specific database file."""
    return get_db_dir() / db_name


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Get a database connection with proper settings."""
    path = db_path or get_db_path()
    conn = sqlite3.connect(str(path), check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row

    # Enable foreign keys and WAL mode for better concurrency
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    # Wait up to 30 seconds for locks instead of failing immediately
    conn.execute("PRAGMA busy_timeout = 30000")

    return conn


def init_db(db_path: Optional[Path] = None) -> Path:
    """Create all tables and indexes if missing.

    Returns the resolved database path so callers can open their own
    connections (one per operation, which keeps sqlite locking honest
    across threads and processes).
    """
    path = Path(db_path) if db_path else get_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = get_connection(path)
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS system_config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS organizations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT UNIQUE NOT NULL,
                provider TEXT NOT NULL,
                provider_config TEXT NOT NULL DEFAULT '{}',
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE NOT NULL COLLATE NOCASE,
                social_id TEXT,
                name TEXT,
                organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
                roles TEXT NOT NULL DEFAULT '["ROLE_USER"]',
                status TEXT NOT NULL DEFAULT 'pending',
                provider_credentials TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                last_seen_at TEXT
            )
        """)

        # Issued tokens. Plaintext secrets are never stored, only their hash.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS access_tokens (
                id TEXT PRIMARY KEY,
                token_hash TEXT UNIQUE NOT NULL,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                credentials TEXT NOT NULL,
                kind TEXT NOT NULL,
                parent_id TEXT REFERENCES access_tokens(id) ON DELETE CASCADE,
                client_id TEXT,
                issued_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                revoked_at TEXT,
                last_used_at TEXT
            )
        """)

        # Ephemeral key/value rows with expiry (authorization codes + locks)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS cache_items (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_access_tokens_user ON access_tokens(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_access_tokens_expires ON access_tokens(expires_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_cache_items_expires ON cache_items(expires_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_org ON users(organization_id)")

        conn.commit()
    finally:
        conn.close()

    logger.info(f"Database initialized at {path}")
    return path


def get_config_value(db_path: Path, key: str) -> Optional[str]:
    """Read a bootstrap value from system_config."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT value FROM system_config WHERE key = ?", (key,)
        ).fetchone()
        return row['value'] if row else None
    finally:
        conn.close()


def set_config_value_once(db_path: Path, key: str, value: str) -> str:
    """Store a bootstrap value unless one already exists; return the winner.

    Uses INSERT OR IGNORE + SELECT so two workers racing on first boot
    agree on a single value.
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            "INSERT OR IGNORE INTO system_config (key, value) VALUES (?, ?)",
            (key, value)
        )
        conn.commit()
        row = conn.execute(
            "SELECT value FROM system_config WHERE key = ?", (key,)
        ).fetchone()
        return row['value']
    finally:
        conn.close()
