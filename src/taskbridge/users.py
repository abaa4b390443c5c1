"""
Users and organizations.

Users are created by an admin or through an invite link and must be
approved before they can authorize an MCP client. Organization-level
provider config (e.g. the Redmine base URL) lives on the organization;
user-level secrets (API keys) live encrypted on the user.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .crypto import Provider
from .database import get_connection

logger = logging.getLogger(__name__)

ROLE_USER = 'ROLE_USER'
ROLE_ORG_ADMIN = 'ROLE_ORG_ADMIN'
ROLE_SUPER_ADMIN = 'ROLE_SUPER_ADMIN'
VALID_ROLES = (ROLE_USER, ROLE_ORG_ADMIN, ROLE_SUPER_ADMIN)

STATUS_PENDING = 'pending'
STATUS_APPROVED = 'approved'

# User-level credential fields collected per provider
PROVIDER_USER_FIELDS = {
    Provider.REDMINE: ['api_key'],
    Provider.JIRA: ['email', 'api_token'],
    Provider.MONDAY: ['api_token'],
}


@dataclass
class Organization:
    id: int
    name: str
    provider: Provider
    provider_config: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row) -> 'Organization':
        return cls(
            id=row['id'],
            name=row['name'],
            provider=Provider(row['provider']),
            provider_config=json.loads(row['provider_config'] or '{}'),
        )


@dataclass
class User:
    id: int
    email: str
    organization_id: int
    name: Optional[str] = None
    social_id: Optional[str] = None
    roles: list = field(default_factory=lambda: [ROLE_USER])
    status: str = STATUS_PENDING
    provider_credentials: Optional[str] = None  # vault ciphertext

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING

    @property
    def is_approved(self) -> bool:
        return self.status == STATUS_APPROVED

    @property
    def is_org_admin(self) -> bool:
        return ROLE_ORG_ADMIN in self.roles

    @property
    def is_super_admin(self) -> bool:
        return ROLE_SUPER_ADMIN in self.roles

    @property
    def is_admin(self) -> bool:
        return self.is_org_admin or self.is_super_admin

    @property
    def has_provider_credentials(self) -> bool:
        return bool(self.provider_credentials)

    @classmethod
    def from_row(cls, row) -> 'User':
        return cls(
            id=row['id'],
            email=row['email'],
            organization_id=row['organization_id'],
            name=row['name'],
            social_id=row['social_id'],
            roles=json.loads(row['roles'] or '[]'),
            status=row['status'],
            provider_credentials=row['provider_credentials'],
        )


def missing_user_fields(provider: Provider, submitted: dict) -> list[str]:
    """Return the required credential fields absent from a submission."""
    return [f for f in PROVIDER_USER_FIELDS[provider] if not str(submitted.get(f) or '').strip()]


class UserRepository:
    """SQLite access to users and organizations."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    # ============ Organizations ============

    def create_organization(self, name: str, provider: Provider,
                            provider_config: Optional[dict] = None) -> Organization:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "INSERT INTO organizations (name, provider, provider_config) VALUES (?, ?, ?)",
                (name, Provider(provider).value, json.dumps(provider_config or {}))
            )
            conn.commit()
            org_id = cursor.lastrowid
        finally:
            conn.close()

        logger.info(f"Created organization {name} ({org_id}) using {Provider(provider).value}")
        return self.find_organization(org_id)

    def find_organization(self, org_id: int) -> Optional[Organization]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM organizations WHERE id = ?", (org_id,)
            ).fetchone()
        finally:
            conn.close()
        return Organization.from_row(row) if row else None

    # ============ Users ============

    def create_user(self, email: str, organization_id: int, name: Optional[str] = None,
                    roles: Optional[list] = None, status: str = STATUS_PENDING,
                    social_id: Optional[str] = None) -> User:
        roles = roles or [ROLE_USER]
        invalid = [r for r in roles if r not in VALID_ROLES]
        if invalid:
            raise ValueError(f"Invalid roles: {invalid}")
        if status not in (STATUS_PENDING, STATUS_APPROVED):
            raise ValueError(f"Invalid status: {status}")

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                INSERT INTO users (email, social_id, name, organization_id, roles, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (email.strip().lower(), social_id, name, organization_id, json.dumps(roles), status)
            )
            conn.commit()
            user_id = cursor.lastrowid
        finally:
            conn.close()

        logger.info(f"Created user {user_id} in organization {organization_id} ({status})")
        return self.find(user_id)

    def find(self, user_id: int) -> Optional[User]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        finally:
            conn.close()
        return User.from_row(row) if row else None

    def find_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
        finally:
            conn.close()
        return User.from_row(row) if row else None

    def approve(self, user_id: int) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE users SET status = ? WHERE id = ?", (STATUS_APPROVED, user_id)
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Approved user {user_id}")

    def set_provider_credentials(self, user_id: int, ciphertext: Optional[str]) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE users SET provider_credentials = ? WHERE id = ?", (ciphertext, user_id)
            )
            conn.commit()
        finally:
            conn.close()

    def touch(self, user_id: int) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE users SET last_seen_at = CURRENT_TIMESTAMP WHERE id = ?", (user_id,)
            )
            conn.commit()
        finally:
            conn.close()
