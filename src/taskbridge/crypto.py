"""
Credential vault for provider credentials embedded in codes and tokens.

Implements a key hierarchy:
- Master Key (env var, rotatable)
  └── Vault key (derived from master with PBKDF2)
        └── Encrypts: credentials bundles (provider + org config + user secrets)

Bundles are only ever stored as Fernet tokens, which are authenticated
(HMAC-SHA256), so tampering is detected rather than decrypted into garbage.
"""

import os
import json
import base64
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

MASTER_KEY_CONFIG = 'master_encryption_key'
KDF_SALT = b'taskbridge-credential-vault'
KDF_ITERATIONS = 100_000


class CredentialDecryptionError(Exception):
    """Raised when a stored credentials blob cannot be decrypted.

    Corrupted, tampered or wrong-key ciphertext all land here. Callers must
    abort; this never means "no credentials".
    """


class InvalidCredentialsBundle(ValueError):
    """Raised when a credentials bundle does not have the expected shape."""


class Provider(str, Enum):
    REDMINE = 'redmine'
    JIRA = 'jira'
    MONDAY = 'monday'


@dataclass(frozen=True)
class CredentialsBundle:
    """Provider identity + org-level config + user-level secrets."""
    provider: Provider
    org_config: dict = field(default_factory=dict)
    user_credentials: dict = field(default_factory=dict)
    version: int = 1

    SUPPORTED_VERSIONS = (1,)

    def to_dict(self) -> dict:
        return {
            'version': self.version,
            'provider': self.provider.value,
            'org_config': dict(self.org_config),
            'user_credentials': dict(self.user_credentials),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data) -> 'CredentialsBundle':
        if not isinstance(data, dict):
            raise InvalidCredentialsBundle("Credentials bundle must be an object")

        version = data.get('version', 1)
        if version not in cls.SUPPORTED_VERSIONS:
            raise InvalidCredentialsBundle(f"Unsupported credentials bundle version: {version}")

        try:
            provider = Provider(data.get('provider'))
        except ValueError:
            raise InvalidCredentialsBundle(f"Unknown provider: {data.get('provider')!r}")

        org_config = data.get('org_config') or {}
        user_credentials = data.get('user_credentials') or {}
        if not isinstance(org_config, dict) or not isinstance(user_credentials, dict):
            raise InvalidCredentialsBundle("org_config and user_credentials must be objects")

        return cls(
            provider=provider,
            org_config=org_config,
            user_credentials=user_credentials,
            version=version,
        )

    @classmethod
    def from_json(cls, text: str) -> 'CredentialsBundle':
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            raise InvalidCredentialsBundle(f"Credentials bundle is not valid JSON: {e}")
        return cls.from_dict(data)

    def __repr__(self) -> str:
        # Secrets stay out of logs and tracebacks
        return f"CredentialsBundle(provider={self.provider.value!r}, version={self.version})"


def derive_vault_key(master: str) -> bytes:
    """Derive a Fernet key from the master key.

    Args:
        master: The master secret (any string)

    Returns:
        A urlsafe-base64 32-byte key suitable for Fernet
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    derived = kdf.derive(master.encode('utf-8'))
    return base64.urlsafe_b64encode(derived)


def generate_master_key() -> str:
    """Generate a new master key for initial setup.

    Returns:
        A URL-safe base64-encoded 32-byte key
    """
    return base64.urlsafe_b64encode(os.urandom(32)).decode('utf-8')


def load_or_create_master_key(db_path: Path) -> str:
    """Load the master key from system_config, generating it on first use.

    The key is auto-generated and persisted if not found, so operators
    never need to configure encryption manually.
    """
    from .database import get_config_value, set_config_value_once

    existing = get_config_value(db_path, MASTER_KEY_CONFIG)
    if existing:
        logger.info("Loaded master encryption key from database")
        return existing

    key = set_config_value_once(db_path, MASTER_KEY_CONFIG, generate_master_key())
    logger.info("Generated and stored new master encryption key")
    return key


class CredentialVault:
    """Symmetric, authenticated encryption of credentials bundles."""

    def __init__(self, secret: str, previous_secrets: Iterable[str] = ()):
        if not secret:
            raise ValueError("Vault master secret must be provided")

        keys = [Fernet(derive_vault_key(secret))]
        keys.extend(Fernet(derive_vault_key(s)) for s in previous_secrets if s)
        # First key encrypts, all keys are tried on decrypt
        self._fernet = MultiFernet(keys)

    def encrypt(self, plaintext_json: str) -> str:
        """Encrypt a plaintext JSON string into an opaque token."""
        return self._fernet.encrypt(plaintext_json.encode('utf-8')).decode('ascii')

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt an opaque token back to its plaintext JSON.

        Raises:
            CredentialDecryptionError: ciphertext is corrupted, tampered
                with, or was produced with an unknown key
        """
        try:
            if isinstance(ciphertext, str):
                ciphertext = ciphertext.encode('ascii')
            return self._fernet.decrypt(ciphertext).decode('utf-8')
        except (InvalidToken, UnicodeError, TypeError) as e:
            logger.error(f"Failed to decrypt credentials blob: {type(e).__name__}")
            raise CredentialDecryptionError("Stored credentials could not be decrypted") from e

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a token under the current master key."""
        try:
            return self._fernet.rotate(ciphertext.encode('ascii')).decode('ascii')
        except InvalidToken as e:
            raise CredentialDecryptionError("Stored credentials could not be decrypted") from e

    def encrypt_bundle(self, bundle: CredentialsBundle) -> str:
        if not isinstance(bundle, CredentialsBundle):
            raise InvalidCredentialsBundle("Expected a CredentialsBundle")
        return self.encrypt(bundle.to_json())

    def decrypt_bundle(self, ciphertext: str) -> CredentialsBundle:
        return CredentialsBundle.from_json(self.decrypt(ciphertext))

    def encrypt_json(self, data: dict) -> str:
        """Encrypt an arbitrary JSON-serialisable mapping (stored user secrets)."""
        return self.encrypt(json.dumps(data, sort_keys=True))

    def decrypt_json(self, ciphertext: str) -> dict:
        plaintext = self.decrypt(ciphertext)
        try:
            data = json.loads(plaintext)
        except ValueError as e:
            raise CredentialDecryptionError("Stored credentials are not valid JSON") from e
        if not isinstance(data, dict):
            raise CredentialDecryptionError("Stored credentials are not an object")
        return data


def create_vault(master_key: Optional[str], db_path: Path,
                 previous_keys: Iterable[str] = ()) -> CredentialVault:
    """Build the application vault.

    Priority:
    1. Configured master key (TASKBRIDGE_MASTER_KEY)
    2. Stored in database system_config table (auto-generated on first use)
    """
    secret = master_key or load_or_create_master_key(db_path)
    return CredentialVault(secret, previous_secrets=previous_keys)


# Convenience function for generating keys during setup
if __name__ == '__main__':
    print("Generated master key (add to TASKBRIDGE_MASTER_KEY env var):")
    print(generate_master_key())
