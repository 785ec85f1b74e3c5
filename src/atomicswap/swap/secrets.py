"""Swap secrets: generation, hash locks and sealed storage.

The secret is a 32-byte random preimage. Its SHA-256 digest is the hash lock
placed on both legs. The raw secret is sealed with Fernet (AES-128-CBC with
HMAC) before it is persisted, so a restarted process can still claim.
"""

import hashlib
import hmac
import logging
import secrets
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from atomicswap.config import Settings, get_settings

logger = logging.getLogger(__name__)

SECRET_BYTES = 32


class SecretSealError(Exception):
    """A sealed secret could not be opened (wrong key or corrupted data)."""

    pass


def generate_master_key() -> str:
    """Generate a new master encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    return Fernet.generate_key().decode()


class SecretManager:
    """Generates swap secrets and seals them at rest.

    Usage:
        manager = SecretManager(master_key)
        secret = manager.generate_secret()
        hash_lock = manager.hash(secret)
        sealed = manager.seal(secret)
        assert manager.unseal(sealed) == secret
    """

    def __init__(self, master_key: str):
        """Initialize with master encryption key.

        Args:
            master_key: Base64-encoded Fernet key (32 bytes)
        """
        self._fernet = Fernet(master_key.encode())

    @staticmethod
    def generate_secret() -> str:
        """Draw a fresh 32-byte secret, hex encoded."""
        return secrets.token_hex(SECRET_BYTES)

    @staticmethod
    def hash(secret: str) -> str:
        """SHA-256 over the raw secret bytes, hex encoded.

        Raises:
            ValueError: If the secret is not valid hex
        """
        return hashlib.sha256(bytes.fromhex(secret)).hexdigest()

    @classmethod
    def verify(cls, secret: str, secret_hash: str) -> bool:
        """Check a preimage against a hash lock in constant time."""
        try:
            candidate = cls.hash(secret)
        except (ValueError, TypeError):
            return False
        return hmac.compare_digest(candidate, secret_hash.lower())

    @staticmethod
    def is_valid_hash(secret_hash: str) -> bool:
        if len(secret_hash) != 64:
            return False
        try:
            bytes.fromhex(secret_hash)
        except ValueError:
            return False
        return True

    def seal(self, secret: str) -> str:
        """Encrypt a secret for storage."""
        return self._fernet.encrypt(secret.encode()).decode()

    def unseal(self, sealed: str) -> str:
        """Decrypt a stored secret.

        Raises:
            SecretSealError: If decryption fails
        """
        try:
            return self._fernet.decrypt(sealed.encode()).decode()
        except InvalidToken as e:
            raise SecretSealError("Sealed secret could not be opened") from e


def create_secret_manager(settings: Optional[Settings] = None) -> SecretManager:
    """Build the secret manager from MASTER_KEY.

    Without a key, development processes fall back to an ephemeral key: sealed
    secrets from such a process cannot be opened after a restart.

    Raises:
        RuntimeError: If MASTER_KEY is missing in production
    """
    settings = settings or get_settings()

    if settings.master_key:
        return SecretManager(settings.master_key)

    if settings.is_production:
        raise RuntimeError("MASTER_KEY is required in production to seal swap secrets")

    logger.warning("MASTER_KEY not set - using an ephemeral key, sealed secrets will not survive restart")
    return SecretManager(generate_master_key())
