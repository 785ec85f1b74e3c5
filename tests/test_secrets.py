"""Tests for hash-lock secrets."""

import hashlib

import pytest

from atomicswap.config import Settings
from atomicswap.swap.secrets import (
    SecretManager,
    SecretSealError,
    create_secret_manager,
    generate_master_key,
)


class TestSecretGeneration:
    """Tests for secret generation and hashing."""

    def test_secret_is_32_random_bytes(self):
        secret = SecretManager.generate_secret()

        assert len(bytes.fromhex(secret)) == 32
        assert SecretManager.generate_secret() != secret

    def test_hash_is_sha256_of_raw_bytes(self):
        secret = "11" * 32

        assert SecretManager.hash(secret) == hashlib.sha256(bytes.fromhex(secret)).hexdigest()
        assert SecretManager.hash(secret) == SecretManager.hash(secret)

    def test_verify(self):
        secret = SecretManager.generate_secret()
        secret_hash = SecretManager.hash(secret)

        assert SecretManager.verify(secret, secret_hash)
        assert SecretManager.verify(secret, secret_hash.upper())
        assert not SecretManager.verify(SecretManager.generate_secret(), secret_hash)
        assert not SecretManager.verify("not-hex", secret_hash)

    def test_is_valid_hash(self):
        assert SecretManager.is_valid_hash("ab" * 32)
        assert not SecretManager.is_valid_hash("ab" * 31)
        assert not SecretManager.is_valid_hash("zz" * 32)


class TestSealing:
    """Tests for sealing secrets at rest."""

    def test_seal_roundtrip_hides_secret(self):
        manager = SecretManager(generate_master_key())
        secret = SecretManager.generate_secret()

        sealed = manager.seal(secret)

        assert secret not in sealed
        assert manager.unseal(sealed) == secret

    def test_unseal_with_other_key_fails(self):
        sealed = SecretManager(generate_master_key()).seal(SecretManager.generate_secret())

        with pytest.raises(SecretSealError):
            SecretManager(generate_master_key()).unseal(sealed)

    def test_production_requires_master_key(self):
        settings = Settings(environment="production", master_key=None)

        with pytest.raises(RuntimeError):
            create_secret_manager(settings)

    def test_development_uses_ephemeral_key(self):
        settings = Settings(environment="development", master_key=None)

        manager = create_secret_manager(settings)

        assert manager.unseal(manager.seal("ab" * 32)) == "ab" * 32
