"""Unit tests for the peppered argon2 credential hasher."""

import pytest

from claimgate.service.passwords import CredentialHasher


class TestCredentialHasher:
    def test_hash_is_argon2id_and_not_plaintext(self, hasher):
        digest = hasher.hash("correct horse battery")

        assert digest.startswith("$argon2id$")
        assert "correct horse battery" not in digest

    def test_same_password_hashes_differently(self, hasher):
        """Argon2 salts every digest."""
        assert hasher.hash("password123") != hasher.hash("password123")

    def test_verify_round_trip(self, hasher):
        digest = hasher.hash("password123")

        assert hasher.verify("password123", digest) is True
        assert hasher.verify("password124", digest) is False

    def test_pepper_is_required_to_verify(self, hasher):
        """A digest made under one pepper does not verify under another."""
        digest = hasher.hash("password123")
        other = CredentialHasher("another-pepper", time_cost=1, memory_cost=8, parallelism=1)

        assert other.verify("password123", digest) is False

    def test_verify_tolerates_missing_or_garbage_digest(self, hasher):
        assert hasher.verify("password123", None) is False
        assert hasher.verify("password123", "") is False
        assert hasher.verify("password123", "not-a-digest") is False

    def test_empty_pepper_rejected(self):
        with pytest.raises(ValueError):
            CredentialHasher("")

    async def test_async_variants(self, hasher):
        digest = await hasher.hash_async("password123")

        assert await hasher.verify_async("password123", digest) is True
        assert await hasher.verify_async("nope-nope", digest) is False
