"""Unit tests for argon2id password hashing."""

import pytest

from studybuddy.config import Settings
from studybuddy.service.passwords import PasswordHasher


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


class TestPasswordHashing:
    def test_hash_is_not_plaintext(self, hasher):
        password = "Str0ng!Pass"
        hashed = hasher.hash(password)

        assert hashed != password
        assert hashed.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, hasher):
        """Salting means two hashes of one password never collide."""
        assert hasher.hash("Str0ng!Pass") != hasher.hash("Str0ng!Pass")

    def test_verify_accepts_correct_password(self, hasher):
        hashed = hasher.hash("Str0ng!Pass")
        assert hasher.verify("Str0ng!Pass", hashed) is True

    def test_verify_rejects_wrong_password(self, hasher):
        hashed = hasher.hash("Str0ng!Pass")
        assert hasher.verify("str0ng!pass", hashed) is False

    def test_work_factor_is_encoded_in_hash(self):
        hasher = PasswordHasher(time_cost=2, memory_cost=2048, parallelism=1)
        hashed = hasher.hash("Str0ng!Pass")
        assert "m=2048,t=2,p=1" in hashed


class TestMalformedHashes:
    """A broken stored hash is an authentication failure, never a crash."""

    @pytest.mark.parametrize(
        "stored",
        [
            None,
            "",
            "not-a-hash",
            "$argon2id$v=19$m=1024,t=1,p=1$garbage",
            "$2b$12$abcdefghijklmnopqrstuuOeJ6yW0JcK9Q8nHgk1m7Yw4qgZ7V3Fa",
        ],
    )
    def test_verify_returns_false(self, hasher, stored):
        assert hasher.verify("Str0ng!Pass", stored) is False

    def test_dummy_verify_does_not_raise(self, hasher):
        assert hasher.dummy_verify("anything") is None


def test_from_settings_uses_configured_work_factor():
    settings = Settings(
        jwt_secret="x" * 40,
        password_hash_time_cost=2,
        password_hash_memory_cost=4096,
        password_hash_parallelism=1,
    )
    hashed = PasswordHasher.from_settings(settings).hash("Str0ng!Pass")
    assert "m=4096,t=2,p=1" in hashed
