from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from studybuddy.config import Settings
from studybuddy.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with a configurable work factor.

    ``verify`` never raises for string input: a mismatch and a malformed stored
    hash both come back as ``False``, the latter with an error log.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # verified against when there is no real hash, so unknown accounts
        # cost the same as a wrong password
        self._dummy_hash = self._hasher.hash("studybuddy-dummy-password")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: str | None) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.error("password_hash_unusable", error_type=type(exc).__name__)
            return False

    def dummy_verify(self, plaintext: str) -> None:
        self.verify(plaintext, self._dummy_hash)
