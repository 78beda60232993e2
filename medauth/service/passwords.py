from __future__ import annotations

from argon2 import PasswordHasher as Argon2PasswordHasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from medauth.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with a uniform-cost verify path.

    ``verify`` never raises for bad input: a mismatch, a malformed stored
    hash and any verification error all come back as ``False``.
    ``dummy_verify`` burns the same work against a throwaway hash so an
    unknown email cannot be told apart from a wrong password by timing.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = Argon2PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._hasher.hash("medauth-dummy-password")

    @classmethod
    def from_settings(cls, settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHash:
            logger.warning("password_hash_malformed")
            return False
        except VerificationError as exc:
            logger.warning("password_verification_error", error=str(exc))
            return False

    def dummy_verify(self, plaintext: str) -> bool:
        self.verify(plaintext, self._dummy_hash)
        return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
