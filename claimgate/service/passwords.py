from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from claimgate.config import Settings
from claimgate.logging import get_logger
from claimgate.service.errors import ServerError

logger = get_logger(__name__)


class CredentialHasher:
    """Argon2id password hashing with a process-wide pepper.

    The pepper is appended to every password before it reaches argon2, so a
    leaked table of digests cannot be attacked offline without it. Argon2
    generates its own per-record salt. Cost parameters come from settings and
    should be tuned so one ``verify`` takes roughly 100-300ms on production
    hardware.
    """

    def __init__(
        self,
        pepper: str,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        if not pepper:
            raise ValueError("password pepper must not be empty")
        self._pepper = pepper
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            settings.password_pepper,
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost_kib,
            parallelism=settings.argon2_parallelism,
        )

    def _peppered(self, password: str) -> str:
        return password + self._pepper

    def hash(self, password: str) -> str:
        try:
            return self._hasher.hash(self._peppered(password))
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise ServerError("unable to process credentials") from exc

    def verify(self, password: str, digest: Optional[str]) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, self._peppered(password))
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_unusable")
            return False

    async def hash_async(self, password: str) -> str:
        """Hash on a worker thread so the event loop keeps serving other requests."""
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, password: str, digest: Optional[str]) -> bool:
        return await asyncio.to_thread(self.verify, password, digest)
