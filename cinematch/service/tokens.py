from __future__ import annotations

import asyncio
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from cinematch.config import Settings
from cinematch.logging import get_logger

logger = get_logger(__name__)

RAW_TOKEN_BYTES = 32


def new_raw_token() -> str:
    """Return a fresh 256-bit secret, hex encoded (64 characters)."""

    return secrets.token_hex(RAW_TOKEN_BYTES)


class SecretHasher:
    """Salted, deliberately slow Argon2id hashing for passwords and one-time secrets.

    Only the hash is ever persisted. ``matches`` never raises for a wrong value
    or a corrupt stored hash; both simply fail to match.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost_kib: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretHasher":
        return cls(
            time_cost=settings.hash_time_cost,
            memory_cost_kib=settings.hash_memory_cost_kib,
            parallelism=settings.hash_parallelism,
        )

    def hash(self, raw: str) -> str:
        return self._hasher.hash(raw)

    def matches(self, raw: str, hashed: str | None) -> bool:
        if not raw or not hashed:
            return False
        try:
            return self._hasher.verify(hashed, raw)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("secret_hash_unverifiable")
            return False

    async def hash_async(self, raw: str) -> str:
        return await asyncio.to_thread(self.hash, raw)

    async def matches_async(self, raw: str, hashed: str | None) -> bool:
        return await asyncio.to_thread(self.matches, raw, hashed)


def hash_token(raw: str, hasher: SecretHasher) -> str:
    return hasher.hash(raw)


def token_matches(raw: str, hashed: str | None, hasher: SecretHasher) -> bool:
    return hasher.matches(raw, hashed)
