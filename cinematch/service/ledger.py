from __future__ import annotations

from typing import Optional, Protocol

from cinematch.logging import get_logger
from cinematch.service.tokens import SecretHasher
from cinematch.storage.models import RefreshTokenEntry

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def list_refresh_tokens(self, user_id: str) -> list[RefreshTokenEntry]:
        ...

    def add_refresh_token(
        self, user_id: str, entry: RefreshTokenEntry, *, max_entries: Optional[int] = None
    ) -> None:
        ...

    def replace_refresh_token(
        self, user_id: str, old_jti: str, entry: RefreshTokenEntry
    ) -> bool:
        ...

    def remove_refresh_token(self, user_id: str, jti: str) -> bool:
        ...

    def clear_refresh_tokens(self, user_id: str) -> None:
        ...


class RefreshTokenLedger:
    """Per-user record of outstanding refresh tokens, stored as hashes only.

    One entry per signed-in device. A refresh token is valid for rotation
    only while a stored hash matches it.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        hasher: SecretHasher,
        *,
        max_entries: Optional[int] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.max_entries = max_entries

    async def store_refresh(self, user_id: str, jti: str, raw_token: str) -> None:
        entry = RefreshTokenEntry(jti=jti, hash=await self.hasher.hash_async(raw_token))
        self.store.add_refresh_token(user_id, entry, max_entries=self.max_entries)

    async def find_match(
        self, user_id: str, raw_token: str, *, claimed_jti: Optional[str] = None
    ) -> Optional[str]:
        """Return the jti of the entry whose hash matches ``raw_token``."""

        entries = self.store.list_refresh_tokens(user_id)
        if claimed_jti:
            # try the entry named by the token first; matching is still by hash
            entries.sort(key=lambda e: e.jti != claimed_jti)
        for entry in entries:
            if await self.hasher.matches_async(raw_token, entry.hash):
                return entry.jti
        return None

    async def remove_refresh(self, user_id: str, raw_token: str) -> bool:
        jti = await self.find_match(user_id, raw_token)
        if jti is None:
            return False
        return self.store.remove_refresh_token(user_id, jti)

    async def rotate(
        self, user_id: str, old_jti: str, new_jti: str, new_raw_token: str
    ) -> bool:
        """Swap ``old_jti`` for a new entry; False when it was already consumed."""

        entry = RefreshTokenEntry(jti=new_jti, hash=await self.hasher.hash_async(new_raw_token))
        rotated = self.store.replace_refresh_token(user_id, old_jti, entry)
        if not rotated:
            logger.warning("refresh_rotation_lost_race", user_id=user_id)
        return rotated

    def revoke_all(self, user_id: str) -> None:
        self.store.clear_refresh_tokens(user_id)
