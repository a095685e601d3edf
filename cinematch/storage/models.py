from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_user_id(value: object) -> bool:
    """User ids are canonical UUID strings; anything else is rejected up front."""

    if not isinstance(value, str) or not value:
        return False
    try:
        return str(uuid.UUID(value)) == value
    except ValueError:
        return False


class GrantKind(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class RefreshTokenEntry:
    jti: str
    hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    display_name: Optional[str] = None
    # None marks records created before verification existed
    email_verified: Optional[bool] = False
    refresh_tokens: List[RefreshTokenEntry] = field(default_factory=list)
    watched: List[int] = field(default_factory=list)
    to_watch: List[int] = field(default_factory=list)
    liked_tmdb_ids: List[int] = field(default_factory=list)
    disliked_tmdb_ids: List[int] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OneTimeGrant:
    id: str
    kind: GrantKind
    user_id: str
    hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, kind: GrantKind, user_id: str, hashed: str, ttl: timedelta) -> "OneTimeGrant":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            kind=kind,
            user_id=user_id,
            hash=hashed,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())
