from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from cinematch.logging import get_logger
from cinematch.storage.common import LIST_FIELDS, merge_ids
from cinematch.storage.errors import ConstraintViolation, UserNotFound
from cinematch.storage.models import (
    GrantKind,
    OneTimeGrant,
    RefreshTokenEntry,
    User,
    normalize_email,
)


class MemoryStore:
    """Dict-backed store for tests and single-process development.

    When ``state_path`` is given every mutation is written to that JSON file
    and the store reloads it on start.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.grants: Dict[Tuple[str, str], List[OneTimeGrant]] = {}
        # RLock for all data operations; nested acquisitions happen via helpers
        self._data_lock = threading.RLock()
        self._state_path = Path(state_path) if state_path else None
        if self._state_path is not None:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
        email_verified: Optional[bool] = False,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                display_name=display_name,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def set_email_verified(self, user_id: str, verified: bool = True) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.email_verified = verified
            self._persist_state()

    def set_password_hash(
        self, user_id: str, password_hash: str, *, revoke_sessions: bool = True
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.password_hash = password_hash
            if revoke_sessions:
                user.refresh_tokens = []
            self._persist_state()

    # refresh-token ledger
    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenEntry]:
        with self._data_lock:
            user = self.users.get(user_id)
            return list(user.refresh_tokens) if user else []

    def add_refresh_token(
        self, user_id: str, entry: RefreshTokenEntry, *, max_entries: Optional[int] = None
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.refresh_tokens.append(entry)
            if max_entries is not None and len(user.refresh_tokens) > max_entries:
                user.refresh_tokens.sort(key=lambda e: e.created_at)
                user.refresh_tokens = user.refresh_tokens[-max_entries:]
            self._persist_state()

    def replace_refresh_token(
        self, user_id: str, old_jti: str, entry: RefreshTokenEntry
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            for idx, existing in enumerate(user.refresh_tokens):
                if existing.jti == old_jti:
                    user.refresh_tokens[idx] = entry
                    self._persist_state()
                    return True
            return False

    def remove_refresh_token(self, user_id: str, jti: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            remaining = [e for e in user.refresh_tokens if e.jti != jti]
            if len(remaining) == len(user.refresh_tokens):
                return False
            user.refresh_tokens = remaining
            self._persist_state()
            return True

    def clear_refresh_tokens(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.refresh_tokens = []
                self._persist_state()

    # one-time grants
    def replace_grant(self, grant: OneTimeGrant) -> OneTimeGrant:
        with self._data_lock:
            self.grants[(GrantKind(grant.kind).value, grant.user_id)] = [grant]
            self._persist_state()
            return grant

    def get_grant(self, kind: GrantKind, user_id: str) -> Optional[OneTimeGrant]:
        with self._data_lock:
            grants = self.grants.get((GrantKind(kind).value, user_id)) or []
            return max(grants, key=lambda g: g.created_at) if grants else None

    def delete_grants(self, kind: GrantKind, user_id: str) -> int:
        with self._data_lock:
            removed = self.grants.pop((GrantKind(kind).value, user_id), [])
            if removed:
                self._persist_state()
            return len(removed)

    # personal lists and reactions
    def get_lists(self, user_id: str) -> Tuple[List[int], List[int]]:
        with self._data_lock:
            user = self._require_user(user_id)
            return list(user.watched), list(user.to_watch)

    def merge_lists(
        self, user_id: str, watched: Iterable[int], to_watch: Iterable[int]
    ) -> Tuple[List[int], List[int]]:
        with self._data_lock:
            user = self._require_user(user_id)
            user.watched = merge_ids(user.watched, watched)
            user.to_watch = merge_ids(user.to_watch, to_watch)
            self._persist_state()
            return list(user.watched), list(user.to_watch)

    def update_list(self, user_id: str, list_name: str, action: str, tmdb_id: int) -> None:
        attr = LIST_FIELDS[list_name]
        with self._data_lock:
            user = self._require_user(user_id)
            current: List[int] = getattr(user, attr)
            if action == "add":
                setattr(user, attr, merge_ids(current, [tmdb_id]))
            else:
                setattr(user, attr, [item for item in current if item != tmdb_id])
            self._persist_state()

    def get_reactions(self, user_id: str) -> Tuple[List[int], List[int]]:
        with self._data_lock:
            user = self._require_user(user_id)
            return list(user.liked_tmdb_ids), list(user.disliked_tmdb_ids)

    def set_reaction(
        self, user_id: str, tmdb_id: int, reaction: str
    ) -> Tuple[List[int], List[int]]:
        with self._data_lock:
            user = self._require_user(user_id)
            liked = [item for item in user.liked_tmdb_ids if item != tmdb_id]
            disliked = [item for item in user.disliked_tmdb_ids if item != tmdb_id]
            if reaction == "like":
                liked.append(tmdb_id)
            elif reaction == "dislike":
                disliked.append(tmdb_id)
            user.liked_tmdb_ids = liked
            user.disliked_tmdb_ids = disliked
            self._persist_state()
            return list(liked), list(disliked)

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise UserNotFound(user_id)
        return user

    # persistence
    def _persist_state(self) -> None:
        if self._state_path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "grants": [
                self._serialize_grant(g) for grants in self.grants.values() for g in grants
            ],
        }
        try:
            self._state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        assert self._state_path is not None
        try:
            data = json.loads(self._state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.grants = {}
        for grant_data in data.get("grants", []):
            grant = self._deserialize_grant(grant_data)
            self.grants.setdefault((grant.kind.value, grant.user_id), []).append(grant)
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    @staticmethod
    def _serialize_datetime(value: datetime) -> str:
        return value.isoformat()

    @staticmethod
    def _deserialize_datetime(value: str) -> datetime:
        return datetime.fromisoformat(value)

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "display_name": user.display_name,
            "email_verified": user.email_verified,
            "refresh_tokens": [
                {
                    "jti": entry.jti,
                    "hash": entry.hash,
                    "created_at": self._serialize_datetime(entry.created_at),
                }
                for entry in user.refresh_tokens
            ],
            "watched": user.watched,
            "to_watch": user.to_watch,
            "liked_tmdb_ids": user.liked_tmdb_ids,
            "disliked_tmdb_ids": user.disliked_tmdb_ids,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            display_name=data.get("display_name"),
            # legacy records without the flag stay None
            email_verified=data.get("email_verified"),
            refresh_tokens=[
                RefreshTokenEntry(
                    jti=entry["jti"],
                    hash=entry["hash"],
                    created_at=self._deserialize_datetime(entry["created_at"]),
                )
                for entry in data.get("refresh_tokens", [])
            ],
            watched=list(data.get("watched", [])),
            to_watch=list(data.get("to_watch", [])),
            liked_tmdb_ids=list(data.get("liked_tmdb_ids", [])),
            disliked_tmdb_ids=list(data.get("disliked_tmdb_ids", [])),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_grant(self, grant: OneTimeGrant) -> dict:
        return {
            "id": grant.id,
            "kind": GrantKind(grant.kind).value,
            "user_id": grant.user_id,
            "hash": grant.hash,
            "expires_at": self._serialize_datetime(grant.expires_at),
            "created_at": self._serialize_datetime(grant.created_at),
        }

    def _deserialize_grant(self, data: dict) -> OneTimeGrant:
        return OneTimeGrant(
            id=data["id"],
            kind=GrantKind(data["kind"]),
            user_id=data["user_id"],
            hash=data["hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
