from __future__ import annotations

import contextlib
from typing import Any, Iterable, List, Optional, Protocol, Tuple

from cinematch.logging import get_logger
from cinematch.service.errors import BadRequestError, NotFoundError
from cinematch.service.recommend import CatalogItem, Profile, build_feed
from cinematch.storage.common import LIST_FIELDS, REACTIONS
from cinematch.storage.errors import UserNotFound

logger = get_logger(__name__)

LIST_ACTIONS = ("add", "remove")


class LibraryStore(Protocol):
    def get_lists(self, user_id: str) -> Tuple[List[int], List[int]]: ...

    def merge_lists(
        self, user_id: str, watched: Iterable[int], to_watch: Iterable[int]
    ) -> Tuple[List[int], List[int]]: ...

    def update_list(self, user_id: str, list_name: str, action: str, tmdb_id: int) -> None: ...

    def get_reactions(self, user_id: str) -> Tuple[List[int], List[int]]: ...

    def set_reaction(
        self, user_id: str, tmdb_id: int, reaction: str
    ) -> Tuple[List[int], List[int]]: ...


def parse_tmdb_id(value: Any) -> Optional[int]:
    """Accept non-negative integers and their decimal string form."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def as_id_list(values: Any) -> List[int]:
    """Keep the numeric entries of a client-supplied list, dropping the rest."""

    if not isinstance(values, list):
        return []
    ids = []
    for value in values:
        parsed = parse_tmdb_id(value)
        if parsed is not None:
            ids.append(parsed)
    return ids


class LibraryService:
    """Watched / to-watch lists, like-dislike reactions and the personal feed."""

    def __init__(self, store: LibraryStore) -> None:
        self.store = store

    def get_lists(self, user_id: str) -> Tuple[List[int], List[int]]:
        with self._user_scope(user_id):
            return self.store.get_lists(user_id)

    def merge_lists(
        self, user_id: str, watched: Any, to_watch: Any
    ) -> Tuple[List[int], List[int]]:
        with self._user_scope(user_id):
            return self.store.merge_lists(user_id, as_id_list(watched), as_id_list(to_watch))

    def update_list(self, user_id: str, list_name: str, action: Any, tmdb_id: Any) -> None:
        if list_name not in LIST_FIELDS:
            raise BadRequestError("Unknown list", detail={"list": list_name})
        if action not in LIST_ACTIONS:
            raise BadRequestError("Invalid action")
        parsed = parse_tmdb_id(tmdb_id)
        if parsed is None:
            raise BadRequestError("Invalid id")
        with self._user_scope(user_id):
            self.store.update_list(user_id, list_name, action, parsed)
        logger.info("list_updated", user_id=user_id, list=list_name, action=action)

    def get_reactions(self, user_id: str) -> Tuple[List[int], List[int]]:
        with self._user_scope(user_id):
            return self.store.get_reactions(user_id)

    def set_reaction(self, user_id: str, tmdb_id: Any, reaction: Any) -> Tuple[List[int], List[int]]:
        parsed = parse_tmdb_id(tmdb_id)
        if parsed is None:
            raise BadRequestError("Invalid tmdbId")
        if reaction not in REACTIONS:
            raise BadRequestError("Invalid reaction")
        with self._user_scope(user_id):
            return self.store.set_reaction(user_id, parsed, reaction)

    def personal_feed(
        self, user_id: str, catalog: List[CatalogItem], limit: int
    ) -> List[CatalogItem]:
        with self._user_scope(user_id):
            watched, _to_watch = self.store.get_lists(user_id)
            liked, disliked = self.store.get_reactions(user_id)
        profile = Profile(watched=watched, liked=liked, disliked=disliked)
        return build_feed(profile, catalog, limit)

    @contextlib.contextmanager
    def _user_scope(self, user_id: str):
        """Turn storage ``UserNotFound`` into the 404 service error."""

        try:
            yield
        except UserNotFound as exc:
            logger.warning("library_user_missing", user_id=user_id)
            raise NotFoundError("User not found") from exc
