"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

from typing import Iterable, List

# API list names -> User attribute / app_user column
LIST_FIELDS = {"watched": "watched", "to-watch": "to_watch"}

REACTIONS = ("like", "dislike", "clear")


def merge_ids(existing: Iterable[int], incoming: Iterable[int]) -> List[int]:
    """Set union that keeps the order of ``existing`` followed by new ids."""

    merged = [int(item) for item in existing]
    seen = set(merged)
    for item in incoming:
        if item not in seen:
            seen.add(item)
            merged.append(item)
    return merged
