"""Content-based ranking of catalog titles against a user's viewing profile.

Titles the user watched or liked lend weight to their genres and keywords
(likes count more). Disliked titles build a separate genre weight that is
subtracted. Popularity and rating only break near-ties.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Sequence

LIKED_BOOST = 3.0
WATCHED_BOOST = 1.0
DISLIKED_BOOST = 2.0

GENRE_SCALE = 1.0
KEYWORD_SCALE = 0.5
DISLIKE_SCALE = 1.0
POPULARITY_SCALE = 0.5
RATING_SCALE = 0.5

DEFAULT_LIMIT = 10
MAX_LIMIT = 50


@dataclass
class CatalogItem:
    id: int
    title: str = ""
    genres: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    popularity: float = 0.0
    rating: float = 0.0
    score: float = 0.0


@dataclass
class Profile:
    watched: Sequence[int] = ()
    liked: Sequence[int] = ()
    disliked: Sequence[int] = ()


def clamp_limit(limit: object) -> int:
    try:
        value = int(limit)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, value))


def _add_weights(target: Dict[str, float], terms: Iterable[str], boost: float) -> None:
    for term in terms:
        target[term.lower()] += boost


def build_weights(
    profile: Profile, catalog: Mapping[int, CatalogItem]
) -> tuple[Dict[str, float], Dict[str, float], Dict[str, float]]:
    """Return (genre, keyword, disliked-genre) weights for the profile."""

    genres: Dict[str, float] = defaultdict(float)
    keywords: Dict[str, float] = defaultdict(float)
    disliked_genres: Dict[str, float] = defaultdict(float)
    liked = set(profile.liked)
    for item_id in liked:
        item = catalog.get(item_id)
        if item:
            _add_weights(genres, item.genres, LIKED_BOOST)
            _add_weights(keywords, item.keywords, LIKED_BOOST)
    for item_id in set(profile.watched) - liked:
        item = catalog.get(item_id)
        if item:
            _add_weights(genres, item.genres, WATCHED_BOOST)
            _add_weights(keywords, item.keywords, WATCHED_BOOST)
    for item_id in set(profile.disliked):
        item = catalog.get(item_id)
        if item:
            _add_weights(disliked_genres, item.genres, DISLIKED_BOOST)
    return dict(genres), dict(keywords), dict(disliked_genres)


def _affinity(
    item: CatalogItem,
    genres: Mapping[str, float],
    keywords: Mapping[str, float],
    disliked_genres: Mapping[str, float],
) -> float:
    item_genres = {g.lower() for g in item.genres}
    item_keywords = {k.lower() for k in item.keywords}
    return (
        GENRE_SCALE * sum(genres.get(g, 0.0) for g in item_genres)
        + KEYWORD_SCALE * sum(keywords.get(k, 0.0) for k in item_keywords)
        - DISLIKE_SCALE * sum(disliked_genres.get(g, 0.0) for g in item_genres)
    )


def _too_close_to_disliked(item: CatalogItem, disliked_genres: Mapping[str, float]) -> bool:
    item_genres = {g.lower() for g in item.genres}
    return bool(item_genres) and item_genres.issubset(disliked_genres)


def build_feed(
    profile: Profile, catalog: Sequence[CatalogItem], limit: object = DEFAULT_LIMIT
) -> List[CatalogItem]:
    """Rank ``catalog`` for ``profile``; never empty while unseen titles remain."""

    size = clamp_limit(limit)
    by_id = {item.id: item for item in catalog}
    excluded = set(profile.watched) | set(profile.disliked)
    pool = [item for item in by_id.values() if item.id not in excluded]
    if not pool:
        return []

    genres, keywords, disliked_genres = build_weights(profile, by_id)
    max_popularity = max((item.popularity for item in pool), default=0.0) or 1.0

    scored: List[CatalogItem] = []
    for item in pool:
        if _too_close_to_disliked(item, disliked_genres):
            continue
        affinity = _affinity(item, genres, keywords, disliked_genres)
        if affinity <= 0:
            continue
        score = (
            affinity
            + POPULARITY_SCALE * (max(item.popularity, 0.0) / max_popularity)
            + RATING_SCALE * (max(item.rating, 0.0) / 10.0)
        )
        scored.append(replace(item, score=score))

    if scored:
        scored.sort(key=lambda item: (-item.score, item.id))
        return scored[:size]

    fallback = sorted(pool, key=lambda item: (-item.popularity, -item.rating, item.id))
    return [replace(item, score=0.0) for item in fallback[:size]]
