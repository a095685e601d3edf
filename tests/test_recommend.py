"""Tests for the content-based feed ranking."""

from cinematch.service.recommend import (
    MAX_LIMIT,
    CatalogItem,
    Profile,
    build_feed,
    build_weights,
    clamp_limit,
)


def _catalog():
    return [
        CatalogItem(id=1, title="Heat", genres=["Crime", "Thriller"], keywords=["heist"], popularity=50, rating=8.3),
        CatalogItem(id=2, title="Ronin", genres=["Thriller", "Action"], keywords=["heist", "car chase"], popularity=30, rating=7.2),
        CatalogItem(id=3, title="The Notebook", genres=["Romance", "Drama"], keywords=["love"], popularity=90, rating=7.9),
        CatalogItem(id=4, title="Inside Man", genres=["Crime", "Drama"], keywords=["heist", "bank"], popularity=40, rating=7.6),
        CatalogItem(id=5, title="Titanic", genres=["Romance", "Drama"], keywords=["ship"], popularity=95, rating=7.9),
        CatalogItem(id=6, title="Paddington", genres=["Family", "Comedy"], keywords=["bear"], popularity=20, rating=7.3),
    ]


def test_watched_and_disliked_titles_are_excluded():
    profile = Profile(watched=[1], liked=[1], disliked=[3])

    ids = [item.id for item in build_feed(profile, _catalog(), 10)]

    assert 1 not in ids
    assert 3 not in ids


def test_liked_genres_and_keywords_rank_first():
    profile = Profile(watched=[1], liked=[1])

    ranked = build_feed(profile, _catalog(), 10)

    # heist thrillers and crime titles beat unrelated but popular ones
    assert [item.id for item in ranked] == [4, 2]
    assert all(item.score > 0 for item in ranked)


def test_scores_are_descending_with_id_tiebreak():
    catalog = [
        CatalogItem(id=9, genres=["Drama"], popularity=10, rating=5),
        CatalogItem(id=8, genres=["Drama"], popularity=10, rating=5),
        CatalogItem(id=7, genres=["Drama"], popularity=10, rating=5),
        CatalogItem(id=1, genres=["Drama"], popularity=10, rating=5),
    ]

    ranked = build_feed(Profile(watched=[1]), catalog, 10)

    assert [item.id for item in ranked] == [7, 8, 9]


def test_disliked_genres_drop_titles_entirely_in_them():
    profile = Profile(watched=[1], liked=[1], disliked=[3])

    ids = [item.id for item in build_feed(profile, _catalog(), 10)]

    # Titanic is only Romance/Drama, both disliked
    assert 5 not in ids


def test_falls_back_to_popularity_without_affinity():
    ranked = build_feed(Profile(), _catalog(), 3)

    assert [item.id for item in ranked] == [5, 3, 1]
    assert all(item.score == 0 for item in ranked)


def test_empty_pool_returns_empty_feed():
    catalog = _catalog()
    everything = [item.id for item in catalog]

    assert build_feed(Profile(watched=everything), catalog, 10) == []


def test_limit_is_clamped():
    assert clamp_limit(None) == 10
    assert clamp_limit("abc") == 10
    assert clamp_limit(0) == 1
    assert clamp_limit(-5) == 1
    assert clamp_limit("7") == 7
    assert clamp_limit(500) == MAX_LIMIT
    assert len(build_feed(Profile(), _catalog(), 0)) == 1


def test_weights_count_likes_over_watches():
    catalog = {item.id: item for item in _catalog()}

    genres, keywords, disliked = build_weights(Profile(watched=[1, 2], liked=[1], disliked=[6]), catalog)

    assert genres["crime"] == 3.0
    assert genres["thriller"] == 4.0
    assert keywords["heist"] == 4.0
    assert disliked == {"family": 2.0, "comedy": 2.0}


def test_input_catalog_is_left_untouched():
    catalog = _catalog()

    ranked = build_feed(Profile(watched=[1], liked=[1]), catalog, 10)
    fallback = build_feed(Profile(), catalog, 3)

    assert all(item.score == 0.0 for item in catalog)
    assert all(item.score > 0 for item in ranked)
    assert not any(item is original for item in ranked + fallback for original in catalog)
