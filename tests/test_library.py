import pytest

from cinematch.service.errors import BadRequestError, NotFoundError
from cinematch.service.library import LibraryService, as_id_list, parse_tmdb_id
from cinematch.service.recommend import CatalogItem
from cinematch.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("lib@x.com", "hash", email_verified=True)


@pytest.mark.parametrize(
    "value,expected",
    [(5, 5), ("12", 12), (" 7 ", 7), (3.0, 3), (0, 0), (-1, None), ("1.5", None), (True, None), (None, None)],
)
def test_parse_tmdb_id(value, expected):
    assert parse_tmdb_id(value) == expected


def test_as_id_list_keeps_numeric_entries():
    assert as_id_list([1, "2", "x", {}, 3.5, 4]) == [1, 2, 4]
    assert as_id_list("1,2") == []


def test_unknown_user_maps_to_not_found(store):
    service = LibraryService(store)

    with pytest.raises(NotFoundError):
        service.get_lists("missing")
    with pytest.raises(NotFoundError):
        service.set_reaction("missing", 1, "like")


def test_update_list_validates_before_touching_store(store, user):
    service = LibraryService(store)

    with pytest.raises(BadRequestError):
        service.update_list(user.id, "favorites", "add", 1)
    with pytest.raises(BadRequestError):
        service.update_list(user.id, "watched", "add", "abc")

    service.update_list(user.id, "to-watch", "add", "9")
    assert service.get_lists(user.id) == ([], [9])


def test_personal_feed_uses_stored_profile(store, user):
    service = LibraryService(store)
    service.merge_lists(user.id, [1], [])
    service.set_reaction(user.id, 1, "like")
    catalog = [
        CatalogItem(id=1, genres=["Horror"]),
        CatalogItem(id=2, genres=["Horror"], popularity=1),
        CatalogItem(id=3, genres=["Comedy"], popularity=100),
    ]

    ranked = service.personal_feed(user.id, catalog, 10)

    assert [item.id for item in ranked] == [2]
