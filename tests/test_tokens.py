"""Unit tests for one-time secrets and their Argon2id hashes."""

import re

from cinematch.service.tokens import SecretHasher, hash_token, new_raw_token, token_matches


def _hasher() -> SecretHasher:
    return SecretHasher(time_cost=1, memory_cost_kib=1024, parallelism=1)


def test_raw_token_is_64_hex_chars_and_unique():
    tokens = {new_raw_token() for _ in range(50)}

    assert len(tokens) == 50
    for token in tokens:
        assert re.fullmatch(r"[0-9a-f]{64}", token)


def test_hash_is_salted_argon2id_and_verifies():
    hasher = _hasher()
    raw = new_raw_token()

    first = hash_token(raw, hasher)
    second = hash_token(raw, hasher)

    assert first.startswith("$argon2id$")
    assert raw not in first
    assert first != second
    assert token_matches(raw, first, hasher)
    assert token_matches(raw, second, hasher)


def test_mismatch_and_corrupt_hash_return_false():
    hasher = _hasher()
    hashed = hasher.hash("correct")

    assert token_matches("wrong", hashed, hasher) is False
    assert token_matches("correct", "not-a-hash", hasher) is False
    assert token_matches("correct", None, hasher) is False
    assert token_matches("", hashed, hasher) is False


async def test_async_variants_match_sync_behaviour():
    hasher = _hasher()

    hashed = await hasher.hash_async("Password123!")

    assert await hasher.matches_async("Password123!", hashed) is True
    assert await hasher.matches_async("Password124!", hashed) is False
