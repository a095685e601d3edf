"""Unit tests for the fixed-window limiter with block periods (in-memory backend)."""

import pytest

from cinematch.service.rate_limit import RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _email_limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(
        "login_email", points=5, duration_seconds=900, block_seconds=900, clock=clock
    )


async def test_sixth_attempt_is_refused_with_block_retry_after():
    clock = FakeClock()
    limiter = _email_limiter(clock)

    results = [await limiter.consume("a@x.com") for _ in range(5)]
    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == [4, 3, 2, 1, 0]

    denied = await limiter.consume("a@x.com")
    assert denied.allowed is False
    assert denied.retry_after_seconds == 900


async def test_block_outlasts_window_and_does_not_consume():
    clock = FakeClock()
    limiter = _email_limiter(clock)
    for _ in range(6):
        await limiter.consume("a@x.com")

    clock.advance(600)
    still_blocked = await limiter.consume("a@x.com")
    assert still_blocked.allowed is False
    assert still_blocked.retry_after_seconds == 300

    clock.advance(300)
    after_block = await limiter.consume("a@x.com")
    assert after_block.allowed is True
    # blocked attempts did not eat into the fresh budget
    assert after_block.remaining == 4


async def test_retry_after_rounds_up():
    clock = FakeClock()
    limiter = _email_limiter(clock)
    for _ in range(6):
        await limiter.consume("a@x.com")

    clock.advance(899.2)
    result = await limiter.consume("a@x.com")

    assert result.allowed is False
    assert result.retry_after_seconds == 1


async def test_window_resets_after_duration_without_block():
    clock = FakeClock()
    limiter = RateLimiter("mail_ip", points=2, duration_seconds=60, clock=clock)

    assert (await limiter.consume("1.2.3.4")).allowed
    assert (await limiter.consume("1.2.3.4")).allowed
    refused = await limiter.consume("1.2.3.4")
    assert refused.allowed is False
    assert refused.retry_after_seconds == 60

    clock.advance(60)
    assert (await limiter.consume("1.2.3.4")).allowed


async def test_keys_are_independent():
    clock = FakeClock()
    limiter = _email_limiter(clock)
    for _ in range(6):
        await limiter.consume("a@x.com")

    assert (await limiter.consume("b@x.com")).allowed


async def test_reset_clears_counter_and_block():
    clock = FakeClock()
    limiter = _email_limiter(clock)
    for _ in range(6):
        await limiter.consume("a@x.com")

    await limiter.reset("a@x.com")

    result = await limiter.consume("a@x.com")
    assert result.allowed is True
    assert result.remaining == 4


def test_invalid_configuration_is_rejected():
    with pytest.raises(ValueError):
        RateLimiter("bad", points=0, duration_seconds=60)
    with pytest.raises(ValueError):
        RateLimiter("bad", points=1, duration_seconds=0)


async def test_expired_keys_are_pruned_from_memory():
    clock = FakeClock()
    limiter = _email_limiter(clock)

    await limiter.consume("once@x.com")
    for _ in range(6):
        await limiter.consume("blocked@x.com")
    assert "blocked@x.com" in limiter._blocks

    clock.advance(901)
    await limiter.consume("later@x.com")

    assert set(limiter._windows) == {"later@x.com"}
    assert limiter._blocks == {}
