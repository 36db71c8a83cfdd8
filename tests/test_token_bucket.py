import asyncio

import pytest

from utils import TokenBucket


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_new_key_starts_full():
    clock = Clock()
    bucket = TokenBucket(2, 60, clock=clock)

    assert await bucket.consume("u1") is True
    assert await bucket.consume("u1") is True
    assert await bucket.consume("u1") is False


@pytest.mark.asyncio
async def test_refills_one_token_per_whole_interval():
    clock = Clock()
    bucket = TokenBucket(1, 300, clock=clock)

    assert await bucket.consume("u1")
    clock.now += 299
    assert not await bucket.consume("u1")
    clock.now += 1
    assert await bucket.consume("u1")
    assert not await bucket.consume("u1")


@pytest.mark.asyncio
async def test_refill_is_capped_at_capacity():
    clock = Clock()
    bucket = TokenBucket(2, 60, clock=clock)

    assert await bucket.consume("u1")
    assert await bucket.consume("u1")
    clock.now += 60 * 50
    assert await bucket.consume("u1")
    assert await bucket.consume("u1")
    assert not await bucket.consume("u1")


@pytest.mark.asyncio
async def test_keys_are_independent():
    clock = Clock()
    bucket = TokenBucket(1, 300, clock=clock)

    assert await bucket.consume("alice")
    assert not await bucket.consume("alice")
    assert await bucket.consume("bob")


@pytest.mark.asyncio
async def test_concurrent_consumers_never_overspend():
    bucket = TokenBucket(1, 300, clock=Clock())

    results = await asyncio.gather(*(bucket.consume("u1") for _ in range(5)))

    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_check_does_not_spend():
    bucket = TokenBucket(1, 300, clock=Clock())

    assert bucket.check("u1")
    assert bucket.check("u1")
    assert await bucket.consume("u1")
    assert not bucket.check("u1")


@pytest.mark.asyncio
async def test_reset_restores_capacity():
    bucket = TokenBucket(1, 300, clock=Clock())

    assert await bucket.consume("u1")
    bucket.reset("u1")
    assert await bucket.consume("u1")


def test_invalid_parameters():
    with pytest.raises(ValueError):
        TokenBucket(0, 60)
    with pytest.raises(ValueError):
        TokenBucket(1, 0)
