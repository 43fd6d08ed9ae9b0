import asyncio

import pytest
from conftest import FakeChainClient, FakeClock
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from blocklatency.cache import FEE_RATE_TTL, SEQUENCE_TTL, CachedValue, ParameterCache
from blocklatency.exceptions import ParameterFetchError
from blocklatency.types import CacheKind

QUERY_METHOD = {
    CacheKind.FEE_RATE: "get_fee_rate",
    CacheKind.SEQUENCE: "get_account_sequence",
}


def make_cache(client, clock) -> ParameterCache:
    return ParameterCache(client, client.address, clock=clock)


def test_cached_value_validity():
    cell = CachedValue(value=1, last_updated=100.0)
    assert cell.is_valid(129.9, ttl=30)
    assert not cell.is_valid(130.0, ttl=30)


@pytest.mark.parametrize("kind", list(CacheKind))
@given(offsets=st.lists(st.floats(min_value=0, max_value=29.9), max_size=20))
@settings(deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
def test_no_query_within_ttl(kind, offsets):
    client, clock = FakeChainClient(), FakeClock()
    cache = make_cache(client, clock)

    async def check():
        value, was_cached = await cache.get(kind)
        assert not was_cached
        start = clock.now

        for offset in offsets:
            clock.now = start + offset
            assert await cache.get(kind) == (value, True)

        assert client.calls[QUERY_METHOD[kind]] == 1

        ttl = FEE_RATE_TTL if kind is CacheKind.FEE_RATE else SEQUENCE_TTL
        clock.now = start + ttl
        assert (await cache.get(kind))[1] is False
        assert await cache.get(kind) == (value, True)
        assert client.calls[QUERY_METHOD[kind]] == 2

    asyncio.run(check())


def test_ttls_are_independent(client, clock):
    cache = make_cache(client, clock)

    async def check():
        await cache.get(CacheKind.FEE_RATE)
        await cache.get(CacheKind.SEQUENCE)

        clock.advance(FEE_RATE_TTL)
        assert not cache.is_fresh(CacheKind.FEE_RATE)
        assert cache.is_fresh(CacheKind.SEQUENCE)

        client.fee_rate = 2 * 10**9
        assert await cache.get(CacheKind.FEE_RATE) == (2 * 10**9, False)
        assert await cache.get(CacheKind.SEQUENCE) == (7, True)

    asyncio.run(check())


def test_concurrent_misses_query_once(client, clock):
    cache = make_cache(client, clock)

    async def check():
        results = await asyncio.gather(*(cache.get(CacheKind.FEE_RATE) for _ in range(5)))
        assert [was_cached for _, was_cached in results].count(False) == 1

    asyncio.run(check())
    assert client.calls["get_fee_rate"] == 1


def test_advance_sequence_is_local(client, clock):
    cache = make_cache(client, clock)

    async def check():
        await cache.get(CacheKind.SEQUENCE)
        clock.advance(10)

        assert cache.advance_sequence() == 8
        assert cache.advance_sequence() == 9
        assert await cache.get(CacheKind.SEQUENCE) == (9, True)

        # NOTE: The timestamp is not touched by an advance
        clock.advance(SEQUENCE_TTL - 10)
        assert not cache.is_fresh(CacheKind.SEQUENCE)

    asyncio.run(check())
    assert client.calls["get_account_sequence"] == 1


def test_advance_stale_sequence(client, clock):
    cache = make_cache(client, clock)

    asyncio.run(cache.get(CacheKind.SEQUENCE))
    clock.advance(2 * SEQUENCE_TTL)

    assert cache.advance_sequence() == 8
    assert cache.peek(CacheKind.SEQUENCE) == 8


def test_advance_without_value(client, clock):
    cache = make_cache(client, clock)
    assert cache.advance_sequence() is None
    assert cache.peek(CacheKind.SEQUENCE) is None


def test_refresh_never_rolls_back_sequence(client, clock):
    cache = make_cache(client, clock)

    async def check():
        await cache.get(CacheKind.SEQUENCE)
        cache.advance_sequence()
        cache.advance_sequence()

        # Node has not seen our two submissions yet
        assert await cache.refresh(CacheKind.SEQUENCE) == 9

        # Node is now ahead of us (e.g. another process used the account)
        client.sequence = 12
        assert await cache.refresh(CacheKind.SEQUENCE) == 12

    asyncio.run(check())


def test_refresh_overwrites_fee_rate(client, clock):
    cache = make_cache(client, clock)

    async def check():
        await cache.get(CacheKind.FEE_RATE)
        client.fee_rate = 1
        assert await cache.refresh(CacheKind.FEE_RATE) == 1
        assert await cache.get(CacheKind.FEE_RATE) == (1, True)

    asyncio.run(check())


def test_refresh_bypasses_ttl(client, clock):
    cache = make_cache(client, clock)

    async def check():
        await cache.get(CacheKind.FEE_RATE)
        await cache.refresh(CacheKind.FEE_RATE)

    asyncio.run(check())
    assert client.calls["get_fee_rate"] == 2


def test_fetch_error_is_not_masked(client, clock):
    cache = make_cache(client, clock)

    async def check():
        await cache.get(CacheKind.FEE_RATE)
        clock.advance(FEE_RATE_TTL)

        client.fail_next("get_fee_rate", ConnectionError("node down"))
        with pytest.raises(ParameterFetchError, match="node down"):
            await cache.get(CacheKind.FEE_RATE)

        # Next call retries
        assert await cache.get(CacheKind.FEE_RATE) == (client.fee_rate, False)

    asyncio.run(check())
