import asyncio
import gc

import httpx
import pytest

from yield_engine.errors import TransientUpstreamError
from yield_engine.http import HttpClient
from yield_engine.services.cache import AsyncTTLCache, ChainPoolCache, VeSupplyCache

from conftest import FakeClock, raw_pt


class CountingLoader:
    def __init__(self, fail_times: int = 0, delay: float = 0.01):
        self.calls = 0
        self.fail_times = fail_times
        self.delay = delay

    async def __call__(self, key):
        self.calls += 1
        n = self.calls
        await asyncio.sleep(self.delay)
        if n <= self.fail_times:
            raise TransientUpstreamError(f"boom {key}")
        return f"{key}-v{n}"


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_load():
    loader = CountingLoader()
    cache = AsyncTTLCache(loader, ttl_seconds=30, clock=FakeClock())

    results = await asyncio.gather(*(cache.get("base") for _ in range(10)))

    assert loader.calls == 1
    assert set(results) == {"base-v1"}
    assert not cache.is_loading("base")


@pytest.mark.asyncio
async def test_fresh_entry_served_until_ttl_expires():
    clock = FakeClock()
    loader = CountingLoader()
    cache = AsyncTTLCache(loader, ttl_seconds=30, clock=clock)

    assert await cache.get("base") == "base-v1"
    clock.advance(29.9)
    assert await cache.get("base") == "base-v1"
    assert loader.calls == 1

    clock.advance(0.2)
    assert cache.peek("base") is None
    assert await cache.get("base") == "base-v2"
    assert loader.calls == 2


@pytest.mark.asyncio
async def test_keys_are_independent():
    loader = CountingLoader()
    cache = AsyncTTLCache(loader, ttl_seconds=30, clock=FakeClock())

    a, b = await asyncio.gather(cache.get("base"), cache.get("mainnet"))

    assert (a, b) == ("base-v1", "mainnet-v2") or (a, b) == ("base-v2", "mainnet-v1")
    assert loader.calls == 2


@pytest.mark.asyncio
async def test_failure_is_not_cached_and_clears_inflight():
    loader = CountingLoader(fail_times=1)
    cache = AsyncTTLCache(loader, ttl_seconds=30, clock=FakeClock())

    results = await asyncio.gather(cache.get("base"), cache.get("base"), return_exceptions=True)
    assert all(isinstance(r, TransientUpstreamError) for r in results)
    assert loader.calls == 1
    assert not cache.is_loading("base")
    assert cache.peek("base") is None

    assert await cache.get("base") == "base-v2"


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_load():
    loader = CountingLoader(delay=0.05)
    cache = AsyncTTLCache(loader, ttl_seconds=30, clock=FakeClock())

    first = asyncio.ensure_future(cache.get("base"))
    second = asyncio.ensure_future(cache.get("base"))
    await asyncio.sleep(0.01)
    first.cancel()

    assert await second == "base-v1"
    assert loader.calls == 1


@pytest.mark.asyncio
async def test_failed_load_with_no_waiters_left_is_not_reported_unretrieved():
    reported = []
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    loader = CountingLoader(fail_times=1, delay=0.02)
    cache = AsyncTTLCache(loader, ttl_seconds=30, clock=FakeClock())

    waiter = asyncio.ensure_future(cache.get("base"))
    await asyncio.sleep(0.005)
    waiter.cancel()
    while cache.is_loading("base"):
        await asyncio.sleep(0.01)
    del waiter
    gc.collect()

    assert loader.calls == 1
    assert not any("never retrieved" in str(c.get("message")) for c in reported)
    loop.set_exception_handler(None)


@pytest.mark.asyncio
async def test_invalidate_forces_reload():
    loader = CountingLoader()
    cache = AsyncTTLCache(loader, ttl_seconds=30, clock=FakeClock())
    await cache.get("base")
    cache.invalidate("base")
    assert await cache.get("base") == "base-v2"


@pytest.mark.asyncio
async def test_chain_pool_cache_fetches_once_per_window(settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={"data": [raw_pt(address="0xa"), {"address": "", "maturity": 1}]})

    http = HttpClient(settings, transport=httpx.MockTransport(handler))
    clock = FakeClock()
    cache = ChainPoolCache(http, settings, clock)

    first, second = await asyncio.gather(cache.get("base"), cache.get("base"))
    assert [pt.address for pt in first] == ["0xa"]
    assert first is second
    assert calls == ["/v1/base/pools"]

    clock.advance(settings.POOL_CACHE_TTL_SECONDS + 1)
    await cache.get("base")
    assert len(calls) == 2
    await http.aclose()


@pytest.mark.asyncio
async def test_ve_supply_cache_reads_total_supply(settings):
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(request.read())
        # 1,234,000 * 1e18
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": hex(1_234_000 * 10**18)})

    http = HttpClient(settings, transport=httpx.MockTransport(handler))
    cache = VeSupplyCache(http, settings, FakeClock())

    assert await cache.get() == pytest.approx(1_234_000)
    assert await cache.get() == pytest.approx(1_234_000)
    assert len(bodies) == 1
    assert b"0x18160ddd" in bodies[0]
    await http.aclose()
