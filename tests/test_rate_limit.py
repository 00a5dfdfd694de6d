import asyncio
import re
import time

import pytest

from fakes import run_async
from luminara.cancellation import CancellationSource, OperationCancelled
from luminara.config import RateLimitConfig
from luminara.errors import AbortError, ConfigError, RateLimitDroppedError
from luminara.features.rate_limit import (
    GLOBAL_KEY,
    NO_LIMIT_KEY,
    RateLimiter,
    TokenBucket,
    derive_scope_key,
)
from luminara.models import PreparedRequest


def make_request(url="http://api.test/items", seq=0, token=None):
    return PreparedRequest(url=url, method="GET", headers={"X-Seq": str(seq)}, cancellation_token=token)


def settings(**kwargs):
    return RateLimitConfig(**kwargs).normalize()


def test_normalize_rate_forms():
    assert settings(rps=5).tokens_per_ms == pytest.approx(0.005)
    per_minute = settings(rpm=120)
    assert per_minute.window_ms == 60000
    assert per_minute.burst == 120
    custom = settings(limit=10, window_ms=2000, burst=3)
    assert custom.tokens_per_ms == pytest.approx(0.005)
    assert custom.burst == 3


def test_invalid_rate_limit_configs():
    with pytest.raises(ConfigError, match="requires rps, rpm"):
        settings()
    with pytest.raises(ConfigError):
        settings(rps=1, scope="planet")
    with pytest.raises(ConfigError):
        settings(rps=1, burst=0.5)


def test_bucket_refills_lazily_up_to_burst():
    now = [0.0]
    bucket = TokenBucket(settings(rps=10, burst=2), clock=lambda: now[0])
    bucket.take()
    bucket.take()
    assert not bucket.has_token()
    now[0] = 0.05
    assert bucket.refill() == pytest.approx(0.5)
    now[0] = 10.0
    assert bucket.refill() == 2


def test_scope_keys():
    url = "https://api.test/v1/users?page=2"
    assert derive_scope_key(url, settings(rps=1)) == GLOBAL_KEY
    assert derive_scope_key(url, settings(rps=1, scope="domain")) == "api.test"
    assert derive_scope_key(url, settings(rps=1, scope="endpoint")) == "https://api.test/v1/users"


def test_include_and_exclude_patterns():
    limited = settings(rps=1, include=["/v1/*"], exclude=[re.compile(r"/health$")])
    assert derive_scope_key("http://api.test/v1/users", limited) == GLOBAL_KEY
    assert derive_scope_key("http://api.test/v2/users", limited) == NO_LIMIT_KEY
    assert derive_scope_key("http://api.test/v1/health", limited) == NO_LIMIT_KEY
    exact = settings(rps=1, exclude=["/status"])
    assert derive_scope_key("http://api.test/status", exact) == NO_LIMIT_KEY
    assert derive_scope_key("http://api.test/status/x", exact) == GLOBAL_KEY


def test_queued_requests_dispatch_in_fifo_order():
    async def scenario():
        limiter = RateLimiter(settings(rps=20, burst=1))
        started = time.monotonic()
        dispatched = []

        async def thunk(prepared):
            dispatched.append((prepared.headers["X-Seq"], time.monotonic() - started))
            return prepared.headers["X-Seq"]

        results = await asyncio.gather(*[limiter.schedule(make_request(seq=i), thunk) for i in range(3)])
        return results, dispatched, limiter.stats()

    results, dispatched, stats = run_async(scenario())
    assert results == ["0", "1", "2"]
    assert [seq for seq, _ in dispatched] == ["0", "1", "2"]
    assert dispatched[0][1] < 0.04
    assert dispatched[1][1] - dispatched[0][1] >= 0.04
    assert dispatched[2][1] - dispatched[1][1] >= 0.04
    assert stats["dispatched"] == 3
    assert stats["queued"] == 2
    assert stats["in_flight"] == 0


def test_unlimited_paths_bypass_buckets():
    async def scenario():
        limiter = RateLimiter(settings(rps=1, burst=1, exclude=["/free"]))

        async def thunk(prepared):
            return prepared.url

        return await asyncio.wait_for(
            asyncio.gather(*[limiter.schedule(make_request("http://api.test/free"), thunk) for _ in range(5)]),
            0.5,
        )

    assert len(run_async(scenario())) == 5


def test_full_queue_drops_requests():
    async def scenario():
        limiter = RateLimiter(settings(rps=1, burst=1, queue_limit=1))

        async def thunk(prepared):
            return prepared.headers["X-Seq"]

        first = await limiter.schedule(make_request(seq=1), thunk)
        queued = asyncio.ensure_future(limiter.schedule(make_request(seq=2), thunk))
        await asyncio.sleep(0)
        with pytest.raises(RateLimitDroppedError):
            await limiter.schedule(make_request(seq=3), thunk)
        limiter.shutdown()
        with pytest.raises(AbortError) as info:
            await queued
        return first, info.value, limiter.stats()

    first, error, stats = run_async(scenario())
    assert first == "1"
    assert "shutdown" in error.message
    assert stats["dropped"] == 1


def test_cancelled_ticket_leaves_the_queue():
    async def scenario():
        limiter = RateLimiter(settings(rps=1, burst=1))

        async def thunk(prepared):
            return True

        await limiter.schedule(make_request(), thunk)
        source = CancellationSource()
        waiting = asyncio.ensure_future(limiter.schedule(make_request(token=source.token), thunk))
        await asyncio.sleep(0.01)
        assert limiter.total_queued() == 1
        source.cancel()
        with pytest.raises(OperationCancelled):
            await waiting
        queued_after = limiter.total_queued()
        limiter.shutdown()
        return queued_after

    assert run_async(scenario()) == 0


def test_max_concurrent_holds_requests_until_release():
    async def scenario():
        limiter = RateLimiter(settings(rps=1000, burst=10, max_concurrent=1))
        active = []
        peak = []

        async def thunk(prepared):
            active.append(1)
            peak.append(len(active))
            await asyncio.sleep(0.02)
            active.pop()
            return True

        await asyncio.gather(*[limiter.schedule(make_request(seq=i), thunk) for i in range(3)])
        return max(peak)

    assert run_async(scenario()) == 1


def test_shutdown_rejects_new_requests():
    async def scenario():
        limiter = RateLimiter(settings(rps=1))
        limiter.shutdown()

        async def thunk(prepared):
            return True

        with pytest.raises(AbortError):
            await limiter.schedule(make_request(), thunk)
        return limiter.is_shutdown

    assert run_async(scenario())


def test_update_reconfigures_rate():
    limiter = RateLimiter.from_config({"rps": 1, "burst": 1})
    limiter.update({"rps": 50})
    assert limiter.settings.limit == 50
    assert limiter.settings.burst == 50
    limiter.update({"burst": 5})
    assert limiter.settings.limit == 50
    assert limiter.settings.burst == 5
