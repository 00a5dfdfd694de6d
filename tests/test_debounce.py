import asyncio

import pytest

from fakes import run_async
from luminara.cancellation import CancellationSource, CancelReason
from luminara.config import DebounceConfig
from luminara.errors import AbortError, ConfigError
from luminara.features.debounce import Debouncer
from luminara.models import PreparedRequest


def make_request(seq=0, url="http://api.test/q?x=1", method="GET", token=None):
    return PreparedRequest(url=url, method=method, headers={"X-Seq": str(seq)}, cancellation_token=token)


class Recorder:
    def __init__(self):
        self.seen = []

    async def __call__(self, prepared):
        self.seen.append(prepared.headers["X-Seq"])
        return prepared.headers["X-Seq"]


def test_newer_request_supersedes_pending_ones():
    async def scenario():
        debouncer = Debouncer()
        thunk = Recorder()
        config = DebounceConfig(delay_ms=100).validate()
        tasks = [asyncio.ensure_future(debouncer.process(make_request(1), thunk, config))]
        await asyncio.sleep(0.05)
        tasks.append(asyncio.ensure_future(debouncer.process(make_request(2), thunk, config)))
        await asyncio.sleep(0.03)
        tasks.append(asyncio.ensure_future(debouncer.process(make_request(3), thunk, config)))
        results = await asyncio.gather(*tasks, return_exceptions=True)
        return results, thunk.seen, debouncer.stats()

    results, seen, stats = run_async(scenario())
    assert seen == ["3"]
    assert results[2] == "3"
    for error in results[:2]:
        assert isinstance(error, AbortError)
        assert error.reason is CancelReason.DEBOUNCE_REPLACED
        assert "replaced" in error.message
    assert stats == {"pending": 0, "replaced": 2, "executed": 1}


def test_distinct_keys_do_not_interfere():
    async def scenario():
        debouncer = Debouncer()
        thunk = Recorder()
        config = DebounceConfig(delay_ms=10).validate()
        return await asyncio.gather(
            debouncer.process(make_request(1, url="http://api.test/a"), thunk, config),
            debouncer.process(make_request(2, url="http://api.test/b"), thunk, config),
        )

    assert run_async(scenario()) == ["1", "2"]


def test_method_filter_runs_other_methods_immediately():
    async def scenario():
        debouncer = Debouncer()
        thunk = Recorder()
        config = DebounceConfig(delay_ms=1000, methods=["GET"]).validate()
        return await asyncio.wait_for(debouncer.process(make_request(7, method="POST"), thunk, config), 0.5)

    assert run_async(scenario()) == "7"


def test_caller_abort_rejects_pending_slot():
    async def scenario():
        debouncer = Debouncer()
        thunk = Recorder()
        config = DebounceConfig(delay_ms=1000).validate()
        source = CancellationSource()
        task = asyncio.ensure_future(debouncer.process(make_request(1, token=source.token), thunk, config))
        await asyncio.sleep(0.01)
        source.cancel(CancelReason.USER_ABORT)
        with pytest.raises(AbortError) as info:
            await task
        return info.value, thunk.seen, debouncer.pending

    error, seen, pending = run_async(scenario())
    assert error.reason is CancelReason.USER_ABORT
    assert seen == []
    assert pending == {}


def test_cancel_all_rejects_with_shutdown():
    async def scenario():
        debouncer = Debouncer()
        config = DebounceConfig(delay_ms=1000).validate()
        task = asyncio.ensure_future(debouncer.process(make_request(1), Recorder(), config))
        await asyncio.sleep(0.01)
        debouncer.cancel_all()
        with pytest.raises(AbortError) as info:
            await task
        return info.value

    error = run_async(scenario())
    assert error.reason is CancelReason.SHUTDOWN
    assert "shutdown" in error.message


def test_negative_delay_is_config_error():
    with pytest.raises(ConfigError):
        DebounceConfig(delay_ms=-1).validate()
