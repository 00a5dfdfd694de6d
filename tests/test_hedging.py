import asyncio

import pytest

from fakes import run_async
from luminara.cancellation import CancellationSource, CancelReason, OperationCancelled, run_cancellable
from luminara.config import HedgingConfig
from luminara.errors import ConfigError, HedgingError, NetworkError
from luminara.features.hedging import AttemptOutcome, HedgingCoordinator, hedge_delays, rotate_server_url
from luminara.models import PreparedRequest


def make_request(url="https://a.test/v1/x?q=1", token=None):
    return PreparedRequest(url=url, method="GET", headers={}, cancellation_token=token)


def scripted(durations, failures=()):
    """send() where attempt N takes durations[N] seconds and fails when N is in failures."""
    seen = []

    async def send(prepared, attempt):
        seen.append((attempt.type, prepared.url))
        await run_cancellable(asyncio.sleep(durations[attempt.index]), prepared.cancellation_token)
        if attempt.index in failures:
            raise NetworkError(f"{attempt.type} failed")
        return attempt.type

    return send, seen


def test_hedge_delays_with_exponential_backoff_and_jitter():
    config = HedgingConfig(hedge_delay_ms=100, max_hedges=3, exponential_backoff=True,
                           backoff_multiplier=2, jitter=False)
    assert hedge_delays(config) == [100, 200, 400]
    jittered = HedgingConfig(hedge_delay_ms=100, max_hedges=1, jitter=True, jitter_range=0.2)
    assert hedge_delays(jittered, rand=lambda: 1.0) == [pytest.approx(120)]
    assert hedge_delays(jittered, rand=lambda: 0.0) == [pytest.approx(80)]


def test_rotate_server_url():
    servers = ["https://a.test", "https://b.test", "https://c.test/mirror"]
    url = "https://a.test/v1/x?q=1"
    assert rotate_server_url(url, servers, 0) == url
    assert rotate_server_url(url, servers, 1) == "https://b.test/v1/x?q=1"
    assert rotate_server_url(url, servers, 2) == "https://c.test/mirror/v1/x?q=1"
    assert rotate_server_url(url, servers, 4) == "https://b.test/v1/x?q=1"
    assert rotate_server_url(url, None, 3) == url


def test_invalid_policy_is_config_error():
    with pytest.raises(ConfigError):
        HedgingConfig(policy="fastest").validate()
    with pytest.raises(ConfigError):
        HedgingConfig(max_hedges=-1).validate()


def test_race_primary_wins_and_hedges_are_aborted():
    async def scenario():
        config = HedgingConfig(policy="race", hedge_delay_ms=20, max_hedges=2, jitter=False)
        send, seen = scripted([0.1, 0.3, 0.3])
        coordinator = HedgingCoordinator(config, send)
        result, info = await coordinator.execute(make_request())
        return result, info, coordinator.attempts, seen

    result, info, attempts, seen = run_async(scenario())
    assert result == "primary"
    assert info.winner == "primary"
    assert info.latency_saved_ms == 0
    assert info.total_attempts == 3
    assert [t for t, _ in seen] == ["primary", "hedge-1", "hedge-2"]
    assert attempts[0].outcome is AttemptOutcome.WIN
    assert not attempts[0].token.cancelled
    for hedge in attempts[1:]:
        assert hedge.outcome is AttemptOutcome.LOSE
        assert hedge.token.reason is CancelReason.HEDGE_LOSER


def test_race_hedge_wins_when_primary_is_slow():
    async def scenario():
        config = HedgingConfig(policy="race", hedge_delay_ms=20, max_hedges=2, jitter=False)
        send, _ = scripted([0.5, 0.02, 0.5])
        coordinator = HedgingCoordinator(config, send)
        result, info = await coordinator.execute(make_request())
        return result, info, coordinator.attempts

    result, info, attempts = run_async(scenario())
    assert result == "hedge-1"
    assert info.winner == "hedge-1"
    assert info.latency_saved_ms > 0
    assert attempts[0].token.reason is CancelReason.HEDGE_LOSER
    assert not attempts[1].token.cancelled


def test_race_keeps_going_after_a_failed_attempt():
    async def scenario():
        config = HedgingConfig(policy="race", hedge_delay_ms=10, max_hedges=1, jitter=False)
        send, _ = scripted([0.0, 0.02], failures={0})
        coordinator = HedgingCoordinator(config, send)
        return await coordinator.execute(make_request())

    result, info = run_async(scenario())
    assert result == "hedge-1"


def test_race_all_failures_raise_hedging_error():
    async def scenario():
        config = HedgingConfig(policy="race", hedge_delay_ms=5, max_hedges=2, jitter=False)
        send, _ = scripted([0.0, 0.0, 0.0], failures={0, 1, 2})
        with pytest.raises(HedgingError) as info:
            await HedgingCoordinator(config, send).execute(make_request())
        return info.value

    error = run_async(scenario())
    assert error.policy == "race"
    assert sorted(name for name, _ in error.attempts) == ["hedge-1", "hedge-2", "primary"]
    assert isinstance(error.cause, NetworkError)


def test_cancel_and_retry_aborts_slow_attempt_before_next():
    async def scenario():
        config = HedgingConfig(policy="cancel-and-retry", hedge_delay_ms=30, max_hedges=2, jitter=False)
        send, seen = scripted([1.0, 0.0, 1.0])
        coordinator = HedgingCoordinator(config, send)
        result, info = await coordinator.execute(make_request())
        return result, info, coordinator.attempts, seen

    result, info, attempts, seen = run_async(scenario())
    assert result == "hedge-1"
    assert info.policy == "cancel-and-retry"
    assert [t for t, _ in seen] == ["primary", "hedge-1"]
    assert attempts[0].token.reason is CancelReason.HEDGE_LOSER
    assert not attempts[1].token.cancelled


def test_cancel_and_retry_last_attempt_has_no_window():
    async def scenario():
        config = HedgingConfig(policy="cancel-and-retry", hedge_delay_ms=10, max_hedges=1, jitter=False)
        send, _ = scripted([1.0, 0.05])
        return await HedgingCoordinator(config, send).execute(make_request())

    result, _ = run_async(scenario())
    assert result == "hedge-1"


def test_cancel_and_retry_exhaustion():
    async def scenario():
        config = HedgingConfig(policy="cancel-and-retry", hedge_delay_ms=50, max_hedges=2, jitter=False)
        send, seen = scripted([0.0, 0.0, 0.0], failures={0, 1, 2})
        with pytest.raises(HedgingError) as info:
            await HedgingCoordinator(config, send).execute(make_request())
        return info.value, seen

    error, seen = run_async(scenario())
    assert len(error.attempts) == 3
    assert len(seen) == 3


def test_parent_cancellation_wins_over_hedging_error():
    async def scenario():
        config = HedgingConfig(policy="race", hedge_delay_ms=5, max_hedges=2, jitter=False)
        send, _ = scripted([1.0, 1.0, 1.0])
        parent = CancellationSource()
        asyncio.get_running_loop().call_later(0.03, parent.cancel, CancelReason.USER_ABORT)
        with pytest.raises(OperationCancelled) as info:
            await HedgingCoordinator(config, send).execute(make_request(token=parent.token))
        return info.value

    assert run_async(scenario()).reason is CancelReason.USER_ABORT


def test_attempts_rotate_across_servers():
    async def scenario():
        config = HedgingConfig(policy="race", hedge_delay_ms=5, max_hedges=2, jitter=False,
                               servers=["https://a.test", "https://b.test"])
        send, seen = scripted([0.2, 0.2, 0.01])
        await HedgingCoordinator(config, send).execute(make_request())
        return seen

    seen = run_async(scenario())
    assert [url for _, url in seen] == [
        "https://a.test/v1/x?q=1",
        "https://b.test/v1/x?q=1",
        "https://a.test/v1/x?q=1",
    ]


def test_per_attempt_timeout_fails_single_attempt():
    async def scenario():
        config = HedgingConfig(policy="race", hedge_delay_ms=10, max_hedges=1, jitter=False,
                               per_attempt_timeout_ms=20)
        send, _ = scripted([1.0, 0.0])
        coordinator = HedgingCoordinator(config, send)
        result, _ = await coordinator.execute(make_request())
        return result

    assert run_async(scenario()) == "hedge-1"
