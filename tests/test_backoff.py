from datetime import datetime, timezone

import pytest

from luminara.backoff import (
    MAX_RETRY_AFTER_MS,
    compute_backoff,
    extract_retry_after,
    parse_retry_after,
    resolve_retry_delay,
)
from luminara.errors import ConfigError, HttpError
from luminara.models import Context, PreparedRequest, RequestOptions


def test_linear_keeps_base_delay():
    assert [compute_backoff(n, 1500, "linear") for n in (1, 2, 3)] == [1500, 1500, 1500]


def test_exponential_doubles():
    assert [compute_backoff(n, 100, "exponential") for n in (1, 2, 3, 4)] == [100, 200, 400, 800]


def test_exponential_capped_respects_max_delay():
    assert compute_backoff(10, 100, "exponentialCapped", max_delay_ms=1000) == 1000


def test_fibonacci_sequence():
    assert [compute_backoff(n, 10, "fibonacci") for n in range(1, 7)] == [10, 10, 20, 30, 50, 80]


def test_jitter_strategies_use_random_source():
    assert compute_backoff(1, 1000, "jitter", rand=lambda: 0.5) == 1500
    assert compute_backoff(3, 100, "exponentialJitter", rand=lambda: 0.0) == 400


def test_custom_delays_repeat_last_entry():
    delays = [10, 20, 30]
    assert [compute_backoff(n, 0, "custom", delays=delays) for n in (1, 2, 3, 4, 9)] == [10, 20, 30, 30, 30]


def test_custom_without_delays_and_unknown_strategy_fail():
    with pytest.raises(ConfigError):
        compute_backoff(1, 100, "custom")
    with pytest.raises(ConfigError, match="Unknown backoff strategy"):
        compute_backoff(1, 100, "quadratic")


def test_parse_retry_after_seconds_and_invalid_values():
    assert parse_retry_after("2") == 2000
    assert parse_retry_after("0") == 0
    assert parse_retry_after("soon") == 0
    assert parse_retry_after(None) == 0
    assert parse_retry_after("999999") == MAX_RETRY_AFTER_MS


def test_parse_retry_after_http_date():
    when = datetime(2015, 10, 21, 7, 28, tzinfo=timezone.utc).timestamp()
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", now=when - 10) == pytest.approx(10000)
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", now=when + 10) == 0


def make_context(attempt, error=None):
    request = PreparedRequest(url="http://api.test/x", method="GET", headers={})
    return Context(req=request, attempt=attempt, error=error)


def test_resolve_retry_delay_uses_backoff_strategy():
    options = RequestOptions(retry_delay=100, backoff={"strategy": "exponential"})
    assert resolve_retry_delay(make_context(3), options) == 400


def test_resolve_retry_delay_defaults_to_linear_base():
    assert resolve_retry_delay(make_context(2), RequestOptions()) == 1000
    assert resolve_retry_delay(make_context(2), RequestOptions(retry={"limit": 2, "delay_ms": 250})) == 250


def test_callable_retry_delay_wins():
    options = RequestOptions(retry_delay=lambda ctx: ctx.attempt * 10, backoff={"strategy": "exponential"})
    assert resolve_retry_delay(make_context(4), options) == 40


def test_retry_after_raises_delay():
    error = HttpError("busy", status=503, response={"status": 503, "headers": {"retry-after": "5"}})
    options = RequestOptions(retry_delay=100, backoff={"strategy": "exponential"})
    assert resolve_retry_delay(make_context(2, error), options) == 5000
    assert extract_retry_after(None, error) == 5000


def test_retry_after_lower_than_backoff_is_ignored():
    error = HttpError("busy", status=429, response={"status": 429, "headers": {"retry-after": "1"}})
    assert resolve_retry_delay(make_context(1, error), RequestOptions(retry_delay=3000)) == 3000


def test_backoff_jitter_scales_delay():
    options = RequestOptions(retry_delay=1000, backoff={"strategy": "linear", "jitter": True, "jitter_range": 0.5})
    assert resolve_retry_delay(make_context(1), options, rand=lambda: 1.0) == 1500
    assert resolve_retry_delay(make_context(1), options, rand=lambda: 0.0) == 500
