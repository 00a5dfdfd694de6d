"""Retry delay strategies and Retry-After handling."""

import logging
import random
import time
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from .config import DEFAULT_RETRY_DELAY_MS, BackoffConfig, RetrySettings, coerce_block
from .errors import ConfigError

logger = logging.getLogger("luminara.backoff")

MAX_RETRY_AFTER_MS = 300000.0


class BackoffStrategy(str, Enum):
    """Named delay strategies."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    EXPONENTIAL_CAPPED = "exponentialCapped"
    FIBONACCI = "fibonacci"
    JITTER = "jitter"
    EXPONENTIAL_JITTER = "exponentialJitter"
    CUSTOM = "custom"


def _fib(n: int) -> int:
    a, b = 0, 1
    for _ in range(max(n, 0)):
        a, b = b, a + b
    return a


def compute_backoff(
    attempt: int,
    base_ms: float = DEFAULT_RETRY_DELAY_MS,
    strategy: Any = BackoffStrategy.LINEAR,
    max_delay_ms: float = 30000.0,
    delays: Optional[Sequence[float]] = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Calculate the delay before the next attempt.

    Args:
        attempt: Number of the attempt that just failed (>= 1)
        base_ms: Base delay in milliseconds
        strategy: Strategy name or BackoffStrategy
        max_delay_ms: Cap for the capped strategies
        delays: Delay table for the custom strategy
        rand: Source of uniform [0, 1) values

    Returns:
        Delay in milliseconds
    """
    n = max(int(attempt), 1)
    try:
        strategy = BackoffStrategy(strategy or BackoffStrategy.LINEAR)
    except ValueError:
        raise ConfigError(f"Unknown backoff strategy: {strategy!r}") from None

    if strategy is BackoffStrategy.LINEAR:
        return base_ms
    if strategy is BackoffStrategy.EXPONENTIAL:
        return (2 ** (n - 1)) * base_ms
    if strategy is BackoffStrategy.EXPONENTIAL_CAPPED:
        return min((2 ** (n - 1)) * base_ms, max_delay_ms)
    if strategy is BackoffStrategy.FIBONACCI:
        return _fib(n) * base_ms
    if strategy is BackoffStrategy.JITTER:
        return base_ms + rand() * base_ms
    if strategy is BackoffStrategy.EXPONENTIAL_JITTER:
        return min((2 ** (n - 1)) * base_ms, max_delay_ms) + rand() * base_ms
    if not delays:
        raise ConfigError('backoff strategy "custom" requires a non-empty delays list')
    return float(delays[min(n - 1, len(delays) - 1)])


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> float:
    """
    Parse a Retry-After header into milliseconds.

    Accepts delta-seconds or an HTTP-date. Invalid or past values give 0;
    the result is capped at five minutes.
    """
    if not value:
        return 0.0
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if seconds > 0:
            return min(seconds * 1000.0, MAX_RETRY_AFTER_MS)
        return 0.0

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return 0.0
    if when is None:
        return 0.0
    current = time.time() if now is None else now
    delay = (when.timestamp() - current) * 1000.0
    return max(0.0, min(delay, MAX_RETRY_AFTER_MS))


def extract_retry_after(response: Any, error: Any = None) -> float:
    """Retry-After delay (ms) from a raw response or an error's response snapshot; 0 when absent."""
    for source in (response, getattr(error, "response", None)):
        headers = source.get("headers") if isinstance(source, dict) else getattr(source, "headers", None)
        if not headers:
            continue
        value = headers.get("retry-after") or headers.get("Retry-After")
        if value:
            return parse_retry_after(value)
    return 0.0


def resolve_retry_delay(ctx: Any, options: Any, response: Any = None,
                        rand: Callable[[], float] = random.random) -> float:
    """
    Delay before the attempt following ctx.attempt.

    Precedence: a callable retry_delay, then backoff.strategy, then linear.
    The result is raised to any Retry-After the server sent.

    Args:
        ctx: The call context (attempt, req, error, res)
        options: Effective RequestOptions of the call
        response: Last raw response, consulted for Retry-After
        rand: Source of uniform [0, 1) values

    Returns:
        Delay in milliseconds
    """
    retry_delay = options.retry_delay
    settings = RetrySettings.from_value(options.retry) if options.retry is not None else None
    if retry_delay is None and settings is not None:
        retry_delay = settings.delay_ms

    backoff = coerce_block(BackoffConfig, options.backoff)
    if backoff is not None:
        backoff.validate()

    if callable(retry_delay):
        delay = float(retry_delay(ctx))
    else:
        base = float(retry_delay) if retry_delay is not None else DEFAULT_RETRY_DELAY_MS
        if backoff is not None:
            delay = compute_backoff(
                ctx.attempt, base, backoff.strategy, backoff.max_delay_ms, backoff.delays, rand
            )
        else:
            delay = base

    if backoff is not None and backoff.jitter and backoff.jitter_range:
        delay *= 1 + (rand() * 2 - 1) * backoff.jitter_range

    retry_after = extract_retry_after(response, ctx.error)
    if retry_after > delay:
        logger.debug("Retry-After %.0fms exceeds backoff %.0fms", retry_after, delay)
    return max(delay, retry_after, 0.0)
