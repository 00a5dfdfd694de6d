"""Retry policies and per-call retry state."""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .config import RetrySettings
from .errors import AbortError, ErrorKind, LuminaraError

logger = logging.getLogger("luminara.retry")

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE", "TRACE"})

DEFAULT_RETRY_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})

# Statuses safe to retry even when the method is not idempotent.
SAFE_RETRY_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

RetryPolicy = Callable[[BaseException, "RetryContext"], bool]


@dataclass
class RetryContext:
    """What a retry policy gets to see besides the error."""

    request: Any
    attempt: int
    max_attempts: int
    response: Any = None

    @property
    def method(self) -> str:
        return (getattr(self.request, "method", None) or "GET").upper()


def is_idempotent_method(method: Optional[str]) -> bool:
    return (method or "GET").upper() in IDEMPOTENT_METHODS


def create_retry_policy(
    status_codes: Optional[Iterable[int]] = None,
    idempotent_methods: Iterable[str] = IDEMPOTENT_METHODS,
    should_retry: Optional[RetryPolicy] = None,
) -> RetryPolicy:
    """
    Build a retry predicate.

    Args:
        status_codes: Retryable statuses for idempotent methods; replaces the built-in set
        idempotent_methods: Methods treated as safe to repeat
        should_retry: Custom policy; when given it is returned unchanged

    Returns:
        Callable (error, RetryContext) -> bool
    """
    if should_retry is not None:
        return should_retry

    retryable = frozenset(status_codes) if status_codes is not None else DEFAULT_RETRY_STATUS_CODES
    idempotent = frozenset(m.upper() for m in idempotent_methods)

    def policy(error: BaseException, context: RetryContext) -> bool:
        if context.attempt >= context.max_attempts:
            return False

        is_idempotent = context.method in idempotent
        kind = getattr(error, "kind", None)

        if kind is ErrorKind.TIMEOUT:
            return False
        if isinstance(error, AbortError):
            return not error.user_initiated and is_idempotent
        if kind is ErrorKind.NETWORK:
            return is_idempotent

        status = getattr(error, "status", None)
        if status:
            if not is_idempotent:
                return status in SAFE_RETRY_STATUS_CODES
            return status in retryable
        return False

    return policy


default_retry_policy: RetryPolicy = create_retry_policy()


class RetryState:
    """Tracks retry bookkeeping across the attempts of one call."""

    def __init__(self, settings: RetrySettings, policy: RetryPolicy):
        self.settings = settings
        self.policy = policy
        self.last_error: Optional[LuminaraError] = None
        self.retries = 0
        self.total_delay_ms = 0.0

    @classmethod
    def for_options(cls, options: Any) -> "RetryState":
        """Resolve retry limit and policy from effective options."""
        settings = RetrySettings.from_value(options.retry)
        status_codes = options.retry_status_codes
        if status_codes is None:
            status_codes = settings.status_codes
        policy = create_retry_policy(
            status_codes=status_codes,
            should_retry=options.should_retry or settings.should_retry,
        )
        return cls(settings, policy)

    @property
    def max_attempts(self) -> int:
        return self.settings.limit + 1

    def should_retry(self, error: LuminaraError, request: Any, attempt: int, response: Any = None) -> bool:
        """Consult the policy; the attempt cap applies to custom policies too."""
        self.last_error = error
        if attempt >= self.max_attempts:
            return False
        context = RetryContext(request=request, attempt=attempt, max_attempts=self.max_attempts,
                               response=response)
        decision = bool(self.policy(error, context))
        logger.debug("Retry decision for attempt %d/%d (%s): %s",
                     attempt, self.max_attempts, error.kind.value, decision)
        return decision

    def record(self, delay_ms: float) -> None:
        self.retries += 1
        self.total_delay_ms += delay_ms
