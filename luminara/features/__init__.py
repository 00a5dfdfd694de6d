"""Pre-flight and in-flight resilience features."""

from .debounce import DebounceSlot, Debouncer
from .dedupe import CompletedEntry, Deduplicator, InFlightEntry, RequestCache
from .hedging import AttemptOutcome, HedgingAttempt, HedgingCoordinator, hedge_delays, rotate_server_url
from .rate_limit import GLOBAL_KEY, NO_LIMIT_KEY, RateLimiter, TokenBucket, derive_scope_key

__all__ = [
    "Debouncer",
    "DebounceSlot",
    "RequestCache",
    "InFlightEntry",
    "CompletedEntry",
    "Deduplicator",
    "HedgingCoordinator",
    "HedgingAttempt",
    "AttemptOutcome",
    "hedge_delays",
    "rotate_server_url",
    "TokenBucket",
    "RateLimiter",
    "derive_scope_key",
    "NO_LIMIT_KEY",
    "GLOBAL_KEY",
]
