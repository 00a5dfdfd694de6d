"""Token-bucket rate limiting with FIFO queues."""

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Mapping, Optional, Sequence

from ..cancellation import CancelReason, OperationCancelled, run_cancellable
from ..config import PathPattern, RateLimitConfig, RateLimitSettings, coerce_block
from ..errors import AbortError, RateLimitDroppedError, request_snapshot
from ..models import PreparedRequest
from ..url import split_url

logger = logging.getLogger("luminara.features.rate_limit")

NO_LIMIT_KEY = "__no_limit__"
GLOBAL_KEY = "__global__"

Thunk = Callable[[PreparedRequest], Awaitable[Any]]


def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    return re.compile("^" + re.escape(pattern).replace(r"\*", ".*") + "$")


def matches_patterns(path: str, patterns: Optional[Sequence[PathPattern]]) -> bool:
    """Exact strings, `*` globs or compiled regexes (searched) against a path."""
    for pattern in patterns or ():
        if isinstance(pattern, re.Pattern):
            if pattern.search(path):
                return True
        elif "*" in pattern:
            if _glob_to_regex(pattern).match(path):
                return True
        elif path == pattern:
            return True
    return False


def derive_scope_key(url: str, settings: RateLimitSettings) -> str:
    """
    Bucket key of a resolved url.

    Paths outside include, or inside exclude, get NO_LIMIT_KEY. Otherwise
    global scope shares one bucket, domain scope buckets by hostname and
    endpoint scope by origin + path.
    """
    origin, hostname, path, _ = split_url(url)

    if settings.include is not None or settings.exclude is not None:
        included = matches_patterns(path, settings.include) if settings.include is not None else True
        excluded = matches_patterns(path, settings.exclude) if settings.exclude is not None else False
        if not included or excluded:
            return NO_LIMIT_KEY

    if settings.scope == "domain":
        return hostname
    if settings.scope == "endpoint":
        return origin + path
    return GLOBAL_KEY


@dataclass(eq=False)
class Ticket:
    """A queued request waiting for a token."""

    key: str
    grant: "asyncio.Future[None]"
    enqueued_at: float
    bucket: Optional["TokenBucket"] = None


class TokenBucket:
    """Lazily refilled token bucket with its own FIFO queue."""

    def __init__(self, settings: RateLimitSettings, clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self._clock = clock
        self.tokens = settings.burst
        self.last_refill = self._now_ms()
        self.queue: Deque[Ticket] = deque()
        self.inflight = 0

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def refill(self) -> float:
        now = self._now_ms()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.settings.burst, self.tokens + elapsed * self.settings.tokens_per_ms)
        self.last_refill = now
        return self.tokens

    def has_token(self) -> bool:
        return self.refill() >= 1

    def take(self) -> None:
        self.tokens -= 1
        self.inflight += 1

    def release(self) -> None:
        self.inflight -= 1


class RateLimiter:
    """
    Schedules requests through per-scope token buckets.

    Requests that cannot go immediately wait in their bucket's FIFO queue; a
    sweep task drains the queues every tick_ms and stops once they are empty.
    """

    def __init__(self, settings: RateLimitSettings, clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self._clock = clock
        self.buckets: Dict[str, TokenBucket] = {}
        self.queued = 0
        self.dispatched = 0
        self.dropped = 0
        self.in_flight = 0
        self._sweeper: Optional["asyncio.Task[None]"] = None
        self._shutdown = False

    @classmethod
    def from_config(cls, config: Any, clock: Callable[[], float] = time.monotonic) -> "RateLimiter":
        return cls(coerce_block(RateLimitConfig, config).normalize(), clock)

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def key_for(self, prepared: PreparedRequest) -> str:
        return derive_scope_key(prepared.url, self.settings)

    def _bucket(self, key: str) -> TokenBucket:
        bucket = self.buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(self.settings, self._clock)
            self.buckets[key] = bucket
            logger.debug("Created rate limit bucket %s", key)
        return bucket

    def _can_dispatch(self, bucket: TokenBucket) -> bool:
        max_concurrent = self.settings.max_concurrent
        if max_concurrent is not None and self.in_flight >= max_concurrent:
            return False
        return bucket.has_token()

    def _grant(self, bucket: TokenBucket) -> None:
        bucket.take()
        self.in_flight += 1
        self.dispatched += 1

    def _finish(self, bucket: TokenBucket) -> None:
        bucket.release()
        self.in_flight -= 1

    def total_queued(self) -> int:
        return sum(len(bucket.queue) for bucket in self.buckets.values())

    async def schedule(self, prepared: PreparedRequest, thunk: Thunk) -> Any:
        """
        Run thunk once a token is available for the request's bucket.

        Raises:
            RateLimitDroppedError: The queue is full
            AbortError: The limiter was shut down while the request was queued
            OperationCancelled: The request's token fired while queued
        """
        if self._shutdown:
            raise AbortError("Rate limiter is shutdown", reason=CancelReason.SHUTDOWN,
                             request=request_snapshot(prepared))

        key = self.key_for(prepared)
        if key == NO_LIMIT_KEY:
            return await thunk(prepared)

        bucket = self._bucket(key)
        if not bucket.queue and self._can_dispatch(bucket):
            self._grant(bucket)
            logger.debug("Immediate dispatch for %s, %.2f tokens left", key, bucket.tokens)
        else:
            bucket = await self._wait_in_queue(key, bucket, prepared)

        try:
            return await thunk(prepared)
        finally:
            self._finish(bucket)

    async def _wait_in_queue(self, key: str, bucket: TokenBucket, prepared: PreparedRequest) -> TokenBucket:
        queue_limit = self.settings.queue_limit
        if queue_limit is not None and self.total_queued() >= queue_limit:
            self.dropped += 1
            logger.warning("Rate limit queue full (%d), dropping %s %s", queue_limit, prepared.method, prepared.url)
            raise RateLimitDroppedError("Rate limit queue is full", request=request_snapshot(prepared))

        ticket = Ticket(key=key, grant=asyncio.get_running_loop().create_future(), enqueued_at=self._clock())
        bucket.queue.append(ticket)
        self.queued += 1
        logger.debug("Queued request for %s (queue length %d)", key, len(bucket.queue))
        self._start_sweep()

        try:
            await run_cancellable(asyncio.shield(ticket.grant), prepared.cancellation_token)
        except (OperationCancelled, asyncio.CancelledError):
            self._abandon(ticket)
            raise
        return ticket.bucket or bucket

    def _abandon(self, ticket: Ticket) -> None:
        if ticket.grant.done():
            if ticket.bucket is not None and not ticket.grant.cancelled() and ticket.grant.exception() is None:
                self._finish(ticket.bucket)
            return
        ticket.grant.cancel()
        bucket = self.buckets.get(ticket.key)
        if bucket is not None and ticket in bucket.queue:
            bucket.queue.remove(ticket)

    def _start_sweep(self) -> None:
        if self._sweeper is None and not self._shutdown:
            self._sweeper = asyncio.ensure_future(self._sweep())

    async def _sweep(self) -> None:
        try:
            while not self._shutdown:
                await asyncio.sleep(self.settings.tick_ms / 1000.0)
                self.process_queues()
                if not self.total_queued():
                    break
        finally:
            self._sweeper = None

    def process_queues(self) -> None:
        """Dispatch as many queued tickets as tokens and concurrency allow."""
        for key, bucket in list(self.buckets.items()):
            while bucket.queue and self._can_dispatch(bucket):
                ticket = bucket.queue.popleft()
                if ticket.grant.done():
                    continue
                self._grant(bucket)
                ticket.bucket = bucket
                ticket.grant.set_result(None)
                logger.debug("Dispatching queued request for %s, %.2f tokens left", key, bucket.tokens)

    def update(self, partial: Mapping[str, Any]) -> None:
        """
        Reconfigure at runtime.

        Buckets are rebuilt with the new settings; queued tickets keep their
        order and move to the new bucket for their key.
        """
        current = asdict(self.settings)
        current.pop("tokens_per_ms")
        overrides = {name: value for name, value in dict(partial).items() if value is not None}
        if {"rps", "rpm", "limit"} & overrides.keys():
            for name in ("limit", "window_ms", "burst"):
                current.pop(name)
        current.update(overrides)
        self.settings = coerce_block(RateLimitConfig, current).normalize()

        old = self.buckets
        self.buckets = {}
        for key, bucket in old.items():
            if bucket.queue:
                self._bucket(key).queue.extend(bucket.queue)
        logger.debug("Rate limiter reconfigured: %s", self.settings)

    def stats(self) -> Dict[str, Any]:
        return {
            "queued": self.queued,
            "dispatched": self.dispatched,
            "dropped": self.dropped,
            "in_flight": self.in_flight,
            "buckets": {
                key: {
                    "tokens": round(bucket.tokens, 2),
                    "queued": len(bucket.queue),
                    "in_flight": bucket.inflight,
                }
                for key, bucket in self.buckets.items()
            },
            "config": asdict(self.settings),
        }

    def reset_stats(self) -> None:
        self.queued = self.dispatched = self.dropped = 0

    def shutdown(self) -> None:
        """Stop the sweep and reject every queued ticket with a SHUTDOWN AbortError."""
        if self._shutdown:
            return
        self._shutdown = True
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
        for bucket in self.buckets.values():
            while bucket.queue:
                ticket = bucket.queue.popleft()
                if not ticket.grant.done():
                    ticket.grant.set_exception(
                        AbortError("Rate limiter shutdown", reason=CancelReason.SHUTDOWN)
                    )
        self.buckets.clear()
        logger.debug("Rate limiter shut down")
