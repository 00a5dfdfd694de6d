"""Coalescing of identical requests."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..cancellation import CancellationSource, CancellationToken, CancelReason, OperationCancelled, run_cancellable
from ..config import DedupeConfig
from ..errors import USER_INITIATED_REASONS, AbortError
from ..keys import derive_key
from ..models import PreparedRequest

logger = logging.getLogger("luminara.features.dedupe")

Thunk = Callable[[PreparedRequest], Awaitable[Any]]


@dataclass
class InFlightEntry:
    task: "asyncio.Future[Any]"
    started_at: float
    waiters: int = 1
    source: Optional[CancellationSource] = None


@dataclass
class CompletedEntry:
    result: Any
    is_error: bool
    completed_at: float


class RequestCache:
    """
    In-flight and recently completed results keyed by request identity.

    A key lives in at most one of the two maps. Completed entries expire
    after the TTL and are evicted oldest first beyond max_size.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.inflight: Dict[str, InFlightEntry] = {}
        self.completed: Dict[str, CompletedEntry] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def get(self, key: str, ttl_ms: float) -> Optional[Tuple[str, Any]]:
        entry = self.inflight.get(key)
        if entry is not None:
            return "in-flight", entry

        if ttl_ms > 0:
            done = self.completed.get(key)
            if done is not None:
                if self._now_ms() - done.completed_at <= ttl_ms:
                    return "completed", done
                del self.completed[key]
        return None

    def set(self, key: str, task: "asyncio.Future[Any]",
            source: Optional[CancellationSource] = None) -> InFlightEntry:
        self.completed.pop(key, None)
        entry = InFlightEntry(task=task, started_at=self._now_ms(), source=source)
        self.inflight[key] = entry
        return entry

    def add_waiter(self, key: str) -> int:
        entry = self.inflight.get(key)
        if entry is None:
            return 0
        entry.waiters += 1
        return entry.waiters

    def complete(self, key: str, result: Any, is_error: bool = False) -> None:
        self.inflight.pop(key, None)
        self.completed[key] = CompletedEntry(result=result, is_error=is_error, completed_at=self._now_ms())

    def delete(self, key: str) -> None:
        self.inflight.pop(key, None)
        self.completed.pop(key, None)

    def cleanup(self, ttl_ms: float, max_size: int) -> None:
        """Drop expired completed entries, then trim to max_size oldest first."""
        now = self._now_ms()
        if ttl_ms > 0:
            expired = [k for k, e in self.completed.items() if now - e.completed_at > ttl_ms]
            for key in expired:
                del self.completed[key]

        overflow = len(self.completed) - max_size
        if max_size > 0 and overflow > 0:
            oldest = sorted(self.completed.items(), key=lambda item: item[1].completed_at)
            for key, _ in oldest[:overflow]:
                del self.completed[key]

    def clear(self) -> None:
        self.inflight.clear()
        self.completed.clear()

    def size(self) -> Dict[str, int]:
        return {
            "in_flight": len(self.inflight),
            "completed": len(self.completed),
            "total": len(self.inflight) + len(self.completed),
        }


def _mark_retrieved(task: "asyncio.Future[Any]") -> None:
    # Waiters that gave up leave the shared result unobserved.
    if not task.cancelled():
        task.exception()


def _is_user_abort(exc: BaseException) -> bool:
    if isinstance(exc, AbortError):
        return exc.user_initiated
    return isinstance(exc, OperationCancelled) and exc.reason in USER_INITIATED_REASONS


class Deduplicator:
    """
    Shares one execution between concurrent identical requests.

    The shared execution runs under a token owned by the deduplicator,
    not by whichever caller started it. Each caller, the first included,
    awaits the shared task through asyncio.shield under its own token, so
    one caller giving up never fails the others. The execution is
    cancelled only once every caller has given up.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.cache = RequestCache(clock)
        self.total = 0
        self.deduplicated = 0
        self.executed = 0

    async def process(self, prepared: PreparedRequest, thunk: Thunk, config: DedupeConfig) -> Any:
        """
        Run thunk once per identity key.

        Args:
            prepared: Request being dispatched
            thunk: Executes the request and returns its result
            config: Validated dedupe settings for this call

        Returns:
            The shared (or cached) result; cached errors are re-raised
        """
        self.total += 1

        if not config.allows(prepared.method):
            logger.debug("Dedupe skipped for method %s", prepared.method)
            self.executed += 1
            return await thunk(prepared)

        if config.condition is not None and not config.condition(prepared):
            logger.debug("Dedupe condition declined %s %s", prepared.method, prepared.url)
            self.executed += 1
            return await thunk(prepared)

        key = derive_key(prepared, config.key_strategy, config.include_headers, config.key_generator)
        hit = self.cache.get(key, config.cache_ttl_ms)

        if hit is not None:
            kind, entry = hit
            self.deduplicated += 1
            if kind == "in-flight":
                waiters = self.cache.add_waiter(key)
                logger.debug("Joining in-flight request %s (%d waiters)", key, waiters)
                return await self._wait(key, entry, prepared.cancellation_token)

            logger.debug("Serving %s from completed cache", key)
            if entry.is_error:
                raise entry.result
            return entry.result

        self.executed += 1
        source = CancellationSource()
        shared = prepared.copy(cancellation_token=source.token)
        task = asyncio.ensure_future(self._execute_and_cache(key, source, shared, thunk, config))
        task.add_done_callback(_mark_retrieved)
        entry = self.cache.set(key, task, source)
        return await self._wait(key, entry, prepared.cancellation_token)

    async def _wait(self, key: str, entry: InFlightEntry, token: Optional[CancellationToken]) -> Any:
        try:
            return await run_cancellable(asyncio.shield(entry.task), token)
        except (OperationCancelled, asyncio.CancelledError):
            self._leave(key, entry, token)
            raise

    def _leave(self, key: str, entry: InFlightEntry, token: Optional[CancellationToken]) -> None:
        entry.waiters -= 1
        if entry.waiters > 0 or entry.task.done() or entry.source is None:
            return

        reason = CancelReason.USER_ABORT
        message = None
        if token is not None and token.reason is not None:
            reason, message = token.reason, token.message
        logger.debug("Every waiter left %s, cancelling shared execution", key)
        if self.cache.inflight.get(key) is entry:
            del self.cache.inflight[key]
        entry.source.cancel(reason, message)

    def _owns(self, key: str, source: CancellationSource) -> bool:
        entry = self.cache.inflight.get(key)
        return entry is not None and entry.source is source

    async def _execute_and_cache(self, key: str, source: CancellationSource, prepared: PreparedRequest,
                                 thunk: Thunk, config: DedupeConfig) -> Any:
        try:
            result = await thunk(prepared)
        except asyncio.CancelledError:
            if self._owns(key, source):
                self.cache.delete(key)
            raise
        except Exception as exc:
            if _is_user_abort(exc):
                logger.debug("Not caching aborted execution of %s", key)
                if self._owns(key, source):
                    self.cache.delete(key)
            else:
                self._settle(key, source, exc, True, config)
            raise
        self._settle(key, source, result, False, config)
        return result

    def _settle(self, key: str, source: CancellationSource, result: Any, is_error: bool,
                config: DedupeConfig) -> None:
        if not self._owns(key, source):
            return
        if config.cache_ttl_ms > 0:
            self.cache.complete(key, result, is_error)
        else:
            self.cache.delete(key)
        self.cache.cleanup(config.cache_ttl_ms, config.max_size)

    def clear(self) -> None:
        self.cache.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "deduplicated": self.deduplicated,
            "executed": self.executed,
            "rate": self.deduplicated / self.total if self.total else 0.0,
            "cache": self.cache.size(),
        }
