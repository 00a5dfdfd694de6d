"""Request hedging: speculative duplicate attempts to cut tail latency."""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit, urlunsplit

from ..cancellation import (
    CancelReason,
    CancellationSource,
    CancellationToken,
    OperationCancelled,
    sleep_cancellable,
)
from ..config import HedgingConfig
from ..errors import HedgingError, request_snapshot
from ..models import HedgingInfo, PreparedRequest
from ..timeout import guard_timeout
from ..url import is_absolute_url, join_url

logger = logging.getLogger("luminara.features.hedging")


class AttemptOutcome(Enum):
    PENDING = "pending"
    WIN = "win"
    LOSE = "lose"
    ERROR = "error"


@dataclass
class HedgingAttempt:
    """One primary or hedge request inside a coordination."""

    type: str
    index: int
    source: CancellationSource
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    started_at: Optional[float] = None
    error: Optional[BaseException] = field(default=None, repr=False)

    @property
    def token(self) -> CancellationToken:
        return self.source.token


Send = Callable[[PreparedRequest, HedgingAttempt], Awaitable[Any]]


def hedge_delays(config: HedgingConfig, rand: Callable[[], float] = random.random) -> List[float]:
    """
    Per-hedge delays d1..dN in milliseconds.

    d1 is hedge_delay_ms; with exponential_backoff each next delay is the
    previous one times backoff_multiplier. Jitter scales each delay by a
    factor in [1 - jitter_range, 1 + jitter_range].
    """
    delays = []
    for n in range(config.max_hedges):
        delay = config.hedge_delay_ms
        if config.exponential_backoff:
            delay *= config.backoff_multiplier ** n
        if config.jitter and config.jitter_range:
            delay *= 1 + (rand() * 2 - 1) * config.jitter_range
        delays.append(max(0.0, delay))
    return delays


def rotate_server_url(url: str, servers: Optional[Sequence[str]], index: int) -> str:
    """
    Target url of attempt `index` under server rotation.

    A server given as a bare origin replaces the origin of url and keeps its
    path and query; a server with a path is used as a prefix for them.
    """
    if not servers:
        return url
    server = servers[index % len(servers)]
    if not is_absolute_url(url) or not is_absolute_url(server):
        logger.warning("Cannot rotate %s onto server %s", url, server)
        return url

    original = urlsplit(url)
    target = urlsplit(server)
    if target.path not in ("", "/"):
        path = original.path + (f"?{original.query}" if original.query else "")
        return join_url(server, path)
    return urlunsplit((target.scheme, target.netloc, original.path, original.query, original.fragment))


def _mark_retrieved(task: "asyncio.Future[Any]") -> None:
    # Losing attempts finish in the background; their outcome is irrelevant.
    if not task.cancelled():
        task.exception()


class HedgingCoordinator:
    """
    Runs one logical request as a primary plus up to max_hedges hedges.

    The winner's cancellation source is never cancelled by the coordinator;
    every other attempt is aborted with HEDGE_LOSER as soon as a winner is
    known.
    """

    def __init__(
        self,
        config: HedgingConfig,
        send: Send,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._send_fn = send
        self._rand = rand
        self._clock = clock
        self.attempts: List[HedgingAttempt] = []
        self.errors: List[Tuple[str, BaseException]] = []
        self._started_at = 0.0

    def _elapsed_ms(self, since: float) -> float:
        return (self._clock() - since) * 1000.0

    def _new_attempt(self, index: int, parent: Optional[CancellationToken]) -> HedgingAttempt:
        attempt = HedgingAttempt(
            type="primary" if index == 0 else f"hedge-{index}",
            index=index,
            source=CancellationSource(parent),
        )
        self.attempts.append(attempt)
        return attempt

    async def _send(self, prepared: PreparedRequest, attempt: HedgingAttempt) -> Any:
        attempt.started_at = self._clock()
        if attempt.index:
            logger.debug("Hedge %s triggered at T+%.0fms", attempt.type, self._elapsed_ms(self._started_at))
        guard = guard_timeout(attempt.token, self.config.per_attempt_timeout_ms)
        request = prepared.copy(
            url=rotate_server_url(prepared.url, self.config.servers, attempt.index),
            cancellation_token=guard.token,
        )
        try:
            return await self._send_fn(request, attempt)
        finally:
            guard.dispose()

    async def _delayed_send(self, prepared: PreparedRequest, attempt: HedgingAttempt, delay_ms: float) -> Any:
        await sleep_cancellable(delay_ms, attempt.token)
        return await self._send(prepared, attempt)

    async def execute(self, prepared: PreparedRequest) -> Tuple[Any, HedgingInfo]:
        """
        Run the configured policy.

        Returns:
            The winning driver response and its hedging metadata

        Raises:
            HedgingError: Every attempt failed
            OperationCancelled: The request's own token fired
        """
        self._started_at = self._clock()
        logger.debug(
            "Hedging %s %s (policy=%s, delay=%sms, max_hedges=%d)",
            prepared.method, prepared.url, self.config.policy, self.config.hedge_delay_ms, self.config.max_hedges,
        )
        if self.config.policy == "race":
            return await self._race(prepared)
        return await self._cancel_and_retry(prepared)

    def _win(self, attempt: HedgingAttempt) -> HedgingInfo:
        attempt.outcome = AttemptOutcome.WIN
        for other in self.attempts:
            if other is attempt:
                continue
            if other.outcome is AttemptOutcome.PENDING:
                other.outcome = AttemptOutcome.LOSE
            other.source.cancel(CancelReason.HEDGE_LOSER, f"Hedge attempt {other.type} lost to {attempt.type}")

        total_ms = self._elapsed_ms(self._started_at)
        own_ms = self._elapsed_ms(attempt.started_at) if attempt.started_at is not None else total_ms
        saved = 0.0 if attempt.index == 0 else max(0.0, total_ms - own_ms)
        logger.debug("Hedging winner %s after %.0fms (saved %.0fms)", attempt.type, total_ms, saved)
        return HedgingInfo(
            type=attempt.type,
            index=attempt.index,
            policy=self.config.policy,
            winner=attempt.type,
            total_attempts=sum(1 for a in self.attempts if a.started_at is not None),
            latency_saved_ms=saved,
        )

    def _record_error(self, attempt: HedgingAttempt, exc: BaseException) -> None:
        attempt.outcome = AttemptOutcome.ERROR
        attempt.error = exc
        self.errors.append((attempt.type, exc))
        logger.debug("Hedge attempt %s failed: %s", attempt.type, exc)

    def _abort_all(self, reason: CancelReason) -> None:
        for attempt in self.attempts:
            attempt.source.cancel(reason)

    def _failure(self, prepared: PreparedRequest) -> BaseException:
        parent = prepared.cancellation_token
        if parent is not None and parent.cancelled:
            return parent.to_exception()
        cause = self.errors[-1][1] if self.errors else None
        return HedgingError(
            "All hedge requests failed",
            attempts=self.errors,
            policy=self.config.policy,
            request=request_snapshot(prepared),
            cause=cause,
        )

    async def _race(self, prepared: PreparedRequest) -> Tuple[Any, HedgingInfo]:
        parent = prepared.cancellation_token
        if parent is not None:
            parent.raise_if_cancelled()

        offsets = [0.0]
        for delay in hedge_delays(self.config, self._rand):
            offsets.append(offsets[-1] + delay)

        tasks: Dict["asyncio.Future[Any]", HedgingAttempt] = {}
        for index, offset in enumerate(offsets):
            attempt = self._new_attempt(index, parent)
            coro = self._send(prepared, attempt) if index == 0 else self._delayed_send(prepared, attempt, offset)
            task = asyncio.ensure_future(coro)
            task.add_done_callback(_mark_retrieved)
            tasks[task] = attempt

        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: tasks[t].index):
                    attempt = tasks[task]
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is None:
                        return task.result(), self._win(attempt)
                    if not (isinstance(exc, OperationCancelled) and exc.reason is CancelReason.HEDGE_LOSER):
                        self._record_error(attempt, exc)
        except asyncio.CancelledError:
            self._abort_all(CancelReason.USER_ABORT)
            raise

        raise self._failure(prepared)

    async def _cancel_and_retry(self, prepared: PreparedRequest) -> Tuple[Any, HedgingInfo]:
        parent = prepared.cancellation_token
        delays = hedge_delays(self.config, self._rand)

        for index in range(self.config.max_hedges + 1):
            if parent is not None and parent.cancelled:
                break
            attempt = self._new_attempt(index, parent)
            task = asyncio.ensure_future(self._send(prepared, attempt))
            task.add_done_callback(_mark_retrieved)
            window = delays[index] if index < len(delays) else None

            try:
                done, _ = await asyncio.wait({task}, timeout=window / 1000.0 if window is not None else None)
            except asyncio.CancelledError:
                attempt.source.cancel(CancelReason.USER_ABORT)
                raise

            if not done:
                logger.debug("Attempt %s exceeded %.0fms, moving to next hedge", attempt.type, window)
                attempt.outcome = AttemptOutcome.LOSE
                attempt.source.cancel(CancelReason.HEDGE_LOSER, f"Hedge delay elapsed for {attempt.type}")
                continue

            exc = task.exception()
            if exc is None:
                return task.result(), self._win(attempt)
            self._record_error(attempt, exc)

        raise self._failure(prepared)
