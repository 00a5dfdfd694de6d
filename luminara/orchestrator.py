"""The per-call attempt loop."""

import asyncio
import functools
import itertools
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional

from .backoff import resolve_retry_delay
from .cancellation import CancellationToken, sleep_cancellable
from .dispatcher import RequestDispatcher
from .errors import AbortError, LuminaraError, normalize_error
from .events import Event, EventEmitter
from .models import Context, PreparedRequest, Response
from .plugins import PluginChain
from .retry import RetryState

logger = logging.getLogger("luminara.orchestrator")


class RetryOrchestrator:
    """
    Drives the attempts of one call.

    Each attempt starts from a fresh copy of the call's base request, runs
    the on_request hooks, goes through the dispatcher, and routes the outcome
    through on_response or on_response_error. Failures are retried while the
    retry policy agrees and the call's root token has not fired.
    """

    def __init__(
        self,
        plugins: PluginChain,
        dispatcher: RequestDispatcher,
        execute_fn: Callable[..., Awaitable[Response]],
        emitter: Optional[EventEmitter] = None,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.plugins = plugins
        self.dispatcher = dispatcher
        self.execute_fn = execute_fn
        self.emitter = emitter or EventEmitter()
        self._rand = rand
        self._clock = clock
        self._ids = itertools.count(1)

    def new_context(self, base: PreparedRequest, token: Optional[CancellationToken]) -> Context:
        ctx = Context(req=base.copy(cancellation_token=token), cancellation_token=token)
        ctx.meta["request_id"] = f"req_{next(self._ids)}"
        ctx.meta["request_start"] = self._clock()
        return ctx

    def _elapsed_ms(self, ctx: Context) -> float:
        return (self._clock() - ctx.meta["request_start"]) * 1000.0

    def _emit(self, event: Event, ctx: Context, **payload: Any) -> None:
        self.emitter.emit(
            event,
            request_id=ctx.meta.get("request_id"),
            method=ctx.req.method,
            url=ctx.req.url,
            attempt=ctx.attempt,
            **payload,
        )

    async def _attempt(self, ctx: Context) -> Response:
        token = ctx.cancellation_token
        if token is not None:
            token.raise_if_cancelled()
        await self.plugins.run_on_request(ctx)
        execute = functools.partial(self.execute_fn, attempt=ctx.attempt)
        response = await self.dispatcher.dispatch(ctx.req, execute)
        ctx.res = response
        ctx.hedging = response.hedging
        await self.plugins.run_on_response(ctx)
        return response

    async def execute(self, base: PreparedRequest, ctx: Optional[Context] = None) -> Response:
        """
        Run the call to completion.

        Args:
            base: The resolved request every attempt starts from
            ctx: Context to use; a new one is created when omitted

        Returns:
            The successful (or recovered) Response

        Raises:
            LuminaraError: The final, normalized failure
        """
        ctx = ctx or self.new_context(base, base.cancellation_token)
        token = ctx.cancellation_token
        state = RetryState.for_options(base.options)
        self._emit(Event.START, ctx, max_attempts=state.max_attempts)

        while True:
            ctx.attempt += 1
            ctx.res = None
            ctx.error = None
            ctx.hedging = None
            ctx.req = base.copy(cancellation_token=token)
            self._emit(Event.ATTEMPT, ctx)

            try:
                response = await self._attempt(ctx)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = await self._handle_failure(ctx, exc)
            else:
                self._emit(Event.SUCCESS, ctx, status=response.status, duration_ms=self._elapsed_ms(ctx))
                return response

            if error is None:
                self._emit(Event.SUCCESS, ctx, status=ctx.res.status, duration_ms=self._elapsed_ms(ctx),
                           recovered=True)
                return ctx.res

            if (token is not None and token.cancelled) or (isinstance(error, AbortError) and error.user_initiated):
                self._emit(Event.ABORT, ctx, reason=getattr(error, "reason", None), error=error)
                raise error

            if not state.should_retry(error, ctx.req, ctx.attempt, response=error.response):
                raise error

            delay = resolve_retry_delay(ctx, base.options, None, self._rand)
            state.record(delay)
            logger.debug("Retrying %s %s in %.0fms (attempt %d failed: %s)",
                         ctx.req.method, ctx.req.url, delay, ctx.attempt, error.kind.value)
            self._emit(Event.RETRY, ctx, delay_ms=delay, error=error, next_attempt=ctx.attempt + 1)

            try:
                await sleep_cancellable(delay, token)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                abort = normalize_error(exc, request=ctx.req, attempt=ctx.attempt, token=token)
                self._emit(Event.ABORT, ctx, reason=getattr(abort, "reason", None), error=abort)
                raise abort

    async def _handle_failure(self, ctx: Context, exc: Exception) -> Optional[LuminaraError]:
        """
        Normalize a failed attempt and run the error hooks.

        Returns:
            The error to act on, or None when a hook recovered the attempt
        """
        def normalize(raised: BaseException) -> LuminaraError:
            return normalize_error(raised, request=ctx.req, attempt=ctx.attempt, token=ctx.cancellation_token)

        error = normalize(exc).with_attempt(ctx.attempt)
        ctx.res = None
        ctx.error = error

        await self.plugins.run_on_response_error(ctx, normalize)

        if ctx.error is None and ctx.res is not None:
            logger.debug("Attempt %d recovered by on_response_error", ctx.attempt)
            return None

        if isinstance(ctx.error, LuminaraError):
            error = ctx.error
        elif ctx.error is not None:
            error = normalize(ctx.error)
        ctx.error = error
        self._emit(Event.FAIL, ctx, error=error, status=error.status, kind=error.kind.value)
        return error
