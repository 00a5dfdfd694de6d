"""Phase 1: composition of rate limiting, deduplication and debouncing."""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import DebounceConfig, DedupeConfig, RateLimitConfig, RateLimitSettings, resolve_feature
from .features.debounce import Debouncer
from .features.dedupe import Deduplicator
from .features.rate_limit import RateLimiter
from .models import PreparedRequest

logger = logging.getLogger("luminara.dispatcher")

ExecuteFn = Callable[[PreparedRequest], Awaitable[Any]]


class RequestDispatcher:
    """
    Wraps an execute function with the features enabled for a request.

    Call-time order is rate limiter, then deduplicator, then debouncer, then
    the execute function. Limiters are kept per distinct settings, so calls
    sharing the client's rate limit block share its buckets.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.deduplicator = Deduplicator(clock)
        self.debouncer = Debouncer()
        self.limiters: Dict[RateLimitSettings, RateLimiter] = {}

    def limiter_for(self, settings: RateLimitSettings) -> RateLimiter:
        limiter = self.limiters.get(settings)
        if limiter is None:
            limiter = RateLimiter(settings, self._clock)
            self.limiters[settings] = limiter
            logger.debug("Created rate limiter for %s", settings)
        return limiter

    def rate_limiter(self, prepared: PreparedRequest) -> Optional[RateLimiter]:
        config = resolve_feature(RateLimitConfig, prepared.options.rate_limit)
        if config is None:
            return None
        return self.limiter_for(config.normalize())

    async def dispatch(self, prepared: PreparedRequest, execute_fn: ExecuteFn) -> Any:
        """
        Run execute_fn for prepared through every enabled feature.

        Raises:
            ConfigError: A feature block of this request is invalid
        """
        options = prepared.options
        run = execute_fn

        debounce = resolve_feature(DebounceConfig, options.debounce)
        if debounce is not None:
            run = self._wrap(self.debouncer.process, run, debounce)

        dedupe = resolve_feature(DedupeConfig, options.dedupe)
        if dedupe is not None:
            run = self._wrap(self.deduplicator.process, run, dedupe)

        limiter = self.rate_limiter(prepared)
        if limiter is not None:
            run = self._wrap(lambda request, inner, _: limiter.schedule(request, inner), run, None)

        return await run(prepared)

    @staticmethod
    def _wrap(process: Callable[..., Awaitable[Any]], inner: ExecuteFn, config: Any) -> ExecuteFn:
        async def wrapped(request: PreparedRequest) -> Any:
            return await process(request, inner, config)

        return wrapped

    def close(self) -> None:
        """Abort pending debounce slots, reject queued tickets and drop cached results."""
        self.debouncer.cancel_all()
        for limiter in self.limiters.values():
            limiter.shutdown()
        self.limiters.clear()
        self.deduplicator.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "dedupe": self.deduplicator.stats(),
            "debounce": self.debouncer.stats(),
            "rate_limit": [limiter.stats() for limiter in self.limiters.values()],
        }
