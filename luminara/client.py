"""Client facade: configuration merge, verb methods and plugin registration."""

import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Union

from .cancellation import CancelReason, CancellationSource, CancellationToken
from .config import (
    BackoffConfig,
    DebounceConfig,
    DedupeConfig,
    RateLimitConfig,
    RetrySettings,
    merge_options,
    resolve_feature,
)
from .dispatcher import RequestDispatcher
from .drivers.base import BaseDriver
from .drivers.httpx_driver import HttpxDriver
from .errors import AbortError, request_snapshot
from .events import EventEmitter
from .inflight import InFlightHandler
from .models import ClientConfig, HttpMethod, PreparedRequest, Request, RequestOptions, Response
from .orchestrator import RetryOrchestrator
from .plugins import PluginChain
from .response import ResponseNormalizer
from .url import build_url

logger = logging.getLogger("luminara.client")

RequestLike = Union[Request, Mapping[str, Any], str]


def validate_options(options: RequestOptions) -> None:
    """
    Check every feature block of a set of options.

    Hedging is left out: an invalid hedging block only disables hedging for
    the requests that carry it.

    Raises:
        ConfigError: A block is contradictory or out of range
    """
    RetrySettings.from_value(options.retry)
    resolve_feature(BackoffConfig, options.backoff)
    resolve_feature(DedupeConfig, options.dedupe)
    resolve_feature(DebounceConfig, options.debounce)
    rate_limit = resolve_feature(RateLimitConfig, options.rate_limit)
    if rate_limit is not None:
        rate_limit.normalize()


class LuminaraClient:
    """
    Resilient HTTP client.

    Every call runs through the same pipeline:
    - Rate limiting, deduplication and debouncing before dispatch
    - Timeout and hedging around the network call
    - Response decoding and error classification
    - Retries with configurable backoff, re-running the plugin hooks

    The client owns its limiter buckets, dedupe cache and debounce slots;
    two clients share nothing.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        driver: Optional[BaseDriver] = None,
        plugins: Optional[List[Any]] = None,
        **options: Any,
    ):
        config = config or ClientConfig()
        self.config: ClientConfig = merge_options(config, options) if options else config
        validate_options(self.config)

        self.driver = driver or HttpxDriver()
        self._owns_driver = driver is None
        self.plugins = PluginChain(plugins)
        self.dispatcher = RequestDispatcher()
        self.emitter = EventEmitter(self.config.event_sink)

        self._inflight = InFlightHandler(self.driver)
        self._normalizer = ResponseNormalizer()
        self._orchestrator = RetryOrchestrator(self.plugins, self.dispatcher, self._execute, self.emitter)
        self._shutdown = CancellationSource()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def configure(self, **partial: Any) -> "LuminaraClient":
        """
        Merge new client-level options with the same rules as per-call overrides.

        Raises:
            ConfigError: The merged configuration is invalid
        """
        config = merge_options(self.config, partial)
        validate_options(config)
        self.config = config
        self.emitter.sink = config.event_sink
        logger.debug("Client reconfigured: %s", sorted(partial))
        return self

    def register_plugin(self, plugin: Any) -> "LuminaraClient":
        """Append a plugin; on_request hooks run in registration order."""
        self.plugins.add(plugin)
        return self

    use = register_plugin

    def _coerce_request(self, request: RequestLike, overrides: Mapping[str, Any]) -> Request:
        if isinstance(request, Request):
            if not overrides:
                return request
            return replace(request, **{key: value for key, value in overrides.items()
                                       if key in request.__dataclass_fields__})
        if isinstance(request, str):
            return Request.from_mapping(overrides, url=request)
        return Request.from_mapping(request, **overrides)

    def prepare(self, request: Request, token: Optional[CancellationToken] = None) -> PreparedRequest:
        """Resolve url, headers and effective options of a call against the client config."""
        options = merge_options(self.config.options(), request)
        return PreparedRequest(
            url=build_url(request.url, options.base_url, options.query),
            method=request.method,
            headers=dict(options.headers or {}),
            body=request.body,
            options=options,
            cancellation_token=token,
        )

    async def _execute(self, prepared: PreparedRequest, attempt: int = 1) -> Response:
        result = await self._inflight.execute(prepared, attempt)
        try:
            return await self._normalizer.normalize(result.response, prepared, attempt, result.hedging)
        finally:
            result.dispose()

    async def request(self, request: RequestLike, **kwargs: Any) -> Response:
        """
        Send a request through the resilience pipeline.

        Args:
            request: A Request, a mapping of request fields, or a url
            **kwargs: Request fields or per-call options overriding the client's

        Returns:
            Response of the successful attempt

        Raises:
            LuminaraError: The call failed; `attempt` is the final attempt number
        """
        req = self._coerce_request(request, kwargs)
        if self._closed:
            raise AbortError("Client is closed", reason=CancelReason.SHUTDOWN, request=request_snapshot(req))

        root = CancellationSource(req.cancellation_token, self._shutdown.token)
        try:
            prepared = self.prepare(req, root.token)
            return await self._orchestrator.execute(prepared)
        finally:
            root.dispose()

    async def get(self, url: str, **kwargs: Any) -> Response:
        return await self.request(url, method=HttpMethod.GET, **kwargs)

    async def head(self, url: str, **kwargs: Any) -> Response:
        return await self.request(url, method=HttpMethod.HEAD, **kwargs)

    async def options(self, url: str, **kwargs: Any) -> Response:
        return await self.request(url, method=HttpMethod.OPTIONS, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Response:
        return await self.request(url, method=HttpMethod.DELETE, **kwargs)

    async def post(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        return await self.request(url, method=HttpMethod.POST, body=body, **kwargs)

    async def put(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        return await self.request(url, method=HttpMethod.PUT, body=body, **kwargs)

    async def patch(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        return await self.request(url, method=HttpMethod.PATCH, body=body, **kwargs)

    def stats(self) -> Dict[str, Any]:
        """Counters of the dedupe, debounce and rate limit features."""
        stats = self.dispatcher.stats()
        stats["plugins"] = len(self.plugins)
        stats["closed"] = self._closed
        return stats

    async def close(self) -> None:
        """
        Shut the client down.

        In-flight calls are aborted with a SHUTDOWN AbortError, queued rate
        limit tickets and pending debounce slots are rejected, and the
        dedupe cache is emptied. Calls made afterwards fail immediately.
        """
        if self._closed:
            return
        self._closed = True
        self._shutdown.cancel(CancelReason.SHUTDOWN, "Client closed")
        self.dispatcher.close()
        if self._owns_driver:
            await self.driver.aclose()
        logger.debug("Client closed")

    async def __aenter__(self) -> "LuminaraClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


def create_client(
    base_url: Optional[str] = None,
    driver: Optional[BaseDriver] = None,
    plugins: Optional[List[Any]] = None,
    **options: Any,
) -> LuminaraClient:
    """
    Create a client with keyword configuration.

    Args:
        base_url: Prepended to relative request urls
        driver: Transport; an HttpxDriver is created when omitted
        plugins: Plugins to register, in order
        **options: Any ClientConfig field (retry, dedupe, rate_limit, ...)

    Returns:
        Configured LuminaraClient
    """
    config = ClientConfig.from_mapping(options, base_url=base_url)
    return LuminaraClient(config, driver=driver, plugins=plugins)
