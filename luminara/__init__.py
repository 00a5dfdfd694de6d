"""
luminara - Resilient HTTP client.

Every call goes through one pipeline that can deduplicate, debounce,
rate-limit, time out, hedge and retry it, while plugins see a mutable,
retry-aware context of each attempt:
- Retries with linear, exponential, fibonacci or custom backoff and Retry-After
- In-flight coalescing of identical requests with a short result cache
- Trailing-edge debouncing that supersedes older identical requests
- Token-bucket rate limiting with FIFO queues per scope
- Request hedging (race or cancel-and-retry) with optional server rotation

Basic usage:
    import asyncio
    from luminara import create_client

    async def main():
        async with create_client("https://api.example.com", retry=3) as client:
            response = await client.get("/users/1")
            print(response.data)

    asyncio.run(main())

With feature blocks:
    from luminara import LuminaraClient, ClientConfig

    client = LuminaraClient(ClientConfig(
        timeout_ms=5000,
        retry=3,
        backoff={"strategy": "exponential", "max_delay_ms": 10000},
        dedupe=True,
        rate_limit={"rps": 10, "burst": 20},
        hedging={"policy": "race", "hedge_delay_ms": 200},
    ))

Plugins:
    from luminara import Plugin

    class Auth(Plugin):
        name = "auth"

        def on_request(self, ctx):
            ctx.req.headers["Authorization"] = f"Bearer {ctx.meta.setdefault('token', 'abc')}"

    client.register_plugin(Auth())
"""

__version__ = "0.1.0"

# Main client
from .client import (
    LuminaraClient,
    create_client,
)

# Data model
from .models import (
    ClientConfig,
    Context,
    FormBody,
    HedgingInfo,
    HttpMethod,
    MultipartBody,
    PreparedRequest,
    Request,
    RequestOptions,
    Response,
)

# Configuration
from .config import (
    BackoffConfig,
    DebounceConfig,
    DedupeConfig,
    HedgingConfig,
    RateLimitConfig,
    RateLimitSettings,
    RetrySettings,
    merge_options,
    resolve_feature,
)

# Errors
from .errors import (
    AbortError,
    ConfigError,
    ErrorKind,
    HedgingError,
    HttpError,
    LuminaraError,
    NetworkError,
    ParseError,
    RateLimitDroppedError,
    RequestTimeoutError,
    normalize_error,
)

# Cancellation
from .cancellation import (
    CancelReason,
    CancellationSource,
    CancellationToken,
    OperationCancelled,
)

# Retry and backoff
from .retry import (
    DEFAULT_RETRY_STATUS_CODES,
    IDEMPOTENT_METHODS,
    RetryContext,
    create_retry_policy,
    default_retry_policy,
)
from .backoff import BackoffStrategy, compute_backoff, parse_retry_after

# Keys
from .keys import KeyStrategy, derive_key

# Plugins and events
from .plugins import Plugin, PluginChain
from .events import Event

# Drivers
from .drivers.base import BaseDriver, DriverResponse
from .drivers.httpx_driver import DriverConfig, HttpxDriver

# Response decoding
from .response import ResponseType

__all__ = [
    # Version
    "__version__",
    # Main client
    "LuminaraClient",
    "create_client",
    # Data model
    "ClientConfig",
    "Context",
    "FormBody",
    "HedgingInfo",
    "HttpMethod",
    "MultipartBody",
    "PreparedRequest",
    "Request",
    "RequestOptions",
    "Response",
    # Configuration
    "BackoffConfig",
    "DebounceConfig",
    "DedupeConfig",
    "HedgingConfig",
    "RateLimitConfig",
    "RateLimitSettings",
    "RetrySettings",
    "merge_options",
    "resolve_feature",
    # Errors
    "AbortError",
    "ConfigError",
    "ErrorKind",
    "HedgingError",
    "HttpError",
    "LuminaraError",
    "NetworkError",
    "ParseError",
    "RateLimitDroppedError",
    "RequestTimeoutError",
    "normalize_error",
    # Cancellation
    "CancelReason",
    "CancellationSource",
    "CancellationToken",
    "OperationCancelled",
    # Retry and backoff
    "DEFAULT_RETRY_STATUS_CODES",
    "IDEMPOTENT_METHODS",
    "RetryContext",
    "create_retry_policy",
    "default_retry_policy",
    "BackoffStrategy",
    "compute_backoff",
    "parse_retry_after",
    # Keys
    "KeyStrategy",
    "derive_key",
    # Plugins and events
    "Plugin",
    "PluginChain",
    "Event",
    # Drivers
    "BaseDriver",
    "DriverResponse",
    "DriverConfig",
    "HttpxDriver",
    # Response decoding
    "ResponseType",
]
