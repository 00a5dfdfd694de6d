"""Configuration blocks for the resilience features."""

import logging
import re
from dataclasses import dataclass, field, fields, is_dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional, Pattern, Sequence, Tuple, Type, TypeVar, Union

from .errors import ConfigError

logger = logging.getLogger("luminara.config")

C = TypeVar("C")

SAFE_METHODS = ("GET", "HEAD", "OPTIONS")
UNSAFE_METHODS = ("POST", "PUT", "PATCH", "DELETE")
ALL_METHODS = ("GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE", "TRACE")

DEFAULT_RETRY_LIMIT = 3
DEFAULT_RETRY_DELAY_MS = 1000.0

FEATURE_BLOCKS = ("retry", "backoff", "dedupe", "debounce", "rate_limit", "hedging")
MERGED_MAPS = ("headers", "query")


def coerce_block(cls: Type[C], value: Any) -> Optional[C]:
    """
    Turn a feature block value into its config dataclass.

    None and False disable the feature; True selects the defaults; mappings
    are coerced with unknown keys ignored.
    """
    if value is None or value is False:
        return None
    if value is True:
        return cls()
    if isinstance(value, cls):
        return value
    if isinstance(value, Mapping):
        known = {f.name for f in fields(cls) if f.init}
        unknown = [key for key in value if key not in known]
        if unknown:
            logger.debug("Ignoring unknown %s keys: %s", cls.__name__, unknown)
        return cls(**{key: val for key, val in value.items() if key in known})
    raise ConfigError(f"Invalid {cls.__name__} value: {value!r}")


def _method_set(methods: Optional[Sequence[str]], name: str) -> Optional[Tuple[str, ...]]:
    if methods is None:
        return None
    if isinstance(methods, str) or not isinstance(methods, (list, tuple, set, frozenset)):
        raise ConfigError(f"{name} must be a list of HTTP methods")
    return tuple(str(m).upper() for m in methods)


def method_allowed(method: str, methods: Optional[Sequence[str]], exclude: Optional[Sequence[str]]) -> bool:
    """Apply a methods whitelist or an exclusion list."""
    method = (method or "GET").upper()
    if methods is not None:
        return method in methods
    if exclude is not None:
        return method not in exclude
    return True


@dataclass
class BackoffConfig:
    """Retry delay shaping."""

    strategy: Optional[str] = None
    max_delay_ms: float = 30000.0
    delays: Optional[Sequence[float]] = None
    jitter: bool = False
    jitter_range: float = 0.2

    def validate(self) -> "BackoffConfig":
        if self.max_delay_ms < 0:
            raise ConfigError("backoff.max_delay_ms must be >= 0")
        if not 0 <= self.jitter_range <= 1:
            raise ConfigError("backoff.jitter_range must be within [0, 1]")
        if self.strategy == "custom" and not self.delays:
            raise ConfigError('backoff strategy "custom" requires a non-empty delays list')
        return self


@dataclass
class RetrySettings:
    """Retry block form of the `retry` option."""

    limit: int = DEFAULT_RETRY_LIMIT
    delay_ms: Optional[float] = None
    status_codes: Optional[Sequence[int]] = None
    should_retry: Optional[Callable[..., bool]] = None

    @classmethod
    def from_value(cls, value: Any) -> "RetrySettings":
        """Interpret an int, bool, mapping or RetrySettings."""
        if value is None or value is False:
            return cls(limit=0)
        if value is True:
            return cls()
        if isinstance(value, bool):
            return cls(limit=int(value))
        if isinstance(value, int):
            if value < 0:
                raise ConfigError("retry must be >= 0")
            return cls(limit=value)
        settings = coerce_block(cls, value)
        if settings.limit < 0:
            raise ConfigError("retry.limit must be >= 0")
        return settings


@dataclass
class DedupeConfig:
    """In-flight coalescing and short-TTL burst protection."""

    key_strategy: Union[str, Callable[..., str]] = "method+url"
    key_generator: Optional[Callable[..., Any]] = None
    include_headers: Sequence[str] = field(default_factory=tuple)
    methods: Optional[Sequence[str]] = None
    exclude_methods: Optional[Sequence[str]] = None
    cache_ttl_ms: float = 100.0
    max_size: int = 1000
    condition: Optional[Callable[..., bool]] = None

    def validate(self) -> "DedupeConfig":
        if self.methods is not None and self.exclude_methods is not None:
            raise ConfigError('Cannot specify both "methods" and "exclude_methods" for dedupe')
        self.methods = _method_set(self.methods, "dedupe.methods")
        self.exclude_methods = _method_set(self.exclude_methods, "dedupe.exclude_methods")
        if not isinstance(self.cache_ttl_ms, (int, float)) or self.cache_ttl_ms < 0:
            raise ConfigError("dedupe.cache_ttl_ms must be >= 0")
        if not isinstance(self.max_size, int) or self.max_size <= 0:
            raise ConfigError("dedupe.max_size must be > 0")
        if self.key_strategy == "custom" and not callable(self.key_generator):
            raise ConfigError('dedupe key_strategy "custom" requires a key_generator function')
        if isinstance(self.include_headers, str):
            raise ConfigError("dedupe.include_headers must be a list of header names")
        return self

    def allows(self, method: str) -> bool:
        exclude = self.exclude_methods
        if self.methods is None and exclude is None:
            exclude = UNSAFE_METHODS
        return method_allowed(method, self.methods, exclude)


@dataclass
class DebounceConfig:
    """Trailing-edge debounce per request key."""

    delay_ms: float = 0.0
    methods: Optional[Sequence[str]] = None
    exclude_methods: Optional[Sequence[str]] = None
    key: Union[str, Callable[..., str]] = "url"

    def validate(self) -> "DebounceConfig":
        if self.methods is not None and self.exclude_methods is not None:
            raise ConfigError('Cannot specify both "methods" and "exclude_methods" for debounce')
        self.methods = _method_set(self.methods, "debounce.methods")
        self.exclude_methods = _method_set(self.exclude_methods, "debounce.exclude_methods")
        if not isinstance(self.delay_ms, (int, float)) or self.delay_ms < 0:
            raise ConfigError("debounce.delay_ms must be >= 0")
        return self

    def allows(self, method: str) -> bool:
        return method_allowed(method, self.methods, self.exclude_methods)


PathPattern = Union[str, Pattern[str]]


@dataclass(frozen=True)
class RateLimitSettings:
    """Normalized, hashable token-bucket settings."""

    limit: float
    window_ms: float
    burst: float
    tokens_per_ms: float
    scope: str = "global"
    max_concurrent: Optional[int] = None
    queue_limit: Optional[int] = None
    tick_ms: float = 25.0
    include: Optional[Tuple[PathPattern, ...]] = None
    exclude: Optional[Tuple[PathPattern, ...]] = None


@dataclass
class RateLimitConfig:
    """Rate limit block: one of rps, rpm or limit+window_ms."""

    rps: Optional[float] = None
    rpm: Optional[float] = None
    limit: Optional[float] = None
    window_ms: Optional[float] = None
    burst: Optional[float] = None
    scope: str = "global"
    max_concurrent: Optional[int] = None
    queue_limit: Optional[int] = None
    tick_ms: float = 25.0
    include: Optional[Sequence[PathPattern]] = None
    exclude: Optional[Sequence[PathPattern]] = None

    def normalize(self) -> RateLimitSettings:
        """Collapse the rate forms into a single (tokens_per_ms, window_ms, burst) triple."""
        if self.rps:
            limit, window_ms = float(self.rps), 1000.0
        elif self.rpm:
            limit, window_ms = float(self.rpm), 60000.0
        elif self.limit and self.window_ms:
            limit, window_ms = float(self.limit), float(self.window_ms)
        else:
            raise ConfigError("Rate limit configuration requires rps, rpm, or {limit, window_ms}")

        if limit <= 0 or window_ms <= 0:
            raise ConfigError("Rate limit values must be > 0")
        burst = float(self.burst) if self.burst is not None else limit
        if burst < 1:
            raise ConfigError("rate_limit.burst must be >= 1")
        if self.scope not in ("global", "domain", "endpoint"):
            raise ConfigError(f"Invalid rate limit scope: {self.scope!r}")
        if self.max_concurrent is not None and self.max_concurrent <= 0:
            raise ConfigError("rate_limit.max_concurrent must be > 0")
        if self.queue_limit is not None and self.queue_limit < 0:
            raise ConfigError("rate_limit.queue_limit must be >= 0")
        if self.tick_ms <= 0:
            raise ConfigError("rate_limit.tick_ms must be > 0")

        return RateLimitSettings(
            limit=limit,
            window_ms=window_ms,
            burst=burst,
            tokens_per_ms=limit / window_ms,
            scope=self.scope,
            max_concurrent=self.max_concurrent,
            queue_limit=self.queue_limit,
            tick_ms=float(self.tick_ms),
            include=_patterns(self.include, "include"),
            exclude=_patterns(self.exclude, "exclude"),
        )


def _patterns(patterns: Optional[Sequence[PathPattern]], name: str) -> Optional[Tuple[PathPattern, ...]]:
    if patterns is None:
        return None
    if isinstance(patterns, (str, re.Pattern)):
        patterns = [patterns]
    for pattern in patterns:
        if not isinstance(pattern, (str, re.Pattern)):
            raise ConfigError(f"rate_limit.{name} entries must be strings or compiled regexes")
    return tuple(patterns)


HEDGING_POLICIES = ("race", "cancel-and-retry")


@dataclass
class HedgingConfig:
    """Speculative duplicate requests to cut tail latency."""

    enabled: bool = True
    policy: Optional[str] = "cancel-and-retry"
    hedge_delay_ms: float = 2000.0
    max_hedges: int = 2
    exponential_backoff: bool = False
    backoff_multiplier: float = 1.5
    jitter: bool = True
    jitter_range: float = 0.2
    include_http_methods: Sequence[str] = SAFE_METHODS
    servers: Optional[Sequence[str]] = None
    per_attempt_timeout_ms: Optional[float] = None

    def validate(self) -> "HedgingConfig":
        if self.policy not in HEDGING_POLICIES:
            raise ConfigError(f"Unknown hedging policy: {self.policy!r}")
        if self.hedge_delay_ms < 0:
            raise ConfigError("hedging.hedge_delay_ms must be >= 0")
        if not isinstance(self.max_hedges, int) or self.max_hedges < 0:
            raise ConfigError("hedging.max_hedges must be >= 0")
        if self.backoff_multiplier < 1:
            raise ConfigError("hedging.backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_range <= 1:
            raise ConfigError("hedging.jitter_range must be within [0, 1]")
        if isinstance(self.servers, str):
            self.servers = [self.servers]
        return self

    def allows(self, method: str) -> bool:
        return (method or "GET").upper() in tuple(m.upper() for m in self.include_http_methods)


def merge_block(base: Any, override: Any) -> Any:
    """Merge two feature block values: key-wise when both are mappings, else override wins."""
    if override is None:
        return base
    if isinstance(base, Mapping) and isinstance(override, Mapping):
        return {**base, **override}
    return override


def merge_options(base: C, override: Any) -> C:
    """
    Merge per-call options over client options.

    Scalars in override win when set; headers and query merge key-wise with
    override winning; feature blocks merge key-wise when both sides are
    mappings and are replaced whole otherwise.

    Args:
        base: Options dataclass instance providing defaults
        override: Options dataclass instance or mapping

    Returns:
        New instance of base's type
    """
    if override is None:
        return replace(base)

    if is_dataclass(override):
        items = {f.name: getattr(override, f.name) for f in fields(override)}
    else:
        items = dict(override)

    changes: Dict[str, Any] = {}
    known = {f.name for f in fields(base)}
    for name, value in items.items():
        if name not in known:
            continue
        current = getattr(base, name)
        if name in MERGED_MAPS:
            if value is not None:
                changes[name] = {**(current or {}), **value}
        elif name in FEATURE_BLOCKS:
            changes[name] = merge_block(current, value)
        elif value is not None:
            changes[name] = value
    return replace(base, **changes)


def resolve_feature(cls: Type[C], value: Any) -> Optional[C]:
    """
    Coerce and validate the effective block of one feature.

    Returns:
        The validated config dataclass, or None when the feature is off
    """
    config = coerce_block(cls, value)
    if config is None:
        return None
    validate = getattr(config, "validate", None)
    if validate is not None:
        validate()
    return config
