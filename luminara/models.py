"""Request, response and plugin context types."""

import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

import httpx

from .cancellation import CancellationToken

logger = logging.getLogger("luminara.models")


class HttpMethod(str, Enum):
    """HTTP verbs understood by the client."""

    GET = "GET"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    TRACE = "TRACE"


def normalize_method(method: Union[str, HttpMethod, None]) -> str:
    if method is None:
        return HttpMethod.GET.value
    if isinstance(method, HttpMethod):
        return method.value
    return str(method).upper()


@dataclass
class FormBody:
    """application/x-www-form-urlencoded body."""

    fields: Dict[str, Union[str, List[str]]] = field(default_factory=dict)

    def items(self) -> List[Tuple[str, str]]:
        pairs = []
        for key, value in self.fields.items():
            values = value if isinstance(value, (list, tuple)) else [value]
            pairs.extend((key, str(v)) for v in values)
        return pairs

    def encode(self) -> str:
        return urlencode(self.items())


@dataclass
class MultipartBody:
    """multipart/form-data body; the transport sets the boundary."""

    fields: Dict[str, Any] = field(default_factory=dict)
    files: Dict[str, Any] = field(default_factory=dict)

    def items(self) -> List[Tuple[str, str]]:
        pairs = [(key, str(value)) for key, value in self.fields.items()]
        for key, value in self.files.items():
            filename = value[0] if isinstance(value, tuple) else getattr(value, "name", "file")
            pairs.append((key, str(filename)))
        return pairs


@dataclass
class RequestOptions:
    """Options settable on the client and overridable per call."""

    base_url: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    query: Optional[Dict[str, Any]] = None
    timeout_ms: Optional[float] = None
    retry: Any = None
    retry_delay: Any = None
    backoff: Any = None
    retry_status_codes: Optional[Iterable[int]] = None
    should_retry: Optional[Callable[..., bool]] = None
    dedupe: Any = None
    debounce: Any = None
    rate_limit: Any = None
    hedging: Any = None
    response_type: Optional[str] = None
    parse_response: Optional[Callable[[str, Any], Any]] = None
    ignore_response_error: Optional[bool] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Any:
        """Build an instance from a mapping, ignoring unrecognized keys."""
        values = {**(data or {}), **kwargs}
        known = {f.name for f in fields(cls) if f.init}
        unknown = [key for key in values if key not in known]
        if unknown:
            logger.debug("Ignoring unrecognized %s keys: %s", cls.__name__, unknown)
        return cls(**{key: value for key, value in values.items() if key in known})

    def options(self) -> "RequestOptions":
        """Project onto the plain option fields."""
        return RequestOptions(**{f.name: getattr(self, f.name) for f in fields(RequestOptions)})


@dataclass
class ClientConfig(RequestOptions):
    """Client-level defaults."""

    event_sink: Optional[Callable[[str, Dict[str, Any]], None]] = None


@dataclass
class Request(RequestOptions):
    """A call as issued by application code."""

    url: str = ""
    method: Union[str, HttpMethod] = HttpMethod.GET
    body: Any = None
    cancellation_token: Optional[CancellationToken] = None

    def __post_init__(self) -> None:
        self.method = normalize_method(self.method)


@dataclass
class PreparedRequest:
    """
    The resolved request handed to the dispatcher and the driver.

    Rebuilt from the call's base request on every attempt, so mutations a
    plugin makes on attempt N are not seen by attempt N+1.
    """

    url: str
    method: str
    headers: Dict[str, str]
    body: Any = None
    options: RequestOptions = field(default_factory=RequestOptions)
    cancellation_token: Optional[CancellationToken] = None

    @property
    def timeout_ms(self) -> Optional[float]:
        return self.options.timeout_ms

    @property
    def response_type(self) -> str:
        return self.options.response_type or "auto"

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def copy(self, **changes: Any) -> "PreparedRequest":
        """Shallow copy with a fresh headers dict."""
        changes.setdefault("headers", dict(self.headers))
        return replace(self, **changes)


@dataclass
class HedgingInfo:
    """Which hedge attempt produced a response."""

    type: str
    index: int
    policy: Optional[str] = None
    winner: Optional[str] = None
    total_attempts: int = 0
    latency_saved_ms: Optional[float] = None


@dataclass
class Response:
    """Successful (or explicitly tolerated) response."""

    status: int
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    data: Any = None
    url: Optional[str] = None
    reason: str = ""
    hedging: Optional[HedgingInfo] = None
    raw: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(self.headers or {})

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class Context:
    """
    Mutable per-call state shared by every plugin hook.

    `meta` survives retries; `res` and `error` are reset before each
    attempt's onRequest hooks.
    """

    req: PreparedRequest
    res: Optional[Response] = None
    error: Optional[Exception] = None
    attempt: int = 0
    cancellation_token: Optional[CancellationToken] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    hedging: Optional[HedgingInfo] = None
