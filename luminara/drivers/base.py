"""Driver contract: one network round-trip per call."""

import codecs
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx

from ..models import PreparedRequest


def _known_codec(name: str) -> str:
    try:
        codecs.lookup(name)
    except LookupError:
        return "utf-8"
    return name


@dataclass
class DriverResponse:
    """Raw response returned by a driver."""

    status: int
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    content: bytes = b""
    data: Any = None  # already-decoded payload, if the driver has one
    reason: str = ""
    url: Optional[str] = None
    stream: Optional[AsyncIterator[bytes]] = field(default=None, repr=False)
    closer: Optional[Callable[[], Awaitable[None]]] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(self.headers or {})
        if isinstance(self.content, str):
            self.content = self.content.encode("utf-8")

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def charset(self) -> str:
        for part in self.content_type.split(";")[1:]:
            name, _, value = part.strip().partition("=")
            if name.lower() == "charset" and value:
                return _known_codec(value.strip('"'))
        return "utf-8"

    def read(self) -> bytes:
        return self.content

    def text(self, errors: str = "strict") -> str:
        return self.content.decode(self.charset, errors)

    def json(self) -> Any:
        return json.loads(self.text())

    async def aclose(self) -> None:
        if self.closer is not None:
            closer, self.closer = self.closer, None
            await closer()


class BaseDriver(ABC):
    """Base class for transport drivers."""

    driver_name: str = "base"

    @abstractmethod
    async def request(self, prepared: PreparedRequest, *, attempt: int = 1) -> DriverResponse:
        """
        Perform exactly one network attempt.

        Args:
            prepared: Resolved request; its cancellation_token must be honoured
            attempt: 1-based attempt number of the call

        Returns:
            DriverResponse for any HTTP status

        Raises:
            OperationCancelled: The token fired before the response was read
        """
        pass

    async def aclose(self) -> None:
        """Release transport resources."""
        return None

    async def __aenter__(self) -> "BaseDriver":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
