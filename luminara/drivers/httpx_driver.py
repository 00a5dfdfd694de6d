"""Default driver backed by httpx.AsyncClient."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from ..cancellation import run_cancellable
from ..models import FormBody, MultipartBody, PreparedRequest
from .base import BaseDriver, DriverResponse

logger = logging.getLogger("luminara.drivers.httpx")

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@dataclass
class DriverConfig:
    """Configuration for the httpx driver."""

    timeout: Optional[float] = None  # seconds; the client's own timeout_ms is what callers normally set
    follow_redirects: bool = True
    verify: bool = True
    extra_headers: Dict[str, str] = field(default_factory=dict)
    transport: Optional[httpx.AsyncBaseTransport] = None


class HttpxDriver(BaseDriver):
    """Sends each prepared request with a lazily created httpx.AsyncClient."""

    driver_name = "httpx"

    def __init__(self, config: Optional[DriverConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or DriverConfig()
        self._async_client = client
        self._owns_client = client is None

    def _create_async_client(self) -> httpx.AsyncClient:
        """Build the pooled httpx.AsyncClient shared by every attempt this driver sends."""
        return httpx.AsyncClient(
            headers=self.config.extra_headers,
            timeout=self.config.timeout,
            follow_redirects=self.config.follow_redirects,
            verify=self.config.verify,
            transport=self.config.transport,
        )

    @property
    def async_client(self) -> httpx.AsyncClient:
        """Get or create asynchronous client."""
        if self._async_client is None:
            self._async_client = self._create_async_client()
        return self._async_client

    def _build_request(self, prepared: PreparedRequest) -> httpx.Request:
        headers = dict(prepared.headers)
        body = prepared.body
        kwargs: Dict[str, Any] = {}

        if isinstance(body, (str, bytes, bytearray)):
            kwargs["content"] = body
        elif isinstance(body, FormBody):
            kwargs["content"] = body.encode()
            if prepared.header("content-type") is None:
                headers["Content-Type"] = FORM_CONTENT_TYPE
        elif isinstance(body, MultipartBody):
            kwargs["data"] = body.fields
            kwargs["files"] = body.files
        elif body is not None:
            kwargs["json"] = body

        return self.async_client.build_request(prepared.method, prepared.url, headers=headers, **kwargs)

    async def request(self, prepared: PreparedRequest, *, attempt: int = 1) -> DriverResponse:
        token = prepared.cancellation_token
        request = self._build_request(prepared)
        logger.debug("Sending %s %s (attempt %d)", prepared.method, prepared.url, attempt)

        response = await run_cancellable(self.async_client.send(request, stream=True), token)

        if prepared.response_type == "stream":
            return DriverResponse(
                status=response.status_code,
                headers=response.headers,
                reason=response.reason_phrase,
                url=str(response.url),
                stream=response.aiter_bytes(),
                closer=response.aclose,
            )

        try:
            content = await run_cancellable(response.aread(), token)
        finally:
            await response.aclose()

        return DriverResponse(
            status=response.status_code,
            headers=response.headers,
            content=content,
            reason=response.reason_phrase,
            url=str(response.url),
        )

    async def aclose(self) -> None:
        if self._async_client is not None and self._owns_client:
            await self._async_client.aclose()
        self._async_client = None
