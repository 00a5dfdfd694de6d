"""Turns raw driver responses into Response objects or typed errors."""

import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, List, Optional

from .drivers.base import DriverResponse
from .errors import HttpError, ParseError, request_snapshot, response_snapshot
from .models import HedgingInfo, PreparedRequest, Response

logger = logging.getLogger("luminara.response")


class ResponseType(str, Enum):
    """Body decoding selectors."""

    AUTO = "auto"
    JSON = "json"
    TEXT = "text"
    HTML = "html"
    XML = "xml"
    BLOB = "blob"
    ARRAY_BUFFER = "arrayBuffer"
    NDJSON = "ndjson"
    STREAM = "stream"


def _parse_response_type(value: Optional[str]) -> ResponseType:
    if value is None:
        return ResponseType.AUTO
    try:
        return ResponseType(value)
    except ValueError:
        logger.debug("Unknown response_type %r, using auto", value)
        return ResponseType.AUTO


async def _single_chunk(content: bytes) -> AsyncIterator[bytes]:
    if content:
        yield content


def _parse_ndjson(text: str) -> List[Any]:
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def _error_message(data: Any, raw: DriverResponse) -> str:
    if isinstance(data, dict):
        message = data.get("message") or data.get("error")
        if isinstance(message, str) and message:
            return message
    return f"HTTP {raw.status}: {raw.reason}".rstrip(": ")


class ResponseNormalizer:
    """
    Decodes the body of a driver response and classifies its status.

    Only `auto` recovers from decode failures (falling back to text).
    Text bodies replace undecodable bytes; json and ndjson decode
    strictly, and they and parse_response raise ParseError.
    """

    def decode(self, raw: DriverResponse, prepared: PreparedRequest, attempt: int = 1) -> Any:
        options = prepared.options
        response_type = _parse_response_type(options.response_type)

        try:
            if options.parse_response is not None:
                return options.parse_response(raw.text(errors="replace"), raw)
            if raw.data is not None:
                return raw.data
            return self._read(raw, response_type)
        except (ValueError, UnicodeDecodeError, TypeError) as exc:
            raise ParseError(
                f"Failed to parse response as {response_type.value}: {exc}",
                status=raw.status,
                request=request_snapshot(prepared),
                response=response_snapshot(raw),
                attempt=attempt,
                cause=exc,
            ) from exc

    def _read(self, raw: DriverResponse, response_type: ResponseType) -> Any:
        if response_type is ResponseType.STREAM:
            return raw.stream if raw.stream is not None else _single_chunk(raw.content)
        if response_type in (ResponseType.BLOB, ResponseType.ARRAY_BUFFER):
            return raw.read()
        if response_type in (ResponseType.TEXT, ResponseType.HTML, ResponseType.XML):
            return raw.text(errors="replace")
        if response_type is ResponseType.NDJSON:
            return _parse_ndjson(raw.text())
        if response_type is ResponseType.JSON:
            return raw.json() if raw.content else None

        text = raw.text(errors="replace")
        if "application/json" in raw.content_type.lower() and text.strip():
            try:
                return json.loads(text)
            except ValueError:
                logger.debug("Response declared JSON but did not parse, returning text")
        return text

    async def normalize(
        self,
        raw: DriverResponse,
        prepared: PreparedRequest,
        attempt: int = 1,
        hedging: Optional[HedgingInfo] = None,
    ) -> Response:
        """
        Build the Response for a raw driver response.

        Args:
            raw: What the driver returned
            prepared: The request the response belongs to
            attempt: Attempt number, recorded on raised errors
            hedging: Metadata of the winning hedge attempt, if any

        Returns:
            Response with the decoded body

        Raises:
            HttpError: Non-2xx status without ignore_response_error
            ParseError: The body could not be decoded as requested
        """
        tolerated = raw.ok or bool(prepared.options.ignore_response_error)
        if not tolerated and raw.stream is not None:
            await raw.aclose()
            raw.stream = None
            data = None
        else:
            data = self.decode(raw, prepared, attempt)

        if not tolerated:
            raise HttpError(
                _error_message(data, raw),
                status=raw.status,
                data=data,
                request=request_snapshot(prepared),
                response=response_snapshot(raw),
                attempt=attempt,
            )

        return Response(
            status=raw.status,
            headers=raw.headers,
            data=data,
            url=raw.url or prepared.url,
            reason=raw.reason,
            hedging=hedging,
            raw=raw,
        )
