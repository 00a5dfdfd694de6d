"""Error taxonomy and normalization."""

import copy
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .cancellation import CancelReason, CancellationToken, OperationCancelled

logger = logging.getLogger("luminara.errors")

BODY_PLACEHOLDER = "[body data]"

USER_INITIATED_REASONS = frozenset(
    {CancelReason.USER_ABORT, CancelReason.SHUTDOWN, CancelReason.DEBOUNCE_REPLACED}
)


class ErrorKind(Enum):
    """Normalized failure categories."""

    HTTP = "HTTP"
    TIMEOUT = "TIMEOUT"
    ABORT = "ABORT"
    NETWORK = "NETWORK"
    PARSE = "PARSE"
    RATE_LIMIT_DROPPED = "RATE_LIMIT_DROPPED"
    CONFIG = "CONFIG"
    HEDGING = "HEDGING"
    UNKNOWN = "UNKNOWN"


class LuminaraError(Exception):
    """Base exception for every failure surfaced by the client."""

    name = "LuminaraError"
    default_kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        status: Optional[int] = None,
        data: Any = None,
        request: Optional[Dict[str, Any]] = None,
        response: Optional[Dict[str, Any]] = None,
        attempt: int = 1,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.status = status
        self.data = data
        self.request = request
        self.response = response
        self.attempt = attempt
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        status = f", status={self.status}" if self.status is not None else ""
        return f"{type(self).__name__}({self.message!r}, kind={self.kind.value}{status}, attempt={self.attempt})"

    def with_attempt(self, attempt: int) -> "LuminaraError":
        """Return this error stamped with attempt, copied if it already carries another."""
        if self.attempt == attempt:
            return self
        stamped = copy.copy(self)
        stamped.attempt = attempt
        stamped.__cause__ = self.__cause__
        return stamped


class HttpError(LuminaraError):
    """Non-2xx response."""

    default_kind = ErrorKind.HTTP


class RequestTimeoutError(LuminaraError):
    """The attempt's timeout timer elapsed."""

    default_kind = ErrorKind.TIMEOUT


class AbortError(LuminaraError):
    """Cancellation not attributable to a timeout."""

    default_kind = ErrorKind.ABORT

    def __init__(self, message: str, reason: CancelReason = CancelReason.USER_ABORT, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.reason = reason

    @property
    def user_initiated(self) -> bool:
        return self.reason in USER_INITIATED_REASONS


class NetworkError(LuminaraError):
    """Transport failure with no HTTP status."""

    default_kind = ErrorKind.NETWORK


class ParseError(LuminaraError):
    """Body could not be decoded as the requested type."""

    default_kind = ErrorKind.PARSE


class RateLimitDroppedError(LuminaraError):
    """Rate limiter queue is full."""

    default_kind = ErrorKind.RATE_LIMIT_DROPPED


class ConfigError(LuminaraError):
    """Invalid static configuration."""

    default_kind = ErrorKind.CONFIG


class HedgingError(LuminaraError):
    """Every attempt of a hedge coordination failed."""

    default_kind = ErrorKind.HEDGING

    def __init__(
        self,
        message: str,
        attempts: Optional[List[Tuple[str, BaseException]]] = None,
        policy: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.attempts = list(attempts or [])
        self.policy = policy


def request_snapshot(request: Any) -> Dict[str, Any]:
    """Copy the identifying parts of a prepared request; the body is redacted."""
    if request is None:
        return {}
    if isinstance(request, dict):
        return dict(request)
    options = getattr(request, "options", None)
    return {
        "url": getattr(request, "url", None),
        "method": getattr(request, "method", "GET"),
        "headers": dict(getattr(request, "headers", None) or {}),
        "body": BODY_PLACEHOLDER if getattr(request, "body", None) is not None else None,
        "timeout_ms": getattr(options, "timeout_ms", None),
    }


def response_snapshot(response: Any) -> Optional[Dict[str, Any]]:
    """Copy status, reason, headers and url of a driver response."""
    if response is None:
        return None
    headers = getattr(response, "headers", None) or {}
    return {
        "status": getattr(response, "status", None),
        "status_text": getattr(response, "reason", "") or "",
        "headers": dict(headers),
        "url": getattr(response, "url", None),
    }


def _is_network_error(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.TransportError, ConnectionError)) or (
        isinstance(exc, OSError) and not isinstance(exc, TimeoutError)
    )


def _is_parse_error(exc: BaseException) -> bool:
    return isinstance(exc, (json.JSONDecodeError, UnicodeDecodeError))


def normalize_error(
    exc: BaseException,
    *,
    request: Any = None,
    attempt: int = 1,
    token: Optional[CancellationToken] = None,
) -> LuminaraError:
    """
    Map any exception to a LuminaraError.

    Rules, in order: LuminaraError is returned as-is; cancellation whose
    reason (from the exception or the composite token) is TIMEOUT becomes
    RequestTimeoutError; other cancellation becomes AbortError; transport
    failures become NetworkError; decode failures become ParseError;
    anything else is wrapped with the cause preserved.

    Args:
        exc: The raised exception
        request: Prepared request (or snapshot dict) for the error snapshot
        attempt: Attempt number the failure belongs to
        token: Composite token of the attempt, consulted for the reason tag

    Returns:
        The normalized error
    """
    if isinstance(exc, LuminaraError):
        return exc

    snapshot = request_snapshot(request)

    if isinstance(exc, OperationCancelled) or (token is not None and token.cancelled and _is_abort_like(exc)):
        reason = getattr(exc, "reason", None) or (token.reason if token is not None else None)
        if reason is CancelReason.TIMEOUT:
            return RequestTimeoutError(str(exc), request=snapshot, attempt=attempt, cause=exc)
        reason = reason or CancelReason.USER_ABORT
        return AbortError(f"Request aborted: {exc}", reason=reason, request=snapshot, attempt=attempt, cause=exc)

    if _is_network_error(exc):
        return NetworkError(f"Network error: {exc}", request=snapshot, attempt=attempt, cause=exc)

    if _is_parse_error(exc):
        return ParseError(f"Failed to parse response: {exc}", request=snapshot, attempt=attempt, cause=exc)

    return LuminaraError(str(exc) or type(exc).__name__, request=snapshot, attempt=attempt, cause=exc)


def _is_abort_like(exc: BaseException) -> bool:
    return isinstance(exc, (OperationCancelled, httpx.TimeoutException))
