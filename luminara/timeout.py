"""Timeout guard combining a caller token with a timer."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .cancellation import CancelReason, CancellationSource, CancellationToken, cancel_after

logger = logging.getLogger("luminara.timeout")


@dataclass
class TimeoutGuard:
    """
    Composite cancellation for one attempt.

    `token` fires when the caller's token fires (with the caller's reason)
    or when `timeout_ms` elapses (tagged TIMEOUT). Call `dispose()` once the
    attempt settles to stop the timer.
    """

    token: Optional[CancellationToken]
    timeout_ms: Optional[float] = None
    _source: Optional[CancellationSource] = field(default=None, repr=False)
    _handle: Any = field(default=None, repr=False)

    @property
    def timed_out(self) -> bool:
        return self.token is not None and self.token.reason is CancelReason.TIMEOUT

    def dispose(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._source is not None and not self._source.cancelled:
            self._source.dispose()


def guard_timeout(token: Optional[CancellationToken], timeout_ms: Optional[float]) -> TimeoutGuard:
    """
    Build the composite token for one attempt.

    Args:
        token: Caller cancellation token (may be None)
        timeout_ms: Timeout in milliseconds; None or <= 0 disables the timer

    Returns:
        TimeoutGuard whose token is the caller's token unchanged when no
        timeout applies
    """
    if timeout_ms is None or timeout_ms <= 0:
        return TimeoutGuard(token=token)

    source = CancellationSource(token)
    handle = cancel_after(
        source,
        timeout_ms,
        CancelReason.TIMEOUT,
        f"Request timeout after {timeout_ms:g}ms",
    )
    logger.debug("Timeout armed for %sms", timeout_ms)
    return TimeoutGuard(token=source.token, timeout_ms=timeout_ms, _source=source, _handle=handle)
