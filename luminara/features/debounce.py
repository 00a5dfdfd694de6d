"""Trailing-edge request debouncing."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from ..cancellation import CancelReason, CancellationSource, CancellationToken
from ..config import DebounceConfig
from ..errors import AbortError, request_snapshot
from ..keys import derive_key
from ..models import PreparedRequest

logger = logging.getLogger("luminara.features.debounce")

Thunk = Callable[[PreparedRequest], Awaitable[Any]]

REPLACED_MESSAGE = "Request cancelled: replaced by new request"
USER_ABORT_MESSAGE = "Request cancelled: user abort"
SHUTDOWN_MESSAGE = "Request cancelled: debouncer shutdown"


@dataclass
class DebounceSlot:
    """A request waiting for its debounce timer."""

    key: str
    prepared: PreparedRequest
    source: CancellationSource
    ready: "asyncio.Future[None]"
    handle: Optional[asyncio.TimerHandle] = None
    _unregister: Callable[[], None] = field(default=lambda: None, repr=False)

    @property
    def token(self) -> CancellationToken:
        return self.source.token


class Debouncer:
    """
    Holds at most one pending request per key.

    A newer request for a key aborts the pending one with a DEBOUNCE_REPLACED
    AbortError. When the timer fires the request runs under the slot's own
    cancellation source, which stays linked to the caller's token.
    """

    def __init__(self) -> None:
        self.pending: Dict[str, DebounceSlot] = {}
        self.replaced = 0
        self.executed = 0

    def key_for(self, prepared: PreparedRequest, config: DebounceConfig) -> str:
        return derive_key(prepared, config.key)

    async def process(self, prepared: PreparedRequest, thunk: Thunk, config: DebounceConfig) -> Any:
        if not config.allows(prepared.method):
            logger.debug("Debounce skipped for method %s", prepared.method)
            return await thunk(prepared)

        if prepared.cancellation_token is not None:
            prepared.cancellation_token.raise_if_cancelled()

        key = self.key_for(prepared, config)
        if key in self.pending:
            self.cancel_pending(key, CancelReason.DEBOUNCE_REPLACED, REPLACED_MESSAGE)

        loop = asyncio.get_running_loop()
        slot = DebounceSlot(
            key=key,
            prepared=prepared,
            source=CancellationSource(prepared.cancellation_token),
            ready=loop.create_future(),
        )
        slot._unregister = slot.token.register(lambda token: self._on_cancelled(slot, token))
        slot.handle = loop.call_later(config.delay_ms / 1000.0, self._release, slot)
        self.pending[key] = slot
        logger.debug("Debouncing %s %s for %sms (key=%s)", prepared.method, prepared.url, config.delay_ms, key)

        try:
            await slot.ready
        except asyncio.CancelledError:
            self._drop(slot)
            raise

        self.executed += 1
        logger.debug("Executing debounced request %s", key)
        try:
            return await thunk(prepared.copy(cancellation_token=slot.token))
        finally:
            slot.source.dispose()

    def _release(self, slot: DebounceSlot) -> None:
        if self.pending.get(slot.key) is slot:
            del self.pending[slot.key]
        slot._unregister()
        if not slot.ready.done():
            slot.ready.set_result(None)

    def _drop(self, slot: DebounceSlot) -> None:
        if self.pending.get(slot.key) is slot:
            del self.pending[slot.key]
        if slot.handle is not None:
            slot.handle.cancel()
        slot._unregister()
        slot.source.dispose()

    def _on_cancelled(self, slot: DebounceSlot, token: CancellationToken) -> None:
        if slot.ready.done():
            return
        self._drop(slot)
        reason = token.reason or CancelReason.USER_ABORT
        if reason is CancelReason.DEBOUNCE_REPLACED:
            self.replaced += 1
            message = token.message or REPLACED_MESSAGE
        elif reason is CancelReason.SHUTDOWN:
            message = token.message or SHUTDOWN_MESSAGE
        else:
            message = token.message or USER_ABORT_MESSAGE
        logger.debug("Cancelled debounced request %s: %s", slot.key, message)
        slot.ready.set_exception(AbortError(message, reason=reason, request=request_snapshot(slot.prepared)))

    def cancel_pending(self, key: str, reason: CancelReason = CancelReason.USER_ABORT,
                       message: Optional[str] = None) -> bool:
        """Abort the pending request for key; returns False when none is pending."""
        slot = self.pending.get(key)
        if slot is None:
            return False
        slot.source.cancel(reason, message)
        return True

    def cancel_all(self) -> None:
        for key in list(self.pending):
            self.cancel_pending(key, CancelReason.SHUTDOWN, SHUTDOWN_MESSAGE)

    def stats(self) -> Dict[str, int]:
        return {"pending": len(self.pending), "replaced": self.replaced, "executed": self.executed}
