"""Cancellation tokens with tagged reasons."""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger("luminara.cancellation")


class CancelReason(Enum):
    """Why a token fired."""

    TIMEOUT = "timeout"
    USER_ABORT = "user_abort"
    HEDGE_LOSER = "hedge_loser"
    DEBOUNCE_REPLACED = "debounce_replaced"
    SHUTDOWN = "shutdown"


class OperationCancelled(Exception):
    """Raised when an awaited operation is cut short by a token."""

    def __init__(self, reason: CancelReason, message: Optional[str] = None):
        super().__init__(message or f"Operation cancelled ({reason.value})")
        self.reason = reason


class CancellationToken:
    """
    Read-only view of a cancellation state.

    Callbacks registered on a token run synchronously when it fires, so
    linked tokens and waiters observe cancellation before the next
    suspension point.
    """

    def __init__(self) -> None:
        self._reason: Optional[CancelReason] = None
        self._message: Optional[str] = None
        self._callbacks: List[Callable[["CancellationToken"], None]] = []
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    @property
    def message(self) -> Optional[str]:
        return self._message

    def register(self, callback: Callable[["CancellationToken"], None]) -> Callable[[], None]:
        """
        Run callback when the token fires.

        Args:
            callback: Called with this token

        Returns:
            A function that unregisters the callback
        """
        if self.cancelled:
            callback(self)
            return lambda: None

        self._callbacks.append(callback)

        def unregister() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return unregister

    async def wait(self) -> None:
        """Suspend until the token fires."""
        if self.cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def to_exception(self) -> OperationCancelled:
        reason = self._reason or CancelReason.USER_ABORT
        return OperationCancelled(reason, self._message)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.to_exception()

    def _fire(self, reason: CancelReason, message: Optional[str]) -> bool:
        if self.cancelled:
            return False
        self._reason = reason
        self._message = message
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)
        return True

    def __repr__(self) -> str:
        state = self._reason.value if self._reason else "active"
        return f"<CancellationToken {state}>"


class CancellationSource:
    """
    Owner of a token.

    A source can be linked to parent tokens; when any parent fires, the
    source fires with the parent's reason and message.
    """

    def __init__(self, *parents: Optional[CancellationToken]):
        self.token = CancellationToken()
        self._unlinks: List[Callable[[], None]] = []
        for parent in parents:
            if parent is None:
                continue
            self._unlinks.append(parent.register(self._on_parent_cancelled))

    def _on_parent_cancelled(self, parent: CancellationToken) -> None:
        self.cancel(parent.reason or CancelReason.USER_ABORT, parent.message)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(
        self,
        reason: CancelReason = CancelReason.USER_ABORT,
        message: Optional[str] = None,
    ) -> bool:
        """
        Fire the token. Idempotent.

        Returns:
            True if this call fired the token
        """
        fired = self.token._fire(reason, message)
        if fired:
            self.dispose()
        return fired

    def dispose(self) -> None:
        """Detach from parent tokens without firing."""
        unlinks, self._unlinks = self._unlinks, []
        for unlink in unlinks:
            unlink()


async def run_cancellable(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """
    Await a value unless the token fires first.

    When the token fires, the underlying task is cancelled and
    OperationCancelled is raised with the token's reason.
    """
    if token is None:
        return await awaitable

    if token.cancelled:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise token.to_exception()

    task = asyncio.ensure_future(awaitable)
    fired: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()

    def _on_cancel(_: CancellationToken) -> None:
        if not fired.done():
            fired.set_result(None)

    unregister = token.register(_on_cancel)
    try:
        await asyncio.wait({task, fired}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        unregister()

    if task.done():
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise token.to_exception()


async def sleep_cancellable(delay_ms: float, token: Optional[CancellationToken]) -> None:
    """Sleep for delay_ms unless the token fires first."""
    if delay_ms <= 0:
        if token is not None:
            token.raise_if_cancelled()
        return
    await run_cancellable(asyncio.sleep(delay_ms / 1000.0), token)


def cancel_after(source: CancellationSource, delay_ms: float, reason: CancelReason,
                 message: Optional[str] = None) -> Any:
    """Schedule source.cancel after delay_ms; returns the loop timer handle."""
    loop = asyncio.get_running_loop()
    return loop.call_later(delay_ms / 1000.0, source.cancel, reason, message)
