"""Lifecycle events delivered to the optional event sink."""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("luminara.events")

EventSink = Callable[[str, Dict[str, Any]], None]


class Event(str, Enum):
    START = "request:start"
    ATTEMPT = "request:attempt"
    SUCCESS = "request:success"
    FAIL = "request:fail"
    RETRY = "request:retry"
    ABORT = "request:abort"


class EventEmitter:
    """
    Forwards lifecycle events to a user sink.

    A sink that raises is logged and otherwise ignored; it never fails the
    call that emitted the event.
    """

    def __init__(self, sink: Optional[EventSink] = None):
        self.sink = sink

    def emit(self, event: Event, **payload: Any) -> None:
        logger.debug("%s %s", event.value, payload)
        if self.sink is None:
            return
        try:
            self.sink(event.value, payload)
        except Exception:
            logger.exception("Event sink failed on %s", event.value)
