"""Observer registry for log and stage events."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from lvgl_sim_builder.pipeline.models import LogEvent, LogSeverity, NoticeEvent, StageEvent

logger = logging.getLogger(__name__)

PipelineEvent = LogEvent | StageEvent | NoticeEvent
EventListener = Callable[[PipelineEvent], None]

_LOG_LEVELS = {
    LogSeverity.DEBUG: logging.DEBUG,
    LogSeverity.INFO: logging.INFO,
    LogSeverity.SUCCESS: logging.INFO,
    LogSeverity.WARNING: logging.WARNING,
    LogSeverity.ERROR: logging.ERROR,
}


class EventBus:
    """Delivers events to every registered listener in emission order.

    Emission is serialized so two threads never interleave deliveries. A
    listener that raises is logged and skipped; it does not stop delivery to
    the remaining listeners.
    """

    def __init__(self, *, mirror_logger: logging.Logger | None = None) -> None:
        self._listeners: list[EventListener] = []
        self._lock = threading.RLock()
        self._mirror = mirror_logger

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: PipelineEvent) -> None:
        with self._lock:
            if self._mirror is not None and isinstance(event, LogEvent):
                self._mirror.log(_LOG_LEVELS[event.severity], "%s", event.text)
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    logger.exception("Event listener %r failed", listener)

    def log(self, text: str, severity: LogSeverity = LogSeverity.INFO) -> None:
        self.emit(LogEvent(severity=severity, text=text))
