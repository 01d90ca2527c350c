"""Debounced file change monitor for the project descriptor and UI sources."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from lvgl_sim_builder.pipeline.models import WatchEvent, WatchKind

logger = logging.getLogger(__name__)

WatchCallback = Callable[[WatchEvent], None]

_KIND_BY_EVENT_TYPE = {
    EVENT_TYPE_CREATED: WatchKind.ADDED,
    EVENT_TYPE_DELETED: WatchKind.REMOVED,
    EVENT_TYPE_MODIFIED: WatchKind.CHANGED,
}


def to_watch_events(event: FileSystemEvent) -> list[WatchEvent]:
    """Translate one watchdog event into zero or more WatchEvents."""

    if event.is_directory:
        return []
    if event.event_type == EVENT_TYPE_MOVED:
        return [
            WatchEvent(path=os.fsdecode(event.src_path), kind=WatchKind.REMOVED),
            WatchEvent(path=os.fsdecode(event.dest_path), kind=WatchKind.ADDED),
        ]
    kind = _KIND_BY_EVENT_TYPE.get(event.event_type)
    if kind is None:
        return []
    return [WatchEvent(path=os.fsdecode(event.src_path), kind=kind)]


class _Debouncer:
    """Collects events and delivers them once the stream has been quiet for a while."""

    def __init__(self, callback: WatchCallback, delay_seconds: float) -> None:
        self._callback = callback
        self._delay = delay_seconds
        self._pending: dict[str, WatchEvent] = {}
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def push(self, event: WatchEvent) -> None:
        with self._lock:
            # Later kinds replace earlier ones but keep the first arrival position.
            self._pending[event.path] = event
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._delay, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        with self._lock:
            batch = list(self._pending.values())
            self._pending.clear()
            self._timer = None
        for event in batch:
            try:
                self._callback(event)
            except Exception:
                logger.exception("Watch callback failed for %s", event.path)

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()


class _DescriptorHandler(FileSystemEventHandler):
    def __init__(self, descriptor_path: Path, sink: Callable[[WatchEvent], None]) -> None:
        self._descriptor = str(descriptor_path)
        self._sink = sink

    def on_any_event(self, event: FileSystemEvent) -> None:
        for watch_event in to_watch_events(event):
            if watch_event.path == self._descriptor:
                self._sink(watch_event)


class _SourceTreeHandler(FileSystemEventHandler):
    def __init__(self, sink: Callable[[WatchEvent], None]) -> None:
        self._sink = sink

    def on_any_event(self, event: FileSystemEvent) -> None:
        for watch_event in to_watch_events(event):
            self._sink(watch_event)


class FileChangeMonitor:
    """Watch the descriptor file and the UI directory (recursively).

    Events are debounced and handed to ``on_event`` from a timer thread. The
    monitor only reports changes; reacting to them is the caller's job.
    """

    def __init__(
        self,
        *,
        descriptor_path: Path,
        ui_dir: Path,
        on_event: WatchCallback,
        debounce_seconds: float = 0.3,
    ) -> None:
        self.descriptor_path = descriptor_path.resolve()
        self.ui_dir = ui_dir.resolve()
        self._debouncer = _Debouncer(on_event, debounce_seconds)
        self._observer: Observer | None = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(
            _DescriptorHandler(self.descriptor_path, self._debouncer.push),
            str(self.descriptor_path.parent),
            recursive=False,
        )
        observer.schedule(
            _SourceTreeHandler(self._debouncer.push),
            str(self.ui_dir),
            recursive=True,
        )
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s and %s", self.descriptor_path, self.ui_dir)

    def stop(self) -> None:
        observer = self._observer
        if observer is None:
            return
        self._observer = None
        observer.stop()
        observer.join(timeout=5)
        self._debouncer.cancel()

    def __enter__(self) -> FileChangeMonitor:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
