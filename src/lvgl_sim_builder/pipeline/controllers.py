"""CLI controller for pipeline commands."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Generator, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from lvgl_sim_builder.config import Settings
from lvgl_sim_builder.harness.server import TestHarness, cache_busting_url
from lvgl_sim_builder.monitor import FileChangeMonitor
from lvgl_sim_builder.pipeline.engine import OrchestrationEngine, console_relay, create_engine
from lvgl_sim_builder.pipeline.errors import PipelineError
from lvgl_sim_builder.pipeline.events import EventBus, PipelineEvent
from lvgl_sim_builder.pipeline.models import (
    STAGE_ORDER,
    LogEvent,
    LogSeverity,
    NoticeEvent,
    NoticeKind,
    StageEvent,
    WatchEvent,
)
from lvgl_sim_builder.project import ProjectDescriptor, ProjectFileError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SENTINEL = object()
_POLL_SECONDS = 0.25

_SEVERITY_PREFIX = {
    LogSeverity.INFO: "",
    LogSeverity.SUCCESS: "OK: ",
    LogSeverity.WARNING: "WARNING: ",
    LogSeverity.ERROR: "ERROR: ",
}

_NOTICE_TEXT = {
    NoticeKind.SOURCES_CHANGED: "Sources changed since the last setup: {path}",
    NoticeKind.DESCRIPTOR_CHANGED: "Project file changed: {path}",
    NoticeKind.STALE_DISMISSED: "Stale sources notice dismissed.",
}

EngineFactory = Callable[[Settings], OrchestrationEngine]


class CommandFailedError(RuntimeError):
    """Pipeline command failed; details were already streamed as output lines."""


@dataclass(slots=True)
class CheckCommand:
    """Input for the check CLI command."""


@dataclass(slots=True)
class ProjectCommand:
    """Input for commands that operate on one project file."""

    project_path: Path
    output_dir: Path | None = None


@dataclass(slots=True)
class RunAllCommand:
    """Input for the run-all CLI command."""

    project_path: Path
    serve: bool = True
    output_dir: Path | None = None


@dataclass(slots=True)
class ServeCommand:
    """Input for the serve CLI command."""

    output_dir: Path | None = None
    port: int | None = None


@dataclass(slots=True)
class CleanCommand:
    """Input for clean-build and clean-all."""

    everything: bool = False


def format_event(event: PipelineEvent) -> str | None:
    """Render one engine event as a terminal line; debug lines are left to logging."""

    stamp = event.timestamp.astimezone().strftime("%H:%M:%S")
    if isinstance(event, LogEvent):
        if event.severity is LogSeverity.DEBUG:
            return None
        return f"[{stamp}] {_SEVERITY_PREFIX[event.severity]}{event.text}"
    if isinstance(event, StageEvent):
        if event.stage is None or event.status is None:
            return None
        line = f"[{stamp}] {event.stage.value}: {event.status.value}"
        return f"{line} ({event.detail})" if event.detail else line
    if isinstance(event, NoticeEvent):
        return f"[{stamp}] {_NOTICE_TEXT[event.kind].format(path=event.path)}"
    return None


def error_lines(error: Exception) -> list[str]:
    if isinstance(error, PipelineError):
        return error.context_lines()
    return [f"Error: {error}"]


class PipelineCliController:
    """CLI controller for build pipeline operations."""

    def __init__(self, *, engine_factory: EngineFactory = create_engine) -> None:
        self._engine_factory = engine_factory

    def check(self, command: CheckCommand) -> Iterator[str]:
        """Verify the container runtime is installed and running."""

        engine = self._engine()
        yield from self._run(engine, engine.runtime.check_available)

    def status(self, command: ProjectCommand) -> Iterator[str]:
        """Show the project summary and what the volume already holds."""

        engine = self._engine(command.output_dir)
        yield from self._prepare(engine, command.project_path)
        for stage in STAGE_ORDER:
            yield f"{stage.value}: {engine.status(stage).value}"

    def setup(self, command: ProjectCommand) -> Iterator[str]:
        engine = self._engine(command.output_dir)
        yield from self._prepare(engine, command.project_path, probe=False)
        yield from self._run(engine, engine.setup)

    def build(self, command: ProjectCommand) -> Iterator[str]:
        engine = self._engine(command.output_dir)
        yield from self._prepare(engine, command.project_path)
        yield from self._run(engine, engine.build)

    def rebuild(self, command: ProjectCommand) -> Iterator[str]:
        engine = self._engine(command.output_dir)
        yield from self._prepare(engine, command.project_path)
        yield from self._run(engine, engine.rebuild)

    def extract(self, command: ProjectCommand) -> Iterator[str]:
        engine = self._engine(command.output_dir)
        yield from self._prepare(engine, command.project_path)
        artifacts = yield from self._run(engine, engine.extract)
        yield f"Artifacts: {', '.join(sorted(artifacts.sizes))}"

    def run_all(self, command: RunAllCommand) -> Iterator[str]:
        """Setup, build, extract and optionally serve until interrupted."""

        engine = self._engine(command.output_dir)
        yield from self._prepare(engine, command.project_path, probe=False)
        result = yield from self._run(engine, lambda: engine.run_all(serve=command.serve))
        if result.lease is None:
            yield f"Build artifacts are in {result.artifacts.output_dir}"
            return
        yield f"Open {cache_busting_url(result.lease.url)}"
        yield from _serve_until_interrupted(engine.events, engine.stop_test)

    def serve(self, command: ServeCommand) -> Iterator[str]:
        """Serve an already extracted build directory."""

        settings = _load_settings(command.output_dir)
        events = EventBus(mirror_logger=logger)
        harness = TestHarness(
            host=settings.harness.host,
            start_port=command.port or settings.harness.default_port,
            on_console=console_relay(events),
        )
        try:
            lease = harness.start(settings.pipeline.output_dir)
        except (OSError, RuntimeError) as error:
            yield f"Error: failed to start test server: {error}"
            raise CommandFailedError(str(error)) from error
        yield f"Serving {settings.pipeline.output_dir.resolve()} at {lease.url}"
        yield f"Open {cache_busting_url(lease.url)}"
        yield from _serve_until_interrupted(events, harness.stop)

    def clean(self, command: CleanCommand) -> Iterator[str]:
        engine = self._engine()
        operation = engine.clean_all if command.everything else engine.clean_build
        yield from self._run(engine, operation)

    def watch(self, command: ProjectCommand) -> Iterator[str]:
        """Report source changes that make the volume stale until interrupted."""

        engine = self._engine(command.output_dir)
        descriptor = yield from self._prepare(engine, command.project_path)

        def _on_change(event: WatchEvent) -> None:
            engine.handle_watch_event(event)
            current = engine.descriptor
            if current is not None and Path(event.path).resolve() == current.project_path:
                try:
                    engine.load_project(current.project_path)
                except (ProjectFileError, PipelineError) as error:
                    engine.events.log(f"Failed to reload project: {error}", LogSeverity.ERROR)

        monitor = FileChangeMonitor(
            descriptor_path=descriptor.project_path,
            ui_dir=descriptor.ui_dir,
            on_event=_on_change,
            debounce_seconds=engine.settings.monitor.debounce_seconds,
        )
        with monitor:
            yield f"Watching {descriptor.project_path.name} and {descriptor.ui_dir}"
            yield from _stream_until_interrupted(engine.events)
        yield "Stopped watching."

    def _engine(self, output_dir: Path | None = None) -> OrchestrationEngine:
        return self._engine_factory(_load_settings(output_dir))

    def _prepare(
        self,
        engine: OrchestrationEngine,
        project_path: Path,
        *,
        probe: bool = True,
    ) -> Generator[str, None, ProjectDescriptor]:
        descriptor = yield from self._run(engine, lambda: engine.load_project(project_path))
        if probe:
            yield from self._run(engine, engine.probe_volume_status)
        return descriptor

    def _run(
        self,
        engine: OrchestrationEngine,
        operation: Callable[[], T],
    ) -> Generator[str, None, T]:
        """Run ``operation`` on a worker thread and stream engine events meanwhile."""

        lines: queue.Queue[PipelineEvent | object] = queue.Queue()
        unsubscribe = engine.events.subscribe(lines.put)
        result_holder: list[T] = []
        error_holder: list[Exception] = []

        def _work() -> None:
            try:
                result_holder.append(operation())
            except Exception as exc:  # noqa: BLE001
                error_holder.append(exc)
            finally:
                lines.put(_SENTINEL)

        worker = threading.Thread(target=_work, name="pipeline-operation", daemon=True)
        worker.start()
        try:
            while True:
                try:
                    item = lines.get(timeout=_POLL_SECONDS)
                except queue.Empty:
                    continue
                except KeyboardInterrupt:
                    if engine.abort():
                        yield "Aborting..."
                    continue
                if item is _SENTINEL:
                    break
                text = format_event(item)
                if text is not None:
                    yield text
        finally:
            unsubscribe()
        worker.join(timeout=5)

        if error_holder:
            error = error_holder[0]
            yield from error_lines(error)
            raise CommandFailedError(str(error)) from error
        return result_holder[0]


def _load_settings(output_dir: Path | None) -> Settings:
    try:
        settings = Settings.from_env(output_dir=output_dir)
        settings.validate()
    except ValueError as error:
        raise CommandFailedError(f"Invalid configuration: {error}") from error
    return settings


def _stream_until_interrupted(events: EventBus) -> Iterator[str]:
    lines: queue.Queue[PipelineEvent] = queue.Queue()
    unsubscribe = events.subscribe(lines.put)
    try:
        while True:
            try:
                item = lines.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            except KeyboardInterrupt:
                break
            text = format_event(item)
            if text is not None:
                yield text
    finally:
        unsubscribe()


def _serve_until_interrupted(events: EventBus, stop: Callable[[], object]) -> Iterator[str]:
    yield "Press Ctrl+C to stop the test server."
    try:
        yield from _stream_until_interrupted(events)
    finally:
        stop()
    yield "Test server stopped."
