"""Stage state machine driving setup, build, extract and test against one volume."""

from __future__ import annotations

import logging
import posixpath
import shlex
import shutil
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from lvgl_sim_builder.config import Settings
from lvgl_sim_builder.harness.instrumentation import ConsoleMessage
from lvgl_sim_builder.harness.server import PortLease, TestHarness
from lvgl_sim_builder.pipeline.broker import HelperContainer, helper_container
from lvgl_sim_builder.pipeline.errors import (
    AbortedError,
    BuildFailedError,
    CleanFailedError,
    CloneFailedError,
    CopyFailedError,
    ExtractFailedError,
    OperationInProgressError,
    PipelineError,
    StageNotReadyError,
    TimestampUpdateFailedError,
)
from lvgl_sim_builder.pipeline.events import EventBus
from lvgl_sim_builder.pipeline.models import (
    STAGE_ORDER,
    CommandOutcome,
    LogSeverity,
    NoticeEvent,
    NoticeKind,
    PipelineState,
    Stage,
    StageEvent,
    StageStatus,
    WatchEvent,
)
from lvgl_sim_builder.pipeline.noise import NoiseFilter
from lvgl_sim_builder.pipeline.runtime import ContainerRuntime
from lvgl_sim_builder.pipeline.supervisor import ProcessSupervisor
from lvgl_sim_builder.project import ProjectDescriptor, read_project_file

logger = logging.getLogger(__name__)

T = TypeVar("T")

VOLUME_ROOT = "/project"
SETUP_MARKER = f"{VOLUME_ROOT}/build.sh"
SETUP_STATUS_MARKER = f"{VOLUME_ROOT}/CMakeLists.txt"
UI_SOURCE_DIR = f"{VOLUME_ROOT}/src"
FONTS_MANIFEST = f"{VOLUME_ROOT}/fonts.txt"
BUILD_OUTPUT_DIR = f"{VOLUME_ROOT}/build"
BUILD_SENTINEL = f"{BUILD_OUTPUT_DIR}/index.wasm"


@dataclass(frozen=True, slots=True)
class BuildArtifact:
    name: str
    required: bool = True


BUILD_ARTIFACTS: tuple[BuildArtifact, ...] = (
    BuildArtifact("index.html"),
    BuildArtifact("index.js"),
    BuildArtifact("index.wasm"),
    BuildArtifact("index.data", required=False),
)

_RUNNING_STATES = {
    Stage.SETUP: PipelineState.SETTING_UP,
    Stage.BUILD: PipelineState.BUILDING,
    Stage.TEST: PipelineState.EXTRACTING,
}
_DONE_STATES = {
    Stage.SETUP: PipelineState.SETUP_DONE,
    Stage.BUILD: PipelineState.BUILD_DONE,
    Stage.TEST: PipelineState.BUILD_DONE,
}
_FAILED_STATES = {
    Stage.SETUP: PipelineState.SETUP_FAILED,
    Stage.BUILD: PipelineState.BUILD_FAILED,
    Stage.TEST: PipelineState.TEST_FAILED,
}


def _pending_statuses() -> dict[Stage, StageStatus]:
    return {stage: StageStatus.PENDING for stage in STAGE_ORDER}


@dataclass(slots=True)
class OrchestrationContext:
    """Everything the engine knows about the current project and volume."""

    descriptor: ProjectDescriptor | None = None
    statuses: dict[Stage, StageStatus] = field(default_factory=_pending_statuses)
    state: PipelineState = PipelineState.IDLE
    stale: bool = False
    output_dir: Path | None = None
    lease: PortLease | None = None


@dataclass(frozen=True, slots=True)
class ExtractedArtifacts:
    output_dir: Path
    sizes: dict[str, int]


@dataclass(frozen=True, slots=True)
class VolumeStatus:
    setup_complete: bool
    build_complete: bool


@dataclass(frozen=True, slots=True)
class RunAllResult:
    artifacts: ExtractedArtifacts
    lease: PortLease | None


class OrchestrationEngine:
    """Run pipeline operations one at a time and publish their progress.

    Operations execute on the caller's thread. ``abort()`` is safe to call
    from any other thread and ends the running stage as Aborted; volume
    mutations already applied are not rolled back.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        runtime: ContainerRuntime,
        harness: TestHarness | None = None,
    ) -> None:
        self.settings = settings
        self.runtime = runtime
        self.harness = harness or TestHarness(
            host=settings.harness.host,
            start_port=settings.harness.default_port,
        )
        if self.harness.on_console is None:
            self.harness.on_console = console_relay(self.events)
        self.context = OrchestrationContext()
        self._operation_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._abort_requested = threading.Event()
        self.runtime.bind_cancel(self._abort_requested)

    @property
    def events(self) -> EventBus:
        return self.runtime.events

    @property
    def descriptor(self) -> ProjectDescriptor | None:
        return self.context.descriptor

    @property
    def state(self) -> PipelineState:
        return self.context.state

    @property
    def stale(self) -> bool:
        return self.context.stale

    @property
    def busy(self) -> bool:
        return self._operation_lock.locked()

    def status(self, stage: Stage) -> StageStatus:
        with self._state_lock:
            return self.context.statuses[stage]

    def statuses(self) -> dict[Stage, StageStatus]:
        with self._state_lock:
            return dict(self.context.statuses)

    # -- project -----------------------------------------------------------

    def load_project(self, path: Path) -> ProjectDescriptor:
        """Read a descriptor; a different project resets all stage statuses."""

        descriptor = read_project_file(path, log=self.events.log)
        with self._state_lock:
            previous = self.context.descriptor
            switching = previous is None or previous.project_path != descriptor.project_path
            if switching and previous is not None and self.busy:
                raise OperationInProgressError(
                    "Cannot switch projects while an operation is running.",
                    step="load project",
                )
            self.context.descriptor = descriptor
        if not switching:
            return descriptor

        self._stop_live_test(quiet=True)
        with self._state_lock:
            self.context.statuses = _pending_statuses()
            self.context.state = PipelineState.IDLE
            self.context.stale = False
            self.context.output_dir = None
        for stage in STAGE_ORDER:
            self.events.emit(StageEvent(stage, StageStatus.PENDING, PipelineState.IDLE))
        return descriptor

    # -- public operations -------------------------------------------------

    def setup(self) -> None:
        with self._operation("setup"):
            self._setup_stage()

    def build(self) -> None:
        with self._operation("build"):
            self._build_stage()

    def extract(self, output_dir: Path | None = None) -> ExtractedArtifacts:
        with self._operation("extract"):
            return self._extract_stage(output_dir)

    def start_test(self, output_dir: Path | None = None) -> PortLease:
        with self._operation("start test", check_tool=False):
            return self._start_test_stage(output_dir)

    def run_test(self, output_dir: Path | None = None) -> PortLease:
        """Extract the current build and serve it."""

        with self._operation("test"):
            artifacts = self._extract_stage(output_dir, keep_running=True)
            return self._start_test_stage(artifacts.output_dir)

    def run_all(self, *, serve: bool = True, output_dir: Path | None = None) -> RunAllResult:
        """Setup, Build, Extract and (optionally) serve, stopping at the first failure."""

        with self._operation("run all"):
            started = time.monotonic()
            self.events.log("=== Step 1/3: Setup ===")
            self._setup_stage()
            self.events.log("=== Step 2/3: Build ===")
            self._build_stage()
            self.events.log("=== Step 3/3: Test ===")
            artifacts = self._extract_stage(output_dir, keep_running=serve)
            lease = self._start_test_stage(artifacts.output_dir) if serve else None
            self.events.log(
                f"All stages completed in {time.monotonic() - started:.1f}s.",
                LogSeverity.SUCCESS,
            )
            return RunAllResult(artifacts=artifacts, lease=lease)

    def rebuild(self) -> None:
        with self._operation("rebuild"):
            self._require_status(Stage.SETUP, Stage.BUILD)
            self._clean_build()
            self._build_stage()

    def clean_build(self) -> None:
        with self._operation("clean build"):
            self._clean_build()

    def clean_all(self) -> None:
        with self._operation("clean all"):
            self._stop_live_test()
            self.events.log("Removing all project content from the volume...")
            self._check_abort("clean all")
            outcome = self.runtime.run_rm(
                "sh",
                "-c",
                f"rm -rf {VOLUME_ROOT}/* {VOLUME_ROOT}/.[!.]*",
            )
            self._check_outcome(outcome, step="clean all", error=CleanFailedError)
            with self._state_lock:
                self.context.statuses = _pending_statuses()
                self.context.state = PipelineState.IDLE
                self.context.stale = False
            for stage in STAGE_ORDER:
                self.events.emit(StageEvent(stage, StageStatus.PENDING, PipelineState.IDLE))
            self.events.log("Volume cleaned. Run setup again.", LogSeverity.SUCCESS)

    def probe_volume_status(self) -> VolumeStatus:
        """Mark Setup/Build Complete when the volume already holds their output."""

        with self._operation("probe volume", check_tool=False):
            setup_done = self._probe(SETUP_STATUS_MARKER)
            build_done = setup_done and self._probe(BUILD_SENTINEL)
            changed: list[Stage] = []
            with self._state_lock:
                statuses = self.context.statuses
                if setup_done and statuses[Stage.SETUP] is StageStatus.PENDING:
                    statuses[Stage.SETUP] = StageStatus.COMPLETE
                    self.context.state = PipelineState.SETUP_DONE
                    changed.append(Stage.SETUP)
                if (
                    build_done
                    and statuses[Stage.SETUP] is StageStatus.COMPLETE
                    and statuses[Stage.BUILD] is StageStatus.PENDING
                ):
                    statuses[Stage.BUILD] = StageStatus.COMPLETE
                    self.context.state = PipelineState.BUILD_DONE
                    changed.append(Stage.BUILD)
                state = self.context.state
            for stage in changed:
                self.events.emit(
                    StageEvent(stage, StageStatus.COMPLETE, state, detail="found in volume"),
                )
            return VolumeStatus(setup_complete=setup_done, build_complete=build_done)

    def stop_test(self) -> bool:
        """Stop the test server; False when none was running."""

        return self._stop_live_test()

    def abort(self) -> bool:
        """Abort the running operation; False when nothing is running."""

        if not self.busy:
            return False
        self._abort_requested.set()
        self.runtime.abort()
        self.events.log("Abort requested.", LogSeverity.WARNING)
        return True

    # -- stale flag --------------------------------------------------------

    def handle_watch_event(self, event: WatchEvent) -> bool:
        """Record a source change; True when it newly raised the stale flag."""

        with self._state_lock:
            descriptor = self.context.descriptor
            if descriptor is None:
                return False
            path = Path(event.path).resolve()
            is_descriptor = path == descriptor.project_path
            if not is_descriptor and not path.is_relative_to(descriptor.ui_dir):
                return False
            raise_flag = (
                self.context.statuses[Stage.SETUP] is StageStatus.COMPLETE
                and not self.context.stale
            )
            if raise_flag:
                self.context.stale = True

        if is_descriptor:
            self.events.emit(NoticeEvent(NoticeKind.DESCRIPTOR_CHANGED, path=str(path)))
        if raise_flag:
            self.events.emit(NoticeEvent(NoticeKind.SOURCES_CHANGED, path=str(path)))
            self.events.log(
                "Source files changed since the last setup. Run setup to pick them up.",
                LogSeverity.WARNING,
            )
        return raise_flag

    def dismiss_stale(self) -> None:
        with self._state_lock:
            was_stale = self.context.stale
            self.context.stale = False
        if was_stale:
            self.events.emit(NoticeEvent(NoticeKind.STALE_DISMISSED))

    # -- stages ------------------------------------------------------------

    def _setup_stage(self) -> None:
        descriptor = self._require_project(Stage.SETUP)
        self._stop_live_test()

        def _body() -> None:
            started = time.monotonic()
            self.events.log("Building Docker image...")
            self._check_abort("build image")
            outcome = self.runtime.build_image()
            self._check_outcome(outcome, step="build image", error=PipelineError)

            self.events.log("Checking if project is already set up...")
            already_set_up = self._probe(SETUP_MARKER)
            if already_set_up:
                self._pull_updates()

            self._check_abort("start helper")
            with helper_container(self.runtime) as helper:
                if not already_set_up:
                    self._clone(helper)
                self._sync_ui_sources(helper, descriptor)
                if descriptor.fonts:
                    self._install_fonts(helper, descriptor)
            self._check_abort("setup")
            self.events.log(
                f"Setup completed successfully in {time.monotonic() - started:.1f}s!",
                LogSeverity.SUCCESS,
            )

        self._run_stage(Stage.SETUP, _body)
        with self._state_lock:
            self.context.stale = False

    def _build_stage(self) -> None:
        descriptor = self._require_project(Stage.BUILD)
        self._require_status(Stage.SETUP, Stage.BUILD)
        self._stop_live_test()

        def _body() -> None:
            started = time.monotonic()
            args = [
                "./build.sh",
                f"--lvgl={descriptor.version}",
                f"--display-width={descriptor.display_width}",
                f"--display-height={descriptor.display_height}",
            ]
            if descriptor.fonts:
                args.append(f"--fonts={FONTS_MANIFEST}")
            self.events.log(f"Building for LVGL {descriptor.version}...")
            self._check_abort("build.sh")
            outcome = self.runtime.run_rm(*args)
            self._check_outcome(outcome, step="build.sh", error=BuildFailedError)
            self.events.log(
                f"Build completed successfully in {time.monotonic() - started:.1f}s!",
                LogSeverity.SUCCESS,
            )

        self._run_stage(Stage.BUILD, _body)

    def _extract_stage(
        self,
        output_dir: Path | None,
        *,
        keep_running: bool = False,
    ) -> ExtractedArtifacts:
        self._require_status(Stage.BUILD, Stage.TEST)
        target = (output_dir or self.settings.pipeline.output_dir).resolve()

        def _body() -> ExtractedArtifacts:
            self.events.log(f"Cleaning output directory {target}...")
            if target.exists():
                shutil.rmtree(target)
            target.mkdir(parents=True)

            sizes: dict[str, int] = {}
            self._check_abort("start helper")
            with helper_container(self.runtime) as helper:
                for artifact in BUILD_ARTIFACTS:
                    self._check_abort(f"copy {artifact.name}")
                    destination = target / artifact.name
                    outcome = helper.copy_out(f"{BUILD_OUTPUT_DIR}/{artifact.name}", destination)
                    if not outcome.success:
                        if not artifact.required:
                            self.events.log(f"{artifact.name} not found (optional file, skipping)")
                            continue
                        raise ExtractFailedError(
                            f"Failed to extract {artifact.name}: {outcome.describe()}",
                            step=f"copy {artifact.name}",
                            output=outcome.failure_reason or outcome.output,
                        )
                    sizes[artifact.name] = destination.stat().st_size
                    self.events.log(f"Extracted {artifact.name} ({sizes[artifact.name]} bytes)")
            with self._state_lock:
                self.context.output_dir = target
            self.events.log(f"Build files extracted to {target}", LogSeverity.SUCCESS)
            return ExtractedArtifacts(output_dir=target, sizes=sizes)

        return self._run_stage(
            Stage.TEST,
            _body,
            done_status=StageStatus.RUNNING if keep_running else StageStatus.COMPLETE,
            done_state=PipelineState.SERVER_STARTING if keep_running else None,
        )

    def _start_test_stage(self, output_dir: Path | None) -> PortLease:
        self._require_status(Stage.BUILD, Stage.TEST)
        with self._state_lock:
            directory = output_dir or self.context.output_dir or self.settings.pipeline.output_dir

        def _body() -> PortLease:
            self.events.log("Starting test server...")
            try:
                lease = self.harness.start(directory)
            except (OSError, RuntimeError) as error:
                raise PipelineError(
                    f"Failed to start test server: {error}",
                    step="start server",
                ) from error
            with self._state_lock:
                self.context.lease = lease
            self.events.log(f"Test server running at {lease.url}", LogSeverity.SUCCESS)
            return lease

        return self._run_stage(
            Stage.TEST,
            _body,
            running_state=PipelineState.SERVER_STARTING,
            done_status=StageStatus.RUNNING,
            done_state=PipelineState.TEST_RUNNING,
        )

    def _clean_build(self) -> None:
        self._stop_live_test()
        self.events.log("Removing build output from the volume...")
        self._check_abort("clean build")
        outcome = self.runtime.run_rm("rm", "-rf", BUILD_OUTPUT_DIR)
        self._check_outcome(outcome, step="clean build", error=CleanFailedError)
        with self._state_lock:
            statuses = self.context.statuses
            statuses[Stage.BUILD] = StageStatus.PENDING
            statuses[Stage.TEST] = StageStatus.PENDING
            if statuses[Stage.SETUP] is StageStatus.COMPLETE:
                self.context.state = PipelineState.SETUP_DONE
            else:
                self.context.state = PipelineState.IDLE
            state = self.context.state
        for stage in (Stage.BUILD, Stage.TEST):
            self.events.emit(StageEvent(stage, StageStatus.PENDING, state))
        self.events.log("Build output removed.", LogSeverity.SUCCESS)

    # -- steps -------------------------------------------------------------

    def _pull_updates(self) -> None:
        self.events.log("Project already set up, pulling latest changes...")
        self._check_abort("git pull")
        outcome = self.runtime.run_rm("sh", "-c", f"cd {VOLUME_ROOT} && git pull")
        self._raise_if_aborted(outcome, step="git pull")
        if not outcome.success:
            self.events.log(
                "Git pull failed, continuing with existing code...",
                LogSeverity.WARNING,
            )

    def _clone(self, helper: HelperContainer) -> None:
        repository = self.settings.pipeline.repository_url
        self.events.log(f"Cloning {repository}...")
        helper.shell(
            f"cd {VOLUME_ROOT} && find . -mindepth 1 -delete "
            f"&& git clone --recursive {shlex.quote(repository)} .",
            step="git clone",
            error=CloneFailedError,
        )
        self._check_abort("git clone")

    def _sync_ui_sources(self, helper: HelperContainer, descriptor: ProjectDescriptor) -> None:
        self.events.log("Preparing source directory...")
        helper.replace_dir(UI_SOURCE_DIR, error=CopyFailedError)
        self._check_abort("copy UI files")
        if not descriptor.ui_dir.is_dir():
            raise CopyFailedError(
                f"UI directory not found: {descriptor.ui_dir}",
                step="copy UI files",
            )
        self.events.log(f"Copying UI files from {descriptor.ui_dir}...")
        helper.copy_dir_contents(descriptor.ui_dir, UI_SOURCE_DIR)
        self._check_abort("update timestamps")
        helper.touch_sources(UI_SOURCE_DIR, error=TimestampUpdateFailedError)
        self.events.log("UI files copied.", LogSeverity.SUCCESS)

    def _install_fonts(self, helper: HelperContainer, descriptor: ProjectDescriptor) -> None:
        self.events.log(f"Copying {len(descriptor.fonts)} font file(s)...")
        for font in descriptor.fonts:
            self._check_abort(f"copy font {font.file_name}")
            target = f"{VOLUME_ROOT}{font.target_path}"
            helper.make_dirs(posixpath.dirname(target))
            helper.copy_file(font.local_path, target)
            self.events.log(f"Copied font: {font.file_name} -> {font.target_path}")
        manifest = "\n".join(font.target_path for font in descriptor.fonts) + "\n"
        helper.write_text(FONTS_MANIFEST, manifest)
        self.events.log(f"Font list written to {FONTS_MANIFEST}", LogSeverity.SUCCESS)

    def _probe(self, path: str) -> bool:
        self._check_abort(f"probe {path}")
        outcome = self.runtime.run_rm("test", "-f", path, quiet=True)
        self._raise_if_aborted(outcome, step=f"probe {path}")
        return outcome.success

    # -- plumbing ----------------------------------------------------------

    @contextmanager
    def _operation(self, name: str, *, check_tool: bool = True) -> Iterator[None]:
        if not self._operation_lock.acquire(blocking=False):
            raise OperationInProgressError(
                f"Cannot start {name}: another operation is in progress.",
                step=name,
            )
        self._abort_requested.clear()
        try:
            if check_tool:
                self.runtime.check_available()
            yield
        finally:
            self._operation_lock.release()

    def _run_stage(
        self,
        stage: Stage,
        body: Callable[[], T],
        *,
        running_state: PipelineState | None = None,
        done_status: StageStatus = StageStatus.COMPLETE,
        done_state: PipelineState | None = None,
    ) -> T:
        self._set_status(stage, StageStatus.RUNNING, running_state or _RUNNING_STATES[stage])
        try:
            self._check_abort(stage.value)
            result = body()
        except AbortedError as error:
            error.stage = error.stage or stage
            self._set_status(stage, StageStatus.ABORTED, PipelineState.ABORTED, str(error))
            self.events.log(f"{stage.value.capitalize()} aborted.", LogSeverity.WARNING)
            raise
        except PipelineError as error:
            error.stage = error.stage or stage
            self._set_status(stage, StageStatus.FAILED, _FAILED_STATES[stage], str(error))
            self.events.log(f"{stage.value.capitalize()} failed: {error}", LogSeverity.ERROR)
            raise
        except Exception as error:
            self._set_status(stage, StageStatus.FAILED, _FAILED_STATES[stage], str(error))
            self.events.log(f"{stage.value.capitalize()} failed: {error}", LogSeverity.ERROR)
            raise
        self._set_status(stage, done_status, done_state or _DONE_STATES[stage])
        return result

    def _set_status(
        self,
        stage: Stage,
        status: StageStatus,
        state: PipelineState,
        detail: str = "",
    ) -> None:
        reset: list[Stage] = []
        with self._state_lock:
            statuses = self.context.statuses
            statuses[stage] = status
            if status in {StageStatus.RUNNING, StageStatus.FAILED, StageStatus.ABORTED}:
                for downstream in STAGE_ORDER[STAGE_ORDER.index(stage) + 1 :]:
                    if statuses[downstream] is not StageStatus.PENDING:
                        statuses[downstream] = StageStatus.PENDING
                        reset.append(downstream)
            self.context.state = state
        self.events.emit(StageEvent(stage, status, state, detail=detail))
        for downstream in reset:
            self.events.emit(StageEvent(downstream, StageStatus.PENDING, state))

    def _require_project(self, stage: Stage) -> ProjectDescriptor:
        descriptor = self.context.descriptor
        if descriptor is None:
            raise StageNotReadyError("No project loaded.", stage=stage)
        return descriptor

    def _require_status(self, prerequisite: Stage, stage: Stage) -> None:
        if self.status(prerequisite) is not StageStatus.COMPLETE:
            raise StageNotReadyError(
                f"{prerequisite.value.capitalize()} must complete before {stage.value}.",
                stage=stage,
            )

    def _stop_live_test(self, *, quiet: bool = False) -> bool:
        with self._state_lock:
            lease = self.context.lease
            self.context.lease = None
        if lease is None:
            return False
        self.harness.stop()
        if not quiet:
            self.events.log(f"Test server on port {lease.port} stopped.")
        with self._state_lock:
            self.context.statuses[Stage.TEST] = StageStatus.PENDING
            self.context.state = PipelineState.STOPPED
        self.events.emit(StageEvent(Stage.TEST, StageStatus.PENDING, PipelineState.STOPPED))
        return True

    def _check_abort(self, step: str) -> None:
        if self._abort_requested.is_set():
            raise AbortedError("Operation aborted by user.", step=step)

    def _raise_if_aborted(self, outcome: CommandOutcome, *, step: str) -> None:
        if outcome.aborted or self._abort_requested.is_set():
            raise AbortedError("Operation aborted by user.", step=step, output=outcome.output)

    def _check_outcome(
        self,
        outcome: CommandOutcome,
        *,
        step: str,
        error: type[PipelineError],
    ) -> None:
        self._raise_if_aborted(outcome, step=step)
        if not outcome.success:
            raise error(
                f"Command failed during '{step}': {outcome.describe()}",
                step=step,
                output=outcome.failure_reason or outcome.output,
            )


_CONSOLE_SEVERITIES = {
    "error": LogSeverity.ERROR,
    "warn": LogSeverity.WARNING,
}


def console_relay(events: EventBus) -> Callable[[ConsoleMessage], None]:
    """Forward console output of the served page as log events."""

    def _relay(message: ConsoleMessage) -> None:
        severity = _CONSOLE_SEVERITIES.get(message.level, LogSeverity.INFO)
        events.log(f"[console.{message.level}] {message.message}", severity)

    return _relay


def create_engine(settings: Settings, *, harness: TestHarness | None = None) -> OrchestrationEngine:
    """Wire the event bus, supervisor, runtime and harness for ``settings``."""

    events = EventBus(mirror_logger=logger)
    pipeline = settings.pipeline
    supervisor = ProcessSupervisor(
        events=events,
        noise_filter=NoiseFilter.with_extra_substrings(pipeline.extra_noise_filters),
        grace_seconds=pipeline.abort_grace_seconds,
    )
    runtime = ContainerRuntime(settings=pipeline, supervisor=supervisor)
    return OrchestrationEngine(settings=settings, runtime=runtime, harness=harness)
