"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from lvgl_sim_builder.config import HarnessSettings, PipelineSettings, Settings
from lvgl_sim_builder.harness.server import TestHarness
from lvgl_sim_builder.pipeline.engine import OrchestrationEngine
from lvgl_sim_builder.pipeline.events import EventBus
from lvgl_sim_builder.pipeline.models import CommandOutcome

Call = tuple[str, ...]

BUILD_FILES = ("index.html", "index.js", "index.wasm")
INDEX_HTML = "<html><head><title>sim</title></head><body></body></html>"


def ok(stdout: str = "") -> CommandOutcome:
    return CommandOutcome(success=True, exit_code=0, output=stdout, stdout=stdout)


def failed(output: str = "boom", exit_code: int = 1) -> CommandOutcome:
    return CommandOutcome(success=False, exit_code=exit_code, output=output, stderr=output)


def aborted() -> CommandOutcome:
    return CommandOutcome(success=False, exit_code=-15, aborted=True)


def write_project(  # noqa: PLR0913
    root: Path,
    *,
    name: str = "demo",
    version: str = "9.2.2",
    flow_support: bool = True,
    width: int = 480,
    height: int = 272,
    destination: str = "src/ui",
    fonts: list[dict[str, Any]] | None = None,
) -> Path:
    """Create an ``.eez-project`` file plus a UI source tree under ``root``."""

    ui_dir = root / destination
    ui_dir.mkdir(parents=True, exist_ok=True)
    (ui_dir / "ui.c").write_text("void ui_init(void) {}\n", "utf-8")
    (ui_dir / "ui.h").write_text("void ui_init(void);\n", "utf-8")
    payload = {
        "settings": {
            "general": {
                "lvglVersion": version,
                "flowSupport": flow_support,
                "displayWidth": width,
                "displayHeight": height,
            },
            "build": {"destinationFolder": destination},
        },
        "fonts": fonts or [],
    }
    path = root / f"{name}.eez-project"
    path.write_text(json.dumps(payload), "utf-8")
    return path


class FakeRuntime:
    """In-memory stand-in for ContainerRuntime that simulates the project volume."""

    def __init__(self, *, volume: set[str] | None = None, produce_data: bool = False) -> None:
        self.events = EventBus()
        self.calls: list[Call] = []
        self.volume: set[str] = set(volume or ())
        self.produce_data = produce_data
        self.running_helpers: set[str] = set()
        self.abort_requests = 0
        self.fail_when: Callable[[Call], CommandOutcome | None] = lambda _call: None
        self._helper_counter = 0

    def check_available(self) -> None:
        self.calls.append(("check_available",))

    def bind_cancel(self, cancel) -> None:
        self.cancel = cancel

    def abort(self) -> bool:
        self.abort_requests += 1
        return True

    def build_image(self) -> CommandOutcome:
        return self._record(("build_image",))

    def run_rm(self, *args: str, quiet: bool = False) -> CommandOutcome:
        call = ("run_rm", *args)
        override = self._override(call)
        if override is not None:
            return override
        if args[:2] == ("test", "-f"):
            return ok() if args[2] in self.volume else failed("", exit_code=1)
        if args and args[0] == "./build.sh":
            files = [*BUILD_FILES, "index.data"] if self.produce_data else list(BUILD_FILES)
            self.volume.update(f"/project/build/{name}" for name in files)
        if args == ("rm", "-rf", "/project/build"):
            self.volume = {path for path in self.volume if not path.startswith("/project/build/")}
        if args[:2] == ("sh", "-c") and args[2].startswith("rm -rf /project/*"):
            self.volume.clear()
        return ok()

    def run_detached(self, *, label: str | None = None) -> tuple[CommandOutcome, str | None]:
        call = ("run_detached",)
        override = self._override(call)
        if override is not None:
            return override, None
        self._helper_counter += 1
        container_id = f"helper{self._helper_counter}"
        self.running_helpers.add(container_id)
        return ok(container_id), container_id

    def list_labelled(self, label: str) -> list[str]:
        return []

    def copy_into(self, container_id: str, local_path: str, target_path: str) -> CommandOutcome:
        return self._record(("copy_into", container_id, local_path, target_path))

    def copy_out(self, container_id: str, source_path: str, local_path: Path) -> CommandOutcome:
        call = ("copy_out", container_id, source_path, str(local_path))
        override = self._override(call)
        if override is not None:
            return override
        if source_path not in self.volume:
            return failed(f"Could not find the file {source_path} in container {container_id}")
        name = Path(source_path).name
        content = INDEX_HTML if name == "index.html" else f"{name} payload"
        local_path.write_text(content, "utf-8")
        return ok()

    def exec(self, container_id: str, *args: str, quiet: bool = False) -> CommandOutcome:
        call = ("exec", container_id, *args)
        override = self._override(call)
        if override is not None:
            return override
        if args[:2] == ("sh", "-c") and "git clone" in args[2]:
            self.volume.update({"/project/build.sh", "/project/CMakeLists.txt"})
        return ok()

    def stop(self, container_id: str) -> CommandOutcome:
        self.calls.append(("stop", container_id))
        self.running_helpers.discard(container_id)
        return ok()

    def commands(self, kind: str) -> list[Call]:
        return [call for call in self.calls if call[0] == kind]

    def _record(self, call: Call) -> CommandOutcome:
        override = self._override(call)
        return ok() if override is None else override

    def _override(self, call: Call) -> CommandOutcome | None:
        self.calls.append(call)
        return self.fail_when(call)


@pytest.fixture()
def project_file(tmp_path: Path) -> Path:
    return write_project(tmp_path / "project")


@pytest.fixture()
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        pipeline=PipelineSettings(output_dir=tmp_path / "output"),
        harness=HarnessSettings(default_port=39_000),
    )


@pytest.fixture()
def engine(settings: Settings, fake_runtime: FakeRuntime):
    harness = TestHarness(host=settings.harness.host, start_port=settings.harness.default_port)
    engine = OrchestrationEngine(settings=settings, runtime=fake_runtime, harness=harness)
    yield engine
    harness.stop()
