from __future__ import annotations

import json
import os
import stat
import sys
import threading
import time
from pathlib import Path

import allure
import pytest

from lvgl_sim_builder.config import PipelineSettings
from lvgl_sim_builder.pipeline.broker import helper_container
from lvgl_sim_builder.pipeline.errors import AbortedError, ToolUnavailableError
from lvgl_sim_builder.pipeline.events import EventBus
from lvgl_sim_builder.pipeline.runtime import ContainerRuntime
from lvgl_sim_builder.pipeline.supervisor import ProcessSupervisor

pytestmark = [
    allure.epic("Build Pipeline"),
    allure.feature("Container Runtime"),
    pytest.mark.skipif(os.name == "nt", reason="fake docker launcher is a POSIX shell script"),
]

CONTAINER_ID = "c0ffee15dead"


def _write_fake_docker(bin_dir: Path, state_dir: Path, *, daemon_running: bool = True) -> Path:
    script = f"""
import json
import pathlib
import sys
import time

state = pathlib.Path({str(state_dir)!r})
args = sys.argv[1:]
with (state / "calls.jsonl").open("a", encoding="utf-8") as log:
    log.write(json.dumps(args) + "\\n")
if args == ["--version"]:
    print("Docker version 27.0.0, build fake")
    raise SystemExit(0)
if args[:1] == ["ps"]:
    raise SystemExit(0 if {daemon_running!r} else 1)
if args[:1] == ["compose"] and "-d" in args:
    print({CONTAINER_ID!r})
    raise SystemExit(0)
if args[:1] == ["exec"]:
    (state / "exec-started").touch()
    time.sleep(30)
    raise SystemExit(0)
if args[:1] == ["stop"]:
    (state / "stopping").touch()
    time.sleep(1)
    (state / "stopped").touch()
    raise SystemExit(0)
raise SystemExit(0)
"""
    implementation = bin_dir / "docker_impl.py"
    implementation.write_text(script.strip() + "\n", "utf-8")
    launcher = bin_dir / "docker"
    launcher.write_text(
        f'#!/usr/bin/env sh\nexec "{sys.executable}" "{implementation}" "$@"\n',
        "utf-8",
    )
    launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR)
    return launcher


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    state = tmp_path / "state"
    state.mkdir()
    return state


def _runtime(tmp_path: Path, state_dir: Path, **kwargs) -> ContainerRuntime:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    docker = str(_write_fake_docker(bin_dir, state_dir, **kwargs))
    settings = PipelineSettings(
        docker_build_path=tmp_path,
        docker_executable=docker,
        compose_command=(docker, "compose"),
    )
    supervisor = ProcessSupervisor(events=EventBus(), grace_seconds=0.3)
    return ContainerRuntime(settings=settings, supervisor=supervisor)


def _calls(state_dir: Path) -> list[list[str]]:
    log = state_dir / "calls.jsonl"
    return [json.loads(line) for line in log.read_text("utf-8").splitlines()]


def _wait_for(path: Path, timeout: float = 10) -> bool:
    deadline = time.monotonic() + timeout
    while not path.exists() and time.monotonic() < deadline:
        time.sleep(0.02)
    return path.exists()


def test_helper_is_released_when_abort_is_repeated_during_stop(
    tmp_path: Path,
    state_dir: Path,
) -> None:
    runtime = _runtime(tmp_path, state_dir)
    cancel = threading.Event()
    runtime.bind_cancel(cancel)
    repeated: list[bool] = []

    def _abort_twice() -> None:
        if _wait_for(state_dir / "exec-started"):
            cancel.set()
            runtime.abort()
        if _wait_for(state_dir / "stopping"):
            repeated.append(runtime.abort())

    thread = threading.Thread(target=_abort_twice, daemon=True)
    thread.start()
    with pytest.raises(AbortedError), helper_container(runtime) as helper:
        helper.run("sleep", "30", step="wait")
    thread.join(timeout=10)

    assert (state_dir / "stopped").exists()
    assert repeated == [False]
    assert ["stop", "--time", "0", CONTAINER_ID] in _calls(state_dir)


def test_no_command_starts_once_cancel_is_set(tmp_path: Path, state_dir: Path) -> None:
    runtime = _runtime(tmp_path, state_dir)
    cancel = threading.Event()
    cancel.set()
    runtime.bind_cancel(cancel)

    outcome = runtime.run_rm("./build.sh", "--lvgl=9.2.2")

    assert outcome.aborted
    assert not (state_dir / "calls.jsonl").exists()


def test_check_available_reports_abort_as_abort(tmp_path: Path, state_dir: Path) -> None:
    runtime = _runtime(tmp_path, state_dir)
    cancel = threading.Event()
    cancel.set()
    runtime.bind_cancel(cancel)

    with pytest.raises(AbortedError) as error:
        runtime.check_available()

    assert error.value.step == "check docker"


def test_check_available_reports_stopped_daemon(tmp_path: Path, state_dir: Path) -> None:
    runtime = _runtime(tmp_path, state_dir, daemon_running=False)

    with pytest.raises(ToolUnavailableError, match="Docker is not running"):
        runtime.check_available()

    assert _calls(state_dir) == [["--version"], ["ps"]]
