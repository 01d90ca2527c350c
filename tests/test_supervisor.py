from __future__ import annotations

import os
import sys
import threading
import time

import allure
import pytest

from lvgl_sim_builder.pipeline.events import EventBus
from lvgl_sim_builder.pipeline.models import LogEvent, LogSeverity
from lvgl_sim_builder.pipeline.supervisor import ProcessSupervisor, SupervisorBusyError

pytestmark = [
    allure.epic("Build Pipeline"),
    allure.feature("Process Supervisor"),
]


def _supervisor(**kwargs) -> tuple[ProcessSupervisor, list[LogEvent]]:
    events = EventBus()
    received: list[LogEvent] = []
    events.subscribe(received.append)
    return ProcessSupervisor(events=events, **kwargs), received


def _abort_when_started(supervisor: ProcessSupervisor) -> threading.Thread:
    def _wait_and_abort() -> None:
        deadline = time.monotonic() + 10
        while not supervisor.is_running and time.monotonic() < deadline:
            time.sleep(0.02)
        time.sleep(0.3)
        supervisor.abort()

    thread = threading.Thread(target=_wait_and_abort, daemon=True)
    thread.start()
    return thread


def test_output_lines_are_forwarded_and_captured() -> None:
    supervisor, received = _supervisor()
    script = "import sys; print('hello'); print('oops', file=sys.stderr); sys.exit(0)"

    outcome = supervisor.run(sys.executable, ["-c", script])

    assert outcome.success
    assert outcome.exit_code == 0
    assert outcome.stdout == "hello\n"
    assert outcome.stderr == "oops\n"
    info = [event.text for event in received if event.severity is LogSeverity.INFO]
    assert sorted(info) == ["hello", "oops"]
    debug = [event.text for event in received if event.severity is LogSeverity.DEBUG]
    assert debug and debug[0].startswith("Running: ")


def test_success_is_decided_by_exit_code_only() -> None:
    supervisor, _received = _supervisor()
    script = "import sys; print('error: not really', file=sys.stderr); sys.exit(3)"

    outcome = supervisor.run(sys.executable, ["-c", script])

    assert not outcome.success
    assert outcome.exit_code == 3
    assert outcome.describe() == "exit code 3"


def test_noise_lines_are_captured_but_not_emitted() -> None:
    supervisor, received = _supervisor()
    container_id = "a" * 64
    script = (
        "print('Found orphan containers ([x]) for this project')\n"
        f"print('{container_id}')\n"
        "print('Compiling ui.c')\n"
    )

    outcome = supervisor.run(sys.executable, ["-c", script])

    assert [event.text for event in received if event.severity is LogSeverity.INFO] == [
        "Compiling ui.c",
    ]
    assert container_id in outcome.output


def test_quiet_run_emits_nothing() -> None:
    supervisor, received = _supervisor()

    outcome = supervisor.run(sys.executable, ["-c", "print('probe')"], quiet=True)

    assert outcome.success
    assert outcome.output == "probe\n"
    assert received == []


def test_missing_executable_resolves_with_failure_reason() -> None:
    supervisor, _received = _supervisor()

    outcome = supervisor.run("definitely-not-a-real-binary-lvgl")

    assert not outcome.success
    assert outcome.exit_code is None
    assert outcome.failure_reason == "Command not found: definitely-not-a-real-binary-lvgl"
    assert not supervisor.is_running


def test_env_overrides_reach_the_child(tmp_path) -> None:
    supervisor, _received = _supervisor()
    script = "import os; print(os.environ['PROJECT_VOLUME']); print(os.getcwd())"

    outcome = supervisor.run(
        sys.executable,
        ["-c", script],
        cwd=tmp_path,
        env_overrides={"PROJECT_VOLUME": "lvgl-test"},
        quiet=True,
    )

    lines = outcome.stdout.splitlines()
    assert lines[0] == "lvgl-test"
    assert os.path.samefile(lines[1], tmp_path)


def test_abort_terminates_child_within_grace_window() -> None:
    supervisor, received = _supervisor(grace_seconds=1.0)
    thread = _abort_when_started(supervisor)

    started = time.monotonic()
    outcome = supervisor.run(sys.executable, ["-c", "import time; time.sleep(30)"])
    elapsed = time.monotonic() - started
    thread.join(timeout=5)

    assert outcome.aborted
    assert not outcome.success
    assert elapsed < 5
    assert not supervisor.is_running
    assert "Process aborted." in [event.text for event in received]


@pytest.mark.skipif(os.name == "nt", reason="SIGTERM handlers are POSIX-only")
def test_abort_kills_child_that_ignores_terminate() -> None:
    supervisor, _received = _supervisor(grace_seconds=0.5)
    script = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )
    thread = _abort_when_started(supervisor)

    started = time.monotonic()
    outcome = supervisor.run(sys.executable, ["-c", script])
    elapsed = time.monotonic() - started
    thread.join(timeout=5)

    assert outcome.aborted
    assert outcome.exit_code is not None
    assert outcome.exit_code < 0
    assert elapsed < 5


def test_abort_without_running_child_returns_false() -> None:
    supervisor, _received = _supervisor()

    assert not supervisor.abort()


def test_second_run_while_busy_is_rejected() -> None:
    supervisor, _received = _supervisor()
    errors: list[Exception] = []

    def _second_run() -> None:
        deadline = time.monotonic() + 10
        while not supervisor.is_running and time.monotonic() < deadline:
            time.sleep(0.02)
        try:
            supervisor.run(sys.executable, ["-c", "pass"])
        except SupervisorBusyError as error:
            errors.append(error)
        finally:
            supervisor.abort()

    thread = threading.Thread(target=_second_run, daemon=True)
    thread.start()
    supervisor.run(sys.executable, ["-c", "import time; time.sleep(30)"])
    thread.join(timeout=5)

    assert len(errors) == 1


def test_non_abortable_run_survives_abort() -> None:
    supervisor, received = _supervisor(grace_seconds=0.2)
    results: list[bool] = []

    def _abort_twice() -> None:
        deadline = time.monotonic() + 10
        while not supervisor.is_running and time.monotonic() < deadline:
            time.sleep(0.02)
        results.append(supervisor.abort())
        results.append(supervisor.abort())

    thread = threading.Thread(target=_abort_twice, daemon=True)
    thread.start()
    outcome = supervisor.run(
        sys.executable,
        ["-c", "import time; time.sleep(0.8); print('stopped')"],
        quiet=True,
        abortable=False,
    )
    thread.join(timeout=5)

    assert results == [False, False]
    assert outcome.success
    assert not outcome.aborted
    assert outcome.stdout == "stopped\n"
    assert "Process aborted." not in [event.text for event in received]


def test_cancel_flag_set_before_start_skips_the_command(tmp_path) -> None:
    supervisor, _received = _supervisor()
    cancel = threading.Event()
    cancel.set()
    marker = tmp_path / "ran"

    outcome = supervisor.run(
        sys.executable,
        ["-c", f"open({str(marker)!r}, 'w').close()"],
        cancel=cancel,
    )

    assert outcome.aborted
    assert not outcome.success
    assert not marker.exists()


def test_cancel_flag_terminates_running_child() -> None:
    supervisor, _received = _supervisor(grace_seconds=0.5)
    cancel = threading.Event()

    def _cancel_when_started() -> None:
        deadline = time.monotonic() + 10
        while not supervisor.is_running and time.monotonic() < deadline:
            time.sleep(0.02)
        cancel.set()

    thread = threading.Thread(target=_cancel_when_started, daemon=True)
    thread.start()
    started = time.monotonic()
    outcome = supervisor.run(sys.executable, ["-c", "import time; time.sleep(30)"], cancel=cancel)
    thread.join(timeout=5)

    assert outcome.aborted
    assert time.monotonic() - started < 5


def test_non_abortable_run_ignores_cancel_flag() -> None:
    supervisor, _received = _supervisor()
    cancel = threading.Event()
    cancel.set()

    outcome = supervisor.run(
        sys.executable,
        ["-c", "print('released')"],
        quiet=True,
        abortable=False,
        cancel=cancel,
    )

    assert outcome.success
    assert outcome.stdout == "released\n"
