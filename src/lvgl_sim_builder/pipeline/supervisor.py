"""Single-child process supervisor with streamed output and forced cancellation."""

from __future__ import annotations

import os
import queue
import shlex
import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import IO

from lvgl_sim_builder.pipeline.events import EventBus
from lvgl_sim_builder.pipeline.models import CommandOutcome, LogSeverity
from lvgl_sim_builder.pipeline.noise import NoiseFilter

_STREAM_CLOSED = None


class SupervisorBusyError(RuntimeError):
    """A second command was started while one is still in flight."""


class ProcessSupervisor:
    """Run one external command at a time and forward its output as log events."""

    def __init__(
        self,
        *,
        events: EventBus,
        noise_filter: NoiseFilter | None = None,
        grace_seconds: float = 1.0,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.events = events
        self.noise_filter = noise_filter or NoiseFilter()
        self.grace_seconds = grace_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self._abort_requested = threading.Event()
        self._abortable = True

    @property
    def is_running(self) -> bool:
        return self._process is not None

    def abort(self) -> bool:
        """Request termination of the active child; False when nothing is running."""

        if self._process is None or not self._abortable:
            return False
        self._abort_requested.set()
        return True

    def run(  # noqa: PLR0913
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        env_overrides: Mapping[str, str] | None = None,
        quiet: bool = False,
        abortable: bool = True,
        cancel: threading.Event | None = None,
    ) -> CommandOutcome:
        """Run ``command`` to completion and return its outcome.

        ``cancel`` is an external abort flag: when it is already set the command
        is not started, and setting it later terminates the child like
        ``abort()``. Runs with ``abortable=False`` ignore both.
        """

        run_args = [command, *args]
        env = os.environ.copy()
        if env_overrides:
            env.update(env_overrides)

        with self._lock:
            if self._process is not None:
                raise SupervisorBusyError(
                    f"Cannot start {command!r}: another command is still running.",
                )
            self._abort_requested.clear()
            if abortable and cancel is not None and cancel.is_set():
                self.events.log(f"Skipped after abort: {shlex.join(run_args)}", LogSeverity.DEBUG)
                return CommandOutcome(success=False, exit_code=None, aborted=True)
            self._abortable = abortable
            if not quiet:
                self.events.log(f"Running: {shlex.join(run_args)}", LogSeverity.DEBUG)
            try:
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=cwd,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            except FileNotFoundError:
                return CommandOutcome(
                    success=False,
                    exit_code=None,
                    failure_reason=f"Command not found: {command}",
                )
            except OSError as error:
                return CommandOutcome(
                    success=False,
                    exit_code=None,
                    failure_reason=f"Failed to start {command}: {error}",
                )
            self._process = process

        try:
            return self._supervise(
                process,
                quiet=quiet,
                cancel=cancel if abortable else None,
                abortable=abortable,
            )
        finally:
            with self._lock:
                self._process = None
                self._abortable = True

    def _supervise(
        self,
        process: subprocess.Popen[str],
        *,
        quiet: bool,
        cancel: threading.Event | None,
        abortable: bool,
    ) -> CommandOutcome:
        lines: queue.Queue[tuple[str, str | None]] = queue.Queue()
        readers = [
            threading.Thread(
                target=_pump_stream,
                args=(process.stdout, "stdout", lines),
                daemon=True,
            ),
            threading.Thread(
                target=_pump_stream,
                args=(process.stderr, "stderr", lines),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        captured = _CapturedOutput()
        aborted = False
        open_streams = len(readers)
        exited_at: float | None = None
        while True:
            open_streams -= self._drain(lines, captured, quiet=quiet, block=True)
            if process.poll() is not None:
                if open_streams == 0:
                    break
                # A detached grandchild may keep the pipes open after the child exits.
                now = time.monotonic()
                if exited_at is None:
                    exited_at = now
                elif now - exited_at >= self.grace_seconds:
                    break
            if abortable and (
                self._abort_requested.is_set() or (cancel is not None and cancel.is_set())
            ):
                _terminate_process(process, grace_seconds=self.grace_seconds)
                aborted = True
                break

        for reader in readers:
            reader.join(timeout=self.grace_seconds)
        self._drain(lines, captured, quiet=quiet, block=False)

        exit_code = process.wait()
        if aborted:
            self.events.log("Process aborted.", LogSeverity.WARNING)
        return CommandOutcome(
            success=exit_code == 0 and not aborted,
            exit_code=exit_code,
            output="".join(captured.combined),
            stdout="".join(captured.stdout),
            stderr="".join(captured.stderr),
            aborted=aborted,
        )

    def _drain(
        self,
        lines: queue.Queue[tuple[str, str | None]],
        captured: _CapturedOutput,
        *,
        quiet: bool,
        block: bool,
    ) -> int:
        closed = 0
        timeout = self.poll_interval_seconds if block else None
        while True:
            try:
                if timeout is not None:
                    stream, line = lines.get(timeout=timeout)
                    timeout = None
                else:
                    stream, line = lines.get_nowait()
            except queue.Empty:
                return closed

            if line is _STREAM_CLOSED:
                closed += 1
                continue
            captured.add(stream, line)
            text = line.rstrip("\r\n")
            if quiet or not text.strip() or self.noise_filter.is_noise(text):
                continue
            self.events.log(text)


class _CapturedOutput:
    __slots__ = ("combined", "stderr", "stdout")

    def __init__(self) -> None:
        self.combined: list[str] = []
        self.stdout: list[str] = []
        self.stderr: list[str] = []

    def add(self, stream: str, line: str) -> None:
        self.combined.append(line)
        if stream == "stdout":
            self.stdout.append(line)
        else:
            self.stderr.append(line)


def _pump_stream(
    handle: IO[str] | None,
    stream: str,
    lines: queue.Queue[tuple[str, str | None]],
) -> None:
    if handle is None:
        lines.put((stream, _STREAM_CLOSED))
        return
    try:
        for line in handle:
            lines.put((stream, line))
    except (OSError, ValueError):
        # Pipe closed underneath the reader after a forced kill.
        pass
    finally:
        lines.put((stream, _STREAM_CLOSED))


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
