"""Scoped helper containers for filesystem work inside the project volume."""

from __future__ import annotations

import base64
import logging
import shlex
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from uuid import uuid4

from lvgl_sim_builder.pipeline.errors import (
    AbortedError,
    CopyFailedError,
    HelperContainerError,
    PipelineError,
)
from lvgl_sim_builder.pipeline.models import CommandOutcome, LogSeverity
from lvgl_sim_builder.pipeline.runtime import ContainerRuntime

logger = logging.getLogger(__name__)

HELPER_LABEL_KEY = "lvgl-sim-builder.helper"


class HelperContainer:
    """Handle to a running helper container; valid only inside ``helper_container``."""

    def __init__(self, runtime: ContainerRuntime, container_id: str) -> None:
        self.runtime = runtime
        self.container_id = container_id

    def exists(self, path: str) -> bool:
        outcome = self.runtime.exec(self.container_id, "test", "-e", path, quiet=True)
        _raise_if_aborted(outcome, step=f"probe {path}")
        return outcome.success

    def run(
        self,
        *args: str,
        step: str,
        error: type[PipelineError] = PipelineError,
    ) -> CommandOutcome:
        """Run a command inside the helper and raise ``error`` when it fails."""

        outcome = self.runtime.exec(self.container_id, *args)
        _check(outcome, step=step, error=error)
        return outcome

    def shell(
        self,
        script: str,
        *,
        step: str,
        error: type[PipelineError] = PipelineError,
    ) -> CommandOutcome:
        return self.run("sh", "-c", script, step=step, error=error)

    def make_dirs(self, path: str, *, error: type[PipelineError] = CopyFailedError) -> None:
        self.run("mkdir", "-p", path, step=f"create {path}", error=error)

    def replace_dir(self, path: str, *, error: type[PipelineError] = CopyFailedError) -> None:
        quoted = shlex.quote(path)
        self.shell(f"rm -rf {quoted} && mkdir -p {quoted}", step=f"recreate {path}", error=error)

    def copy_dir_contents(self, local_dir: Path, target_dir: str) -> None:
        """Copy the contents of ``local_dir`` (not the directory itself) into ``target_dir``."""

        source = f"{local_dir.resolve()}/."
        target = target_dir.rstrip("/") + "/"
        outcome = self.runtime.copy_into(self.container_id, source, target)
        _check(outcome, step=f"copy {local_dir} -> {target}", error=CopyFailedError)

    def copy_file(self, local_path: Path, target_path: str) -> None:
        outcome = self.runtime.copy_into(self.container_id, str(local_path.resolve()), target_path)
        _check(outcome, step=f"copy {local_path.name} -> {target_path}", error=CopyFailedError)

    def touch_sources(self, path: str, *, error: type[PipelineError] = PipelineError) -> None:
        """Bump mtimes of C sources and headers so timestamp-based rebuilds pick them up."""

        self.run(
            "find",
            path,
            "-type",
            "f",
            "(",
            "-name",
            "*.c",
            "-o",
            "-name",
            "*.h",
            ")",
            "-exec",
            "touch",
            "{}",
            "+",
            step=f"touch sources under {path}",
            error=error,
        )

    def write_text(
        self,
        path: str,
        text: str,
        *,
        error: type[PipelineError] = CopyFailedError,
    ) -> None:
        encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
        self.shell(
            f"echo {shlex.quote(encoded)} | base64 -d > {shlex.quote(path)}",
            step=f"write {path}",
            error=error,
        )

    def copy_out(self, source_path: str, local_path: Path) -> CommandOutcome:
        """Copy a file out of the volume; the caller decides whether failure is fatal."""

        outcome = self.runtime.copy_out(self.container_id, source_path, local_path)
        _raise_if_aborted(outcome, step=f"copy out {source_path}")
        return outcome


@contextmanager
def helper_container(runtime: ContainerRuntime) -> Iterator[HelperContainer]:
    """Start a helper bound to the project volume and always stop it on exit."""

    label = f"{HELPER_LABEL_KEY}={uuid4().hex}"
    outcome, container_id = runtime.run_detached(label=label)
    if container_id is None:
        _release_labelled(runtime, label)
        _raise_if_aborted(outcome, step="start helper container")
        raise HelperContainerError(
            "Failed to create temporary container.",
            step="start helper container",
            output=outcome.failure_reason or outcome.output,
        )

    runtime.events.log(f"Created temporary container: {container_id[:12]}")
    try:
        yield HelperContainer(runtime, container_id)
    finally:
        stopped = runtime.stop(container_id)
        if not stopped.success:
            runtime.events.log(
                f"Failed to stop temporary container {container_id[:12]}: {stopped.describe()}",
                LogSeverity.WARNING,
            )


def _release_labelled(runtime: ContainerRuntime, label: str) -> None:
    # A detached run interrupted mid-flight may still have created the container.
    for container_id in runtime.list_labelled(label):
        logger.info("Stopping orphaned helper container %s", container_id)
        runtime.stop(container_id)


def _raise_if_aborted(outcome: CommandOutcome, *, step: str) -> None:
    if outcome.aborted:
        raise AbortedError("Operation aborted by user.", step=step, output=outcome.output)


def _check(outcome: CommandOutcome, *, step: str, error: type[PipelineError]) -> None:
    _raise_if_aborted(outcome, step=step)
    if not outcome.success:
        raise error(
            f"Command failed during '{step}': {outcome.describe()}",
            step=step,
            output=outcome.failure_reason or outcome.output,
        )
