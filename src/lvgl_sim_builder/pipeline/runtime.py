"""Container runtime command surface (Docker CLI plus Docker Compose)."""

from __future__ import annotations

import threading
from pathlib import Path

from lvgl_sim_builder.config import PipelineSettings
from lvgl_sim_builder.pipeline.errors import AbortedError, ToolUnavailableError
from lvgl_sim_builder.pipeline.events import EventBus
from lvgl_sim_builder.pipeline.models import CommandOutcome, LogSeverity
from lvgl_sim_builder.pipeline.supervisor import ProcessSupervisor


class ContainerRuntime:
    """Issue image, run, copy, exec and stop commands against the project volume.

    Compose commands run from the docker-build directory with
    ``PROJECT_VOLUME`` set, so every invocation mounts the same named volume.
    """

    def __init__(self, *, settings: PipelineSettings, supervisor: ProcessSupervisor) -> None:
        self.settings = settings
        self.supervisor = supervisor
        self._cancel: threading.Event | None = None

    def bind_cancel(self, cancel: threading.Event) -> None:
        """Refuse to start, and terminate, abortable commands while ``cancel`` is set."""

        self._cancel = cancel

    @property
    def events(self) -> EventBus:
        return self.supervisor.events

    def check_available(self) -> None:
        """Raise ToolUnavailableError unless the Docker CLI and daemon respond."""

        self.events.log("Checking Docker status...")
        docker = self.settings.docker_executable
        version = self.supervisor.run(docker, ["--version"], quiet=True, cancel=self._cancel)
        _raise_if_aborted(version)
        if not version.success:
            raise ToolUnavailableError(
                "Docker is not installed. Please install Docker Desktop "
                "(or Docker Engine with the compose plugin) and make sure "
                f"'{docker}' is on PATH.",
                step="check docker",
                output=version.failure_reason or version.output,
            )
        daemon = self.supervisor.run(docker, ["ps"], quiet=True, cancel=self._cancel)
        _raise_if_aborted(daemon)
        if not daemon.success:
            raise ToolUnavailableError(
                "Docker is not running. Please start Docker Desktop or the Docker daemon.",
                step="check docker",
                output=daemon.failure_reason or daemon.output,
            )
        self.events.log("Docker is ready.", LogSeverity.SUCCESS)

    def abort(self) -> bool:
        return self.supervisor.abort()

    def build_image(self) -> CommandOutcome:
        return self._compose(["build"], quiet=True)

    def run_rm(self, *args: str, quiet: bool = False) -> CommandOutcome:
        return self._compose(
            ["run", "--rm", "--remove-orphans", self.settings.compose_service, *args],
            quiet=quiet,
        )

    def run_detached(self, *, label: str | None = None) -> tuple[CommandOutcome, str | None]:
        """Start a long-sleeping helper; returns the outcome and the parsed container id."""

        label_args = ["--label", label] if label else []
        outcome = self._compose(
            [
                "run",
                "-d",
                "--rm",
                "--remove-orphans",
                *label_args,
                self.settings.compose_service,
                "sleep",
                "infinity",
            ],
            quiet=True,
        )
        if not outcome.success:
            return outcome, None
        return outcome, parse_container_id(outcome.stdout)

    def list_labelled(self, label: str) -> list[str]:
        """Ids of running containers carrying ``label`` (``key=value``)."""

        outcome = self._docker(
            ["ps", "-q", "--filter", f"label={label}"],
            quiet=True,
            abortable=False,
        )
        if not outcome.success:
            return []
        return [line.strip() for line in outcome.stdout.splitlines() if line.strip()]

    def copy_into(self, container_id: str, local_path: str, target_path: str) -> CommandOutcome:
        return self._docker(["cp", local_path, f"{container_id}:{target_path}"])

    def copy_out(self, container_id: str, source_path: str, local_path: Path) -> CommandOutcome:
        return self._docker(["cp", f"{container_id}:{source_path}", str(local_path)])

    def exec(self, container_id: str, *args: str, quiet: bool = False) -> CommandOutcome:
        return self._docker(["exec", container_id, *args], quiet=quiet)

    def stop(self, container_id: str) -> CommandOutcome:
        """Stop a helper without waiting out the daemon timeout; never aborted."""

        return self._docker(["stop", "--time", "0", container_id], quiet=True, abortable=False)

    def _compose(self, args: list[str], *, quiet: bool = False) -> CommandOutcome:
        head, *rest = self.settings.compose_command
        return self.supervisor.run(
            head,
            [*rest, *args],
            cwd=self.settings.docker_build_path,
            env_overrides={"PROJECT_VOLUME": self.settings.volume_name},
            quiet=quiet,
            cancel=self._cancel,
        )

    def _docker(
        self,
        args: list[str],
        *,
        quiet: bool = False,
        abortable: bool = True,
    ) -> CommandOutcome:
        return self.supervisor.run(
            self.settings.docker_executable,
            args,
            cwd=self.settings.docker_build_path,
            env_overrides={"PROJECT_VOLUME": self.settings.volume_name},
            quiet=quiet,
            abortable=abortable,
            cancel=self._cancel,
        )


def _raise_if_aborted(outcome: CommandOutcome) -> None:
    if outcome.aborted:
        raise AbortedError("Operation aborted by user.", step="check docker", output=outcome.output)


def parse_container_id(stdout: str) -> str | None:
    """Return the last non-empty stdout line, the id printed by a detached run."""

    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        return None
    token = lines[-1]
    if any(char.isspace() for char in token):
        return None
    return token
