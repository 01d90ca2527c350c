"""Runtime configuration for the simulator build pipeline."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DOCKER_BUILD_PATH = Path(__file__).resolve().parent / "docker_build"
DEFAULT_REPOSITORY_URL = "https://github.com/eez-open/lvgl-simulator-for-studio-docker-build"


@dataclass(slots=True)
class PipelineSettings:
    """Persistent volume, upstream repository and container runtime settings."""

    volume_name: str = "lvgl-simulator"
    repository_url: str = DEFAULT_REPOSITORY_URL
    docker_build_path: Path = DEFAULT_DOCKER_BUILD_PATH
    compose_service: str = "emscripten-build"
    compose_command: tuple[str, ...] = ("docker", "compose")
    docker_executable: str = "docker"
    output_dir: Path = Path("output")
    abort_grace_seconds: float = 1.0
    extra_noise_filters: tuple[str, ...] = ()


@dataclass(slots=True)
class HarnessSettings:
    """Test harness settings."""

    default_port: int = 3000
    host: str = "127.0.0.1"


@dataclass(slots=True)
class MonitorSettings:
    """File change monitor settings."""

    debounce_seconds: float = 0.3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    harness: HarnessSettings = field(default_factory=HarnessSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)

    @classmethod
    def from_env(cls, output_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to a local install."""

        return cls(
            pipeline=PipelineSettings(
                volume_name=os.getenv("LVGL_SIM_VOLUME", "lvgl-simulator").strip(),
                repository_url=os.getenv("LVGL_SIM_REPOSITORY_URL", DEFAULT_REPOSITORY_URL),
                docker_build_path=Path(
                    os.getenv("LVGL_SIM_DOCKER_BUILD_PATH", str(DEFAULT_DOCKER_BUILD_PATH)),
                ),
                compose_service=os.getenv("LVGL_SIM_COMPOSE_SERVICE", "emscripten-build"),
                compose_command=_split_command(
                    os.getenv("LVGL_SIM_COMPOSE_COMMAND", "docker compose"),
                ),
                docker_executable=os.getenv("LVGL_SIM_DOCKER_EXECUTABLE", "docker"),
                output_dir=output_dir or Path(os.getenv("LVGL_SIM_OUTPUT_DIR", "output")),
                abort_grace_seconds=float(os.getenv("LVGL_SIM_ABORT_GRACE_SECONDS", "1.0")),
                extra_noise_filters=_collect_noise_filters(),
            ),
            harness=HarnessSettings(
                default_port=int(os.getenv("LVGL_SIM_TEST_PORT", "3000")),
            ),
            monitor=MonitorSettings(
                debounce_seconds=float(os.getenv("LVGL_SIM_WATCH_DEBOUNCE_SECONDS", "0.3")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the pipeline cannot work with."""

        if not self.pipeline.volume_name:
            raise ValueError("LVGL_SIM_VOLUME must not be empty.")
        if not self.pipeline.compose_command:
            raise ValueError("LVGL_SIM_COMPOSE_COMMAND must not be empty.")
        if self.pipeline.abort_grace_seconds <= 0:
            raise ValueError("LVGL_SIM_ABORT_GRACE_SECONDS must be > 0.")
        if not 1 <= self.harness.default_port <= 65_535:
            raise ValueError(
                f"LVGL_SIM_TEST_PORT must be within 1..65535, got {self.harness.default_port}.",
            )
        if self.monitor.debounce_seconds <= 0:
            raise ValueError("LVGL_SIM_WATCH_DEBOUNCE_SECONDS must be > 0.")


def _split_command(raw: str) -> tuple[str, ...]:
    return tuple(shlex.split(raw.strip()))


def _collect_noise_filters() -> tuple[str, ...]:
    raw = os.getenv("LVGL_SIM_NOISE_FILTERS", "").strip()
    if not raw:
        return ()

    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        token = part.strip()
        if not token or token in seen:
            continue
        seen.add(token)
        values.append(token)
    return tuple(values)
