"""Domain models for pipeline stages, events and command outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class Stage(str, Enum):
    """Pipeline stages in execution order."""

    SETUP = "setup"
    BUILD = "build"
    TEST = "test"


STAGE_ORDER: tuple[Stage, ...] = (Stage.SETUP, Stage.BUILD, Stage.TEST)


class StageStatus(str, Enum):
    """Per-stage lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"


class PipelineState(str, Enum):
    """Engine state for the current attempt."""

    IDLE = "idle"
    SETTING_UP = "setting_up"
    SETUP_DONE = "setup_done"
    SETUP_FAILED = "setup_failed"
    BUILDING = "building"
    BUILD_DONE = "build_done"
    BUILD_FAILED = "build_failed"
    EXTRACTING = "extracting"
    SERVER_STARTING = "server_starting"
    TEST_RUNNING = "test_running"
    TEST_FAILED = "test_failed"
    STOPPED = "stopped"
    ABORTED = "aborted"


class LogSeverity(str, Enum):
    """Severity attached to presentation-layer log events."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    DEBUG = "debug"


class NoticeKind(str, Enum):
    """Engine notifications that do not change stage statuses."""

    SOURCES_CHANGED = "sources_changed"
    DESCRIPTOR_CHANGED = "descriptor_changed"
    STALE_DISMISSED = "stale_dismissed"


class WatchKind(str, Enum):
    """Kinds of filesystem changes reported by the monitor."""

    CHANGED = "changed"
    ADDED = "added"
    REMOVED = "removed"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class LogEvent:
    """One line of operation output for the presentation layer."""

    severity: LogSeverity
    text: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class StageEvent:
    """Stage status transition or engine notification."""

    stage: Stage | None
    status: StageStatus | None
    state: PipelineState
    detail: str = ""
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class NoticeEvent:
    """Stale-flag and descriptor notifications for the presentation layer."""

    kind: NoticeKind
    path: str = ""
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class WatchEvent:
    """Filesystem change under a watched path."""

    path: str
    kind: WatchKind


@dataclass(slots=True)
class CommandOutcome:
    """Result of one supervised external command."""

    success: bool
    exit_code: int | None
    output: str = ""
    stdout: str = ""
    stderr: str = ""
    aborted: bool = False
    failure_reason: str | None = None

    def describe(self) -> str:
        """Short human-readable reason for a failed command."""

        if self.aborted:
            return "aborted by user"
        if self.failure_reason:
            return self.failure_reason
        return f"exit code {self.exit_code}"
