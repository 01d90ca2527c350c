"""Pipeline error taxonomy."""

from __future__ import annotations

from lvgl_sim_builder.pipeline.models import Stage


class PipelineError(RuntimeError):
    """Stage failure with the step and tool output that caused it."""

    def __init__(
        self,
        message: str,
        *,
        stage: Stage | None = None,
        step: str | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.step = step
        self.output = output

    def context_lines(self, *, max_output_lines: int = 20) -> list[str]:
        """Render stage, step and the tail of tool output for a human reader."""

        lines = [f"Error: {self}"]
        if self.stage is not None:
            lines.append(f"  stage: {self.stage.value}")
        if self.step:
            lines.append(f"  step: {self.step}")
        tail = [line for line in self.output.splitlines() if line.strip()][-max_output_lines:]
        if tail:
            lines.append("  tool output:")
            lines.extend(f"    {line}" for line in tail)
        return lines


class ToolUnavailableError(PipelineError):
    """Container runtime missing or not running."""


class CloneFailedError(PipelineError):
    """Initial clone of the upstream repository failed."""


class CopyFailedError(PipelineError):
    """Copying files into or inside the volume failed."""


class TimestampUpdateFailedError(PipelineError):
    """Touching copied sources failed."""


class BuildFailedError(PipelineError):
    """Build script exited non-zero."""


class ExtractFailedError(PipelineError):
    """A mandatory artifact could not be copied out of the volume."""


class CleanFailedError(PipelineError):
    """Removing build output or project content failed."""


class HelperContainerError(PipelineError):
    """Helper container could not be started."""


class AbortedError(PipelineError):
    """Operation stopped by an explicit abort request."""


class StageNotReadyError(PipelineError):
    """Stage prerequisites are not complete."""


class OperationInProgressError(PipelineError):
    """Another pipeline operation is already running."""
