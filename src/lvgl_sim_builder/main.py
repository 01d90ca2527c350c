"""CLI entrypoint for lvgl-sim-builder."""

import logging
from collections.abc import Iterable
from pathlib import Path

import rich_click as click

from lvgl_sim_builder import __version__
from lvgl_sim_builder.pipeline.controllers import (
    CheckCommand,
    CleanCommand,
    CommandFailedError,
    PipelineCliController,
    ProjectCommand,
    RunAllCommand,
    ServeCommand,
)

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()

_PROJECT_ARGUMENT = click.argument(
    "project_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
_OUTPUT_DIR_OPTION = click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Local directory for extracted artifacts. Defaults to LVGL_SIM_OUTPUT_DIR or ./output.",
)


@click.group()
@click.version_option(version=__version__, prog_name="lvgl-sim-builder")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Level for diagnostic logging on stderr.",
)
def lvgl_sim_builder(log_level: str) -> None:
    """Build and test **LVGL WebAssembly simulators** inside Docker."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@lvgl_sim_builder.command("check")
def check() -> None:
    """Check that Docker is installed and running."""

    _emit_lines(PIPELINE_CONTROLLER.check(CheckCommand()), failure="Docker is not available.")


@lvgl_sim_builder.command("status")
@_PROJECT_ARGUMENT
def status(project_path: Path) -> None:
    """Show the project summary and the stages already present in the volume."""

    _emit_lines(PIPELINE_CONTROLLER.status(ProjectCommand(project_path=project_path)))


@lvgl_sim_builder.command("setup")
@_PROJECT_ARGUMENT
def setup(project_path: Path) -> None:
    """Prepare the volume: build image, clone or update, copy UI sources and fonts."""

    _emit_lines(
        PIPELINE_CONTROLLER.setup(ProjectCommand(project_path=project_path)),
        failure="Setup failed.",
    )


@lvgl_sim_builder.command("build")
@_PROJECT_ARGUMENT
def build(project_path: Path) -> None:
    """Compile the simulator inside the container."""

    _emit_lines(
        PIPELINE_CONTROLLER.build(ProjectCommand(project_path=project_path)),
        failure="Build failed.",
    )


@lvgl_sim_builder.command("rebuild")
@_PROJECT_ARGUMENT
def rebuild(project_path: Path) -> None:
    """Remove previous build output and build again."""

    _emit_lines(
        PIPELINE_CONTROLLER.rebuild(ProjectCommand(project_path=project_path)),
        failure="Rebuild failed.",
    )


@lvgl_sim_builder.command("extract")
@_PROJECT_ARGUMENT
@_OUTPUT_DIR_OPTION
def extract(project_path: Path, output_dir: Path | None) -> None:
    """Copy build artifacts from the volume into the output directory."""

    _emit_lines(
        PIPELINE_CONTROLLER.extract(
            ProjectCommand(project_path=project_path, output_dir=output_dir),
        ),
        failure="Extract failed.",
    )


@lvgl_sim_builder.command("run-all")
@_PROJECT_ARGUMENT
@_OUTPUT_DIR_OPTION
@click.option(
    "--serve/--no-serve",
    default=True,
    show_default=True,
    help="Start the test server after a successful build and keep it running.",
)
def run_all(project_path: Path, output_dir: Path | None, serve: bool) -> None:
    """Run setup, build and test in one go."""

    _emit_lines(
        PIPELINE_CONTROLLER.run_all(
            RunAllCommand(project_path=project_path, serve=serve, output_dir=output_dir),
        ),
        failure="Pipeline failed.",
    )


@lvgl_sim_builder.command("serve")
@click.argument(
    "output_dir",
    required=False,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65_535),
    default=None,
    help="First port to try. Defaults to LVGL_SIM_TEST_PORT or 3000.",
)
def serve(output_dir: Path | None, port: int | None) -> None:
    """Serve an extracted build with console capture and caching disabled."""

    _emit_lines(
        PIPELINE_CONTROLLER.serve(ServeCommand(output_dir=output_dir, port=port)),
        failure="Test server failed.",
    )


@lvgl_sim_builder.command("clean-build")
def clean_build() -> None:
    """Remove build output from the volume."""

    _emit_lines(PIPELINE_CONTROLLER.clean(CleanCommand()), failure="Clean failed.")


@lvgl_sim_builder.command("clean-all")
@click.confirmation_option(prompt="Remove all project content from the volume?")
def clean_all() -> None:
    """Remove everything from the volume; the next setup clones again."""

    _emit_lines(
        PIPELINE_CONTROLLER.clean(CleanCommand(everything=True)),
        failure="Clean failed.",
    )


@lvgl_sim_builder.command("watch")
@_PROJECT_ARGUMENT
def watch(project_path: Path) -> None:
    """Report UI source changes that are not yet in the volume."""

    _emit_lines(PIPELINE_CONTROLLER.watch(ProjectCommand(project_path=project_path)))


def _emit_lines(lines: Iterable[str], *, failure: str = "Command failed.") -> None:
    try:
        for line in lines:
            click.echo(line)
    except CommandFailedError as error:
        raise click.ClickException(f"{failure} {error}") from error


if __name__ == "__main__":  # pragma: no cover
    lvgl_sim_builder()
