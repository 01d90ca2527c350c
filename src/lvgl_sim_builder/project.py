"""EEZ Studio project descriptor parsing."""

from __future__ import annotations

import json
import posixpath
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from lvgl_sim_builder.pipeline.models import LogSeverity

DEFAULT_DISPLAY_WIDTH = 800
DEFAULT_DISPLAY_HEIGHT = 480
DEFAULT_DESTINATION_FOLDER = "src/ui"

VERSION_COMPATIBILITY_MAP = {
    "8.3": "8.4.0",
    "8.3.0": "8.4.0",
    "9.0": "9.2.2",
    "9.0.0": "9.2.2",
}
SUPPORTED_VERSIONS = frozenset({"8.4.0", "9.2.2", "9.3.0", "9.4.0"})

LogFunction = Callable[[str, LogSeverity], None]


class ProjectFileError(ValueError):
    """Project descriptor is missing, malformed or points at missing sources."""


@dataclass(frozen=True, slots=True)
class FontAsset:
    """FreeType font shipped into the volume next to the build."""

    local_path: Path
    target_path: str
    file_name: str


@dataclass(frozen=True, slots=True)
class ProjectDescriptor:
    """Immutable snapshot of the settings the pipeline needs from a project file."""

    project_path: Path
    version: str
    flow_support: bool
    display_width: int
    display_height: int
    project_dir: Path
    ui_dir: Path
    destination_folder: str
    fonts: tuple[FontAsset, ...] = ()

    def summary_lines(self) -> list[str]:
        flow = "with" if self.flow_support else "no"
        return [
            f"Detected project: LVGL {self.version} ({flow} flow support)",
            f"Display: {self.display_width}x{self.display_height}",
            f"UI directory: {self.ui_dir}",
        ]


def resolve_version(raw_version: str) -> str:
    """Map legacy version tags onto supported ones; reject everything else."""

    version = VERSION_COMPATIBILITY_MAP.get(raw_version, raw_version)
    if version not in SUPPORTED_VERSIONS:
        supported = ", ".join(sorted(SUPPORTED_VERSIONS))
        raise ProjectFileError(
            f"Unsupported LVGL version {raw_version!r}. Supported versions: {supported}.",
        )
    return version


def read_project_file(path: Path, *, log: LogFunction | None = None) -> ProjectDescriptor:
    """Read an ``.eez-project`` JSON file into a ProjectDescriptor."""

    emit = log or _silent
    project_path = path.resolve()
    emit(f"Reading project file: {project_path}", LogSeverity.INFO)
    if not project_path.is_file():
        raise ProjectFileError(f"Project file not found: {project_path}")

    try:
        payload = json.loads(project_path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ProjectFileError(f"Project file is not valid JSON: {error}") from error
    except UnicodeDecodeError as error:
        raise ProjectFileError(f"Project file is not UTF-8: {error}") from error
    if not isinstance(payload, dict):
        raise ProjectFileError("Project file must contain a JSON object.")

    settings = _as_dict(payload.get("settings"))
    general = _as_dict(settings.get("general"))
    build = _as_dict(settings.get("build"))

    raw_version = general.get("lvglVersion")
    if not isinstance(raw_version, str) or not raw_version.strip():
        raise ProjectFileError("LVGL version not specified in project settings.")
    raw_version = raw_version.strip()
    version = resolve_version(raw_version)
    if version != raw_version:
        emit(f"LVGL version {raw_version} mapped to {version}", LogSeverity.INFO)

    project_dir = project_path.parent
    destination_folder = str(build.get("destinationFolder") or DEFAULT_DESTINATION_FOLDER)
    destination_folder = destination_folder.replace("\\", "/")
    ui_dir = (project_dir / destination_folder).resolve()
    if not ui_dir.is_dir():
        raise ProjectFileError(f"Build destination directory not found at: {ui_dir}")

    fonts = _collect_fonts(payload.get("fonts"), project_dir=project_dir, emit=emit)
    if fonts:
        emit(f"Total FreeType fonts to include: {len(fonts)}", LogSeverity.SUCCESS)

    descriptor = ProjectDescriptor(
        project_path=project_path,
        version=version,
        flow_support=bool(general.get("flowSupport", False)),
        display_width=_positive_int(general.get("displayWidth"), DEFAULT_DISPLAY_WIDTH),
        display_height=_positive_int(general.get("displayHeight"), DEFAULT_DISPLAY_HEIGHT),
        project_dir=project_dir,
        ui_dir=ui_dir,
        destination_folder=destination_folder,
        fonts=fonts,
    )
    for index, line in enumerate(descriptor.summary_lines()):
        emit(line, LogSeverity.SUCCESS if index == 0 else LogSeverity.INFO)
    return descriptor


def _collect_fonts(raw_fonts: Any, *, project_dir: Path, emit: LogFunction) -> tuple[FontAsset, ...]:
    if not isinstance(raw_fonts, list):
        return ()

    fonts: list[FontAsset] = []
    for font in raw_fonts:
        if not isinstance(font, dict) or font.get("lvglUseFreeType") is not True:
            continue
        source = _as_dict(font.get("source"))
        source_path = source.get("filePath")
        target_path = font.get("lvglFreeTypeFilePath")
        if not isinstance(source_path, str) or not isinstance(target_path, str) or not target_path:
            emit(
                f"Warning: FreeType font entry is incomplete: {font.get('name')!r}",
                LogSeverity.WARNING,
            )
            continue

        local_path = (project_dir / source_path.replace("\\", "/")).resolve()
        if not local_path.is_file():
            emit(f"Warning: Font file not found: {local_path}", LogSeverity.WARNING)
            continue

        normalized_target = posixpath.normpath("/" + target_path.replace("\\", "/").lstrip("/"))
        fonts.append(
            FontAsset(
                local_path=local_path,
                target_path=normalized_target,
                file_name=local_path.name,
            ),
        )
        emit(f"Found FreeType font: {local_path.name} -> {normalized_target}", LogSeverity.INFO)
    return tuple(fonts)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return default
    number = int(value)
    return number if number > 0 else default


def _silent(_text: str, _severity: LogSeverity) -> None:
    return None
