from __future__ import annotations

import os
from pathlib import Path

APP_DIR_NAME = "Chrona"
DATA_DIR_ENV = "CHRONA_DATA_DIR"


def data_directory() -> Path:
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    local_appdata = os.environ.get("LOCALAPPDATA")
    if local_appdata:
        return Path(local_appdata) / APP_DIR_NAME
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data) / APP_DIR_NAME
    return Path.home() / ".local" / "share" / APP_DIR_NAME


def database_path(base: Path | None = None) -> Path:
    return (base or data_directory()) / "db" / "chrona.sqlite3"


def settings_path(base: Path | None = None) -> Path:
    return (base or data_directory()) / "settings.json"


def logs_directory(base: Path | None = None) -> Path:
    return (base or data_directory()) / "logs"


def screenshots_directory(base: Path | None = None) -> Path:
    return (base or data_directory()) / "recordings" / "screenshots"


def ensure_directories(base: Path | None = None) -> None:
    root = base or data_directory()
    database_path(root).parent.mkdir(parents=True, exist_ok=True)
    logs_directory(root).mkdir(parents=True, exist_ok=True)
    screenshots_directory(root).mkdir(parents=True, exist_ok=True)


def normalize_image_ref(ref: str) -> str:
    return ref.replace("\\", "/")


def resolve_image_ref(base: Path, ref: str) -> Path:
    """Image refs are stored relative to the data directory; absolute refs pass through."""
    path = Path(normalize_image_ref(ref))
    if path.is_absolute():
        return path
    return base.joinpath(*path.parts)


def image_ref_for(base: Path, file_path: Path) -> str:
    try:
        relative = file_path.resolve().relative_to(base.resolve())
    except ValueError:
        return normalize_image_ref(str(file_path.resolve()))
    return relative.as_posix()
