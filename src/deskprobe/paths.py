"""Path helpers for per-user log and artifact directories."""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path

from platformdirs import AppDirs

DEFAULT_APP_NAME = "deskprobe"
VIDEO_SUFFIX = ".webm"


@lru_cache(maxsize=4)
def get_app_dirs(app_name: str = DEFAULT_APP_NAME) -> AppDirs:
    """Return platform-specific app directories."""
    return AppDirs(app_name, appauthor=False)


def _ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def data_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the per-user data directory, creating it if needed."""
    return _ensure_dir(Path(get_app_dirs(app_name).user_data_dir))


def config_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the per-user config directory, creating it if needed."""
    return _ensure_dir(Path(get_app_dirs(app_name).user_config_dir))


def log_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the per-user log directory, creating it if needed."""
    return _ensure_dir(data_dir(app_name) / "logs")


def config_path(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the JSON runner config file path."""
    return config_dir(app_name) / "config.json"


def sanitize_test_name(name: str) -> str:
    """Replace every non-alphanumeric character with an underscore."""
    return re.sub(r"[^a-zA-Z0-9]", "_", name)


def video_path_for(video_dir: str | Path, test_name: str) -> Path:
    """Return the recording artifact path for one test."""
    return Path(video_dir) / f"{sanitize_test_name(test_name)}{VIDEO_SUFFIX}"
