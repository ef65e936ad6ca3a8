"""Runner configuration normalization and loading.

Values coming from JSON files or untyped mappings are coerced into a frozen
`RunnerConfig`; anything invalid falls back to its default instead of aborting
the run.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from . import paths

logger = logging.getLogger(__name__)

RunMode = Literal["deterministic", "hybrid"]
RUN_MODES: tuple[RunMode, ...] = ("deterministic", "hybrid")
DEFAULT_TIMEOUT_MS = 30_000
MAX_RETRIES = 10


@dataclass(frozen=True)
class RunnerConfig:
    """Options recognized by the test lifecycle runner.

    `hybrid` mode exposes the external vision/agent collaborator to test
    bodies; its cost is aggregated but never computed here.
    """

    mode: RunMode = "deterministic"
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retries: int = 0
    video_dir: str | None = None
    stop_on_failure: bool = False

    @property
    def hybrid(self) -> bool:
        return self.mode == "hybrid"


def normalize_mode(value: object) -> RunMode:
    """Normalize a configured mode name to a supported mode."""
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized == "hybrid":
            return "hybrid"
    return "deterministic"


def coerce_config(data: Mapping[str, Any]) -> RunnerConfig:
    """Coerce an untyped mapping into a validated `RunnerConfig`.

    Accepts `timeout`/`videoDir`/`stopOnFailure` spellings used by older
    config files.
    """

    def _int_in_range(value: Any, default: int, low: int, high: int | None) -> int:
        if isinstance(value, bool):
            return default
        if isinstance(value, float) and math.isfinite(value):
            value = int(value)
        if not isinstance(value, int):
            return default
        if value < low or (high is not None and value > high):
            return default
        return value

    def _str_or_none(value: Any) -> str | None:
        if isinstance(value, str) and value.strip():
            return value
        return None

    timeout_raw = data.get("timeout_ms", data.get("timeout"))
    video_raw = data.get("video_dir", data.get("videoDir"))
    stop_raw = data.get("stop_on_failure", data.get("stopOnFailure"))
    return RunnerConfig(
        mode=normalize_mode(data.get("mode")),
        timeout_ms=_int_in_range(timeout_raw, DEFAULT_TIMEOUT_MS, 1, None),
        retries=_int_in_range(data.get("retries"), 0, 0, MAX_RETRIES),
        video_dir=_str_or_none(video_raw),
        stop_on_failure=stop_raw if isinstance(stop_raw, bool) else False,
    )


def load_config_with_notice(path: Path | None = None) -> tuple[RunnerConfig, str | None]:
    """Load config and return an optional user-facing notice.

    Reads the per-user config file when `path` is not given.
    """
    if path is None:
        path = paths.config_path()
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("Config file missing at %s; using defaults.", path)
        return RunnerConfig(), None
    except OSError as exc:
        logger.warning("Failed to read config file %s: %s; using defaults.", path, exc)
        return (
            RunnerConfig(),
            "Runner settings were reset to defaults.\n"
            "Likely cause: config file is unreadable due to permissions or IO issues.\n"
            f"Next step: verify access to '{path}' and re-run.",
        )

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Config file at %s is invalid JSON; using defaults.", path)
        return (
            RunnerConfig(),
            "Runner settings were reset to defaults.\n"
            "Likely cause: config file is corrupt or partially written.\n"
            f"Next step: repair '{path}' and re-run.",
        )

    if not isinstance(data, dict):
        logger.warning("Config file at %s is not a JSON object; using defaults.", path)
        return (
            RunnerConfig(),
            "Runner settings were reset to defaults.\n"
            "Likely cause: config file is not a JSON object.\n"
            f"Next step: rewrite '{path}' as an object and re-run.",
        )

    return coerce_config(data), None


def load_config(path: Path | None = None) -> RunnerConfig:
    """Load runner config from disk, falling back to defaults."""
    config, _notice = load_config_with_notice(path)
    return config
