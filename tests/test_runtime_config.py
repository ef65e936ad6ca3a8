"""Tests for runner config normalization and loading."""

from __future__ import annotations

import deskprobe.paths as paths
from deskprobe.runtime_config import (
    DEFAULT_TIMEOUT_MS,
    RunnerConfig,
    coerce_config,
    load_config,
    load_config_with_notice,
    normalize_mode,
)


def test_mode_normalization() -> None:
    assert normalize_mode("HYBRID") == "hybrid"
    assert normalize_mode(" deterministic ") == "deterministic"
    assert normalize_mode("vision-only") == "deterministic"
    assert normalize_mode(None) == "deterministic"
    assert RunnerConfig(mode="hybrid").hybrid
    assert not RunnerConfig().hybrid


def test_coerce_config_accepts_legacy_keys_and_rejects_bad_values() -> None:
    config = coerce_config(
        {"mode": "hybrid", "timeout": 5000, "retries": 2, "videoDir": "/tmp/v", "stopOnFailure": True}
    )
    assert config == RunnerConfig(
        mode="hybrid", timeout_ms=5000, retries=2, video_dir="/tmp/v", stop_on_failure=True
    )

    fallback = coerce_config(
        {"timeout_ms": -1, "retries": 99, "video_dir": "  ", "stop_on_failure": "yes"}
    )
    assert fallback == RunnerConfig()
    assert coerce_config({"timeout_ms": True}).timeout_ms == DEFAULT_TIMEOUT_MS
    assert coerce_config({"retries": 3.0}).retries == 3


def test_load_config_missing_file_uses_defaults(tmp_path) -> None:
    config, notice = load_config_with_notice(tmp_path / "absent.json")
    assert config == RunnerConfig()
    assert notice is None


def test_load_config_reads_json_object(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text('{"mode": "hybrid", "timeout_ms": 1000}', encoding="utf-8")
    assert load_config(path) == RunnerConfig(mode="hybrid", timeout_ms=1000)


def test_load_config_corrupt_json_defaults_with_notice(tmp_path, caplog) -> None:
    path = tmp_path / "config.json"
    path.write_text("{bad json", encoding="utf-8")

    config, notice = load_config_with_notice(path)

    assert config == RunnerConfig()
    assert notice is not None and "corrupt" in notice
    assert any("invalid JSON" in record.message for record in caplog.records)


def test_load_config_non_object_defaults_with_notice(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")
    config, notice = load_config_with_notice(path)
    assert config == RunnerConfig()
    assert notice is not None and "not a JSON object" in notice


def test_load_config_defaults_to_user_config_path(tmp_path, monkeypatch) -> None:
    config_file = tmp_path / "config.json"
    config_file.write_text('{"retries": 3, "mode": "hybrid"}', encoding="utf-8")
    monkeypatch.setattr(paths, "config_path", lambda: config_file)

    assert load_config() == RunnerConfig(mode="hybrid", retries=3)
    assert load_config_with_notice() == (RunnerConfig(mode="hybrid", retries=3), None)
