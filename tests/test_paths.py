"""Tests for platform-specific paths and artifact names."""

from __future__ import annotations

from pathlib import Path

import deskprobe.paths as paths


class FakeAppDirs:
    """Minimal AppDirs stand-in used to control path roots during tests."""

    def __init__(self, data_dir: Path, config_dir: Path) -> None:
        self.user_data_dir = str(data_dir)
        self.user_config_dir = str(config_dir)


def test_paths_use_platformdirs_and_create_dirs(tmp_path, monkeypatch) -> None:
    data_dir = tmp_path / "data"
    config_dir = tmp_path / "config"

    def fake_app_dirs(app_name: str, appauthor: bool | None = None) -> FakeAppDirs:
        assert app_name == "deskprobe"
        assert appauthor is False
        return FakeAppDirs(data_dir, config_dir)

    monkeypatch.setattr(paths, "AppDirs", fake_app_dirs)
    paths.get_app_dirs.cache_clear()
    try:
        assert paths.data_dir() == data_dir
        assert paths.config_dir() == config_dir
        assert paths.log_dir() == data_dir / "logs"
        assert paths.config_path() == config_dir / "config.json"

        assert data_dir.exists()
        assert config_dir.exists()
        assert (data_dir / "logs").exists()
    finally:
        paths.get_app_dirs.cache_clear()


def test_video_path_sanitizes_test_name(tmp_path) -> None:
    assert paths.sanitize_test_name("opens project/#1") == "opens_project__1"
    assert paths.video_path_for(tmp_path, "Save: dialog") == tmp_path / "Save__dialog.webm"
    assert paths.video_path_for(str(tmp_path), "ok") == tmp_path / "ok.webm"
