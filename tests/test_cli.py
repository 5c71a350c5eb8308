"""
CLI tests for the commands that run without network access.
"""

import os
import time

import pytest
from typer.testing import CliRunner

from nest_clip_sync.cli import app

runner = CliRunner()

DAY = 86400


@pytest.fixture
def env(tmp_path, monkeypatch):
    """Isolate the CLI from the caller's environment, .env and config file."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("GOOGLE_USERNAME", raising=False)
    monkeypatch.delenv("GOOGLE_MASTER_TOKEN", raising=False)
    return tmp_path


def _invoke(env, *args):
    return runner.invoke(app, ["--config", str(env / "absent.conf"), *args])


def _clip(root, rel, age_days):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * 2048)
    mtime = time.time() - age_days * DAY
    os.utime(path, (mtime, mtime))
    return path


class TestPrune:
    def test_deletes_expired_clips(self, env):
        old = _clip(env / "out", "Cam/2025/01/01/2025-01-01T00-00-00.mp4", 90)
        new = _clip(env / "out", "Cam/2026/01/01/2026-01-01T00-00-00.mp4", 1)

        result = _invoke(env, "prune", "-o", str(env / "out"))

        assert result.exit_code == 0, result.output
        assert not old.exists()
        assert new.exists()
        assert "Deleted" in result.output

    def test_dry_run_keeps_files(self, env):
        old = _clip(env / "out", "Cam/2025/01/01/2025-01-01T00-00-00.mp4", 90)
        result = _invoke(env, "prune", "-o", str(env / "out"), "--dry-run")
        assert result.exit_code == 0, result.output
        assert old.exists()
        assert "Would delete" in result.output

    def test_retention_hours(self, env):
        old = _clip(env / "out", "Cam/a.mp4", 0.5)
        result = _invoke(
            env, "prune", "-o", str(env / "out"), "--retention-days", "6", "--retention-hours"
        )
        assert result.exit_code == 0, result.output
        assert not old.exists()

    def test_forever_is_a_no_op(self, env):
        old = _clip(env / "out", "Cam/a.mp4", 900)
        result = _invoke(env, "prune", "-o", str(env / "out"), "--retention-days", "0")
        assert result.exit_code == 0, result.output
        assert old.exists()
        assert "nothing to prune" in result.output

    def test_config_file_sets_retention(self, env):
        conf = env / "sync.conf"
        conf.write_text(f"[nest-clip-sync]\noutput = {env / 'out'}\nretention_days = 200\n")
        old = _clip(env / "out", "Cam/a.mp4", 90)

        result = runner.invoke(app, ["--config", str(conf), "prune"])

        assert result.exit_code == 0, result.output
        assert old.exists()

    def test_flag_beats_config_file(self, env):
        conf = env / "sync.conf"
        conf.write_text(f"[nest-clip-sync]\noutput = {env / 'out'}\nretention_days = 200\n")
        old = _clip(env / "out", "Cam/a.mp4", 90)

        result = runner.invoke(app, ["--config", str(conf), "prune", "--retention-days", "30"])

        assert result.exit_code == 0, result.output
        assert not old.exists()

    def test_bad_config_value_is_a_usage_error(self, env):
        conf = env / "sync.conf"
        conf.write_text("[nest-clip-sync]\nretention_days = sixty\n")
        result = runner.invoke(app, ["--config", str(conf), "prune"])
        assert result.exit_code == 2


class TestStatus:
    def test_empty_archive(self, env):
        result = _invoke(env, "status", "-o", str(env / "out"))
        assert result.exit_code == 0, result.output
        assert "No clips yet" in result.output

    def test_lists_cameras(self, env):
        _clip(env / "out", "Front Door/2026/01/01/2026-01-01T00-00-00.mp4", 2)
        _clip(env / "out", "Front Door/2026/01/02/2026-01-02T00-00-00.mp4", 1)
        _clip(env / "out", "Backyard/2026/01/02/2026-01-02T00-00-00.mp4", 1)

        result = _invoke(env, "status", "-o", str(env / "out"))

        assert result.exit_code == 0, result.output
        assert "Front Door" in result.output
        assert "Backyard" in result.output
        assert "GOOGLE_USERNAME not set" in result.output


class TestRun:
    def test_missing_credentials_fail_preflight(self, env):
        result = _invoke(env, "run", "--once", "-o", str(env / "out"))
        assert result.exit_code == 1
        assert "GOOGLE_MASTER_TOKEN" in result.output
