# tests/unit/test_main.py — v1
"""Tests for main.py — CLI entry point."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import pytest

from stagegate.core.models import ErrorResult, RollbackResult
from stagegate.main import _build_parser, _emit, main


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    logging.getLogger("stagegate").handlers.clear()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STORE_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "objects"))
    monkeypatch.setenv("GOOGLE_API_KEY", "test-key")
    monkeypatch.setenv("LOG_FORMAT", "text")
    return tmp_path


# ---------------------------------------------------------------------------
# Parser tests
# ---------------------------------------------------------------------------

class TestBuildParser:
    def test_version_flag(self):
        parser = _build_parser()
        with pytest.raises(SystemExit) as exc_info:
            parser.parse_args(["--version"])
        assert exc_info.value.code == 0

    def test_create_subcommand(self):
        args = _build_parser().parse_args(
            ["create", "plan.png", "--owner", "alice", "--quality-tier", "4K", "--no-auto-retry"]
        )
        assert args.command == "create"
        assert args.image == Path("plan.png")
        assert args.quality_tier == "4K"
        assert args.aspect_ratio is None
        assert args.no_auto_retry is True

    def test_run_step_subcommand(self):
        args = _build_parser().parse_args(
            ["run-step", "p1", "3", "--owner", "alice", "-n", "2", "--camera-angle", "kitchen", "--wait"]
        )
        assert args.command == "run-step"
        assert args.step == 3
        assert args.count == 2
        assert args.camera_angle == "kitchen"
        assert args.wait is True

    def test_run_step_defaults(self):
        args = _build_parser().parse_args(["run-step", "p1", "1", "--owner", "alice"])
        assert args.count == 1
        assert args.prompt is None
        assert args.space_id is None
        assert args.wait is False

    def test_owner_required(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["status", "p1"])

    def test_invalid_quality_tier(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["create", "plan.png", "--owner", "a", "--quality-tier", "8K"])

    def test_rollback_and_worker(self):
        parser = _build_parser()
        rollback = parser.parse_args(["rollback", "p1", "--owner", "alice", "--step", "3"])
        assert rollback.step == 3
        worker = parser.parse_args(["worker", "--once"])
        assert worker.once is True
        assert worker.interval == 5.0

    def test_restart_subcommand(self):
        args = _build_parser().parse_args(["restart", "p1", "--owner", "alice"])
        assert args.command == "restart"
        assert args.step is None


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

class TestEmit:
    def test_error_exit_code(self, capsys):
        code = _emit(ErrorResult(code="PHASE_MISMATCH", message="nope"))
        assert code == 2
        assert json.loads(capsys.readouterr().out)["code"] == "PHASE_MISMATCH"

    def test_success_exit_code(self, capsys):
        code = _emit(
            RollbackResult(
                from_step=2, to_step=1, target_phase="top_down_3d_pending",
                deleted_artifact_count=1, reset_counter=1,
            )
        )
        assert code == 0
        assert json.loads(capsys.readouterr().out)["to_step"] == 1


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_create_missing_file(self, cli_env):
        assert main(["create", str(cli_env / "missing.png"), "--owner", "alice"]) == 1

    def test_create_then_status(self, cli_env, capsys):
        image = cli_env / "plan.png"
        image.write_bytes(b"floorplan")

        assert main(["create", str(image), "--owner", "alice", "--aspect-ratio", "4:3"]) == 0
        created = json.loads(capsys.readouterr().out)
        assert created["phase"] == "upload"
        assert created["quality"]["aspect_ratio"] == "4:3"

        assert main(["status", created["id"], "--owner", "alice"]) == 0
        status = json.loads(capsys.readouterr().out)
        assert status["id"] == created["id"]
        assert status["steps"] == []

        assert main(["status", created["id"], "--owner", "bob"]) == 2
        assert json.loads(capsys.readouterr().out)["code"] == "AUTH_INVALID"

    def test_rollback_at_step0_fails(self, cli_env, capsys):
        image = cli_env / "plan.png"
        image.write_bytes(b"floorplan")
        main(["create", str(image), "--owner", "alice"])
        pipeline_id = json.loads(capsys.readouterr().out)["id"]

        assert main(["rollback", pipeline_id, "--owner", "alice"]) == 2
        assert json.loads(capsys.readouterr().out)["code"] == "INVALID_REQUEST"

    def test_worker_once_with_empty_queue(self, cli_env):
        assert main(["worker", "--once"]) == 0

    def test_restart_running_step(self, cli_env, capsys):
        from stagegate.store.sqlite_store import SqlitePipelineStore

        image = cli_env / "plan.png"
        image.write_bytes(b"floorplan")
        main(["create", str(image), "--owner", "alice"])
        pipeline_id = json.loads(capsys.readouterr().out)["id"]

        assert main(["restart", pipeline_id, "--owner", "alice"]) == 2
        assert json.loads(capsys.readouterr().out)["code"] == "PHASE_MISMATCH"

        store = SqlitePipelineStore(cli_env / "cli.db")
        asyncio.run(store.update(pipeline_id, lambda draft: draft.move_to("top_down_3d_running")))
        store.close()

        assert main(["restart", pipeline_id, "--owner", "alice", "--step", "1"]) == 0
        restarted = json.loads(capsys.readouterr().out)
        assert restarted["phase"] == "top_down_3d_pending"
        assert restarted["reset_counter"] == 1
