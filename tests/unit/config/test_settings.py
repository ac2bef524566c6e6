# tests/unit/config/test_settings.py — v1
"""Tests for config/settings.py."""

from __future__ import annotations

from pathlib import Path

import pytest

from stagegate.config.settings import ConfigurationError, Settings, load_settings


class TestDefaults:
    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.store_backend == "sqlite"
        assert s.storage_backend == "local"
        assert s.generation_model == "gemini-2.5-flash-image"
        assert s.judge_model == "gemini-2.5-pro"
        assert s.generation_timeout_s == 180.0
        assert s.judge_timeout_s == 120.0
        assert s.max_step_attempts == 5
        assert s.max_total_retries == 20
        assert s.panorama_max_attempts == 4
        assert s.auto_retry_enabled is True

    def test_overrides(self):
        s = load_settings(_env_file=None, max_step_attempts=3, log_format="text")
        assert s.max_step_attempts == 3
        assert s.log_format == "text"

    def test_env_variables(self, monkeypatch):
        monkeypatch.setenv("JUDGE_MODEL", "gpt-4o")
        monkeypatch.setenv("JUDGE_PROVIDER", "openai")
        s = Settings(_env_file=None)
        assert s.judge_provider == "openai"
        assert s.judge_model == "gpt-4o"

    def test_env_file(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("MAX_OUTPUT_COUNT=2\nUNRELATED_KEY=ignored\n")
        s = Settings(_env_file=env)
        assert s.max_output_count == 2


class TestValidation:
    def test_s3_requires_bucket(self):
        with pytest.raises(ConfigurationError, match="STORAGE_S3_BUCKET"):
            load_settings(_env_file=None, storage_backend="s3")

    def test_all_violations_listed(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(_env_file=None, max_output_count=9, panorama_max_attempts=0)
        msg = str(exc_info.value)
        assert "MAX_OUTPUT_COUNT" in msg
        assert "PANORAMA_MAX_ATTEMPTS" in msg

    def test_non_positive_timeout(self):
        with pytest.raises(ConfigurationError):
            load_settings(_env_file=None, judge_timeout_s=0)

    def test_cas_retries_positive(self):
        with pytest.raises(ValueError):
            load_settings(_env_file=None, store_cas_max_retries=0)


class TestResolvedStorePath:
    def test_memory_passes_through(self):
        assert load_settings(_env_file=None, store_path=":memory:").resolved_store_path == ":memory:"

    def test_home_expanded(self):
        path = load_settings(_env_file=None, store_path="~/x/p.db").resolved_store_path
        assert path == str(Path("~/x/p.db").expanduser())
