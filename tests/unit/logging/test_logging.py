# tests/unit/logging/test_logging.py — v1
"""Tests for logging/logger.py, context.py and handlers.py."""

from __future__ import annotations

import io
import json
import logging
from logging.handlers import RotatingFileHandler

import pytest

from stagegate.logging.context import (
    clear_context,
    get_context,
    set_pipeline_context,
    set_step_context,
)
from stagegate.logging.handlers import create_rotating_handler, parse_size
from stagegate.logging.logger import JsonFormatter, TextFormatter, get_logger, setup_logging


def _record(msg: str = "Hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="stagegate.test", level=logging.INFO, pathname="", lineno=0,
        msg=msg, args=(), exc_info=None,
    )


class TestContext:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_empty_by_default(self):
        assert get_context().as_dict() == {}

    def test_pipeline_and_step(self):
        set_pipeline_context("p1", "alice")
        set_step_context(3, attempt=2)
        assert get_context().as_dict() == {
            "pipeline_id": "p1", "owner": "alice", "step": 3, "attempt": 2,
        }

    def test_clear(self):
        set_pipeline_context("p1", "alice")
        clear_context()
        assert get_context().pipeline_id is None


class TestJsonFormatter:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_format_basic(self):
        parsed = json.loads(JsonFormatter().format(_record()))
        assert parsed["level"] == "INFO"
        assert parsed["message"] == "Hello"
        assert "timestamp" in parsed
        assert "context" not in parsed

    def test_format_with_context(self):
        set_pipeline_context("p1", "alice")
        set_step_context(2)
        parsed = json.loads(JsonFormatter().format(_record()))
        assert parsed["context"] == {"pipeline_id": "p1", "owner": "alice", "step": 2}

    def test_extra_data(self):
        record = _record()
        record.data = {"score": 40}
        parsed = json.loads(JsonFormatter().format(record))
        assert parsed["data"] == {"score": 40}


class TestTextFormatter:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_format_basic(self):
        line = TextFormatter().format(_record("Hello text"))
        assert "[INFO    ]" in line
        assert line.endswith("- Hello text")

    def test_step_label(self):
        set_pipeline_context("0123456789abcdef", "alice")
        set_step_context(4, attempt=3)
        line = TextFormatter().format(_record())
        assert "[01234567]" in line
        assert "(step4#3)" in line


class TestSetupLogging:
    def teardown_method(self):
        logging.getLogger("stagegate").handlers.clear()

    def test_stream_and_level(self):
        stream = io.StringIO()
        root = setup_logging(level="DEBUG", log_format="json", stream=stream)
        assert root.level == logging.DEBUG
        get_logger("pipeline.executor").debug("hello %s", "world")
        assert json.loads(stream.getvalue())["message"] == "hello world"

    def test_replaces_handlers(self):
        setup_logging(stream=io.StringIO())
        root = setup_logging(log_format="text", stream=io.StringIO())
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, TextFormatter)

    def test_file_handler(self, tmp_path):
        root = setup_logging(log_file=tmp_path / "logs" / "stagegate.log", stream=io.StringIO())
        assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
        for h in root.handlers:
            h.close()

    def test_get_logger_namespacing(self):
        assert get_logger("stagegate.store").name == "stagegate.store"
        assert get_logger("custom").name == "stagegate.custom"


class TestHandlers:
    @pytest.mark.parametrize(
        "text,expected",
        [("512B", 512), ("10KB", 10 * 1024), ("10MB", 10 * 1024**2), ("1 gb", 1024**3)],
    )
    def test_parse_size(self, text, expected):
        assert parse_size(text) == expected

    def test_parse_size_invalid(self):
        with pytest.raises(ValueError, match="Invalid size format"):
            parse_size("ten megabytes")

    def test_rotating_handler(self, tmp_path):
        handler = create_rotating_handler(tmp_path / "a" / "b.log", rotation="1KB", retention=3)
        try:
            assert handler.maxBytes == 1024
            assert handler.backupCount == 3
            assert (tmp_path / "a").is_dir()
        finally:
            handler.close()
