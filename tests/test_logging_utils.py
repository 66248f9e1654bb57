"""Tests for the JSON / plain log formatters and handler setup."""

import json
import logging
from dataclasses import replace
from unittest.mock import patch

import pytest

from inference_router import logging_utils
from inference_router.logging_utils import JsonFormatter, PlainFormatter, get_logger, setup_logging


def make_record(msg="route_complete id=%s", args=("abc",), **extra):
    record = logging.LogRecord("inference_router.test", logging.INFO, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestFormatters:
    def test_json_formatter(self):
        data = json.loads(JsonFormatter().format(make_record(strategy="local", cost=object())))

        assert data["msg"] == "route_complete id=abc"
        assert data["level"] == "INFO"
        assert data["strategy"] == "local"
        assert isinstance(data["cost"], str)

    def test_plain_formatter(self):
        line = PlainFormatter().format(make_record(strategy="batch"))

        assert "inference_router.test: route_complete id=abc" in line
        assert "strategy=batch" in line

    def test_logger_namespace(self):
        assert get_logger("routing_engine").name == "inference_router.routing_engine"


class TestSetup:
    def test_setup_writes_json_file(self, settings, tmp_path, monkeypatch, restore_root):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        with patch.object(logging_utils, "get_settings", return_value=replace(settings, log_plain=False)):
            setup_logging("debug")

        get_logger("test").info("hello_world key=%s", 1)
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert logging.getLogger().level == logging.DEBUG
        lines = (tmp_path / "logs" / "router.jsonl").read_text(encoding="utf-8").splitlines()
        assert json.loads(lines[-1])["msg"] == "hello_world key=1"

    def test_env_level_wins(self, settings, monkeypatch, restore_root):
        monkeypatch.setenv("LOG_LEVEL", "warning")
        with patch.object(logging_utils, "get_settings", return_value=settings):
            setup_logging("debug")

        assert logging.getLogger().level == logging.WARNING
