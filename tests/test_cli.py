"""Tests for the inference-router command line (offline backends only)."""

import json
from unittest.mock import patch

import pytest

from inference_router import cli


@pytest.fixture(autouse=True)
def isolated(settings):
    with patch.object(cli, "setup_logging"), patch.object(cli, "get_settings", return_value=settings):
        yield


class TestCli:
    def test_decide_offline(self, capsys):
        code = cli.main(
            ["decide", "Classify this email: lunch moved", "--operation", "job_classification", "--offline"]
        )

        out = json.loads(capsys.readouterr().out)
        assert code == 0
        assert out["strategy"] == "local"
        assert out["estimated_cost"] == 0.0

    def test_route_offline(self, capsys):
        code = cli.main(
            [
                "route",
                "Classify this email: lunch moved",
                "--operation",
                "job_classification",
                "--priority",
                "high",
                "--offline",
            ]
        )

        out = json.loads(capsys.readouterr().out)
        assert code == 0
        assert out["strategy_used"] == "local"
        assert out["response"] == "local answer to Classify: Classify this email: lunch moved"

    def test_models(self, capsys):
        code = cli.main(["models", "extraction", "analysis"])

        out = json.loads(capsys.readouterr().out)
        assert code == 0
        assert out["extraction"]["speed"] == "llama-3.2-3b"
        assert out["analysis"]["quality"] == "mistral-7b"

    def test_usage_without_log(self, capsys):
        code = cli.main(["usage"])

        out = json.loads(capsys.readouterr().out)
        assert code == 0
        assert out["total_requests"] == 0

    def test_unknown_priority_rejected(self):
        with pytest.raises(SystemExit):
            cli.main(["decide", "hi", "--priority", "urgent"])
