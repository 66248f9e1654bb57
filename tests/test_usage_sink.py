"""
Test Suite for the JSONL Usage Sink
===================================

Tests cover:
- Appending records as JSON lines
- Summaries by strategy and operation
- Time window filtering (default: today so far)
- Malformed lines are skipped
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from inference_router.services.models import UsageRecord
from inference_router.services.usage_sink import JsonlUsageSink


def usage(when, strategy="local", operation="email_parsing", cost=0.0, tokens=100, **kwargs):
    return UsageRecord(
        timestamp=when.isoformat(),
        operation=operation,
        user_id="u1",
        strategy=strategy,
        model="llama-3.2-3b",
        prompt_tokens=tokens // 2,
        completion_tokens=tokens - tokens // 2,
        total_tokens=tokens,
        cost=cost,
        cached=kwargs.pop("cached", False),
        quality_score=0.75,
        latency_ms=120.0,
        category="enhancement",
        priority="medium",
        **kwargs,
    )


@pytest.fixture
def usage_sink(tmp_path, clock):
    return JsonlUsageSink(tmp_path / "logs" / "router_usage.jsonl", clock=clock)


class TestRecord:
    def test_creates_parent_directory(self, usage_sink):
        assert usage_sink.log_path.parent.is_dir()

    def test_appends_json_lines(self, usage_sink, start_time):
        usage_sink.record(usage(start_time))
        usage_sink.record(usage(start_time, strategy="remote_optimized", cost=0.004))

        lines = usage_sink.log_path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["strategy"] == "remote_optimized"
        assert json.loads(lines[0])["optimizations"] == []


class TestSummary:
    def test_empty_when_no_log(self, usage_sink):
        summary = usage_sink.summary()

        assert summary.total_requests == 0
        assert summary.cache_hit_rate == 0.0

    def test_totals(self, usage_sink, start_time):
        usage_sink.record(usage(start_time, cost=0.0, tokens=80))
        usage_sink.record(
            usage(start_time, strategy="remote_optimized", operation="cv_analysis", cost=0.01, tokens=400)
        )
        usage_sink.record(
            usage(start_time, strategy="remote_optimized", operation="cv_analysis", cost=0.02, fallback=True)
        )
        usage_sink.record(usage(start_time, strategy="cache", tokens=0, cached=True))

        summary = usage_sink.summary()

        assert summary.total_requests == 4
        assert summary.total_tokens == 580
        assert summary.total_cost == pytest.approx(0.03)
        assert summary.cache_hit_rate == pytest.approx(0.25)
        optimized = summary.by_strategy["remote_optimized"]
        assert optimized.requests == 2
        assert optimized.fallbacks == 1
        assert summary.cost_by_operation["cv_analysis"] == pytest.approx(0.03)

    def test_errors_counted(self, usage_sink, start_time):
        usage_sink.record(usage(start_time, strategy="local", error="local down"))

        assert usage_sink.summary().by_strategy["local"].errors == 1

    def test_default_window_is_today(self, usage_sink, start_time):
        usage_sink.record(usage(start_time - timedelta(days=1)))
        usage_sink.record(usage(start_time - timedelta(hours=1)))

        summary = usage_sink.summary()

        assert summary.total_requests == 1
        assert summary.period_start == datetime(2025, 8, 1, tzinfo=timezone.utc).isoformat()

    def test_explicit_window(self, usage_sink, start_time):
        usage_sink.record(usage(start_time - timedelta(days=1)))
        usage_sink.record(usage(start_time))

        summary = usage_sink.summary(since=start_time - timedelta(days=2), until=start_time)

        assert summary.total_requests == 2

    def test_malformed_lines_skipped(self, usage_sink, start_time):
        usage_sink.record(usage(start_time))
        with open(usage_sink.log_path, "a", encoding="utf-8") as f:
            f.write("not json\n")
            f.write('{"timestamp": "2025-08-01T09:00:00+00:00"}\n')
        usage_sink.record(usage(start_time))

        assert usage_sink.summary().total_requests == 2
