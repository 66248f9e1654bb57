"""Shared fixtures for router tests: a pinned clock, isolated settings and fake backends."""

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from inference_router.clock import ManualClock
from inference_router.config import Settings
from inference_router.services.budget import CostBudgetTracker
from inference_router.services.llm_providers.fake import (
    FakeLocalEngine,
    FakeRemoteGateway,
    RecordingSink,
)
from inference_router.services.response_cache import ResponseCache
from inference_router.services.routing_engine import RoutingEngine


@pytest.fixture
def start_time():
    return datetime(2025, 8, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time):
    return ManualClock(start_time)


@pytest.fixture
def settings(tmp_path):
    """Settings independent of the caller's environment."""
    return replace(
        Settings(),
        daily_cost_limit=3.26,
        budget_alert_fraction=0.8,
        budget_alert_webhook="",
        remote_cost_per_1k=0.015,
        premium_respects_budget=False,
        cache_enabled=True,
        cache_ttl_hours=12.0,
        cache_similarity_threshold=0.8,
        cache_max_entries=5000,
        cache_semantic_matching=True,
        cache_compression=True,
        cache_cleanup_interval_minutes=15.0,
        batch_interval_sec=0.05,
        batch_max_wait_ms=2000,
        batch_max_prompt_tokens=1000,
        short_prompt_chars=120,
        urgent_latency_ms=5000,
        compression_target=0.6,
        remote_timeout_sec=2.0,
        local_timeout_sec=2.0,
        health_check_interval_sec=300.0,
        auto_pull_models=False,
        data_dir=tmp_path,
        usage_log_path=tmp_path / "router_usage.jsonl",
    )


@pytest.fixture
def remote():
    return FakeRemoteGateway()


@pytest.fixture
def local():
    return FakeLocalEngine()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def cache(settings, clock):
    return ResponseCache(settings, clock)


@pytest.fixture
def budget(settings, clock):
    return CostBudgetTracker(settings, clock)


@pytest.fixture
def engine(settings, clock, remote, local, sink):
    return RoutingEngine(remote, local, settings=settings, clock=clock, sink=sink)
