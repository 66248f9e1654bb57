"""
Comprehensive Test Suite for the Routing Engine
===============================================

Tests cover:
- Decision order (cache, local, batch, optimized, premium, fallback)
- Budget-driven downgrades and the premium budget policy
- Serving each strategy through route()
- Cache write-back and cache hits on repeat requests
- Local retry after remote/batch failures, double failures
- Timeouts on backend calls
- Analytics recording (including sink failures)
- force_strategy diagnostics
- Prompt shaping helpers
- Stats and lifecycle
"""

import asyncio
from dataclasses import replace

import pytest

from inference_router.services.llm_providers.fake import (
    FakeLocalEngine,
    FakeRemoteGateway,
    RecordingSink,
)
from inference_router.services.models import (
    Category,
    GenerationFailed,
    ModelTier,
    Priority,
    RequestContext,
    Strategy,
)
from inference_router.services.routing_engine import (
    RoutingEngine,
    compress_prompt,
    estimate_tokens,
    optimize_remote_prompt,
    shape_local_prompt,
    strip_redundant_phrases,
)

# Not simple: no task keywords, longer than the short-prompt limit
OPEN_ENDED = (
    "Write a thoughtful reflection on how the team's quarterly planning went, covering "
    "collaboration, communication and the overall morale of everyone involved."
)
SIMPLE = "Classify this email: meeting moved to 3pm"
# 200 characters of bulk content with no task keywords
BULK = ("Weekly newsletter paragraph about community garden volunteers and recent harvest. " * 3)[:200]


def ctx(operation="habit_analysis", **kwargs):
    return RequestContext(operation=operation, user_id=kwargs.pop("user_id", "u1"), **kwargs)


def build_engine(settings, clock, remote=None, local=None, sink=None):
    return RoutingEngine(
        remote or FakeRemoteGateway(),
        local or FakeLocalEngine(),
        settings=settings,
        clock=clock,
        sink=sink if sink is not None else RecordingSink(),
    )


class TestDecide:
    """Strategy selection."""

    @pytest.mark.asyncio
    async def test_remote_optimized_within_budget(self, engine):
        engine.budget.record(3.26 - 0.50)

        decision = await engine.decide(OPEN_ENDED, ctx())

        estimate = estimate_tokens(OPEN_ENDED) * 1.5 / 1000 * 0.015
        assert decision.strategy is Strategy.REMOTE_OPTIMIZED
        assert decision.estimated_cost == pytest.approx(0.6 * estimate)
        assert decision.estimated_tokens == int(estimate_tokens(OPEN_ENDED) * 0.7)
        assert decision.expected_quality == 0.85

    @pytest.mark.asyncio
    async def test_high_quality_goes_premium(self, engine):
        decision = await engine.decide(SIMPLE, ctx("job_classification", min_quality_threshold=0.95))

        assert decision.strategy is Strategy.REMOTE_PREMIUM
        assert decision.expected_quality == 0.95

    @pytest.mark.asyncio
    async def test_critical_category_is_high_quality(self, engine):
        decision = await engine.decide(SIMPLE, ctx("job_classification", category=Category.CRITICAL))

        assert decision.strategy is Strategy.REMOTE_PREMIUM

    @pytest.mark.asyncio
    async def test_explicit_quality_overrides_category(self, engine):
        decision = await engine.decide(
            SIMPLE,
            ctx("job_classification", category=Category.CRITICAL, min_quality_threshold=0.7),
        )

        assert decision.strategy is Strategy.LOCAL

    @pytest.mark.asyncio
    async def test_simple_task_goes_local(self, engine):
        decision = await engine.decide(SIMPLE, ctx("job_classification"))

        assert decision.strategy is Strategy.LOCAL
        assert decision.estimated_cost == 0.0

    @pytest.mark.asyncio
    async def test_simple_task_skips_unhealthy_local(self, settings, clock):
        engine = build_engine(settings, clock, local=FakeLocalEngine(healthy=False))

        decision = await engine.decide(SIMPLE, ctx("job_classification"))

        assert decision.strategy is Strategy.REMOTE_OPTIMIZED

    @pytest.mark.asyncio
    async def test_bulk_goes_batch(self, engine):
        assert len(BULK) == 200

        decision = await engine.decide(BULK, ctx("newsletter_digest", category=Category.BULK))

        estimate = estimate_tokens(BULK) * 1.5 / 1000 * 0.015
        assert decision.strategy is Strategy.BATCH
        assert decision.estimated_cost == pytest.approx(0.7 * estimate)

    @pytest.mark.asyncio
    async def test_urgent_bulk_is_not_batched(self, engine):
        decision = await engine.decide(
            BULK, ctx("newsletter_digest", category=Category.BULK, max_response_time_ms=1000)
        )

        assert decision.strategy is Strategy.REMOTE_OPTIMIZED

    @pytest.mark.asyncio
    async def test_critical_priority_is_urgent(self, engine):
        decision = await engine.decide(
            BULK, ctx("newsletter_digest", category=Category.BULK, priority=Priority.CRITICAL)
        )

        assert decision.strategy is Strategy.REMOTE_OPTIMIZED

    @pytest.mark.asyncio
    async def test_oversized_bulk_is_not_batched(self, settings, clock):
        engine = build_engine(replace(settings, batch_max_prompt_tokens=10), clock)

        decision = await engine.decide(BULK, ctx("newsletter_digest", category=Category.BULK))

        assert decision.strategy is Strategy.REMOTE_OPTIMIZED

    @pytest.mark.asyncio
    async def test_spent_budget_falls_back_to_local(self, engine):
        engine.budget.record(3.26)

        decision = await engine.decide(OPEN_ENDED, ctx())

        assert decision.strategy is Strategy.LOCAL
        assert "Budget" in decision.reasoning

    @pytest.mark.asyncio
    async def test_premium_may_overdraw_by_default(self, engine):
        engine.budget.record(3.26)

        decision = await engine.decide(OPEN_ENDED, ctx(priority=Priority.CRITICAL))

        assert decision.strategy is Strategy.REMOTE_PREMIUM

    @pytest.mark.asyncio
    async def test_premium_respects_budget_when_configured(self, settings, clock):
        engine = build_engine(replace(settings, premium_respects_budget=True), clock)
        engine.budget.record(3.26)

        decision = await engine.decide(OPEN_ENDED, ctx(min_quality_threshold=0.95))

        assert decision.strategy is Strategy.LOCAL

    @pytest.mark.asyncio
    async def test_cached_prompt_decides_cache_without_side_effects(self, engine):
        await engine.route(OPEN_ENDED, ctx())
        hits_before = engine.get_cache_stats()["hits"]

        decision = await engine.decide(OPEN_ENDED, ctx())

        assert decision.strategy is Strategy.CACHE
        assert decision.estimated_cost == 0.0
        assert decision.expected_latency_ms == 10.0
        assert engine.get_cache_stats()["hits"] == hits_before


class TestRoute:
    """Serving requests."""

    @pytest.mark.asyncio
    async def test_local_route_is_free(self, engine, local, remote):
        result = await engine.route(SIMPLE, ctx("job_classification"))

        assert result.strategy_used is Strategy.LOCAL
        assert result.actual_cost == 0.0
        assert result.model_used == "llama-3.2-3b"
        assert result.quality_score == 0.75
        assert remote.calls == []
        prompt, model_id, max_tokens, _ = local.calls[0]
        assert prompt.startswith("Classify: ")
        assert model_id == "llama3.2:3b"
        assert max_tokens == 600

    @pytest.mark.asyncio
    async def test_remote_optimized_route_charges_budget(self, engine, remote):
        result = await engine.route(OPEN_ENDED, ctx())

        assert result.strategy_used is Strategy.REMOTE_OPTIMIZED
        assert result.actual_cost == remote.cost_per_call
        assert remote.calls[0][1] is ModelTier.STANDARD
        assert "prompt_optimization" in result.optimizations_applied
        assert engine.budget.spent() == pytest.approx(remote.cost_per_call)
        assert engine.budget.snapshot().reserved == 0.0

    @pytest.mark.asyncio
    async def test_routine_category_uses_economy_tier(self, settings, clock, remote):
        # Routine counts as simple; take local out of the picture
        engine = build_engine(settings, clock, remote=remote, local=FakeLocalEngine(healthy=False))

        await engine.route(OPEN_ENDED, ctx(category=Category.ROUTINE))

        assert remote.calls[0][1] is ModelTier.ECONOMY

    @pytest.mark.asyncio
    async def test_premium_route(self, engine, remote):
        result = await engine.route(SIMPLE, ctx("job_classification", min_quality_threshold=0.95))

        assert result.strategy_used is Strategy.REMOTE_PREMIUM
        prompt, tier, max_tokens, temperature = remote.calls[0]
        assert prompt == SIMPLE
        assert tier is ModelTier.PREMIUM
        assert max_tokens == 900
        assert temperature == 0.1
        assert result.quality_score == 0.95

    @pytest.mark.asyncio
    async def test_second_request_is_cache_hit(self, engine, remote, sink):
        first = await engine.route(OPEN_ENDED, ctx())
        second = await engine.route(OPEN_ENDED, ctx())

        assert second.cached is True
        assert second.strategy_used is Strategy.CACHE
        assert second.actual_cost == 0.0
        assert second.response == first.response
        assert len(remote.calls) == 1
        assert [r.cached for r in sink.records] == [False, True]

    @pytest.mark.asyncio
    async def test_cache_is_per_user(self, engine, remote):
        await engine.route(OPEN_ENDED, ctx(user_id="u1"))
        result = await engine.route(OPEN_ENDED, ctx(user_id="u2"))

        assert result.cached is False
        assert len(remote.calls) == 2

    @pytest.mark.asyncio
    async def test_batch_times_out_to_local(self, settings, clock):
        local = FakeLocalEngine()
        engine = build_engine(replace(settings, batch_max_wait_ms=50), clock, local=local)

        result = await engine.route(BULK, ctx("newsletter_digest", category=Category.BULK))

        assert result.strategy_used is Strategy.LOCAL
        assert "batch_timeout" in result.optimizations_applied
        assert engine.batch.pending_count() == 0
        assert engine.get_routing_stats()["downgrades"] == 1

    @pytest.mark.asyncio
    async def test_batch_served_when_loop_running(self, engine, remote):
        async with engine:
            result = await engine.route(BULK, ctx("newsletter_digest", category=Category.BULK))

        assert result.strategy_used is Strategy.BATCH
        assert result.response == f"economy answer to {BULK}"
        assert remote.calls[0][1] is ModelTier.ECONOMY
        assert remote.calls[0][0].startswith("Request 1: ")

    @pytest.mark.asyncio
    async def test_batch_in_flight_past_max_wait_served_locally(self, settings, clock):
        remote = FakeRemoteGateway(delay_sec=0.5)
        engine = build_engine(replace(settings, batch_max_wait_ms=200), clock, remote=remote)
        context = ctx("newsletter_digest", category=Category.BULK)
        loop = asyncio.get_running_loop()

        async with engine:
            start = loop.time()
            result = await engine.route(BULK, context)
            elapsed = loop.time() - start
            # Let the group call finish before shutdown
            await asyncio.sleep(0.5)

        assert result.strategy_used is Strategy.LOCAL
        assert "batch_timeout" in result.optimizations_applied
        assert elapsed < 0.45
        assert len(remote.calls) == 1

    @pytest.mark.asyncio
    async def test_budget_race_downgrades_to_local(self, engine, remote, monkeypatch):
        monkeypatch.setattr(engine.budget, "reserve", lambda amount: False)

        result = await engine.route(OPEN_ENDED, ctx())

        assert result.strategy_used is Strategy.LOCAL
        assert "budget_downgrade" in result.optimizations_applied
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_premium_overdraws_budget(self, engine):
        engine.budget.record(3.26)

        result = await engine.route(OPEN_ENDED, ctx(priority=Priority.CRITICAL))

        assert result.strategy_used is Strategy.REMOTE_PREMIUM
        assert engine.budget.remaining() < 0


class TestFailures:
    """Fallback and error propagation."""

    @pytest.mark.asyncio
    async def test_remote_failure_retries_locally(self, settings, clock):
        sink = RecordingSink()
        engine = build_engine(settings, clock, remote=FakeRemoteGateway(fail=True), sink=sink)

        result = await engine.route(OPEN_ENDED, ctx())

        assert result.strategy_used is Strategy.LOCAL
        assert sink.records[-1].fallback is True
        assert engine.get_routing_stats()["fallbacks"] == 1
        # Reservation released, nothing charged
        assert engine.budget.remaining() == pytest.approx(3.26)

    @pytest.mark.asyncio
    async def test_remote_timeout_retries_locally(self, settings, clock):
        engine = build_engine(
            replace(settings, remote_timeout_sec=0.05),
            clock,
            remote=FakeRemoteGateway(delay_sec=1.0),
        )

        result = await engine.route(OPEN_ENDED, ctx())

        assert result.strategy_used is Strategy.LOCAL

    @pytest.mark.asyncio
    async def test_double_failure_raises(self, settings, clock):
        sink = RecordingSink()
        engine = build_engine(
            settings,
            clock,
            remote=FakeRemoteGateway(fail=True),
            local=FakeLocalEngine(fail=True),
            sink=sink,
        )

        with pytest.raises(GenerationFailed) as exc_info:
            await engine.route(OPEN_ENDED, ctx())

        assert exc_info.value.strategy is Strategy.REMOTE_OPTIMIZED
        assert exc_info.value.fallback_attempted is True
        assert "strategy=remote_optimized" in str(exc_info.value)
        assert sink.records[-1].error is not None
        assert engine.get_routing_stats()["failures"] == 1

    @pytest.mark.asyncio
    async def test_local_failure_is_not_retried(self, settings, clock):
        remote = FakeRemoteGateway()
        engine = build_engine(settings, clock, remote=remote, local=FakeLocalEngine(fail=True))

        with pytest.raises(GenerationFailed) as exc_info:
            await engine.route(SIMPLE, ctx("job_classification"))

        assert exc_info.value.strategy is Strategy.LOCAL
        assert exc_info.value.fallback_attempted is False
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_failed_request_not_cached(self, settings, clock):
        engine = build_engine(
            settings,
            clock,
            remote=FakeRemoteGateway(fail=True),
            local=FakeLocalEngine(fail=True),
        )

        with pytest.raises(GenerationFailed):
            await engine.route(OPEN_ENDED, ctx())

        assert engine.get_cache_stats()["size"] == 0

    @pytest.mark.asyncio
    async def test_sink_failure_is_swallowed(self, settings, clock):
        engine = build_engine(settings, clock, sink=RecordingSink(fail=True))

        result = await engine.route(SIMPLE, ctx("job_classification"))

        assert result.strategy_used is Strategy.LOCAL


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_routes_stay_within_ceiling(self, settings, clock):
        estimate = build_engine(settings, clock).remote_estimate(estimate_tokens(OPEN_ENDED))
        remote = FakeRemoteGateway(cost_per_call=estimate, delay_sec=0.05)
        engine = build_engine(
            replace(settings, daily_cost_limit=3.5 * estimate), clock, remote=remote
        )

        results = await asyncio.gather(
            *(engine.route(OPEN_ENDED, ctx(user_id=f"u{i}")) for i in range(12))
        )

        remote_served = [r for r in results if r.strategy_used is Strategy.REMOTE_OPTIMIZED]
        assert len(remote_served) == 3
        assert len(remote.calls) == len(remote_served)
        assert engine.budget.spent() <= 3.5 * estimate + estimate
        assert engine.budget.remaining() >= -estimate
        assert engine.budget.snapshot().reserved == 0.0


class TestForceStrategy:
    @pytest.mark.asyncio
    async def test_force_premium(self, engine, remote):
        result = await engine.force_strategy(SIMPLE, ctx("job_classification"), Strategy.REMOTE_PREMIUM)

        assert result.strategy_used is Strategy.REMOTE_PREMIUM
        assert remote.calls[0][1] is ModelTier.PREMIUM

    @pytest.mark.asyncio
    async def test_force_has_no_fallback(self, settings, clock):
        engine = build_engine(settings, clock, remote=FakeRemoteGateway(fail=True))

        with pytest.raises(GenerationFailed):
            await engine.force_strategy(OPEN_ENDED, ctx(), Strategy.REMOTE_OPTIMIZED)

    @pytest.mark.asyncio
    async def test_force_cache_rejected(self, engine):
        with pytest.raises(ValueError):
            await engine.force_strategy(OPEN_ENDED, ctx(), Strategy.CACHE)


class TestPromptShaping:
    def test_local_prompt_prefix_and_cleanup(self):
        assert shape_local_prompt("Please   extract the date", "task_extraction") == (
            "Extract from: extract the date"
        )
        assert shape_local_prompt("Is this spam?", "job_classification") == "Classify: Is this spam?"
        assert shape_local_prompt("hello\n\nthere", "chat_response") == "hello there"

    def test_redundant_phrases_removed(self):
        cleaned = strip_redundant_phrases(
            "Please be sure to answer briefly. As you can see the data is clean."
        )

        assert "be sure to" not in cleaned.lower()
        assert "as you can see" not in cleaned.lower()
        assert "answer briefly" in cleaned

    def test_compression_keeps_instructions(self):
        filler = " ".join(f"The weather was mild on day {i}." for i in range(60))
        prompt = f"{filler} Return the answer as JSON."

        compressed = compress_prompt(prompt, 0.6)

        assert len(compressed) < len(prompt)
        assert compressed.endswith("Return the answer as JSON.")
        assert compressed.startswith("The weather was mild on day 0.")

    def test_short_prompts_not_compressed(self):
        text, compressed = optimize_remote_prompt("Describe the garden.", 0.6)

        assert compressed is False
        assert text == "Describe the garden."

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("") == 0


class TestStatsAndLifecycle:
    @pytest.mark.asyncio
    async def test_routing_stats(self, engine):
        await engine.route(SIMPLE, ctx("job_classification"))
        await engine.route(OPEN_ENDED, ctx())
        await engine.route(OPEN_ENDED, ctx())

        stats = engine.get_routing_stats()

        assert stats["total_requests"] == 3
        assert stats["strategies"]["local"] == 1
        assert stats["strategies"]["remote_optimized"] == 1
        assert stats["strategies"]["cache"] == 1
        assert stats["budget"]["ceiling"] == 3.26
        assert stats["local"]["healthy"] is True

    @pytest.mark.asyncio
    async def test_clear_cache(self, engine):
        await engine.route(OPEN_ENDED, ctx())
        engine.clear_cache()

        assert engine.get_cache_stats()["size"] == 0

    def test_cache_disabled(self, settings, clock):
        engine = build_engine(replace(settings, cache_enabled=False), clock)

        assert engine.cache is None
        assert engine.get_cache_stats() == {"enabled": False}

    @pytest.mark.asyncio
    async def test_usage_records_written(self, engine, sink):
        await engine.route(SIMPLE, ctx("job_classification", priority=Priority.HIGH))

        record = sink.records[0]
        assert record.strategy == "local"
        assert record.operation == "job_classification"
        assert record.priority == "high"
        assert record.cost == 0.0
        assert record.request_id is not None
