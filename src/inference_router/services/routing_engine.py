"""
Routing Engine
==============

Single entry point for inference requests.  Decides, per request, whether
to serve it from the response cache, a free local model, a batched remote
call, or a single remote call (optimized or premium), and keeps remote
spend under the daily ceiling.

Flow (``route``):
1. Response cache lookup (exact, then semantic)
2. Decide a strategy (``decide``)
3. Dispatch to the chosen backend with a timeout
4. On failure of a non-local strategy, retry once on the local model
5. Write the result back into the cache
6. Record one usage row to the analytics sink

Decision order (``decide``):
    cache hit                         -> cache
    simple, not high-quality, local up -> local
    not urgent, bulk, short prompt     -> batch      (0.7x estimate)
    budget left, not high-quality      -> remote_optimized (0.6x estimate)
    high-quality or critical priority  -> remote_premium
    otherwise                          -> local

Example:
    async with RoutingEngine.from_settings() as engine:
        result = await engine.route(
            "Extract the meeting date from: ...",
            RequestContext(operation="email_parsing", user_id="u-42"),
        )
"""

from __future__ import annotations

import asyncio
import math
import re
import time
from dataclasses import asdict
from datetime import timezone
from typing import Any, Dict, Optional, Tuple

from ..clock import Clock, SystemClock, generate_batch_id, generate_request_id
from ..config import Settings, get_settings
from ..logging_utils import get_logger
from .batch_coordinator import BATCH_QUALITY, BatchCoordinator
from .budget import CostBudgetTracker
from .classification import KeywordLengthPolicy, SimplePolicy
from .llm_providers.base import LocalInferenceEngine, RemoteModelGateway
from .local_models import LocalModelSelector
from .models import (
    BatchRequest,
    BatchTimeout,
    BudgetExhausted,
    CacheMetadata,
    Category,
    GenerationFailed,
    ModelTier,
    ModelUnavailable,
    Priority,
    ProcessingResult,
    RequestContext,
    RoutingDecision,
    Strategy,
    UsageRecord,
)
from .response_cache import ResponseCache
from .usage_sink import AnalyticsSink

log = get_logger("routing_engine")

# Operation -> local model use-case
OPERATION_USE_CASES = {
    "email_parsing": "extraction",
    "task_extraction": "extraction",
    "habit_analysis": "analysis",
    "cv_analysis": "analysis",
    "chat_response": "quick_responses",
    "job_classification": "classification",
}
DEFAULT_USE_CASE = "simple_questions"

# Operation -> response token limit
OPERATION_MAX_TOKENS = {
    "email_parsing": 1000,
    "task_extraction": 800,
    "habit_analysis": 1200,
    "cv_analysis": 2000,
    "chat_response": 500,
    "job_classification": 600,
}
DEFAULT_MAX_TOKENS = 1000

CACHE_QUALITY = 0.95
CACHE_LATENCY_MS = 10.0
LOCAL_QUALITY = 0.75
LOCAL_LATENCY_MS = 2000.0
OPTIMIZED_QUALITY = 0.85
OPTIMIZED_LATENCY_MS = 3000.0
PREMIUM_QUALITY = 0.95
PREMIUM_LATENCY_MS = 5000.0

BATCH_DISCOUNT = 0.7
OPTIMIZED_COST_FACTOR = 0.6
OPTIMIZED_TOKEN_FACTOR = 0.7
PREMIUM_TOKEN_FACTOR = 1.3
LOCAL_TOKEN_FACTOR = 1.2
# Expected completion size relative to the prompt
OUTPUT_RATIO = 1.5

# Optimized remote prompts shorter than this are sent as-is after cleanup.
COMPRESS_MIN_CHARS = 1000

REDUNDANT_PHRASES = (
    r"please be sure to",
    r"make sure that",
    r"it is important that",
    r"as you can see",
)

PRIORITY_KEYWORDS = (
    "extract", "classify", "summarize", "analyze", "identify", "list",
    "return", "respond", "format", "json", "must", "required", "only",
)


def estimate_tokens(text: str) -> int:
    """~4 characters per token, rounded up."""
    return math.ceil(len(text) / 4)


def shape_local_prompt(prompt: str, operation: str) -> str:
    """Terse prompt for small local models, with a task prefix."""
    shaped = re.sub(r"\bplease\s+", "", prompt, flags=re.IGNORECASE)
    shaped = re.sub(r"\s+", " ", shaped).strip()
    if "classification" in operation:
        return f"Classify: {shaped}"
    if "extraction" in operation:
        return f"Extract from: {shaped}"
    return shaped


def strip_redundant_phrases(prompt: str) -> str:
    text = prompt
    for phrase in REDUNDANT_PHRASES:
        text = re.sub(phrase, "", text, flags=re.IGNORECASE)
    text = re.sub(r"\n\s*\n\s*\n+", "\n\n", text)  # Max 2 newlines
    text = re.sub(r"[ \t]{2,}", " ", text)
    return text.strip()


def compress_prompt(prompt: str, target_ratio: float = 0.6) -> str:
    """
    Truncate a prompt to ``target_ratio`` of its length.

    Sentences carrying instructions (priority keywords or questions) are
    kept first; the rest are added in order until the budget is spent.
    """
    max_chars = int(len(prompt) * target_ratio)
    if len(prompt) <= max_chars:
        return prompt

    sentences = [s for s in re.split(r"(?<=[.!?])\s+", prompt) if s]
    priority_idx = []
    other_idx = []
    for i, sentence in enumerate(sentences):
        lower = sentence.lower()
        if sentence.rstrip().endswith("?") or any(kw in lower for kw in PRIORITY_KEYWORDS):
            priority_idx.append(i)
        else:
            other_idx.append(i)

    kept = set(priority_idx)
    current_len = sum(len(sentences[i]) + 1 for i in priority_idx)
    for i in other_idx:
        if current_len + len(sentences[i]) >= max_chars:
            break
        kept.add(i)
        current_len += len(sentences[i]) + 1

    # Original sentence order is preserved
    compressed = " ".join(s for i, s in enumerate(sentences) if i in kept).strip()

    log.debug(
        "prompt_compressed original_chars=%d compressed_chars=%d reduction=%.1f%%",
        len(prompt),
        len(compressed),
        (len(prompt) - len(compressed)) / len(prompt) * 100 if prompt else 0,
    )
    return compressed


def optimize_remote_prompt(prompt: str, target_ratio: float) -> Tuple[str, bool]:
    """Cleaned (and, when long, compressed) prompt plus whether it was compressed."""
    cleaned = strip_redundant_phrases(prompt)
    if len(cleaned) < COMPRESS_MIN_CHARS:
        return cleaned, False
    return compress_prompt(cleaned, target_ratio), True


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


class RoutingEngine:
    """
    Cost-aware inference router.

    Thread-safe shared state (cache, budget, batch queue); route() may be
    awaited concurrently from many tasks.
    """

    def __init__(
        self,
        gateway: RemoteModelGateway,
        local_engine: LocalInferenceEngine,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        cache: Optional[ResponseCache] = None,
        budget: Optional[CostBudgetTracker] = None,
        selector: Optional[LocalModelSelector] = None,
        sink: Optional[AnalyticsSink] = None,
        simple_policy: Optional[SimplePolicy] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.gateway = gateway
        self.local_engine = local_engine

        if cache is None and self.settings.cache_enabled:
            cache = ResponseCache(self.settings, self.clock)
        self.cache = cache
        self.budget = budget or CostBudgetTracker(self.settings, self.clock)
        self.selector = selector or LocalModelSelector(local_engine, self.settings, self.clock)
        self.sink = sink
        self.is_simple: SimplePolicy = simple_policy or KeywordLengthPolicy(
            self.settings.short_prompt_chars
        )
        self.batch = BatchCoordinator(
            gateway,
            self._process_local,
            self.budget,
            cache=self.cache,
            settings=self.settings,
            clock=self.clock,
        )

        self.stats: Dict[str, Any] = {
            "total_requests": 0,
            "strategies": {s.value: 0 for s in Strategy},
            "fallbacks": 0,
            "downgrades": 0,
            "failures": 0,
            "total_cost": 0.0,
        }

        log.info(
            "routing_engine_initialized remote=%s local=%s cache=%s daily_limit=$%.2f",
            gateway.name,
            local_engine.name,
            self.cache is not None,
            self.budget.daily_limit,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        sink: Optional[AnalyticsSink] = None,
    ) -> "RoutingEngine":
        """Build an engine with real backends (Claude/Gemini + Ollama)."""
        settings = settings or get_settings()
        clock = clock or SystemClock()

        if settings.remote_provider == "gemini":
            from .llm_providers.gemini import GeminiGateway

            gateway: RemoteModelGateway = GeminiGateway(
                settings.gemini_api_key, timeout_sec=settings.remote_timeout_sec
            )
        elif settings.remote_provider == "claude":
            from .llm_providers.claude import ClaudeGateway

            gateway = ClaudeGateway(settings.anthropic_api_key)
        else:
            raise ValueError(f"Unknown remote provider: {settings.remote_provider}")

        from .llm_providers.ollama import OllamaEngine
        from .usage_sink import JsonlUsageSink

        local_engine = OllamaEngine(settings.ollama_url, timeout_sec=settings.local_timeout_sec)
        if sink is None:
            sink = JsonlUsageSink(settings.resolved_usage_log_path, clock=clock)
        return cls(gateway, local_engine, settings=settings, clock=clock, sink=sink)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the batch drain loop and probe the local engine."""
        self.batch.start()
        await self.selector.health_check()

    async def close(self) -> None:
        await self.batch.stop()
        await self.local_engine.close()

    async def __aenter__(self) -> "RoutingEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def remote_estimate(self, prompt_tokens: int) -> float:
        """Estimated remote cost of serving a prompt of ``prompt_tokens``."""
        return prompt_tokens * OUTPUT_RATIO / 1000 * self.settings.remote_cost_per_1k

    async def decide(self, prompt: str, context: RequestContext) -> RoutingDecision:
        """
        Pick a strategy for ``prompt`` without serving it.

        Advisory: the served result may differ (fallbacks, budget races).
        """
        return await self._decide(prompt, context, check_cache=True)

    async def _decide(
        self, prompt: str, context: RequestContext, check_cache: bool
    ) -> RoutingDecision:
        tokens = estimate_tokens(prompt)
        estimate = self.remote_estimate(tokens)

        # 1. Cache (peek only)
        if check_cache and self.cache is not None:
            if self.cache.lookup(prompt, context.operation, context.user_id, record=False):
                return RoutingDecision(
                    strategy=Strategy.CACHE,
                    reasoning="Cached response available",
                    estimated_cost=0.0,
                    estimated_tokens=0,
                    expected_quality=CACHE_QUALITY,
                    expected_latency_ms=CACHE_LATENCY_MS,
                )

        # 2-4. Classify
        simple = self.is_simple(prompt, context)
        if context.min_quality_threshold is not None:
            high_quality = context.min_quality_threshold > 0.9
        else:
            high_quality = context.category is Category.CRITICAL
        if context.max_response_time_ms is not None:
            urgent = context.max_response_time_ms < self.settings.urgent_latency_ms
        else:
            urgent = context.priority is Priority.CRITICAL

        # 5. Local
        if simple and not high_quality and await self.selector.health_check():
            return self._local_decision(tokens, "Simple task suitable for local processing")

        # 6. Batch
        if (
            not urgent
            and context.category is Category.BULK
            and tokens < self.settings.batch_max_prompt_tokens
        ):
            return RoutingDecision(
                strategy=Strategy.BATCH,
                reasoning="Non-urgent bulk request, batching for a 30% discount",
                estimated_cost=estimate * BATCH_DISCOUNT,
                estimated_tokens=tokens,
                expected_quality=BATCH_QUALITY,
                expected_latency_ms=self.settings.batch_interval_sec * 1000 + OPTIMIZED_LATENCY_MS,
            )

        remaining = self.budget.remaining()

        # 7. Remote optimized
        if remaining > estimate and not high_quality:
            return RoutingDecision(
                strategy=Strategy.REMOTE_OPTIMIZED,
                reasoning=f"Optimized remote processing within budget (${remaining:.2f} left)",
                estimated_cost=estimate * OPTIMIZED_COST_FACTOR,
                estimated_tokens=int(tokens * OPTIMIZED_TOKEN_FACTOR),
                expected_quality=OPTIMIZED_QUALITY,
                expected_latency_ms=OPTIMIZED_LATENCY_MS,
            )

        # 8. Remote premium
        if high_quality or context.priority is Priority.CRITICAL:
            if self.settings.premium_respects_budget and remaining <= estimate:
                return self._local_decision(
                    tokens, "Premium quality requested but daily budget is spent, using local"
                )
            return RoutingDecision(
                strategy=Strategy.REMOTE_PREMIUM,
                reasoning="High quality requirement, using premium model",
                estimated_cost=estimate,
                estimated_tokens=int(tokens * PREMIUM_TOKEN_FACTOR),
                expected_quality=PREMIUM_QUALITY,
                expected_latency_ms=PREMIUM_LATENCY_MS,
            )

        # 9. Fallback
        return self._local_decision(tokens, "Budget constraints, falling back to local processing")

    @staticmethod
    def _local_decision(tokens: int, reasoning: str) -> RoutingDecision:
        return RoutingDecision(
            strategy=Strategy.LOCAL,
            reasoning=reasoning,
            estimated_cost=0.0,
            estimated_tokens=int(tokens * LOCAL_TOKEN_FACTOR),
            expected_quality=LOCAL_QUALITY,
            expected_latency_ms=LOCAL_LATENCY_MS,
        )

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def route(self, prompt: str, context: RequestContext) -> ProcessingResult:
        """
        Serve one request.

        Raises:
            GenerationFailed: the chosen backend and the local retry both failed
        """
        request_id = generate_request_id()
        start = time.perf_counter()
        self.stats["total_requests"] += 1

        # 1. Cache
        if self.cache is not None:
            match = self.cache.lookup(prompt, context.operation, context.user_id)
            if match is not None:
                self.stats["strategies"][Strategy.CACHE.value] += 1
                result = ProcessingResult(
                    response=match.response,
                    strategy_used=Strategy.CACHE,
                    model_used=match.entry.metadata.model_used,
                    tokens_consumed=0,
                    actual_cost=0.0,
                    processing_time_ms=(time.perf_counter() - start) * 1000,
                    quality_score=match.entry.metadata.quality_score,
                    cached=True,
                    optimizations_applied=[
                        "exact_cache_hit" if match.exact_match else "semantic_cache_hit"
                    ],
                    request_id=request_id,
                )
                log.info(
                    "route_complete id=%s operation=%s strategy=cache similarity=%.2f",
                    request_id,
                    context.operation,
                    match.similarity_score,
                )
                self._record_usage(prompt, context, result)
                return result

        # 2. Decide
        decision = await self._decide(prompt, context, check_cache=False)
        strategy = decision.strategy
        self.stats["strategies"][strategy.value] += 1

        log.info(
            "route_start id=%s operation=%s user=%s strategy=%s est_cost=$%.4f reason=%s",
            request_id,
            context.operation,
            context.user_id,
            strategy.value,
            decision.estimated_cost,
            decision.reasoning,
        )

        # 3-4. Dispatch, with one local retry
        fallback = False
        try:
            result = await self._dispatch(strategy, prompt, context)
        except (BudgetExhausted, BatchTimeout) as e:
            # Routing outcomes, not failures: serve locally
            self.stats["downgrades"] += 1
            log.info(
                "route_downgrade_local id=%s strategy=%s reason=%s",
                request_id,
                strategy.value,
                type(e).__name__,
            )
            result = await self._local_retry(prompt, context, strategy, e, request_id)
            result.optimizations_applied.append(
                "budget_downgrade" if isinstance(e, BudgetExhausted) else "batch_timeout"
            )
        except Exception as e:
            already_retried = isinstance(e, GenerationFailed) and e.fallback_attempted
            if strategy is Strategy.LOCAL or already_retried:
                self._fail(prompt, context, strategy, e, request_id)
                if isinstance(e, GenerationFailed):
                    raise
                raise GenerationFailed(
                    f"local generation failed: {_describe(e)}", strategy=strategy
                ) from e

            log.warning(
                "route_fallback id=%s strategy=%s err=%s",
                request_id,
                strategy.value,
                _describe(e)[:200],
            )
            fallback = True
            self.stats["fallbacks"] += 1
            result = await self._local_retry(prompt, context, strategy, e, request_id)

        result.request_id = request_id
        result.processing_time_ms = (time.perf_counter() - start) * 1000
        self.stats["total_cost"] += result.actual_cost

        # 5. Cache write-back (batch results are stored by the coordinator)
        if self.cache is not None and result.strategy_used is not Strategy.BATCH:
            self.cache.store(
                prompt,
                result.response,
                CacheMetadata(
                    operation=context.operation,
                    user_id=context.user_id,
                    model_used=result.model_used,
                    quality_score=result.quality_score,
                    token_count=result.tokens_consumed,
                    cost_saved=result.actual_cost,
                ),
            )

        log.info(
            "route_complete id=%s operation=%s strategy=%s model=%s tokens=%d "
            "cost=$%.4f latency_ms=%.0f fallback=%s",
            request_id,
            context.operation,
            result.strategy_used.value,
            result.model_used,
            result.tokens_consumed,
            result.actual_cost,
            result.processing_time_ms,
            fallback,
        )

        # 6. Analytics
        self._record_usage(prompt, context, result, fallback=fallback)
        return result

    async def _local_retry(
        self,
        prompt: str,
        context: RequestContext,
        strategy: Strategy,
        cause: Exception,
        request_id: str,
    ) -> ProcessingResult:
        try:
            return await self._process_local(prompt, context)
        except Exception as e:
            self._fail(prompt, context, strategy, e, request_id)
            raise GenerationFailed(
                f"{strategy.value} failed ({_describe(cause)}); "
                f"local retry failed ({_describe(e)})",
                strategy=strategy,
                fallback_attempted=True,
            ) from e

    def _fail(
        self,
        prompt: str,
        context: RequestContext,
        strategy: Strategy,
        error: Exception,
        request_id: str,
    ) -> None:
        self.stats["failures"] += 1
        log.error(
            "route_failed id=%s operation=%s strategy=%s err=%s",
            request_id,
            context.operation,
            strategy.value,
            _describe(error)[:200],
        )
        self._record_usage(
            prompt,
            context,
            ProcessingResult(
                response="",
                strategy_used=strategy,
                model_used="none",
                request_id=request_id,
            ),
            fallback=True,
            error=_describe(error),
        )

    async def force_strategy(
        self, prompt: str, context: RequestContext, strategy: Strategy
    ) -> ProcessingResult:
        """
        Serve a request on a given strategy with no fallback (diagnostics).

        Errors propagate unchanged; nothing is cached or recorded.
        """
        if strategy is Strategy.CACHE:
            raise ValueError("cache cannot be forced; use route()")
        log.info("route_forced operation=%s strategy=%s", context.operation, strategy.value)
        return await self._dispatch(strategy, prompt, context)

    async def _dispatch(
        self, strategy: Strategy, prompt: str, context: RequestContext
    ) -> ProcessingResult:
        if strategy is Strategy.LOCAL:
            return await self._process_local(prompt, context)
        if strategy is Strategy.BATCH:
            return await self._process_batch(prompt, context)
        if strategy is Strategy.REMOTE_OPTIMIZED:
            return await self._process_remote(prompt, context, premium=False)
        if strategy is Strategy.REMOTE_PREMIUM:
            return await self._process_remote(prompt, context, premium=True)
        raise ValueError(f"Unknown strategy: {strategy}")

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    async def _process_local(self, prompt: str, context: RequestContext) -> ProcessingResult:
        use_case = OPERATION_USE_CASES.get(context.operation, DEFAULT_USE_CASE)
        profile = self.selector.select(use_case, "speed") or self.selector.select(
            DEFAULT_USE_CASE, "speed"
        )
        if profile is None:
            raise ModelUnavailable(f"no local model serves use case {use_case!r}")

        shaped = shape_local_prompt(prompt, context.operation)
        max_tokens = min(
            OPERATION_MAX_TOKENS.get(context.operation, DEFAULT_MAX_TOKENS), profile.max_tokens
        )

        start = time.perf_counter()
        generation = await asyncio.wait_for(
            self.local_engine.generate(shaped, profile.model_id, max_tokens, profile.temperature),
            timeout=self.settings.local_timeout_sec,
        )
        if not generation.text.strip():
            raise GenerationFailed("local model returned an empty response", Strategy.LOCAL)

        return ProcessingResult(
            response=generation.text,
            strategy_used=Strategy.LOCAL,
            model_used=profile.name,
            tokens_consumed=generation.tokens_used,
            actual_cost=0.0,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            quality_score=(
                generation.confidence if generation.confidence is not None else LOCAL_QUALITY
            ),
            optimizations_applied=["local_processing", f"model_{profile.name}"],
        )

    async def _process_batch(self, prompt: str, context: RequestContext) -> ProcessingResult:
        request = BatchRequest(
            id=generate_batch_id(self.clock),
            prompt=prompt,
            context=context,
            submitted_at=self.clock.timestamp(),
            max_wait_ms=context.max_response_time_ms or self.settings.batch_max_wait_ms,
        )
        future = self.batch.enqueue(request)
        return await self.batch.wait(request, future)

    async def _process_remote(
        self, prompt: str, context: RequestContext, premium: bool
    ) -> ProcessingResult:
        tokens = estimate_tokens(prompt)
        estimate = self.remote_estimate(tokens)
        base_max_tokens = OPERATION_MAX_TOKENS.get(context.operation, DEFAULT_MAX_TOKENS)

        if premium:
            strategy = Strategy.REMOTE_PREMIUM
            tier = ModelTier.PREMIUM
            shaped = prompt
            max_tokens = int(base_max_tokens * 1.5)
            temperature = 0.1
            quality = PREMIUM_QUALITY
            optimizations = ["premium_model", "full_context"]
            gated = self.settings.premium_respects_budget
        else:
            strategy = Strategy.REMOTE_OPTIMIZED
            tier = ModelTier.ECONOMY if context.category is Category.ROUTINE else ModelTier.STANDARD
            shaped, compressed = optimize_remote_prompt(prompt, self.settings.compression_target)
            max_tokens = base_max_tokens
            temperature = 0.1 if context.category is Category.CRITICAL else 0.3
            quality = OPTIMIZED_QUALITY
            optimizations = ["prompt_optimization", "model_selection"]
            if compressed:
                optimizations.append("prompt_compression")
            gated = True

        reserved = 0.0
        if gated:
            if not self.budget.reserve(estimate):
                raise BudgetExhausted(
                    f"remaining ${self.budget.remaining():.4f} cannot cover ${estimate:.4f}"
                )
            reserved = estimate

        start = time.perf_counter()
        settled = False
        try:
            generation = await asyncio.wait_for(
                self.gateway.generate(shaped, tier, max_tokens, temperature),
                timeout=self.settings.remote_timeout_sec,
            )
            settled = True
        finally:
            if reserved and not settled:
                self.budget.release(reserved)

        if reserved:
            self.budget.commit(reserved, generation.cost)
        else:
            self.budget.record(generation.cost)

        return ProcessingResult(
            response=generation.text,
            strategy_used=strategy,
            model_used=generation.model,
            tokens_consumed=generation.tokens_used,
            actual_cost=generation.cost,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            quality_score=quality,
            optimizations_applied=optimizations,
        )

    # ------------------------------------------------------------------
    # Analytics and stats
    # ------------------------------------------------------------------

    def _record_usage(
        self,
        prompt: str,
        context: RequestContext,
        result: ProcessingResult,
        fallback: bool = False,
        error: Optional[str] = None,
    ) -> None:
        if self.sink is None:
            return

        prompt_tokens = estimate_tokens(prompt) if result.tokens_consumed else 0
        usage = UsageRecord(
            timestamp=self.clock.now().astimezone(timezone.utc).isoformat(),
            operation=context.operation,
            user_id=context.user_id,
            strategy=result.strategy_used.value,
            model=result.model_used,
            prompt_tokens=prompt_tokens,
            completion_tokens=max(0, result.tokens_consumed - prompt_tokens),
            total_tokens=result.tokens_consumed,
            cost=result.actual_cost,
            cached=result.cached,
            quality_score=result.quality_score,
            latency_ms=result.processing_time_ms,
            category=context.category.value,
            priority=context.priority.value,
            optimizations=list(result.optimizations_applied),
            fallback=fallback,
            request_id=result.request_id,
            error=error,
        )
        try:
            self.sink.record(usage)
        except Exception as e:
            log.warning("usage_sink_failed operation=%s err=%s", context.operation, str(e))

    def get_routing_stats(self) -> Dict[str, Any]:
        snapshot = asdict(self.budget.snapshot())
        snapshot["window_start"] = snapshot["window_start"].isoformat()
        return {
            "total_requests": self.stats["total_requests"],
            "strategies": dict(self.stats["strategies"]),
            "fallbacks": self.stats["fallbacks"],
            "downgrades": self.stats["downgrades"],
            "failures": self.stats["failures"],
            "total_cost": round(self.stats["total_cost"], 6),
            "budget": snapshot,
            "local": self.selector.status(),
            "batch": self.batch.get_stats(),
        }

    def get_cache_stats(self) -> Dict[str, Any]:
        if self.cache is None:
            return {"enabled": False}
        return {"enabled": True, **self.cache.get_stats()}

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()
