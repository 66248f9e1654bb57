"""
Local Model Selector
====================

Registry of local model profiles and the health of the local inference
engine.

Profiles declare which use-cases they serve.  ``select()`` picks the best
profile for a use-case under a speed or quality preference:

- speed:   fast > balanced > accurate, then lowest memory
- quality: accurate > balanced > fast, then lowest memory

``health_check()`` probes the engine at most once per
``health_check_interval_sec``; the result (healthy or not) is cached for
that interval.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..clock import Clock, SystemClock
from ..config import Settings, get_settings
from ..logging_utils import get_logger
from .llm_providers.base import LocalInferenceEngine
from .models import PerformanceTier

log = get_logger("local_models")


@dataclass
class ModelProfile:
    name: str
    model_id: str
    use_cases: List[str]
    max_tokens: int
    temperature: float
    context_window: int
    performance_tier: PerformanceTier
    memory_usage_mb: int
    description: str = ""

    def supports(self, use_case: str) -> bool:
        return use_case in self.use_cases


DEFAULT_PROFILES = (
    ModelProfile(
        name="llama-3.2-3b",
        model_id="llama3.2:3b",
        use_cases=["classification", "extraction", "simple_questions", "data_parsing"],
        max_tokens=2048,
        temperature=0.1,
        context_window=4096,
        performance_tier=PerformanceTier.FAST,
        memory_usage_mb=2048,
        description="Fast, efficient model for classification and extraction",
    ),
    ModelProfile(
        name="mistral-7b",
        model_id="mistral:7b",
        use_cases=["summarization", "analysis", "content_generation", "reasoning"],
        max_tokens=4096,
        temperature=0.3,
        context_window=8192,
        performance_tier=PerformanceTier.BALANCED,
        memory_usage_mb=4096,
        description="Balanced model for analysis and content generation",
    ),
    ModelProfile(
        name="phi-3-mini",
        model_id="phi3:mini",
        use_cases=["quick_responses", "simple_chat", "basic_analysis", "routine_tasks"],
        max_tokens=1024,
        temperature=0.2,
        context_window=2048,
        performance_tier=PerformanceTier.FAST,
        memory_usage_mb=1024,
        description="Ultra-fast model for quick responses",
    ),
    ModelProfile(
        name="codellama-7b",
        model_id="codellama:7b",
        use_cases=["code_analysis", "code_generation", "technical_questions"],
        max_tokens=4096,
        temperature=0.1,
        context_window=8192,
        performance_tier=PerformanceTier.ACCURATE,
        memory_usage_mb=4096,
        description="Specialized model for code-related tasks",
    ),
)

_TIER_ORDER = {
    "speed": [PerformanceTier.FAST, PerformanceTier.BALANCED, PerformanceTier.ACCURATE],
    "quality": [PerformanceTier.ACCURATE, PerformanceTier.BALANCED, PerformanceTier.FAST],
}


class LocalModelSelector:
    """Chooses local model profiles and tracks engine health."""

    def __init__(
        self,
        engine: Optional[LocalInferenceEngine] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        profiles: Optional[Iterable[ModelProfile]] = None,
    ):
        self.settings = settings or get_settings()
        self.engine = engine
        self.clock = clock or SystemClock()
        self.check_interval_sec = self.settings.health_check_interval_sec
        self.auto_pull = self.settings.auto_pull_models

        self._profiles: Dict[str, ModelProfile] = {}
        for profile in profiles if profiles is not None else DEFAULT_PROFILES:
            self._profiles[profile.name] = profile

        self._healthy = False
        self._last_check: Optional[float] = None
        self._missing_models: List[str] = []
        self._check_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, profile: ModelProfile) -> None:
        self._profiles[profile.name] = profile
        log.info(
            "local_model_registered name=%s model_id=%s use_cases=%s",
            profile.name,
            profile.model_id,
            ",".join(profile.use_cases),
        )

    def get(self, name: str) -> Optional[ModelProfile]:
        return self._profiles.get(name)

    def profiles(self) -> List[ModelProfile]:
        return list(self._profiles.values())

    def select(self, use_case: str, priority: str = "speed") -> Optional[ModelProfile]:
        """
        Pick the best profile serving ``use_case``.

        Args:
            use_case: Use-case tag (e.g. "extraction", "analysis")
            priority: "speed" or "quality"

        Returns:
            ModelProfile, or None if no profile serves the use-case
        """
        if priority not in _TIER_ORDER:
            raise ValueError(f"unknown priority {priority!r}, expected 'speed' or 'quality'")

        candidates = [p for p in self._profiles.values() if p.supports(use_case)]
        if not candidates:
            log.debug("local_model_no_match use_case=%s", use_case)
            return None

        order = _TIER_ORDER[priority]
        candidates.sort(
            key=lambda p: (order.index(p.performance_tier), p.memory_usage_mb)
        )
        return candidates[0]

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self, force: bool = False) -> bool:
        """
        Whether the local engine is reachable.

        Cached for ``health_check_interval_sec`` unless ``force`` is set.
        """
        if self.engine is None:
            return False

        async with self._check_lock:
            now = self.clock.timestamp()
            if (
                not force
                and self._last_check is not None
                and now - self._last_check < self.check_interval_sec
            ):
                return self._healthy

            try:
                healthy = await self.engine.ping()
            except Exception as e:
                log.warning("local_health_check_failed err=%s", str(e))
                healthy = False

            if healthy:
                await self._check_installed_models()

            if healthy != self._healthy or self._last_check is None:
                log.info("local_engine_health healthy=%s", healthy)
            self._healthy = healthy
            self._last_check = now
            return healthy

    def is_healthy(self) -> bool:
        """Last known health without probing."""
        return self._healthy

    async def _check_installed_models(self) -> None:
        try:
            installed = await self.engine.installed_models()
        except Exception as e:
            log.debug("local_models_list_failed err=%s", str(e))
            return
        if installed is None:
            return

        installed_set = set(installed)
        self._missing_models = [
            p.model_id for p in self._profiles.values() if p.model_id not in installed_set
        ]
        if not self._missing_models:
            return

        log.warning("local_models_missing models=%s", ",".join(self._missing_models))
        if not self.auto_pull:
            return

        for model_id in list(self._missing_models):
            try:
                if await self.engine.pull_model(model_id):
                    self._missing_models.remove(model_id)
                    log.info("local_model_pulled model=%s", model_id)
            except Exception as e:
                log.warning("local_model_pull_failed model=%s err=%s", model_id, str(e))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, object]:
        return {
            "healthy": self._healthy,
            "last_check": self._last_check,
            "models": [p.name for p in self._profiles.values()],
            "missing_models": list(self._missing_models),
            "total_memory_mb": sum(p.memory_usage_mb for p in self._profiles.values()),
        }

    def recommendations(self, use_cases: Iterable[str]) -> Dict[str, Dict[str, Optional[str]]]:
        """Speed and quality picks for each use-case."""
        report: Dict[str, Dict[str, Optional[str]]] = {}
        for use_case in use_cases:
            fast = self.select(use_case, "speed")
            best = self.select(use_case, "quality")
            report[use_case] = {
                "speed": fast.name if fast else None,
                "quality": best.name if best else None,
            }
        return report
