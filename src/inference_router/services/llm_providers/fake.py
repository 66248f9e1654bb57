"""
Deterministic backends for tests and offline runs.

- FakeRemoteGateway: echoes prompts, understands combined batch prompts
- FakeLocalEngine: fixed confidence, switchable health
- RecordingSink: keeps usage records in memory

Each fake can be told to fail (raise) or to stall (sleep) so fallback and
timeout paths can be exercised.
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Tuple

from ..models import GenerationFailed, GenerationResult, ModelTier, ModelUnavailable, UsageRecord
from ..usage_sink import AnalyticsSink
from .base import LocalInferenceEngine, RemoteModelGateway

BATCH_SEPARATOR = "\n\n---\n\n"


def echo_responder(prompt: str, label: str) -> str:
    """Echo each request of a combined batch prompt, or the whole prompt."""
    if prompt.startswith("Request 1: "):
        parts = prompt.split(BATCH_SEPARATOR)
        answers = [f"{label} answer to {p.split(': ', 1)[-1]}" for p in parts]
        return "\n---\n".join(answers)
    return f"{label} answer to {prompt}"


class FakeRemoteGateway(RemoteModelGateway):
    """Remote gateway that never leaves the process."""

    name = "fake-remote"

    def __init__(
        self,
        responder: Optional[Callable[[str, ModelTier], str]] = None,
        cost_per_call: float = 0.002,
        fail: bool = False,
        delay_sec: float = 0.0,
    ):
        self.responder = responder
        self.cost_per_call = cost_per_call
        self.fail = fail
        self.delay_sec = delay_sec
        self.calls: List[Tuple[str, ModelTier, int, float]] = []

    def model_for(self, model_tier: ModelTier) -> str:
        return f"fake-{model_tier.value}"

    async def generate(
        self,
        prompt: str,
        model_tier: ModelTier,
        max_tokens: int = 1000,
        temperature: float = 0.3,
    ) -> GenerationResult:
        self.calls.append((prompt, model_tier, max_tokens, temperature))
        if self.delay_sec:
            await asyncio.sleep(self.delay_sec)
        if self.fail:
            raise GenerationFailed("fake remote failure")

        if self.responder is not None:
            text = self.responder(prompt, model_tier)
        else:
            text = echo_responder(prompt, model_tier.value)
        return GenerationResult(
            text=text,
            tokens_used=self._count_tokens(prompt) + self._count_tokens(text),
            cost=self.cost_per_call,
            latency_ms=self.delay_sec * 1000,
            model=self.model_for(model_tier),
        )


class FakeLocalEngine(LocalInferenceEngine):
    """Local engine with fixed confidence and switchable health."""

    name = "fake-local"

    def __init__(
        self,
        healthy: bool = True,
        fail: bool = False,
        confidence: float = 0.75,
        delay_sec: float = 0.0,
        installed: Optional[List[str]] = None,
    ):
        self.healthy = healthy
        self.fail = fail
        self.confidence = confidence
        self.delay_sec = delay_sec
        self.installed = installed
        self.calls: List[Tuple[str, str, int, float]] = []
        self.pings = 0
        self.pulled: List[str] = []

    async def ping(self) -> bool:
        self.pings += 1
        return self.healthy

    async def installed_models(self) -> Optional[List[str]]:
        return None if self.installed is None else list(self.installed)

    async def pull_model(self, model_id: str) -> bool:
        self.pulled.append(model_id)
        if self.installed is not None:
            self.installed.append(model_id)
        return True

    async def generate(
        self,
        prompt: str,
        model_id: str,
        max_tokens: int = 1000,
        temperature: float = 0.1,
    ) -> GenerationResult:
        self.calls.append((prompt, model_id, max_tokens, temperature))
        if self.delay_sec:
            await asyncio.sleep(self.delay_sec)
        if self.fail or not self.healthy:
            raise ModelUnavailable("fake local engine unavailable")

        text = f"local answer to {prompt}"
        return GenerationResult(
            text=text,
            tokens_used=len(prompt) // 4 + len(text) // 4,
            cost=0.0,
            confidence=self.confidence,
            latency_ms=self.delay_sec * 1000,
            model=model_id,
        )


class RecordingSink(AnalyticsSink):
    """Keeps every usage record; optionally raises on record()."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.records: List[UsageRecord] = []

    def record(self, usage: UsageRecord) -> None:
        if self.fail:
            raise OSError("sink unavailable")
        self.records.append(usage)
