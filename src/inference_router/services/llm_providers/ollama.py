"""
Ollama Local Engine
===================

Adapter for a local Ollama server (free inference, no API key).

Endpoints:
- GET  /api/tags      installed models, doubles as the health probe
- POST /api/pull      download a model
- POST /api/generate  non-streaming generation

Confidence is estimated from response length and generation speed, since
Ollama reports no model confidence.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

import aiohttp

from ...logging_utils import get_logger
from ..models import GenerationResult, ModelUnavailable
from .base import LocalInferenceEngine

log = get_logger("ollama_engine")

PING_TIMEOUT_SEC = 5.0
PULL_TIMEOUT_SEC = 1800.0

# Below this many nanoseconds per generated token the model counts as fast.
FAST_NS_PER_TOKEN = 50_000_000


def estimate_confidence(text: str, eval_count: int, eval_duration_ns: int) -> float:
    """
    Heuristic confidence in [0.5, 0.95].

    Longer answers and faster generation score higher.
    """
    length_factor = min(len(text) / 500, 1.0)
    ns_per_token = eval_duration_ns / eval_count if eval_count else float("inf")
    speed_factor = 0.8 if ns_per_token < FAST_NS_PER_TOKEN else 0.6
    return min(0.5 + length_factor * 0.3 + speed_factor * 0.2, 0.95)


class OllamaEngine(LocalInferenceEngine):
    """Ollama HTTP API engine."""

    name = "ollama"

    def __init__(self, base_url: str = "http://localhost:11434", timeout_sec: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.session: Optional[aiohttp.ClientSession] = None

        log.info("ollama_engine_initialized url=%s", self.base_url)

    def _session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=10, keepalive_timeout=60),
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec),
            )
        return self.session

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def ping(self) -> bool:
        try:
            async with self._session().get(
                f"{self.base_url}/api/tags",
                timeout=aiohttp.ClientTimeout(total=PING_TIMEOUT_SEC),
            ) as resp:
                return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.debug("ollama_ping_failed err=%s", str(e))
            return False

    async def installed_models(self) -> Optional[List[str]]:
        try:
            async with self._session().get(
                f"{self.base_url}/api/tags",
                timeout=aiohttp.ClientTimeout(total=PING_TIMEOUT_SEC),
            ) as resp:
                if resp.status != 200:
                    return None
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.debug("ollama_tags_failed err=%s", str(e))
            return None
        return [m.get("name", "") for m in data.get("models", [])]

    async def pull_model(self, model_id: str) -> bool:
        log.info("ollama_pull_start model=%s", model_id)
        try:
            async with self._session().post(
                f"{self.base_url}/api/pull",
                json={"name": model_id, "stream": False},
                timeout=aiohttp.ClientTimeout(total=PULL_TIMEOUT_SEC),
            ) as resp:
                ok = resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("ollama_pull_failed model=%s err=%s", model_id, str(e))
            return False
        if not ok:
            log.warning("ollama_pull_bad_status model=%s status=%d", model_id, resp.status)
        return ok

    async def generate(
        self,
        prompt: str,
        model_id: str,
        max_tokens: int = 1000,
        temperature: float = 0.1,
    ) -> GenerationResult:
        body: Dict[str, Any] = {
            "model": model_id,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
                "top_k": 40,
                "top_p": 0.9,
                "repeat_penalty": 1.1,
            },
        }

        log.debug("ollama_generate_start model=%s prompt_len=%d", model_id, len(prompt))
        start = time.perf_counter()
        try:
            async with self._session().post(f"{self.base_url}/api/generate", json=body) as resp:
                if resp.status != 200:
                    detail = await resp.text()
                    raise ModelUnavailable(
                        f"Ollama returned {resp.status} for {model_id}: {detail[:200]}"
                    )
                data = await resp.json()
        except aiohttp.ClientError as e:
            log.warning("ollama_generate_failed model=%s err=%s", model_id, str(e))
            raise ModelUnavailable(f"Ollama unreachable: {e}") from e

        return self.parse_response(data, model_id, (time.perf_counter() - start) * 1000)

    @staticmethod
    def parse_response(data: Dict[str, Any], model_id: str, latency_ms: float) -> GenerationResult:
        """Turn an /api/generate JSON body into a GenerationResult."""
        text = str(data.get("response") or "").strip()
        eval_count = int(data.get("eval_count") or 0)
        tokens = int(data.get("prompt_eval_count") or 0) + eval_count
        confidence = estimate_confidence(text, eval_count, int(data.get("eval_duration") or 0))

        log.info(
            "ollama_generate_success model=%s tokens=%d latency_ms=%.0f confidence=%.2f",
            model_id,
            tokens,
            latency_ms,
            confidence,
        )
        return GenerationResult(
            text=text,
            tokens_used=tokens,
            cost=0.0,
            confidence=confidence,
            latency_ms=latency_ms,
            model=data.get("model", model_id),
        )
