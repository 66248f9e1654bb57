"""
Anthropic Claude Gateway
========================

Remote gateway for the Anthropic Claude API.

Tiers:
- economy:  Haiku (batch groups)
- standard: Sonnet (optimized requests)
- premium:  Sonnet (full prompt, low temperature)

Pricing (per 1M tokens):
- Haiku (claude-3-5-haiku): $0.80 input, $4.00 output
- Sonnet (claude-sonnet-4): $3.00 input, $15.00 output

API Documentation: https://docs.anthropic.com/claude/reference
"""

from __future__ import annotations

import time
from typing import Optional

import anthropic

from ...logging_utils import get_logger
from ..models import GenerationFailed, GenerationResult, ModelTier, ModelUnavailable
from .base import RemoteModelGateway

log = get_logger("claude_gateway")


class ClaudeGateway(RemoteModelGateway):
    """Anthropic Claude API gateway."""

    name = "claude"

    MODELS = {
        ModelTier.ECONOMY: "claude-3-5-haiku-20241022",
        ModelTier.STANDARD: "claude-sonnet-4-20250514",
        ModelTier.PREMIUM: "claude-sonnet-4-20250514",
    }

    # Pricing per 1M tokens (USD)
    PRICING = {
        "claude-3-5-haiku-20241022": {"input": 0.80, "output": 4.00},
        "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00},
    }

    def __init__(self, api_key: str = ""):
        self.api_key = api_key
        self._client: Optional[anthropic.AsyncAnthropic] = None

        if not self.api_key:
            log.warning("anthropic_api_key_missing gateway_disabled")

        log.info("claude_gateway_initialized has_key=%s", bool(self.api_key))

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        return self._client

    def model_for(self, model_tier: ModelTier) -> str:
        return self.MODELS[model_tier]

    async def generate(
        self,
        prompt: str,
        model_tier: ModelTier,
        max_tokens: int = 1000,
        temperature: float = 0.3,
    ) -> GenerationResult:
        if not self.api_key:
            raise ModelUnavailable("ANTHROPIC_API_KEY not set")

        model = self.model_for(model_tier)
        log.debug(
            "claude_generate_start model=%s tier=%s prompt_len=%d",
            model,
            model_tier.value,
            len(prompt),
        )

        start = time.perf_counter()
        try:
            response = await self._get_client().messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            log.error("claude_generate_failed model=%s err=%s", model, str(e))
            raise GenerationFailed(f"Claude API error: {e}") from e

        text = ""
        if response.content and len(response.content) > 0:
            text = response.content[0].text
        if not text.strip():
            raise GenerationFailed(f"Claude returned an empty response ({model})")

        tokens_input = response.usage.input_tokens
        tokens_output = response.usage.output_tokens
        cost_usd = self.estimate_cost(model, tokens_input, tokens_output)
        latency_ms = (time.perf_counter() - start) * 1000

        log.info(
            "claude_generate_success model=%s tokens_in=%d tokens_out=%d cost_usd=%.4f",
            model,
            tokens_input,
            tokens_output,
            cost_usd,
        )

        return GenerationResult(
            text=text,
            tokens_used=tokens_input + tokens_output,
            cost=cost_usd,
            latency_ms=latency_ms,
            model=model,
        )

    def estimate_cost(self, model: str, tokens_input: int, tokens_output: int) -> float:
        """Cost in USD for a request on ``model``."""
        pricing = self.PRICING.get(model, self.PRICING["claude-sonnet-4-20250514"])

        cost_input = (tokens_input / 1_000_000) * pricing["input"]
        cost_output = (tokens_output / 1_000_000) * pricing["output"]

        return cost_input + cost_output
