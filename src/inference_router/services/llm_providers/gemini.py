"""
Google Gemini Gateway
=====================

Remote gateway for the Google Gemini API.

Tiers:
- economy:  gemini-2.0-flash-lite
- standard: gemini-2.5-flash
- premium:  gemini-2.5-pro

Pricing (per 1M tokens):
- Flash Lite: $0.075 input, $0.30 output
- Flash: $0.30 input, $2.50 output
- Pro: $1.25 input, $10.00 output

API Documentation: https://ai.google.dev/gemini-api/docs
"""

from __future__ import annotations

import asyncio
import time

import google.generativeai as genai

from ...logging_utils import get_logger
from ..models import GenerationFailed, GenerationResult, ModelTier, ModelUnavailable
from .base import RemoteModelGateway

log = get_logger("gemini_gateway")


class GeminiGateway(RemoteModelGateway):
    """Google Gemini API gateway."""

    name = "gemini"

    MODELS = {
        ModelTier.ECONOMY: "gemini-2.0-flash-lite",
        ModelTier.STANDARD: "gemini-2.5-flash",
        ModelTier.PREMIUM: "gemini-2.5-pro",
    }

    # Pricing per 1M tokens (USD)
    # Source: https://ai.google.dev/pricing
    PRICING = {
        "gemini-2.0-flash-lite": {"input": 0.075, "output": 0.30},
        "gemini-2.5-flash": {"input": 0.30, "output": 2.50},
        "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
    }

    def __init__(self, api_key: str = "", timeout_sec: float = 30.0):
        self.api_key = api_key
        self.timeout_sec = timeout_sec

        if self.api_key:
            genai.configure(api_key=self.api_key)
        else:
            log.warning("gemini_api_key_missing gateway_disabled")

        log.info("gemini_gateway_initialized has_key=%s", bool(self.api_key))

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
            raise ModelUnavailable("GEMINI_API_KEY not set")

        model = self.model_for(model_tier)
        model_instance = genai.GenerativeModel(
            model_name=model,
            generation_config={
                "temperature": temperature,
                "max_output_tokens": max_tokens,
            },
        )

        log.debug(
            "gemini_generate_start model=%s tier=%s prompt_len=%d",
            model,
            model_tier.value,
            len(prompt),
        )

        start = time.perf_counter()
        try:
            # Blocking SDK call; run it off the event loop
            response = await asyncio.wait_for(
                asyncio.to_thread(model_instance.generate_content, prompt),
                timeout=self.timeout_sec,
            )
        except asyncio.TimeoutError:
            log.error("gemini_generate_timeout model=%s timeout=%.1fs", model, self.timeout_sec)
            raise
        except Exception as e:
            log.error("gemini_generate_failed model=%s err=%s", model, str(e))
            raise GenerationFailed(f"Gemini API error: {e}") from e

        try:
            text = response.text if hasattr(response, "text") else ""
        except ValueError as e:
            # Safety filter blocked the content
            log.warning("gemini_safety_block model=%s reason=%s", model, str(e)[:100])
            raise GenerationFailed(f"Gemini blocked the response ({model})") from e

        text = text.strip()
        if not text:
            raise GenerationFailed(f"Gemini returned an empty response ({model})")

        tokens_input = 0
        tokens_output = 0
        if hasattr(response, "usage_metadata"):
            tokens_input = getattr(response.usage_metadata, "prompt_token_count", 0) or 0
            tokens_output = getattr(response.usage_metadata, "candidates_token_count", 0) or 0

        # If no usage metadata, estimate
        if tokens_input == 0:
            tokens_input = self._count_tokens(prompt)
        if tokens_output == 0:
            tokens_output = self._count_tokens(text)

        cost_usd = self.estimate_cost(model, tokens_input, tokens_output)

        log.info(
            "gemini_generate_success model=%s tokens_in=%d tokens_out=%d cost_usd=%.4f",
            model,
            tokens_input,
            tokens_output,
            cost_usd,
        )

        return GenerationResult(
            text=text,
            tokens_used=tokens_input + tokens_output,
            cost=cost_usd,
            latency_ms=(time.perf_counter() - start) * 1000,
            model=model,
        )

    def estimate_cost(self, model: str, tokens_input: int, tokens_output: int) -> float:
        """Cost in USD for a request on ``model``."""
        pricing = self.PRICING.get(model, self.PRICING["gemini-2.5-flash"])

        cost_input = (tokens_input / 1_000_000) * pricing["input"]
        cost_output = (tokens_output / 1_000_000) * pricing["output"]

        return cost_input + cost_output
