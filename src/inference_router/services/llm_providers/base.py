"""
Backend Interfaces
==================

Abstract base classes for the two kinds of generation backend the router
dispatches to.

- RemoteModelGateway: paid hosted models, addressed by tier
- LocalInferenceEngine: free local models, addressed by model id
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from ..models import GenerationResult, ModelTier


class RemoteModelGateway(ABC):
    """Abstract base class for remote model gateways."""

    name = "remote"

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        model_tier: ModelTier,
        max_tokens: int = 1000,
        temperature: float = 0.3,
    ) -> GenerationResult:
        """
        Execute one generation call.

        Args:
            prompt: Prompt text
            model_tier: Economy, standard or premium tier
            max_tokens: Maximum tokens in response
            temperature: Sampling temperature

        Returns:
            GenerationResult with ``cost`` filled in

        Raises:
            Exception: On API errors
        """
        pass

    @abstractmethod
    def model_for(self, model_tier: ModelTier) -> str:
        """Concrete model name serving a tier."""
        pass

    def _count_tokens(self, text: str) -> int:
        """
        Estimate token count from text.

        Simple heuristic: ~4 characters per token.
        """
        return len(text) // 4


class LocalInferenceEngine(ABC):
    """Abstract base class for local inference engines."""

    name = "local"

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        model_id: str,
        max_tokens: int = 1000,
        temperature: float = 0.1,
    ) -> GenerationResult:
        """
        Execute one generation call.

        Returns:
            GenerationResult with ``confidence`` filled in and zero cost
        """
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Whether the engine is reachable."""
        pass

    async def installed_models(self) -> Optional[List[str]]:
        """Installed model ids, or None if the engine cannot list them."""
        return None

    async def pull_model(self, model_id: str) -> bool:
        """Download a model.  Returns False if unsupported or failed."""
        return False

    async def close(self) -> None:
        pass
