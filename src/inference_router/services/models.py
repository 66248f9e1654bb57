"""
Router Data Model
=================

Request, decision and result types shared by the routing engine, the
response cache, the batch coordinator and the backend adapters, plus the
router's error kinds.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Category(Enum):
    ROUTINE = "routine"
    ENHANCEMENT = "enhancement"
    CRITICAL = "critical"
    BULK = "bulk"


class CostSensitivity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Strategy(Enum):
    """Backend path chosen for a request."""

    CACHE = "cache"                        # Previously generated response
    LOCAL = "local"                        # Free local model (Ollama)
    BATCH = "batch"                        # Grouped call on the economy tier
    REMOTE_OPTIMIZED = "remote_optimized"  # Compressed prompt, cheaper model
    REMOTE_PREMIUM = "remote_premium"      # Full prompt, premium model


class ModelTier(Enum):
    """Remote gateway model tiers (cheapest first)."""

    ECONOMY = "economy"
    STANDARD = "standard"
    PREMIUM = "premium"


class PerformanceTier(Enum):
    FAST = "fast"
    BALANCED = "balanced"
    ACCURATE = "accurate"


@dataclass(frozen=True)
class RequestContext:
    """
    Per-request routing context.

    Attributes:
        operation: Operation name (e.g. "email_parsing", "cv_analysis")
        user_id: Caller identity; cache entries are never shared across users
        priority: Request priority
        category: Workload category
        max_response_time_ms: Latency budget, if the caller has one
        min_quality_threshold: Minimum acceptable quality (0-1)
        cost_sensitivity: How much the caller cares about spend
    """

    operation: str
    user_id: str
    priority: Priority = Priority.MEDIUM
    category: Category = Category.ENHANCEMENT
    max_response_time_ms: Optional[int] = None
    min_quality_threshold: Optional[float] = None
    cost_sensitivity: Optional[CostSensitivity] = None


@dataclass
class RoutingDecision:
    """Advisory routing decision; the served result may differ."""

    strategy: Strategy
    reasoning: str
    estimated_cost: float
    estimated_tokens: int
    expected_quality: float
    expected_latency_ms: float


@dataclass
class ProcessingResult:
    """Value returned to the caller and logged to the analytics sink."""

    response: str
    strategy_used: Strategy
    model_used: str
    tokens_consumed: int = 0
    actual_cost: float = 0.0
    processing_time_ms: float = 0.0
    quality_score: float = 0.0
    cached: bool = False
    optimizations_applied: List[str] = field(default_factory=list)
    request_id: Optional[str] = None


@dataclass
class GenerationResult:
    """
    What a backend returns for one generation call.

    Remote gateways fill ``cost``; the local engine fills ``confidence``.
    """

    text: str
    tokens_used: int = 0
    cost: float = 0.0
    confidence: Optional[float] = None
    latency_ms: float = 0.0
    model: str = "unknown"


@dataclass
class CacheMetadata:
    operation: str
    user_id: str
    model_used: str
    quality_score: float
    token_count: int
    # Cost of the original generation; credited to savings on every reuse.
    cost_saved: float = 0.0


@dataclass
class CacheEntry:
    """A cached response.  Owned and mutated only by the response cache."""

    key: str
    semantic_key: str
    prompt: str
    payload: bytes
    compressed: bool
    metadata: CacheMetadata
    created_at: float
    last_accessed: float
    expires_at: float
    access_count: int = 1
    similarity_threshold: float = 0.8

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass
class CacheMatch:
    entry: CacheEntry
    response: str
    similarity_score: float
    exact_match: bool
    semantic_match: bool


@dataclass
class BatchRequest:
    """A request parked in the batch queue until drained or timed out."""

    id: str
    prompt: str
    context: RequestContext
    submitted_at: float
    max_wait_ms: int
    future: Optional["asyncio.Future[ProcessingResult]"] = field(
        default=None, repr=False, compare=False
    )

    def deadline(self) -> float:
        return self.submitted_at + self.max_wait_ms / 1000.0


@dataclass
class UsageRecord:
    """One analytics row per served request."""

    timestamp: str  # ISO 8601 UTC
    operation: str
    user_id: str
    strategy: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    cached: bool
    quality_score: float
    latency_ms: float
    category: str
    priority: str
    optimizations: List[str] = field(default_factory=list)
    fallback: bool = False
    request_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BudgetSnapshot:
    ceiling: float
    spent: float
    reserved: float
    remaining: float
    window_start: datetime


class RouterError(Exception):
    """Base exception for router errors."""
    pass


class BudgetExhausted(RouterError):
    """Remaining daily budget cannot cover the request (downgrades to local)."""
    pass


class ModelUnavailable(RouterError):
    """No local profile matches, the local engine is down, or the gateway is unreachable."""
    pass


class BatchTimeout(RouterError):
    """A batched request was not drained within its max wait (falls back to local)."""
    pass


class CacheCorrupt(RouterError):
    """A stored payload failed to decompress or decode (treated as a miss)."""
    pass


class GenerationFailed(RouterError):
    """
    Backend returned an error or malformed output.

    Attributes:
        strategy: Strategy that was being served when the failure surfaced
        fallback_attempted: Whether the local retry already ran
    """

    def __init__(
        self,
        message: str,
        strategy: Optional[Strategy] = None,
        fallback_attempted: bool = False,
    ):
        super().__init__(message)
        self.strategy = strategy
        self.fallback_attempted = fallback_attempted

    def __str__(self) -> str:
        base = super().__str__()
        if self.strategy is not None:
            return f"{base} (strategy={self.strategy.value})"
        return base
