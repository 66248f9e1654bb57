"""
Routing services for the inference router.

Services:
- routing_engine: Strategy selection, dispatch, local fallback
- response_cache: Exact and semantic response caching
- batch_coordinator: Grouped economy-tier remote calls
- local_models: Local model profiles and engine health
- budget: Daily remote spend ceiling
- usage_sink: Per-request usage analytics
"""

from .models import (
    Category,
    GenerationFailed,
    Priority,
    ProcessingResult,
    RequestContext,
    RouterError,
    RoutingDecision,
    Strategy,
)
from .routing_engine import RoutingEngine

__all__ = [
    "RoutingEngine",
    "RequestContext",
    "RoutingDecision",
    "ProcessingResult",
    "Priority",
    "Category",
    "Strategy",
    "RouterError",
    "GenerationFailed",
]
