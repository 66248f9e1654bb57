"""
Usage Analytics Sink
====================

Destination for one ``UsageRecord`` per served request.

``JsonlUsageSink`` appends records to a JSONL file, logs a one-line
summary, and can aggregate the file back into totals by strategy and
operation.  Sink failures never reach the caller: the routing engine
logs and swallows anything ``record()`` raises.

Environment Variables:
* ``ROUTER_USAGE_LOG_PATH`` – Custom path for the usage log
  (default: data/logs/router_usage.jsonl)
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from ..clock import Clock, SystemClock
from ..config import get_settings
from ..logging_utils import get_logger
from .models import UsageRecord

log = get_logger("usage_sink")


class AnalyticsSink(ABC):
    """Receives one usage record per served request."""

    @abstractmethod
    def record(self, usage: UsageRecord) -> None:
        pass


@dataclass
class StrategyStats:
    """Aggregate statistics for one strategy."""

    strategy: str
    requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    fallbacks: int = 0
    errors: int = 0


@dataclass
class UsageSummary:
    """Usage totals over a time period."""

    period_start: str  # ISO 8601 UTC
    period_end: str  # ISO 8601 UTC

    total_requests: int = 0
    cached_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0

    by_strategy: Dict[str, StrategyStats] = field(default_factory=dict)
    cost_by_operation: Dict[str, float] = field(default_factory=dict)

    @property
    def cache_hit_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.cached_requests / self.total_requests


class JsonlUsageSink(AnalyticsSink):
    """
    Usage sink backed by a JSONL file.

    Each line is one ``UsageRecord`` serialized with ``dataclasses.asdict``.
    """

    def __init__(self, log_path: Optional[Path] = None, clock: Optional[Clock] = None):
        if log_path is None:
            log_path = get_settings().resolved_usage_log_path
        self.log_path = Path(log_path)
        self.clock = clock or SystemClock()
        self._write_lock = threading.Lock()

        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        log.info("usage_sink_initialized log_path=%s", self.log_path)

    def record(self, usage: UsageRecord) -> None:
        line = json.dumps(asdict(usage))
        with self._write_lock:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

        log.info(
            "router_usage operation=%s strategy=%s model=%s tokens=%d "
            "cost=$%.6f cached=%s fallback=%s latency_ms=%.0f",
            usage.operation,
            usage.strategy,
            usage.model,
            usage.total_tokens,
            usage.cost,
            usage.cached,
            usage.fallback,
            usage.latency_ms,
        )

    def summary(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> UsageSummary:
        """
        Aggregate the usage log.

        Args:
            since: Start time (UTC).  If None, uses the beginning of today.
            until: End time (UTC).  If None, uses the current time.
        """
        now = self.clock.now()
        if since is None:
            since = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if until is None:
            until = now

        summary = UsageSummary(period_start=since.isoformat(), period_end=until.isoformat())

        if not self.log_path.exists():
            log.debug("usage_log_not_found path=%s", self.log_path)
            return summary

        with open(self.log_path, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    data = json.loads(line.strip())
                    event_time = datetime.fromisoformat(data["timestamp"])
                    if event_time.tzinfo is None:
                        event_time = event_time.replace(tzinfo=timezone.utc)
                    if event_time < since or event_time > until:
                        continue

                    strategy = data["strategy"]
                    stats = summary.by_strategy.setdefault(strategy, StrategyStats(strategy))
                    stats.requests += 1
                    stats.total_tokens += data["total_tokens"]
                    stats.total_cost += data["cost"]
                    if data.get("fallback"):
                        stats.fallbacks += 1
                    if data.get("error"):
                        stats.errors += 1

                    operation = data["operation"]
                    summary.cost_by_operation[operation] = (
                        summary.cost_by_operation.get(operation, 0.0) + data["cost"]
                    )

                    summary.total_requests += 1
                    summary.total_tokens += data["total_tokens"]
                    summary.total_cost += data["cost"]
                    if data.get("cached"):
                        summary.cached_requests += 1
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    log.debug("usage_parse_error line=%s err=%s", line[:50], str(e))

        return summary
