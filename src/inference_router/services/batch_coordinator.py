"""
Batch Coordinator
=================

Queues bulk requests and serves them in groups with one economy-tier
remote call per group.

Flow:
1. ``enqueue()`` parks a request and hands back a future
2. a background task calls ``drain()`` every ``batch_interval_sec``
3. ``drain()`` groups pending requests by (operation, category), sends
   one combined prompt per group, splits the answer by position and
   resolves each member's future
4. ``wait()`` gives up after the request's ``max_wait_ms``, withdraws it
   from the queue and raises ``BatchTimeout`` so the caller can reroute

Combined prompt:
    Request 1: <prompt>

    ---

    Request 2: <prompt>

A group whose remote call fails has every member served individually by
the local fallback.  A member whose slice is missing from the answer gets
``GenerationFailed``.
"""

from __future__ import annotations

import asyncio
import re
import threading
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..clock import Clock, SystemClock
from ..config import Settings, get_settings
from ..logging_utils import get_logger
from .budget import CostBudgetTracker
from .llm_providers.base import RemoteModelGateway
from .models import (
    BatchRequest,
    BatchTimeout,
    CacheMetadata,
    GenerationFailed,
    ModelTier,
    ProcessingResult,
    RequestContext,
    Strategy,
)
from .response_cache import ResponseCache

log = get_logger("batch_coordinator")

BATCH_SEPARATOR = "\n\n---\n\n"
BATCH_QUALITY = 0.9
TOKENS_PER_MEMBER = 1000

_SLICE_RE = re.compile(r"^\s*-{3,}\s*$", re.MULTILINE)
_LABEL_RE = re.compile(r"^(?:Response|Request|Answer)\s*\d+\s*:\s*", re.IGNORECASE)

LocalFallback = Callable[[str, RequestContext], Awaitable[ProcessingResult]]


def combine_prompts(prompts: List[str]) -> str:
    return BATCH_SEPARATOR.join(f"Request {i + 1}: {p}" for i, p in enumerate(prompts))


def split_batch_response(text: str) -> List[str]:
    """Split a combined answer on ``---`` lines, dropping "Response n:" labels."""
    return [_LABEL_RE.sub("", part.strip(), count=1).strip() for part in _SLICE_RE.split(text)]


def _discard_outcome(future: "asyncio.Future[ProcessingResult]") -> None:
    if not future.cancelled():
        future.exception()


class BatchCoordinator:
    """Groups bulk requests into discounted remote calls."""

    def __init__(
        self,
        gateway: RemoteModelGateway,
        local_fallback: LocalFallback,
        budget: CostBudgetTracker,
        cache: Optional[ResponseCache] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.local_fallback = local_fallback
        self.budget = budget
        self.cache = cache
        self.clock = clock or SystemClock()

        self.interval_sec = self.settings.batch_interval_sec
        self.remote_timeout_sec = self.settings.remote_timeout_sec

        self.lock = threading.Lock()
        self._queue: List[BatchRequest] = []
        self._draining = False
        self._task: Optional[asyncio.Task] = None

        self.stats = {
            "enqueued": 0,
            "groups_sent": 0,
            "requests_served": 0,
            "group_failures": 0,
            "missing_slices": 0,
            "timeouts": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic drain task on the running loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        log.info("batch_coordinator_started interval_sec=%.1f", self.interval_sec)

    async def stop(self, flush: bool = True) -> None:
        """Stop the drain task; by default serve whatever is still queued."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if flush and self.pending_count():
            await self.drain()
        log.info("batch_coordinator_stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            try:
                await self.drain()
            except Exception as e:
                log.error("batch_drain_failed err=%s", str(e), exc_info=True)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(self, request: BatchRequest) -> "asyncio.Future[ProcessingResult]":
        if request.future is None:
            request.future = asyncio.get_running_loop().create_future()
        with self.lock:
            self._queue.append(request)
            self.stats["enqueued"] += 1
            depth = len(self._queue)
        log.debug(
            "batch_enqueued id=%s operation=%s queue_depth=%d",
            request.id,
            request.context.operation,
            depth,
        )
        return request.future

    def pending_count(self) -> int:
        with self.lock:
            return len(self._queue)

    def _withdraw(self, request: BatchRequest) -> bool:
        """Remove a request that has not been drained yet."""
        with self.lock:
            try:
                self._queue.remove(request)
            except ValueError:
                return False
            return True

    async def wait(
        self, request: BatchRequest, future: "asyncio.Future[ProcessingResult]"
    ) -> ProcessingResult:
        """
        Wait for a queued request's result.

        Raises:
            BatchTimeout: no result within ``max_wait_ms``.  A queued request
                is withdrawn; one already taken by a drain keeps running and
                still resolves its future (and the cache) later
            GenerationFailed: the group could not serve this request
        """
        timeout = max(0.0, request.deadline() - self.clock.timestamp())
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            withdrawn = self._withdraw(request)
            if withdrawn:
                if not future.done():
                    future.cancel()
            else:
                # Drain in flight: nobody awaits the future any more
                future.add_done_callback(_discard_outcome)
            self.stats["timeouts"] += 1
            log.warning(
                "batch_timeout id=%s operation=%s max_wait_ms=%d in_flight=%s",
                request.id,
                request.context.operation,
                request.max_wait_ms,
                not withdrawn,
            )
            raise BatchTimeout(
                f"batch request {request.id} got no result in {request.max_wait_ms}ms"
            )

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self) -> int:
        """
        Serve every queued request.

        Returns:
            Number of requests taken off the queue (0 if a drain is already
            in progress)
        """
        with self.lock:
            if self._draining:
                return 0
            self._draining = True
            pending, self._queue = self._queue, []

        try:
            pending = [r for r in pending if r.future is not None and not r.future.done()]
            if not pending:
                return 0

            groups: "OrderedDict[Tuple[str, str], List[BatchRequest]]" = OrderedDict()
            for request in pending:
                key = (request.context.operation, request.context.category.value)
                groups.setdefault(key, []).append(request)

            log.info("batch_drain requests=%d groups=%d", len(pending), len(groups))
            await asyncio.gather(*(self._process_group(k, g) for k, g in groups.items()))
            return len(pending)
        finally:
            with self.lock:
                self._draining = False

    async def _process_group(self, key: Tuple[str, str], group: List[BatchRequest]) -> None:
        operation, category = key
        combined = combine_prompts([r.prompt for r in group])

        try:
            result = await asyncio.wait_for(
                self.gateway.generate(
                    combined,
                    ModelTier.ECONOMY,
                    max_tokens=TOKENS_PER_MEMBER * len(group),
                    temperature=0.3,
                ),
                timeout=self.remote_timeout_sec,
            )
        except Exception as e:
            self.stats["group_failures"] += 1
            log.warning(
                "batch_group_failed operation=%s category=%s size=%d err=%s",
                operation,
                category,
                len(group),
                str(e) or type(e).__name__,
            )
            await asyncio.gather(*(self._serve_locally(r) for r in group))
            return

        self.stats["groups_sent"] += 1
        self.budget.record(result.cost)

        slices = split_batch_response(result.text)
        per_cost = result.cost / len(group)
        per_tokens = result.tokens_used // len(group)
        now = self.clock.timestamp()

        log.info(
            "batch_group_served operation=%s size=%d slices=%d cost=$%.4f",
            operation,
            len(group),
            len(slices),
            result.cost,
        )

        for i, request in enumerate(group):
            if i >= len(slices) or not slices[i]:
                self.stats["missing_slices"] += 1
                self._fail(
                    request,
                    GenerationFailed(
                        f"batch response has no slice {i + 1} of {len(group)}",
                        strategy=Strategy.BATCH,
                    ),
                )
                continue

            processed = ProcessingResult(
                response=slices[i],
                strategy_used=Strategy.BATCH,
                model_used=result.model,
                tokens_consumed=per_tokens,
                actual_cost=per_cost,
                processing_time_ms=max(0.0, (now - request.submitted_at) * 1000),
                quality_score=BATCH_QUALITY,
                optimizations_applied=["batch_processing"],
            )
            if self.cache is not None:
                self.cache.store(
                    request.prompt,
                    processed.response,
                    CacheMetadata(
                        operation=request.context.operation,
                        user_id=request.context.user_id,
                        model_used=processed.model_used,
                        quality_score=processed.quality_score,
                        token_count=per_tokens,
                        cost_saved=per_cost,
                    ),
                )
            self.stats["requests_served"] += 1
            self._resolve(request, processed)

    async def _serve_locally(self, request: BatchRequest) -> None:
        try:
            processed = await self.local_fallback(request.prompt, request.context)
        except Exception as e:
            log.warning("batch_local_fallback_failed id=%s err=%s", request.id, str(e))
            self._fail(
                request,
                GenerationFailed(
                    f"batch group failed and local fallback failed: {e}",
                    strategy=Strategy.BATCH,
                    fallback_attempted=True,
                ),
            )
            return
        processed.optimizations_applied.append("batch_fallback")
        self._resolve(request, processed)

    @staticmethod
    def _resolve(request: BatchRequest, result: ProcessingResult) -> None:
        if request.future is not None and not request.future.done():
            request.future.set_result(result)

    @staticmethod
    def _fail(request: BatchRequest, error: Exception) -> None:
        if request.future is not None and not request.future.done():
            request.future.set_exception(error)

    def get_stats(self) -> Dict[str, int]:
        return {**self.stats, "pending": self.pending_count()}
