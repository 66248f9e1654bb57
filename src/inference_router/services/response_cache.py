"""
Response Cache
==============

In-memory cache for generated responses with exact and semantic matching.

Features:
- Exact matching on a normalized prompt hash (case and whitespace
  insensitive)
- Semantic matching against similar prompts from the same operation and
  user (cache is never shared across users)
- TTL expiry, lazy and via a periodic sweep
- LRU eviction at capacity, bulk trim to 90% during sweeps
- Optional zlib compression of stored responses
- Hit/miss, tokens-saved and cost-saved statistics

Similarity:
    score = 0.7 * Jaccard(significant tokens) + 0.3 * Levenshtein similarity

    Significant tokens are lower-cased words longer than 3 characters with
    stop-words removed, the first 10 in prompt order.

Thread-safe: every read or mutation of the entry table happens under one
lock, and nothing awaits while holding it.
"""

from __future__ import annotations

import hashlib
import re
import threading
import zlib
from collections import Counter, OrderedDict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from ..clock import Clock, SystemClock
from ..config import Settings, get_settings
from ..logging_utils import get_logger
from .models import CacheCorrupt, CacheEntry, CacheMatch, CacheMetadata

log = get_logger("response_cache")

JACCARD_WEIGHT = 0.7
EDIT_WEIGHT = 0.3
MAX_SIGNIFICANT_TOKENS = 10

# Responses shorter than this are stored raw; zlib only pays off above it.
COMPRESS_MIN_CHARS = 256

ACCESS_LOG_SIZE = 1000

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "up", "about", "into", "through", "during",
        "before", "after", "above", "below", "between", "among", "is", "are",
        "was", "were", "be", "been", "being", "have", "has", "had", "do", "does",
        "did", "will", "would", "should", "could", "can", "may", "might", "must",
        "shall", "this", "that", "these", "those", "i", "you", "he", "she", "it",
        "we", "they", "me", "him", "her", "us", "them", "my", "your", "his",
        "its", "our", "their",
    }
)

_PUNCT_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")


def normalize_prompt(prompt: str) -> str:
    """Lower-case, trim and collapse whitespace."""
    return _WS_RE.sub(" ", prompt.strip().lower())


def prompt_hash(prompt: str) -> str:
    return hashlib.sha256(normalize_prompt(prompt).encode("utf-8")).hexdigest()[:16]


def exact_key(prompt: str, operation: str, user_id: str) -> str:
    return f"{operation}:{user_id}:{prompt_hash(prompt)}"


def tokenize(prompt: str) -> List[str]:
    return _PUNCT_RE.sub(" ", prompt.lower()).split()


def significant_tokens(prompt: str) -> List[str]:
    """Distinct words longer than 3 chars, stop-words removed, first 10 in order."""
    tokens = (t for t in tokenize(prompt) if len(t) > 3 and t not in STOP_WORDS)
    return list(dict.fromkeys(tokens))[:MAX_SIGNIFICANT_TOKENS]


def semantic_key(prompt: str, operation: str) -> str:
    return f"{operation}_{'_'.join(sorted(significant_tokens(prompt)))}"


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a, set_b = set(a), set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def semantic_similarity(prompt_a: str, prompt_b: str) -> float:
    """Blended token/character similarity in [0, 1]; symmetric in its arguments."""
    token_score = jaccard(significant_tokens(prompt_a), significant_tokens(prompt_b))
    edit_score = Levenshtein.normalized_similarity(
        normalize_prompt(prompt_a), normalize_prompt(prompt_b)
    )
    score = JACCARD_WEIGHT * token_score + EDIT_WEIGHT * edit_score
    return min(1.0, max(0.0, score))


class ResponseCache:
    """
    Exact + semantic response cache with TTL and LRU eviction.

    Entries live in an OrderedDict kept in access order: the first item is
    always the least recently accessed.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        *,
        max_entries: Optional[int] = None,
        ttl_hours: Optional[float] = None,
        similarity_threshold: Optional[float] = None,
        enable_semantic_matching: Optional[bool] = None,
        enable_compression: Optional[bool] = None,
        cleanup_interval_minutes: Optional[float] = None,
    ):
        settings = settings or get_settings()
        self.clock = clock or SystemClock()

        def pick(value, default):
            return default if value is None else value

        self.max_entries = pick(max_entries, settings.cache_max_entries)
        self.ttl_hours = pick(ttl_hours, settings.cache_ttl_hours)
        self.similarity_threshold = pick(
            similarity_threshold, settings.cache_similarity_threshold
        )
        self.semantic_enabled = pick(
            enable_semantic_matching, settings.cache_semantic_matching
        )
        self.compression_enabled = pick(enable_compression, settings.cache_compression)
        self.cleanup_interval_sec = (
            pick(cleanup_interval_minutes, settings.cache_cleanup_interval_minutes) * 60
        )

        self.lock = threading.Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._access_log: Deque[Tuple[str, float, bool, float]] = deque(
            maxlen=ACCESS_LOG_SIZE
        )
        self._last_sweep = self.clock.timestamp()
        self.stats = self._empty_stats()

        log.info(
            "response_cache_initialized max_entries=%d ttl_hours=%.1f "
            "similarity=%.2f semantic=%s compression=%s",
            self.max_entries,
            self.ttl_hours,
            self.similarity_threshold,
            self.semantic_enabled,
            self.compression_enabled,
        )

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "hits": 0,
            "exact_hits": 0,
            "semantic_hits": 0,
            "misses": 0,
            "sets": 0,
            "evictions": 0,
            "expirations": 0,
            "corrupt": 0,
            "tokens_saved": 0,
            "cost_saved": 0.0,
        }

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Primary operations
    # ------------------------------------------------------------------

    def lookup(
        self,
        prompt: str,
        operation: str,
        user_id: str,
        *,
        similarity_threshold: Optional[float] = None,
        include_semantic: bool = True,
        max_age_hours: Optional[float] = None,
        record: bool = True,
    ) -> Optional[CacheMatch]:
        """
        Find a cached response for ``prompt``.

        Args:
            prompt: Query prompt
            operation: Operation namespace
            user_id: Owner of the entries that may match
            similarity_threshold: Semantic threshold for this lookup.  When given
                it replaces every entry's stored threshold (0.0 included);
                when None each entry's own threshold applies
            include_semantic: Allow semantic matches
            max_age_hours: Ignore semantic candidates older than this
            record: Update access/hit statistics; False peeks without side
                effects other than dropping expired or corrupt entries

        Returns:
            CacheMatch or None on a miss
        """
        key = exact_key(prompt, operation, user_id)

        with self.lock:
            now = self.clock.timestamp()
            self._maybe_sweep(now)

            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                self._remove(key, reason="expired")
                entry = None

            if entry is not None:
                try:
                    response = self._decode(entry)
                except CacheCorrupt as e:
                    log.warning("cache_entry_corrupt key=%s err=%s", key, str(e))
                    self._remove(key, reason="corrupt")
                else:
                    if record:
                        self._record_hit(entry, now, exact=True, score=1.0)
                    log.debug("cache_hit kind=exact operation=%s", operation)
                    return CacheMatch(
                        entry=entry,
                        response=response,
                        similarity_score=1.0,
                        exact_match=True,
                        semantic_match=False,
                    )

            if self.semantic_enabled and include_semantic:
                match = self._find_semantic_match(
                    prompt,
                    operation,
                    user_id,
                    similarity_threshold,
                    max_age_hours,
                    now,
                )
                if match is not None:
                    if record:
                        self._record_hit(
                            match.entry, now, exact=False, score=match.similarity_score
                        )
                    log.debug(
                        "cache_hit kind=semantic operation=%s score=%.3f",
                        operation,
                        match.similarity_score,
                    )
                    return match

            if record:
                self.stats["misses"] += 1
                self._access_log.append(("", now, False, 0.0))
        log.debug("cache_miss operation=%s", operation)
        return None

    def store(
        self,
        prompt: str,
        response: str,
        metadata: CacheMetadata,
        *,
        ttl_hours: Optional[float] = None,
        similarity_threshold: Optional[float] = None,
        compress: Optional[bool] = None,
    ) -> str:
        """
        Cache a response.

        Returns:
            The entry's exact-match key
        """
        key = exact_key(prompt, metadata.operation, metadata.user_id)
        do_compress = (
            self.compression_enabled
            and compress is not False
            and len(response) >= COMPRESS_MIN_CHARS
        )
        payload = (
            zlib.compress(response.encode("utf-8")) if do_compress
            else response.encode("utf-8")
        )
        ttl_sec = (ttl_hours if ttl_hours is not None else self.ttl_hours) * 3600

        with self.lock:
            now = self.clock.timestamp()
            self._maybe_sweep(now)

            if key in self._entries:
                del self._entries[key]
            while self._entries and len(self._entries) >= self.max_entries:
                lru_key = next(iter(self._entries))
                self._remove(lru_key, reason="lru")

            self._entries[key] = CacheEntry(
                key=key,
                semantic_key=semantic_key(prompt, metadata.operation),
                prompt=normalize_prompt(prompt),
                payload=payload,
                compressed=do_compress,
                metadata=metadata,
                created_at=now,
                last_accessed=now,
                expires_at=now + ttl_sec,
                access_count=1,
                similarity_threshold=(
                    similarity_threshold
                    if similarity_threshold is not None
                    else self.similarity_threshold
                ),
            )
            self.stats["sets"] += 1
            size = len(self._entries)

        log.debug(
            "cache_set operation=%s compressed=%s ttl_sec=%d size=%d",
            metadata.operation,
            do_compress,
            ttl_sec,
            size,
        )
        return key

    def invalidate(
        self,
        pattern: str,
        operation: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        """Remove entries whose key matches ``pattern`` (case-insensitive regex)."""
        regex = re.compile(pattern, re.IGNORECASE)
        with self.lock:
            doomed = [
                key
                for key, entry in self._entries.items()
                if regex.search(key)
                and (operation is None or entry.metadata.operation == operation)
                and (user_id is None or entry.metadata.user_id == user_id)
            ]
            for key in doomed:
                del self._entries[key]

        log.info(
            "cache_invalidated pattern=%s operation=%s user=%s removed=%d",
            pattern,
            operation,
            user_id,
            len(doomed),
        )
        return len(doomed)

    def sweep(self) -> int:
        """Drop expired entries, then trim to 90% of capacity if still too full."""
        with self.lock:
            return self._sweep(self.clock.timestamp())

    def clear(self) -> None:
        with self.lock:
            self._entries.clear()
            self._access_log.clear()
            self.stats = self._empty_stats()
        log.info("response_cache_cleared")

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _find_semantic_match(
        self,
        prompt: str,
        operation: str,
        user_id: str,
        threshold: Optional[float],
        max_age_hours: Optional[float],
        now: float,
    ) -> Optional[CacheMatch]:
        query_tokens = significant_tokens(prompt)
        query_text = normalize_prompt(prompt)
        if not query_tokens:
            return None

        best: Optional[Tuple[CacheEntry, float]] = None
        expired: List[str] = []

        for key, entry in self._entries.items():
            if entry.is_expired(now):
                expired.append(key)
                continue
            # Privacy boundary: never match across operations or users
            if entry.metadata.operation != operation:
                continue
            if entry.metadata.user_id != user_id:
                continue
            if max_age_hours is not None and (now - entry.created_at) > max_age_hours * 3600:
                continue

            token_score = jaccard(query_tokens, significant_tokens(entry.prompt))
            edit_score = Levenshtein.normalized_similarity(query_text, entry.prompt)
            score = JACCARD_WEIGHT * token_score + EDIT_WEIGHT * edit_score

            # A caller override wins; otherwise each entry keeps the threshold it was stored with
            limit = threshold if threshold is not None else entry.similarity_threshold
            if score < limit:
                continue
            if best is None or score > best[1]:
                best = (entry, score)

        for key in expired:
            self._remove(key, reason="expired")

        if best is None:
            return None

        entry, score = best
        try:
            response = self._decode(entry)
        except CacheCorrupt as e:
            log.warning("cache_entry_corrupt key=%s err=%s", entry.key, str(e))
            self._remove(entry.key, reason="corrupt")
            return None
        return CacheMatch(
            entry=entry,
            response=response,
            similarity_score=min(1.0, score),
            exact_match=False,
            semantic_match=True,
        )

    def _record_hit(self, entry: CacheEntry, now: float, exact: bool, score: float) -> None:
        entry.last_accessed = now
        entry.access_count += 1
        self._entries.move_to_end(entry.key)

        self.stats["hits"] += 1
        self.stats["exact_hits" if exact else "semantic_hits"] += 1
        self.stats["tokens_saved"] += entry.metadata.token_count
        self.stats["cost_saved"] += entry.metadata.cost_saved
        self._access_log.append((entry.key, now, True, score))

    def _remove(self, key: str, reason: str) -> None:
        if self._entries.pop(key, None) is None:
            return
        if reason == "expired":
            self.stats["expirations"] += 1
        elif reason == "corrupt":
            self.stats["corrupt"] += 1
        else:
            self.stats["evictions"] += 1

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep >= self.cleanup_interval_sec:
            self._sweep(now)

    def _sweep(self, now: float) -> int:
        self._last_sweep = now
        removed = 0

        for key in [k for k, e in self._entries.items() if e.is_expired(now)]:
            self._remove(key, reason="expired")
            removed += 1

        if len(self._entries) > self.max_entries * 0.9:
            to_remove = max(1, int(self.max_entries * 0.1))
            for key in list(self._entries)[:to_remove]:
                self._remove(key, reason="lru")
                removed += 1

        if removed:
            log.info(
                "cache_sweep removed=%d remaining=%d", removed, len(self._entries)
            )
        return removed

    @staticmethod
    def _decode(entry: CacheEntry) -> str:
        try:
            raw = zlib.decompress(entry.payload) if entry.compressed else entry.payload
            return raw.decode("utf-8")
        except (zlib.error, UnicodeDecodeError) as e:
            raise CacheCorrupt(f"undecodable payload for {entry.key}") from e

    # ------------------------------------------------------------------
    # Management and reporting
    # ------------------------------------------------------------------

    def warm_up(self, items: Iterable[Mapping[str, Any]]) -> int:
        """
        Seed the cache with known prompt/response pairs.

        Each item needs prompt, response, operation, user_id and model_used.
        """
        count = 0
        for item in items:
            self.store(
                item["prompt"],
                item["response"],
                CacheMetadata(
                    operation=item["operation"],
                    user_id=item["user_id"],
                    model_used=item.get("model_used", "warmup"),
                    quality_score=item.get("quality_score", 0.85),
                    token_count=-(-len(item["response"]) // 4),
                    cost_saved=item.get("processing_cost", 0.01),
                ),
            )
            count += 1
        log.info("cache_warmed entries=%d", count)
        return count

    def preload_common_queries(
        self,
        operation: str,
        responses: Mapping[str, str],
        user_id: str = "system",
        ttl_hours: float = 48.0,
    ) -> int:
        """Preload answers for frequent queries with a longer TTL."""
        for query, response in responses.items():
            self.store(
                query,
                response,
                CacheMetadata(
                    operation=operation,
                    user_id=user_id,
                    model_used="preload",
                    quality_score=0.8,
                    token_count=-(-len(response) // 4),
                ),
                ttl_hours=ttl_hours,
            )
        log.info("cache_preloaded operation=%s entries=%d", operation, len(responses))
        return len(responses)

    def recent_activity(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self.lock:
            recent = list(self._access_log)[-limit:]
        return [
            {
                "timestamp": datetime.fromtimestamp(ts, timezone.utc).isoformat(),
                "hit": hit,
                "operation": key.split(":", 1)[0] if key else None,
                "similarity_score": round(score, 3) if hit else None,
            }
            for key, ts, hit, score in recent
        ]

    def analyze_usage_patterns(self) -> Dict[str, Any]:
        """Most accessed operations, peak hours, an efficiency score and tuning hints."""
        with self.lock:
            entries = list(self._entries.values())
            hits, misses = self.stats["hits"], self.stats["misses"]

        by_operation: Counter = Counter()
        by_hour = [0] * 24
        for entry in entries:
            by_operation[entry.metadata.operation] += entry.access_count
            hour = datetime.fromtimestamp(entry.last_accessed, timezone.utc).hour
            by_hour[hour] += entry.access_count

        total = hits + misses
        hit_rate = (hits / total * 100) if total else 0.0
        avg_access = (sum(e.access_count for e in entries) / len(entries)) if entries else 0.0
        efficiency = (hit_rate / 100) * 0.7 + min(avg_access / 5, 1.0) * 0.3

        recommendations = []
        if hit_rate < 30:
            recommendations.append(
                "Low hit rate - consider lowering the similarity threshold or raising the TTL"
            )
        if len(entries) < self.max_entries * 0.5:
            recommendations.append("Cache underutilized - consider preloading common queries")
        if entries and avg_access < 2:
            recommendations.append("Many single-use entries - consider a shorter TTL")

        peak_hours = sorted(range(24), key=lambda h: by_hour[h], reverse=True)[:3]
        return {
            "most_accessed_operations": [
                {"operation": op, "count": count}
                for op, count in by_operation.most_common(5)
            ],
            "peak_usage_hours": peak_hours,
            "cache_efficiency_score": round(efficiency, 2),
            "recommendations": recommendations,
        }

    def export_entries(self, preview_chars: int = 200) -> List[Dict[str, Any]]:
        """Entry summaries with truncated responses, for debugging."""
        with self.lock:
            entries = list(self._entries.values())
        exported = []
        for entry in entries:
            try:
                preview = self._decode(entry)[:preview_chars]
            except CacheCorrupt:
                preview = None
            exported.append(
                {
                    "key": entry.key,
                    "semantic_key": entry.semantic_key,
                    "operation": entry.metadata.operation,
                    "user_id": entry.metadata.user_id,
                    "model_used": entry.metadata.model_used,
                    "quality_score": entry.metadata.quality_score,
                    "access_count": entry.access_count,
                    "expires_at": datetime.fromtimestamp(
                        entry.expires_at, timezone.utc
                    ).isoformat(),
                    "response_preview": preview,
                }
            )
        return exported

    def memory_estimate_bytes(self) -> int:
        with self.lock:
            return sum(
                len(e.payload) + len(e.prompt) + len(e.key) + len(e.semantic_key) + 200
                for e in self._entries.values()
            )

    def get_stats(self) -> Dict[str, Any]:
        memory = self.memory_estimate_bytes()
        with self.lock:
            stats = dict(self.stats)
            size = len(self._entries)

        total_requests = stats["hits"] + stats["misses"]
        hit_rate = (stats["hits"] / total_requests * 100) if total_requests else 0.0
        return {
            "size": size,
            "max_entries": self.max_entries,
            "ttl_hours": self.ttl_hours,
            **stats,
            "cost_saved": round(stats["cost_saved"], 4),
            "total_requests": total_requests,
            "hit_rate_pct": round(hit_rate, 1),
            "memory_estimate_bytes": memory,
            "memory_estimate_mb": round(memory / (1024 * 1024), 3),
        }
