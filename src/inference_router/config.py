import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_float_opt(name: str) -> Optional[float]:
    """
    Read an optional float from env. Returns None if unset, blank, or non-numeric.
    """
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if raw == "" or raw.lower() in {"none", "null"} or raw.startswith("#"):
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _f(name: str, default: float) -> float:
    value = _env_float_opt(name)
    return default if value is None else value


def _i(name: str, default: int) -> int:
    value = _env_float_opt(name)
    return default if value is None else int(value)


def _b(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {
        "1",
        "true",
        "yes",
        "y",
        "on",
    }


@dataclass
class Settings:
    # --- Budget -----------------------------------------------------------
    # Maximum aggregate remote spend (USD) in one rolling day.  The default
    # keeps the monthly bill near $100.
    daily_cost_limit: float = _f("ROUTER_DAILY_COST_LIMIT", 3.26)

    # Fraction of the ceiling at which a budget warning is logged (and posted
    # to ROUTER_ALERT_WEBHOOK when set).  Fires once per window.
    budget_alert_fraction: float = _f("ROUTER_BUDGET_ALERT_FRACTION", 0.8)
    budget_alert_webhook: str = os.getenv("ROUTER_ALERT_WEBHOOK", "")

    # Remote pricing used for estimates, USD per 1k tokens.
    remote_cost_per_1k: float = _f("ROUTER_REMOTE_COST_PER_1K", 0.015)

    # When true, remote_premium is held to the same ceiling as
    # remote_optimized and falls back to local once the budget is spent.
    # Off by default: premium traffic may overdraw the daily ceiling.
    premium_respects_budget: bool = _b("ROUTER_PREMIUM_RESPECTS_BUDGET", False)

    # --- Response cache ----------------------------------------------------
    cache_enabled: bool = _b("ROUTER_CACHE_ENABLED", True)
    cache_ttl_hours: float = _f("ROUTER_CACHE_TTL_HOURS", 12.0)
    cache_similarity_threshold: float = _f("ROUTER_CACHE_SIMILARITY", 0.8)
    cache_max_entries: int = _i("ROUTER_CACHE_MAX_ENTRIES", 5000)
    cache_semantic_matching: bool = _b("ROUTER_CACHE_SEMANTIC", True)
    cache_compression: bool = _b("ROUTER_CACHE_COMPRESSION", True)
    cache_cleanup_interval_minutes: float = _f("ROUTER_CACHE_CLEANUP_MIN", 15.0)

    # --- Batch window ------------------------------------------------------
    batch_interval_sec: float = _f("ROUTER_BATCH_INTERVAL_SEC", 5.0)
    batch_max_wait_ms: int = _i("ROUTER_BATCH_MAX_WAIT_MS", 15000)
    # Only prompts estimated below this many tokens are eligible for batching.
    batch_max_prompt_tokens: int = _i("ROUTER_BATCH_MAX_PROMPT_TOKENS", 1000)

    # --- Classification ----------------------------------------------------
    # Prompts shorter than this (characters) count as simple tasks.
    short_prompt_chars: int = _i("ROUTER_SHORT_PROMPT_CHARS", 120)
    # An explicit max_response_time_ms below this marks a request as urgent.
    urgent_latency_ms: int = _i("ROUTER_URGENT_LATENCY_MS", 5000)
    # Optimized remote prompts longer than this are truncated to
    # compression_target of their original length.
    compression_target: float = _f("ROUTER_COMPRESSION_TARGET", 0.6)

    # --- Backends ----------------------------------------------------------
    # "claude" or "gemini"
    remote_provider: str = os.getenv("REMOTE_PROVIDER", "claude").strip().lower()
    remote_timeout_sec: float = _f("ROUTER_REMOTE_TIMEOUT_SEC", 30.0)
    local_timeout_sec: float = _f("ROUTER_LOCAL_TIMEOUT_SEC", 60.0)
    anthropic_api_key: str = os.getenv("ANTHROPIC_API_KEY", "")
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")

    # Ollama serves the local models.  Health probes are cached for
    # health_check_interval_sec so requests do not each hit /api/tags.
    ollama_url: str = os.getenv("OLLAMA_URL", "http://localhost:11434")
    health_check_interval_sec: float = _f("ROUTER_HEALTH_CHECK_INTERVAL_SEC", 300.0)
    auto_pull_models: bool = _b("OLLAMA_AUTO_PULL", False)

    # --- Logging -----------------------------------------------------------
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_plain: bool = _b("LOG_PLAIN", False)

    # Paths
    data_dir: Path = field(
        default_factory=lambda: Path(os.getenv("DATA_DIR", "data")).resolve()
    )
    usage_log_path: Optional[Path] = field(
        default_factory=lambda: (
            Path(os.environ["ROUTER_USAGE_LOG_PATH"])
            if os.getenv("ROUTER_USAGE_LOG_PATH")
            else None
        )
    )

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_hours * 3600.0

    @property
    def resolved_usage_log_path(self) -> Path:
        return self.usage_log_path or (self.data_dir / "logs" / "router_usage.jsonl")


SETTINGS = Settings()


def get_settings() -> Settings:
    return SETTINGS
