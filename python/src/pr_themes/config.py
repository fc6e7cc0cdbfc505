"""
Configuration for the pr-themes orchestration core.

Every tunable lives on a dataclass with a documented default. The core
only ever receives a ThemesConfig instance; reading the environment is
left to load_config_from_env(), which the outer surface calls.

Environment Variables (load_config_from_env only):
- OPENROUTER_API_KEY / OPENAI_API_KEY: API key for the model endpoint
- THEMES_API_BASE_URL: OpenAI-compatible endpoint (default: OpenRouter)
- THEMES_MODEL: Model identifier
- THEMES_MAX_CONCURRENT_REQUESTS: Global in-flight limit (default: 10)
- THEMES_MIN_REQUEST_INTERVAL: Seconds between dispatches (default: 0.2)
- THEMES_MAX_QUEUE_DEPTH: Reject enqueues past this depth (default: unbounded)
- THEMES_SIMILARITY_THRESHOLD: Merge threshold (default: 0.6)
- THEMES_MAX_DEPTH: Maximum expansion depth (default: 10)
- THEMES_CACHE_MAX_MB: Response cache memory budget (default: 100)
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


# Default model (OpenRouter model ID)
DEFAULT_MODEL = "google/gemini-2.5-flash-lite"
DEFAULT_API_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass
class QueueConfig:
    """Global request queue, rate limiter and circuit breaker."""

    max_concurrent_requests: int = 10
    min_request_interval: float = 0.2  # seconds between dispatches
    poll_interval: float = 0.05  # re-check delay when blocked

    # Rate-limit circuit breaker
    circuit_breaker_threshold: int = 5  # consecutive rate-limit errors
    circuit_breaker_cooldown: float = 30.0
    circuit_breaker_poll_interval: float = 1.0

    # Rate-limit requeue budget
    max_rate_limit_retries: int = 3
    rate_limit_base_delay: float = 1.0

    # None means unbounded
    max_queue_depth: int | None = None

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []
        if self.max_concurrent_requests < 1:
            errors.append("max_concurrent_requests must be at least 1")
        if self.min_request_interval < 0:
            errors.append("min_request_interval must not be negative")
        if self.poll_interval <= 0:
            errors.append("poll_interval must be positive")
        if self.circuit_breaker_threshold < 1:
            errors.append("circuit_breaker_threshold must be at least 1")
        if self.max_queue_depth is not None and self.max_queue_depth < 1:
            errors.append("max_queue_depth must be at least 1 when set")
        return errors


@dataclass
class CacheConfig:
    """Response cache and semantic cache settings."""

    max_memory_bytes: int = 100 * 1024 * 1024  # 100MB across all types
    cleanup_interval: float = 60.0

    semantic_threshold: float = 0.85
    semantic_max_string_length: int = 500
    semantic_max_list_items: int = 20
    warm_ttl: float = 4 * 60 * 60

    def validate(self) -> list[str]:
        errors = []
        if self.max_memory_bytes < 1024:
            errors.append("max_memory_bytes must be at least 1KB")
        if not 0.0 < self.semantic_threshold <= 1.0:
            errors.append("semantic_threshold must be in (0, 1]")
        return errors


@dataclass
class BatchConfig:
    """Batch processor and adaptive batch sizing."""

    initial_batch_size: int = 5
    ema_alpha: float = 0.2
    adjustment_cooldown: float = 60.0
    poll_interval: float = 0.1
    window_size: int = 20

    circuit_breaker_threshold: int = 3
    circuit_breaker_cooldown: float = 30.0

    history_size: int = 100
    max_queue_depth: int | None = None
    use_time_of_day: bool = False

    def validate(self) -> list[str]:
        errors = []
        if self.initial_batch_size < 1:
            errors.append("initial_batch_size must be at least 1")
        if not 0.0 < self.ema_alpha <= 1.0:
            errors.append("ema_alpha must be in (0, 1]")
        return errors


@dataclass
class SimilarityConfig:
    """Pairwise theme similarity."""

    similarity_threshold: float = 0.6
    batch_size: int = 8
    quick_name_match: float = 0.95
    max_pairs: int = 20_000

    def validate(self) -> list[str]:
        errors = []
        if not 0.0 <= self.similarity_threshold <= 1.0:
            errors.append("similarity_threshold must be in [0, 1]")
        if self.batch_size < 1:
            errors.append("batch_size must be at least 1")
        return errors


@dataclass
class ConsolidationConfig:
    """Merge-group formation and hierarchy building."""

    max_themes_per_parent: int = 5
    min_themes_for_parent: int = 2
    enable_domain_grouping: bool = True
    flag_contradictions: bool = True
    refine_merged_names: bool = False
    strict_coverage: bool = False

    def validate(self) -> list[str]:
        errors = []
        if self.min_themes_for_parent < 2:
            errors.append("min_themes_for_parent must be at least 2")
        if self.max_themes_per_parent < self.min_themes_for_parent:
            errors.append("max_themes_per_parent must be >= min_themes_for_parent")
        return errors


@dataclass
class ExpansionConfig:
    """Recursive expansion, atomic rules and cross-level deduplication."""

    max_depth: int = 10
    same_theme_expansion_limit: int = 2
    atomic_max_lines: int = 15
    cross_level_threshold: float = 0.85
    allow_overlap_merging: bool = True
    max_cross_level_pairs: int = 500
    concurrency: int = 5

    def validate(self) -> list[str]:
        errors = []
        if self.max_depth < 1:
            errors.append("max_depth must be at least 1")
        if self.same_theme_expansion_limit < 1:
            errors.append("same_theme_expansion_limit must be at least 1")
        if not 0.0 <= self.cross_level_threshold <= 1.0:
            errors.append("cross_level_threshold must be in [0, 1]")
        if self.concurrency < 1:
            errors.append("concurrency must be at least 1")
        return errors


@dataclass
class LLMConfig:
    """OpenAI-compatible model endpoint."""

    api_key: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL
    model: str = DEFAULT_MODEL
    max_tokens: int = 4000
    temperature: float = 0.2
    request_timeout: float = 120.0
    max_connections: int = 20

    def validate(self) -> list[str]:
        errors = []
        if not self.api_key:
            errors.append("api_key is not set")
        if self.max_tokens < 100:
            errors.append("max_tokens must be at least 100")
        return errors


@dataclass
class ThemesConfig:
    """Aggregate configuration handed to ThemeRunContext."""

    queue: QueueConfig = field(default_factory=QueueConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    expansion: ExpansionConfig = field(default_factory=ExpansionConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)

    def validate(self) -> list[str]:
        """Validate every section, prefixing errors with the section name."""
        errors = []
        for section in ("queue", "cache", "batch", "similarity", "consolidation", "expansion"):
            for error in getattr(self, section).validate():
                errors.append(f"{section}: {error}")
        return errors


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def load_config_from_env(env_file: str | None = None) -> ThemesConfig:
    """
    Build a ThemesConfig from environment variables (and a .env file).

    Args:
        env_file: Optional explicit .env path; defaults to dotenv's search

    Returns:
        ThemesConfig with environment overrides applied
    """
    load_dotenv(env_file)

    max_depth_raw = os.getenv("THEMES_MAX_QUEUE_DEPTH", "")

    return ThemesConfig(
        queue=QueueConfig(
            max_concurrent_requests=_int_env("THEMES_MAX_CONCURRENT_REQUESTS", 10),
            min_request_interval=_float_env("THEMES_MIN_REQUEST_INTERVAL", 0.2),
            max_queue_depth=int(max_depth_raw) if max_depth_raw else None,
        ),
        cache=CacheConfig(
            max_memory_bytes=_int_env("THEMES_CACHE_MAX_MB", 100) * 1024 * 1024,
        ),
        similarity=SimilarityConfig(
            similarity_threshold=_float_env("THEMES_SIMILARITY_THRESHOLD", 0.6),
        ),
        expansion=ExpansionConfig(
            max_depth=_int_env("THEMES_MAX_DEPTH", 10),
        ),
        llm=LLMConfig(
            api_key=os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY", ""),
            api_base_url=os.getenv("THEMES_API_BASE_URL", DEFAULT_API_BASE_URL),
            model=os.getenv("THEMES_MODEL", DEFAULT_MODEL),
        ),
    )
