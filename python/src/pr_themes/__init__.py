"""
pr-themes

Orchestration core that turns theme candidates extracted from a pull
request diff into a hierarchical, de-duplicated forest of themes using
language-model judgments.

Pipeline:
- Consolidation: pairwise similarity, transitive merge groups, optional
  business-domain layer
- Expansion: recursive sub-theme generation bounded by depth, atomic
  rules and a per-theme circuit breaker
- Cross-level deduplication of the expanded forest

Shared services (one instance per run, injected by constructor):
- RequestQueue: priority queue, rate limiting, rate-limit circuit breaker
- RetryPolicy: bounded exponential backoff with jitter
- ResponseCache / SemanticCache: exact and near-duplicate result caches
- BatchProcessor + AdaptiveBatchingController: fewer, right-sized model calls
"""

__version__ = "0.1.0"

from .config import ThemesConfig, load_config_from_env
from .errors import (
    HierarchyIntegrityError,
    JsonExtractionError,
    QueueFullError,
    RateLimitError,
    RetryExhaustedError,
    SchemaValidationError,
    ThemesError,
    TransientError,
)
from .models import ConsolidatedTheme, ExpansionState, PromptType, SimilarityResult, ThemeCandidate
from .retry import RetryPolicy
from .request_queue import RequestQueue
from .response_cache import ResponseCache
from .semantic_cache import SemanticCache
from .adaptive_batching import AdaptiveBatchingController
from .batch_processor import BatchProcessor
from .prompt_service import FallbackStrategy, PromptService
from .similarity import SimilarityEngine
from .consolidation import ConsolidationEngine
from .expansion import ExpansionCircuitBreaker, ExpansionEngine
from .hierarchy import validate_hierarchy_integrity, verify_coverage
from .persistence import load_forest, save_forest
from .llm_client import create_call_model
from .pipeline import ThemeRunContext, ThemeRunResult

__all__ = [
    "ThemesConfig",
    "load_config_from_env",
    "ThemesError",
    "TransientError",
    "RateLimitError",
    "RetryExhaustedError",
    "JsonExtractionError",
    "SchemaValidationError",
    "QueueFullError",
    "HierarchyIntegrityError",
    "ThemeCandidate",
    "ConsolidatedTheme",
    "SimilarityResult",
    "PromptType",
    "ExpansionState",
    "RetryPolicy",
    "RequestQueue",
    "ResponseCache",
    "SemanticCache",
    "AdaptiveBatchingController",
    "BatchProcessor",
    "PromptService",
    "FallbackStrategy",
    "SimilarityEngine",
    "ConsolidationEngine",
    "ExpansionEngine",
    "ExpansionCircuitBreaker",
    "validate_hierarchy_integrity",
    "verify_coverage",
    "save_forest",
    "load_forest",
    "create_call_model",
    "ThemeRunContext",
    "ThemeRunResult",
]
