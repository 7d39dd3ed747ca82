"""
PromptLens Core - Suggestion request and generation pipeline

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

__version__ = "0.3.0"

from .errors import (
    SuggestionError,
    ValidationError,
    CancellationError,
    SuggestionTimeoutError,
    GenerationFailure,
    ProviderError,
    MalformedCompletion,
    CacheUnavailable,
)
from .types import (
    DocumentMode,
    EditEntry,
    SuggestionRequest,
    CustomSuggestionRequest,
    validate_document_id,
    Candidate,
    Diagnostics,
    SuggestionResult,
    SuggestionSource,
    StageEvent,
    StageKind,
)
from .cache_keys import CacheKeyFactory, edit_fingerprint, fingerprint_document
from .caching import CacheEntry, FastTierCache, SharedCacheBackend, RedisSharedCache, TieredCache
from .llm_client import (
    CompletionOptions,
    Completion,
    LLMProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
    create_provider,
    parse_candidates,
)
from .prompts import NegativeConstraintMode
from .generation import (
    GenerationEngine,
    GenerationOutcome,
    GenerationStrategy,
    ContrastiveStrategy,
    StandardStrategy,
)
from .filters import Sanitizer, DiversityFilter, AlignmentValidator, jaccard_similarity, diversity_metrics
from .cascade import FallbackCascade, CascadeState
from .placeholders import detect_placeholder
from .registry import InFlightRegistry
from .pipeline import PipelineContext, SuggestionPipeline
from .coordinator import RequestCoordinator
from .custom import CustomSuggestionService
from .monitoring import MetricsCollector, SuggestionMonitor, HealthChecker, HealthStatus
from .config import PromptLensConfig, load_config, get_config, configure_logging

__all__ = [
    # Errors
    "SuggestionError",
    "ValidationError",
    "CancellationError",
    "SuggestionTimeoutError",
    "GenerationFailure",
    "ProviderError",
    "MalformedCompletion",
    "CacheUnavailable",
    # Data model
    "DocumentMode",
    "EditEntry",
    "SuggestionRequest",
    "CustomSuggestionRequest",
    "validate_document_id",
    "Candidate",
    "Diagnostics",
    "SuggestionResult",
    "SuggestionSource",
    "StageEvent",
    "StageKind",
    # Cache
    "CacheKeyFactory",
    "edit_fingerprint",
    "fingerprint_document",
    "CacheEntry",
    "FastTierCache",
    "SharedCacheBackend",
    "RedisSharedCache",
    "TieredCache",
    # LLM
    "CompletionOptions",
    "Completion",
    "LLMProvider",
    "OllamaProvider",
    "OpenAICompatibleProvider",
    "create_provider",
    "parse_candidates",
    # Generation
    "NegativeConstraintMode",
    "GenerationEngine",
    "GenerationOutcome",
    "GenerationStrategy",
    "ContrastiveStrategy",
    "StandardStrategy",
    # Filters and cascade
    "Sanitizer",
    "DiversityFilter",
    "AlignmentValidator",
    "jaccard_similarity",
    "diversity_metrics",
    "FallbackCascade",
    "CascadeState",
    "detect_placeholder",
    # Coordination
    "InFlightRegistry",
    "PipelineContext",
    "SuggestionPipeline",
    "RequestCoordinator",
    "CustomSuggestionService",
    # Monitoring and config
    "MetricsCollector",
    "SuggestionMonitor",
    "HealthChecker",
    "HealthStatus",
    "PromptLensConfig",
    "load_config",
    "get_config",
    "configure_logging",
]
