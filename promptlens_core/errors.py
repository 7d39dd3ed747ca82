"""
Errors - Exception taxonomy for the suggestion pipeline

Only validation failures, timeouts and double generation failures ever
reach callers. Cancellation is surfaced but treated as a silent no-op by
consumers. Provider and cache errors are recovered internally.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

from typing import Optional


class SuggestionError(Exception):
    """Base class for all suggestion pipeline errors."""

    reason: str = "error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        if reason is not None:
            self.reason = reason


class ValidationError(SuggestionError):
    """Malformed request, rejected before dispatch."""

    reason = "invalid_request"


class CancellationError(SuggestionError):
    """
    The request was superseded by a newer one or explicitly cancelled.

    Callers must treat this as a no-op: nothing is displayed, nothing is cached.
    """

    reason = "cancelled"


class SuggestionTimeoutError(SuggestionError, TimeoutError):
    """The hard ceiling elapsed before a result was available."""

    reason = "timeout"

    def __init__(self, message: str = "", timeout_ms: Optional[int] = None):
        super().__init__(message or f"Suggestion request timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class GenerationFailure(SuggestionError):
    """Both contrastive and standard strategies failed."""

    reason = "generation_failed"


class ProviderError(SuggestionError):
    """The LLM completion call failed (transport, HTTP status, empty body)."""

    reason = "provider_error"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedCompletion(ProviderError):
    """The completion could not be parsed into candidates."""

    reason = "malformed_completion"

    def __init__(self, message: str = "", content: str = ""):
        super().__init__(message)
        self.content = content[:200]


class CacheUnavailable(SuggestionError):
    """Shared cache tier unreachable. Never surfaced; treated as a miss."""

    reason = "cache_unavailable"
