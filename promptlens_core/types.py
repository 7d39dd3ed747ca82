"""
Types - Data model for suggestion requests and results

Requests are immutable once constructed. Results carry their source
(cache, generated, fallback) and a diagnostics block so callers can tell
canned output from generated output.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from promptlens_core.errors import ValidationError

MAX_EDIT_HISTORY = 10
MAX_HIGHLIGHT_CHARS = 500
MAX_SUGGESTIONS = 12
MAX_CUSTOM_REQUEST_CHARS = 500


class DocumentMode(str, Enum):
    """Kind of document the highlighted span belongs to."""
    VIDEO = "video"
    IMAGE = "image"
    TEXT = "text"


def validate_document_id(document_id: Optional[str]) -> None:
    """Document ids are one cache key segment: no ':' separator."""
    if document_id is None:
        return
    if not isinstance(document_id, str) or not document_id.strip():
        raise ValidationError("document_id must be a non-empty string when given")
    if ":" in document_id:
        raise ValidationError(f"document_id must not contain ':' ({document_id!r})")


class SuggestionSource(str, Enum):
    """Where a result came from."""
    CACHE = "cache"
    GENERATED = "generated"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class EditEntry:
    """One recent edit to the document."""
    original: str
    replacement: str = ""
    category: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EditEntry":
        return cls(
            original=str(data.get("original", "")),
            replacement=str(data.get("replacement", "")),
            category=data.get("category"),
        )


@dataclass(frozen=True)
class SuggestionRequest:
    """
    A request for alternative phrasings of a highlighted span.

    Identity for dedup is (highlighted_text, context_before, context_after,
    edit fingerprint). The document fingerprint is a bounded digest computed
    by the caller, see CacheKeyFactory.fingerprint_document().
    """
    highlighted_text: str
    context_before: str = ""
    context_after: str = ""
    full_document_fingerprint: str = ""
    semantic_category: str = "general"
    edit_history_tail: Tuple[EditEntry, ...] = ()
    document_mode: str = DocumentMode.VIDEO.value
    document_id: Optional[str] = None
    debug: bool = False

    def identity(self) -> Tuple[str, str, str, str]:
        """Dedup identity tuple."""
        from promptlens_core.cache_keys import edit_fingerprint
        return (
            self.highlighted_text,
            self.context_before,
            self.context_after,
            edit_fingerprint(self.edit_history_tail),
        )

    def selection_context(self) -> Tuple[str, str, str]:
        """The selection, independent of edit history."""
        return (self.highlighted_text, self.context_before, self.context_after)

    def validate(self) -> "SuggestionRequest":
        """Raise ValidationError if the request is malformed."""
        if not isinstance(self.highlighted_text, str) or not self.highlighted_text.strip():
            raise ValidationError("highlighted_text must be a non-empty string")
        if len(self.highlighted_text) > MAX_HIGHLIGHT_CHARS:
            raise ValidationError(
                f"highlighted_text exceeds {MAX_HIGHLIGHT_CHARS} characters"
            )
        if len(self.edit_history_tail) > MAX_EDIT_HISTORY:
            raise ValidationError(
                f"edit_history_tail holds at most {MAX_EDIT_HISTORY} entries"
            )
        if not self.semantic_category or not self.semantic_category.strip():
            raise ValidationError("semantic_category must be set")
        valid_modes = [m.value for m in DocumentMode]
        if self.document_mode not in valid_modes:
            raise ValidationError(
                f"Unknown document_mode '{self.document_mode}' (expected one of {valid_modes})"
            )
        validate_document_id(self.document_id)
        return self

    @classmethod
    def create(
        cls,
        highlighted_text: str,
        context_before: str = "",
        context_after: str = "",
        semantic_category: str = "general",
        edit_history: Optional[List[Any]] = None,
        document_mode: str = DocumentMode.VIDEO.value,
        document_text: Optional[str] = None,
        document_id: Optional[str] = None,
        debug: bool = False,
    ) -> "SuggestionRequest":
        """
        Build a request, computing the document fingerprint from full text.

        Edit history may be given as EditEntry objects or dicts; only the
        most recent MAX_EDIT_HISTORY entries are kept.
        """
        from promptlens_core.cache_keys import fingerprint_document

        entries = []
        for item in (edit_history or [])[-MAX_EDIT_HISTORY:]:
            entries.append(item if isinstance(item, EditEntry) else EditEntry.from_dict(item))

        return cls(
            highlighted_text=highlighted_text,
            context_before=context_before,
            context_after=context_after,
            full_document_fingerprint=fingerprint_document(document_text) if document_text else "",
            semantic_category=semantic_category,
            edit_history_tail=tuple(entries),
            document_mode=document_mode,
            document_id=document_id,
            debug=debug,
        )


@dataclass(frozen=True)
class CustomSuggestionRequest:
    """
    A free-text request ("make it moodier") for a highlighted span.

    document_text is only used as a prompt snapshot and for the cache key
    (as a fingerprint); it is never stored.
    """
    highlighted_text: str
    custom_request: str
    context_before: str = ""
    context_after: str = ""
    document_text: str = ""
    document_id: Optional[str] = None

    def identity(self) -> Tuple[str, ...]:
        return (
            "custom",
            self.highlighted_text,
            self.custom_request,
            self.context_before,
            self.context_after,
            self.document_text,
        )

    def validate(self) -> "CustomSuggestionRequest":
        if not isinstance(self.highlighted_text, str) or not self.highlighted_text.strip():
            raise ValidationError("highlighted_text must be a non-empty string")
        if len(self.highlighted_text) > MAX_HIGHLIGHT_CHARS:
            raise ValidationError(f"highlighted_text exceeds {MAX_HIGHLIGHT_CHARS} characters")
        if not isinstance(self.custom_request, str) or not self.custom_request.strip():
            raise ValidationError("custom_request must be a non-empty string")
        if len(self.custom_request) > MAX_CUSTOM_REQUEST_CHARS:
            raise ValidationError(f"custom_request exceeds {MAX_CUSTOM_REQUEST_CHARS} characters")
        validate_document_id(self.document_id)
        return self


@dataclass(frozen=True)
class Candidate:
    """A single suggestion."""
    text: str
    category: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "category": self.category}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candidate":
        return cls(text=str(data.get("text", "")), category=data.get("category"))


@dataclass
class Diagnostics:
    """Why a result looks the way it does."""
    reason: Optional[str] = None
    strategy: Optional[str] = None
    fell_back_to_standard: bool = False
    retry_attempted: bool = False
    stage_counts: Dict[str, int] = field(default_factory=dict)
    cache_tier: Optional[str] = None
    latency_ms: Optional[float] = None
    diversity: Optional[Dict[str, Any]] = None
    cache_key: Optional[str] = None
    cascade_path: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "strategy": self.strategy,
            "fell_back_to_standard": self.fell_back_to_standard,
            "retry_attempted": self.retry_attempted,
            "stage_counts": dict(self.stage_counts),
            "cache_tier": self.cache_tier,
            "latency_ms": self.latency_ms,
            "diversity": self.diversity,
            "cache_key": self.cache_key,
            "cascade_path": list(self.cascade_path),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Diagnostics":
        return cls(
            reason=data.get("reason"),
            strategy=data.get("strategy"),
            fell_back_to_standard=bool(data.get("fell_back_to_standard", False)),
            retry_attempted=bool(data.get("retry_attempted", False)),
            stage_counts=dict(data.get("stage_counts") or {}),
            cache_tier=data.get("cache_tier"),
            latency_ms=data.get("latency_ms"),
            diversity=data.get("diversity"),
            cache_key=data.get("cache_key"),
            cascade_path=list(data.get("cascade_path") or []),
        )


@dataclass(frozen=True)
class SuggestionResult:
    """0-12 suggestions plus provenance."""
    suggestions: Tuple[Candidate, ...]
    source: SuggestionSource
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    is_placeholder: bool = False

    def __post_init__(self):
        if len(self.suggestions) > MAX_SUGGESTIONS:
            object.__setattr__(self, "suggestions", tuple(self.suggestions[:MAX_SUGGESTIONS]))

    @property
    def texts(self) -> List[str]:
        return [c.text for c in self.suggestions]

    @property
    def is_empty(self) -> bool:
        return not self.suggestions

    def with_source(self, source: SuggestionSource, **diagnostics: Any) -> "SuggestionResult":
        """Copy with a different source tag and updated diagnostics fields."""
        diag = replace(
            self.diagnostics,
            stage_counts=dict(self.diagnostics.stage_counts),
            cascade_path=list(self.diagnostics.cascade_path),
            diversity=dict(self.diagnostics.diversity) if self.diagnostics.diversity is not None else None,
            **diagnostics,
        )
        return replace(self, source=source, diagnostics=diag)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestions": [c.to_dict() for c in self.suggestions],
            "source": self.source.value,
            "is_placeholder": self.is_placeholder,
            "diagnostics": self.diagnostics.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SuggestionResult":
        return cls(
            suggestions=tuple(Candidate.from_dict(c) for c in data.get("suggestions", [])),
            source=SuggestionSource(data.get("source", SuggestionSource.GENERATED.value)),
            diagnostics=Diagnostics.from_dict(data.get("diagnostics") or {}),
            is_placeholder=bool(data.get("is_placeholder", False)),
        )

    @classmethod
    def empty(cls, reason: str, source: SuggestionSource = SuggestionSource.FALLBACK) -> "SuggestionResult":
        """Explicitly empty result carrying a reason."""
        return cls(suggestions=(), source=source, diagnostics=Diagnostics(reason=reason))


class StageKind(str, Enum):
    """Typed pipeline stage events."""
    DRAFT = "draft"
    CANDIDATES = "candidates"
    DONE = "done"


@dataclass
class StageEvent:
    """One event emitted while a request progresses through the pipeline."""
    kind: StageKind
    suggestions: Tuple[Candidate, ...] = ()
    result: Optional[SuggestionResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "event": self.kind.value,
            "suggestions": [c.to_dict() for c in self.suggestions],
        }
        if self.result is not None:
            data["result"] = self.result.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data
