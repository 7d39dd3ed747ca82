"""
Cascade - Filter pipeline and graceful fallback for raw candidates

Raw candidates go through sanitize, diversity and alignment. When too few
survive, the cascade regenerates once with relaxed constraints, then falls
back to canned descriptors for the category. It never raises for "no good
suggestions": the result is either non-empty or explicitly empty with a
reason.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from promptlens_core.categories import lookup_descriptors, merge_descriptors
from promptlens_core.errors import GenerationFailure
from promptlens_core.filters import AlignmentValidator, DiversityFilter, Sanitizer, diversity_metrics
from promptlens_core.generation import GenerationOutcome
from promptlens_core.prompts import NegativeConstraintMode
from promptlens_core.types import (
    MAX_SUGGESTIONS,
    Candidate,
    Diagnostics,
    SuggestionRequest,
    SuggestionResult,
    SuggestionSource,
)

logger = logging.getLogger(__name__)

Regenerate = Callable[[NegativeConstraintMode, Sequence[str]], Awaitable[GenerationOutcome]]


class CascadeState(str, Enum):
    """States of the cascade; ACCEPTED and EXHAUSTED are terminal."""
    SANITIZE = "sanitize"
    DIVERSIFY = "diversify"
    ALIGN = "align"
    RETRY = "retry"
    CANNED = "canned"
    ACCEPTED = "accepted"
    EXHAUSTED = "exhausted"


class FallbackCascade:
    """
    Turns raw generation output into a SuggestionResult.

    Args:
        sanitizer: structural checks
        diversity: near-duplicate filter
        alignment: category check
        descriptors: canned descriptor sets by category id
        min_accepted: survivors needed to skip the fallback steps
        max_suggestions: result size cap
        fallback_enabled: allow canned descriptors
        monitor: optional SuggestionMonitor
    """

    def __init__(
        self,
        sanitizer: Optional[Sanitizer] = None,
        diversity: Optional[DiversityFilter] = None,
        alignment: Optional[AlignmentValidator] = None,
        descriptors: Optional[Mapping[str, Sequence[str]]] = None,
        min_accepted: int = 1,
        max_suggestions: int = MAX_SUGGESTIONS,
        fallback_enabled: bool = True,
        monitor=None,
    ):
        self.sanitizer = sanitizer or Sanitizer()
        self.diversity = diversity or DiversityFilter()
        self.alignment = alignment or AlignmentValidator()
        self.descriptors = merge_descriptors() if descriptors is None else dict(descriptors)
        self.min_accepted = max(1, min_accepted)
        self.max_suggestions = min(max_suggestions, MAX_SUGGESTIONS)
        self.fallback_enabled = fallback_enabled
        self.monitor = monitor

    @classmethod
    def from_config(cls, config, monitor=None) -> "FallbackCascade":
        """Build from PromptLensConfig."""
        filters = config.filters
        return cls(
            sanitizer=Sanitizer(max_chars=filters.max_chars, max_words=filters.max_words),
            diversity=DiversityFilter(threshold=filters.similarity_threshold),
            descriptors=merge_descriptors(config.fallback.descriptors),
            min_accepted=filters.min_accepted,
            max_suggestions=filters.max_suggestions,
            fallback_enabled=config.fallback.enabled,
            monitor=monitor,
        )

    def run_filters(
        self,
        req: SuggestionRequest,
        candidates: Sequence[Candidate],
        counts: Dict[str, int],
        prefix: str = "",
        path: Optional[List[str]] = None,
    ) -> List[Candidate]:
        """Sanitize, diversify, align. Records stage sizes in counts."""
        path = path if path is not None else []
        counts[f"{prefix}raw"] = len(candidates)
        path.append(CascadeState.SANITIZE.value)
        kept = self.sanitizer.sanitize(candidates, req.highlighted_text)
        counts[f"{prefix}sanitized"] = len(kept)
        path.append(CascadeState.DIVERSIFY.value)
        kept = self.diversity.filter(kept)
        counts[f"{prefix}diverse"] = len(kept)
        path.append(CascadeState.ALIGN.value)
        kept = self.alignment.validate(kept, req.semantic_category)
        counts[f"{prefix}aligned"] = len(kept)
        return kept

    async def resolve(
        self,
        req: SuggestionRequest,
        outcome: GenerationOutcome,
        regenerate: Optional[Regenerate] = None,
    ) -> SuggestionResult:
        """Run the cascade to a terminal state."""
        counts: Dict[str, int] = {}
        path: List[str] = []
        diagnostics = Diagnostics(
            strategy=outcome.strategy,
            fell_back_to_standard=outcome.fell_back_to_standard,
            stage_counts=counts,
            cascade_path=path,
        )

        accepted = self.run_filters(req, outcome.candidates, counts, path=path)
        if len(accepted) >= self.min_accepted:
            return self._accept(accepted, SuggestionSource.GENERATED, diagnostics)

        if regenerate is not None:
            path.append(CascadeState.RETRY.value)
            diagnostics.retry_attempted = True
            if self.monitor is not None:
                self.monitor.record_fallback("retry")
            rejected = [c.text for c in outcome.candidates if isinstance(c.text, str) and c.text.strip()]
            logger.info(
                f"Only {len(accepted)} candidates for {req.semantic_category}, retrying with relaxed constraints"
            )
            try:
                retry = await regenerate(NegativeConstraintMode.RELAXED, rejected)
            except GenerationFailure as e:
                logger.warning(f"Relaxed retry failed, moving to canned descriptors: {e}")
                retry = None
            if retry is not None:
                diagnostics.strategy = retry.strategy
                diagnostics.fell_back_to_standard = diagnostics.fell_back_to_standard or retry.fell_back_to_standard
                accepted = self.run_filters(req, retry.candidates, counts, prefix="retry_", path=path)
                if len(accepted) >= self.min_accepted:
                    diagnostics.reason = "relaxed_retry"
                    return self._accept(accepted, SuggestionSource.GENERATED, diagnostics)

        if self.fallback_enabled:
            path.append(CascadeState.CANNED.value)
            matched, descriptors = lookup_descriptors(req.semantic_category, self.descriptors)
            canned = [Candidate(text=d, category=req.semantic_category) for d in descriptors]
            canned = self.diversity.filter(self.sanitizer.sanitize(canned, req.highlighted_text))
            counts["canned"] = len(canned)
            if canned:
                if self.monitor is not None:
                    self.monitor.record_fallback("canned")
                logger.info(f"Using {len(canned)} canned descriptors ({matched}) for {req.semantic_category}")
                diagnostics.reason = f"canned_descriptors:{matched}"
                return self._accept(canned, SuggestionSource.FALLBACK, diagnostics)
            diagnostics.reason = f"no_canned_descriptors:{req.semantic_category}"
        else:
            diagnostics.reason = "fallback_disabled"

        path.append(CascadeState.EXHAUSTED.value)
        logger.warning(f"No acceptable suggestions for {req.semantic_category}: {diagnostics.reason}")
        return SuggestionResult(suggestions=(), source=SuggestionSource.FALLBACK, diagnostics=diagnostics)

    def _accept(
        self,
        candidates: List[Candidate],
        source: SuggestionSource,
        diagnostics: Diagnostics,
    ) -> SuggestionResult:
        diagnostics.cascade_path.append(CascadeState.ACCEPTED.value)
        final = tuple(candidates[: self.max_suggestions])
        diagnostics.diversity = diversity_metrics([c.text for c in final])
        return SuggestionResult(suggestions=final, source=source, diagnostics=diagnostics)
