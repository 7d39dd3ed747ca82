"""
Filters - Sanitize, diversity and category alignment checks on candidates

Each filter takes candidates in output order and returns the survivors in
the same order, logging what was dropped and why.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import logging
import re
from collections import Counter
from dataclasses import replace
from itertools import combinations
from typing import Dict, List, Optional, Sequence, Set, Tuple

from promptlens_core.categories import (
    CATEGORY_PATTERNS,
    compatible_parents,
    infer_parents,
    is_known_parent,
    parent_category,
)
from promptlens_core.types import Candidate

logger = logging.getLogger(__name__)

_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_NUMBERING_RE = re.compile(r"^\s*(?:\d+\s*[.):-]|[-*•])\s*")
_PREFIX_RE = re.compile(
    r"^(?:consider|try|maybe|perhaps|you could|you might|focus on|"
    r"rewrite(?: it)? as|update(?: it)? to|i suggest|i recommend|suggestion:|option:)\s+",
    re.IGNORECASE,
)
_PLACEHOLDER_RE = re.compile(
    r"^(?:\[.*\]|<.*>|\{.*\}|(?:option|suggestion|alternative|replacement|text|example)\s*#?\d*|"
    r"replacement phrase(?: only)?|lorem ipsum.*|n/?a|none)$",
    re.IGNORECASE,
)
_QUOTE_PAIRS = (('"', '"'), ("'", "'"), ("“", "”"), ("‘", "’"), ("`", "`"))
_WORD_RE = re.compile(r"[\w'-]+")

# Audio and technical vocabulary is distinctive enough to reject candidates
# even in categories that have no vocabulary of their own.
_DISTINCTIVE_PARENTS = ("audio", "technical")


def _strip_quotes(text: str) -> str:
    for open_q, close_q in _QUOTE_PAIRS:
        if len(text) >= 2 and text.startswith(open_q) and text.endswith(close_q):
            return text[1:-1].strip()
    return text


def normalize_text(text: str) -> str:
    """Strip list numbering, wrapping quotes, chatty prefixes and trailing punctuation."""
    text = " ".join(text.split())
    text = _NUMBERING_RE.sub("", text)
    text = _strip_quotes(text)
    text = _PREFIX_RE.sub("", text)
    text = text.rstrip(".,;:!")
    return _strip_quotes(text.strip())


def word_set(text: str) -> Set[str]:
    return set(_WORD_RE.findall(text.lower()))


def jaccard_similarity(a: str, b: str) -> float:
    """Jaccard similarity of lowercased word sets."""
    set_a, set_b = word_set(a), word_set(b)
    if not set_a and not set_b:
        return 1.0
    union = set_a | set_b
    return len(set_a & set_b) / len(union)


def diversity_metrics(texts: Sequence[str]) -> Dict[str, float]:
    """
    Pairwise Jaccard statistics over a candidate set.

    Returns:
        avg_similarity, min_similarity, max_similarity (2 decimals) and pair_count
    """
    scores = [jaccard_similarity(a, b) for a, b in combinations(texts, 2)]
    if not scores:
        return {"avg_similarity": 0.0, "min_similarity": 0.0, "max_similarity": 0.0, "pair_count": 0}
    return {
        "avg_similarity": round(sum(scores) / len(scores), 2),
        "min_similarity": round(min(scores), 2),
        "max_similarity": round(max(scores), 2),
        "pair_count": len(scores),
    }


class Sanitizer:
    """
    Structural checks on raw candidates.

    Drops empty, over-long, multi-line or control-character candidates,
    punctuation-only strings, template placeholders echoed back by the
    model, and verbatim echoes of the highlighted text (equal to it, or
    containing it as a whole phrase).
    """

    def __init__(self, max_chars: int = 80, max_words: int = 12):
        self.max_chars = max_chars
        self.max_words = max_words

    def check(self, text: str, highlighted_text: str) -> Tuple[Optional[str], Optional[str]]:
        """
        Returns:
            (normalized text, None) when kept, (None, reason) when dropped
        """
        if not isinstance(text, str) or not text.strip():
            return None, "empty"
        if _CONTROL_RE.search(text.strip()):
            return None, "control_characters"

        cleaned = normalize_text(text)
        if not cleaned:
            return None, "empty"
        if not any(ch.isalnum() for ch in cleaned):
            return None, "punctuation_only"
        if _PLACEHOLDER_RE.match(cleaned):
            return None, "placeholder"
        if len(cleaned) > self.max_chars or len(cleaned.split()) > self.max_words:
            return None, "too_long"
        if self.is_echo(cleaned, highlighted_text):
            return None, "echo"
        return cleaned, None

    @staticmethod
    def is_echo(text: str, highlighted_text: str) -> bool:
        highlight = " ".join(highlighted_text.lower().split())
        if not highlight:
            return False
        lowered = text.lower()
        if lowered == highlight:
            return True
        return re.search(r"(?<!\w)" + re.escape(highlight) + r"(?!\w)", lowered) is not None

    def sanitize(self, candidates: Sequence[Candidate], highlighted_text: str) -> List[Candidate]:
        kept = []
        dropped: Counter = Counter()
        for candidate in candidates:
            cleaned, reason = self.check(candidate.text, highlighted_text)
            if reason is not None:
                dropped[reason] += 1
                logger.debug(f"Sanitizer dropped {candidate.text!r}: {reason}")
                continue
            kept.append(replace(candidate, text=cleaned))
        if dropped:
            logger.info(f"Sanitizer kept {len(kept)}/{len(candidates)} (dropped {dict(dropped)})")
        return kept


class DiversityFilter:
    """
    Drops near-duplicates by word-set Jaccard similarity.

    Candidates are visited in output order; one whose similarity to any
    already accepted candidate reaches the threshold is dropped, so every
    accepted pair stays strictly below it.
    """

    def __init__(self, threshold: float = 0.7):
        self.threshold = threshold

    def filter(self, candidates: Sequence[Candidate]) -> List[Candidate]:
        accepted: List[Candidate] = []
        for candidate in candidates:
            similar = next(
                (a for a in accepted if jaccard_similarity(candidate.text, a.text) >= self.threshold),
                None,
            )
            if similar is not None:
                logger.debug(f"Diversity dropped {candidate.text!r} (too close to {similar.text!r})")
                continue
            accepted.append(candidate)
        return accepted


class AlignmentValidator:
    """
    Checks each candidate still belongs to the requested category.

    A candidate is dropped when its declared category has another parent,
    or when its text uses another parent's vocabulary and not the requested
    one's. Candidates without a usable category are labelled with the
    requested one.
    """

    def validate(self, candidates: Sequence[Candidate], requested_category: str) -> List[Candidate]:
        allowed = compatible_parents(requested_category)
        enforce = is_known_parent(requested_category)
        kept = []
        for candidate in candidates:
            reason = self._mismatch(candidate, allowed) if enforce else None
            if reason is not None:
                logger.debug(f"Alignment dropped {candidate.text!r}: {reason}")
                continue
            if not candidate.category or not is_known_parent(candidate.category):
                candidate = replace(candidate, category=requested_category)
            kept.append(candidate)
        return kept

    @staticmethod
    def _mismatch(candidate: Candidate, allowed: Tuple[str, ...]) -> Optional[str]:
        requested_parent = allowed[0]
        if candidate.category and is_known_parent(candidate.category):
            declared = parent_category(candidate.category)
            if declared not in allowed:
                return f"declared category {candidate.category} outside {requested_parent}"

        inferred = infer_parents(candidate.text)
        if not inferred or any(p in allowed for p in inferred):
            return None
        if any(p in CATEGORY_PATTERNS for p in allowed):
            return f"reads as {inferred} rather than {requested_parent}"
        foreign = [p for p in inferred if p in _DISTINCTIVE_PARENTS]
        if foreign:
            return f"reads as {foreign}"
        return None
