"""
Cache Keys - Deterministic, bounded cache keys for suggestion requests

Keys capture enough context to be correct (highlight, surrounding windows,
document state, recent edits) without growing with the document.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import hashlib
import json
import logging
from typing import Iterable, Optional

from promptlens_core.placeholders import is_placeholder_request
from promptlens_core.types import CustomSuggestionRequest, EditEntry, SuggestionRequest, validate_document_id

logger = logging.getLogger(__name__)

EDIT_WINDOW = 5
EDIT_ORIGINAL_CHARS = 10
DOCUMENT_CHUNK_CHARS = 64 * 1024
CUSTOM_CONTEXT_CHARS = 200
MAX_FINGERPRINT_CHARS = 64


def edit_fingerprint(history: Iterable[EditEntry], window: int = EDIT_WINDOW) -> str:
    """
    Short digest of the most recent edits.

    Each edit contributes "category:original[:10]" ("n" for a missing
    category). An empty history yields "none".
    """
    entries = list(history)[-window:] if window > 0 else []
    if not entries:
        return "none"
    parts = [
        f"{e.category or 'n'}:{(e.original or '')[:EDIT_ORIGINAL_CHARS]}"
        for e in entries
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]


def fingerprint_document(text: Optional[str], chunk_chars: int = DOCUMENT_CHUNK_CHARS) -> str:
    """
    Fixed-size hash of a whole document.

    The text is fed to sha256 in chunks, so any edit anywhere changes the
    fingerprint while the output stays 32 hex characters.
    """
    if not text:
        return ""
    h = hashlib.sha256()
    for start in range(0, len(text), chunk_chars):
        h.update(text[start:start + chunk_chars].encode("utf-8", "surrogatepass"))
    return h.hexdigest()[:32]


class CacheKeyFactory:
    """
    Builds cache keys of the form "{namespace}:{document_id}:{digest}".

    The document id segment (or "_" when unknown) makes prefix invalidation
    of every entry tied to one document possible.
    """

    def __init__(
        self,
        namespace: str = "enhancement",
        context_window: int = 100,
        edit_window: int = EDIT_WINDOW,
    ):
        self.namespace = namespace
        self.context_window = context_window
        self.edit_window = edit_window

    def build_key(self, req: SuggestionRequest) -> str:
        """Deterministic key for a request."""
        payload = {
            "h": req.highlighted_text,
            "b": req.context_before[-self.context_window:] if self.context_window else "",
            "a": req.context_after[:self.context_window],
            "d": (req.full_document_fingerprint or "")[:MAX_FINGERPRINT_CHARS],
            "m": req.document_mode,
            "c": req.semantic_category,
            "e": edit_fingerprint(req.edit_history_tail, self.edit_window),
            "p": is_placeholder_request(req),
        }
        return f"{self.namespace}:{req.document_id or '_'}:{self._digest(payload)}"

    def build_custom_key(self, req: CustomSuggestionRequest) -> str:
        """Key for a free-text request, under the same document prefix."""
        payload = {
            "h": req.highlighted_text,
            "r": req.custom_request,
            "b": req.context_before[-CUSTOM_CONTEXT_CHARS:],
            "a": req.context_after[:CUSTOM_CONTEXT_CHARS],
            "d": fingerprint_document(req.document_text),
        }
        return f"{self.namespace}:{req.document_id or '_'}:custom:{self._digest(payload)}"

    def build_prefix(self, doc_id: str) -> str:
        """
        Prefix shared by every key of one document.

        Raises:
            ValidationError: doc_id is empty or contains ':'
        """
        validate_document_id(doc_id or "")
        return f"{self.namespace}:{doc_id}:"

    @staticmethod
    def _digest(payload) -> str:
        return hashlib.sha256(
            json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
        ).hexdigest()[:32]
