"""
Placeholders - Tell a slot to fill from a phrase to rewrite

A highlighted span is a placeholder when it stands for a value still to be
chosen ("wooden", "location", "(style)", "such as [x]") rather than a
finished phrase. Placeholders get concrete values instead of rewrites.

Only the text next to the highlight is inspected, so the answer is a
function of the highlight and its nearest context.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-08
"""

import re

from promptlens_core.types import SuggestionRequest

CONTEXT_WINDOW = 60

MATERIAL_TERMS = frozenset([
    "wooden", "wood", "metal", "metallic", "glass", "plastic",
    "stone", "marble", "granite", "concrete", "brick", "ceramic",
    "fabric", "leather", "steel", "iron", "copper", "brass",
    "aluminum", "chrome", "gold", "silver", "bronze",
])

STYLE_TERMS = frozenset([
    "modern", "vintage", "rustic", "industrial", "minimalist",
    "ornate", "classic", "contemporary", "traditional", "art deco",
    "gothic", "baroque", "victorian", "scandinavian", "bohemian",
])

SLOT_TERMS = frozenset([
    "location", "place", "venue", "setting", "where",
    "person", "character", "who", "speaker", "audience",
    "time", "when", "date", "period", "era", "occasion",
    "style", "tone", "mood", "atmosphere",
    "event", "action", "activity", "scene",
    "color", "texture", "material",
    "angle", "perspective", "viewpoint",
])

_LEAD_IN_RE = re.compile(r"(?:\bsuch as|\blike|\be\.g\.|\bfor example|\bincluding|\bspecify)(?:\W|$)", re.IGNORECASE)
_DIRECTIVE_RE = re.compile(r"\b(include|set|choose|specify|add|provide|give)\s+[^,\n]{0,20}$", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\b(desk|table|chair|wall|floor|surface|object|item|piece|structure)\b", re.IGNORECASE)


def detect_placeholder(highlighted_text: str, context_before: str = "", context_after: str = "") -> bool:
    """True when the highlighted span reads as a value to fill in."""
    text = " ".join(highlighted_text.lower().split())
    if not text:
        return False
    words = len(text.split())
    before = context_before[-CONTEXT_WINDOW:]
    after = context_after[:CONTEXT_WINDOW]

    if text in MATERIAL_TERMS or text in STYLE_TERMS:
        return True
    if words <= 2 and text in SLOT_TERMS:
        return True

    # Bracketed: "(style)", "[location]"
    if before.rstrip().endswith(("(", "[")) or after.lstrip().startswith((")", "]")):
        return True

    if _LEAD_IN_RE.search(before):
        return True

    # List items: "Lighting: warm" or "- soft"
    if words <= 3 and (":" in before or " - " in before or before.lstrip().startswith("-")):
        return True

    if _DIRECTIVE_RE.search(before):
        return True

    # Property of a physical object: "[oak] desk"
    if words <= 2 and _OBJECT_RE.search(after):
        return True

    return False


def is_placeholder_request(req: SuggestionRequest) -> bool:
    return detect_placeholder(req.highlighted_text, req.context_before, req.context_after)
