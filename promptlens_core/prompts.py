"""
Prompts - System prompts and negative constraints for suggestion generation

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from promptlens_core.types import CustomSuggestionRequest, SuggestionRequest

PREVIEW_CHARS = 100


class NegativeConstraintMode(str, Enum):
    """How strongly later batches must avoid earlier candidates."""
    STRICT = "strict"  # avoid similar concepts
    RELAXED = "relaxed"  # only avoid repeating exact phrases


@dataclass
class PromptTemplate:
    """A system prompt made of a role line, request context and rules."""

    name: str
    role: str
    rules: List[str] = field(default_factory=list)
    output_format: str = (
        'Output JSON array only: [{"text":"REPLACEMENT PHRASE ONLY","category":"%(category)s"}].'
    )

    def format(self, req: SuggestionRequest, count: int) -> str:
        """
        Format the complete system prompt.

        Args:
            req: The suggestion request
            count: Number of replacements to ask for

        Returns:
            Formatted prompt string
        """
        before = req.context_before[-PREVIEW_CHARS:]
        after = req.context_after[:PREVIEW_CHARS]
        parts = [
            self.role,
            f'HIGHLIGHTED PHRASE TO REPLACE: "{req.highlighted_text}"',
            f'Context: "{before}[{req.highlighted_text}]{after}"',
            f"Document type: {req.document_mode}. Slot: {req.semantic_category}.",
            f"Provide {count} replacements.",
            "Rules:",
        ]
        parts.extend(f"- {rule}" for rule in self.rules)
        parts.append(self.output_format % {"category": req.semantic_category})
        return "\n".join(parts)


SPAN_REPLACEMENT = PromptTemplate(
    name="span_replacement",
    role="You are an expert cinematographer and prompt editor proposing span-level replacements.",
    rules=[
        "REPLACE ONLY the highlighted phrase. Return only the replacement phrase, not the full sentence.",
        "Stay inside the same slot; do not alter the subject or main action.",
        "Keep the grammar of the surrounding sentence; no leading verbs unless the slot is an action.",
        "Each option must be visually distinct: different source, quality, direction or treatment.",
        "Do not repeat the highlighted phrase and do not number the options.",
        "Keep each option under 12 words.",
    ],
)


PLACEHOLDER_FILL = PromptTemplate(
    name="placeholder_fill",
    role="You are an expert cinematographer and prompt editor filling an open slot of a prompt with concrete values.",
    rules=[
        "The highlighted phrase stands for a value still to be chosen; propose concrete values for it.",
        "Return only the value, not the full sentence.",
        "Cover different kinds of value for the slot, not variations of one idea.",
        "Keep the grammar of the surrounding sentence.",
        "Do not repeat the highlighted phrase and do not number the options.",
        "Keep each option under 8 words.",
    ],
)

CUSTOM_CATEGORY = "custom"
SNAPSHOT_CHARS = 800


def build_system_prompt(req: SuggestionRequest, count: int, template: PromptTemplate = SPAN_REPLACEMENT) -> str:
    return template.format(req, count)


def build_user_message(req: SuggestionRequest, count: int) -> str:
    return f'Suggest {count} alternatives for "{req.highlighted_text}" ({req.semantic_category}).'


def build_negative_constraint(
    previous: Iterable[str],
    mode: NegativeConstraintMode = NegativeConstraintMode.STRICT,
) -> Optional[str]:
    """Constraint text listing prior candidates, or None when there are none."""
    quoted = ", ".join(f'"{text}"' for text in previous if text)
    if not quoted:
        return None
    if mode == NegativeConstraintMode.RELAXED:
        return f"Do not repeat these exact phrases: {quoted}"
    return f"Do not use concepts, phrases, or visual approaches similar to: {quoted}"


def with_negative_constraint(base_prompt: str, constraint: Optional[str]) -> str:
    """Append a negative constraint to a system prompt."""
    if not constraint:
        return base_prompt
    return f"{base_prompt}\n\nAVOID: {constraint}\nGenerate completely different options."


def build_custom_prompt(req: CustomSuggestionRequest, count: int) -> str:
    """System prompt for a free-text request about a highlighted span."""
    snapshot = req.document_text[:SNAPSHOT_CHARS]
    if len(req.document_text) > SNAPSHOT_CHARS:
        snapshot += "..."
    before = req.context_before[-PREVIEW_CHARS:]
    after = req.context_after[:PREVIEW_CHARS]
    parts = [
        "You are a span-level prompt editor.",
        f'Full prompt snapshot: "{snapshot}"' if snapshot else None,
        f'Context: "{before}[{req.highlighted_text}]{after}"',
        f'HIGHLIGHTED PHRASE TO REPLACE: "{req.highlighted_text}"',
        f"Custom request: {req.custom_request}",
        "Maintain the grammatical flow and style of the surrounding sentence.",
        f"Generate {count} drop-in replacements that satisfy the request and stay grammatical.",
        "Keep subject and tense unless the request explicitly changes them.",
        f'Output JSON array only: [{{"text":"REPLACEMENT PHRASE ONLY","category":"{CUSTOM_CATEGORY}"}}].',
    ]
    return "\n".join(p for p in parts if p)


def build_custom_user_message(req: CustomSuggestionRequest, count: int) -> str:
    return f'Suggest {count} alternatives for "{req.highlighted_text}" that satisfy: {req.custom_request}'
