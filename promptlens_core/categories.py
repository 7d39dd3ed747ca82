"""
Categories - Semantic category taxonomy, term patterns and canned descriptors

Categories are dotted ids ("lighting.time", "subject.wardrobe"); the part
before the first dot is the parent. Term patterns are used to infer the
parent of an unlabelled candidate. Canned descriptors are the last-resort
suggestions of the fallback cascade; configuration can extend or replace
them per category.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import re
from typing import Dict, List, Mapping, Optional, Pattern, Sequence, Tuple

PARENT_CATEGORIES: Tuple[str, ...] = (
    "shot",
    "subject",
    "action",
    "environment",
    "lighting",
    "camera",
    "style",
    "technical",
    "audio",
)

# Only parents with a distinctive vocabulary get a pattern; broad parents
# (subject, environment, style, action) are never inferred from text.
CATEGORY_PATTERNS: Dict[str, Pattern] = {
    "camera": re.compile(
        r"\b(dolly|track(?:ing)?|pan(?:s|ning)?|tilt(?:s|ing)?|crane|zoom(?:s|ing)?|handheld|"
        r"steadicam|gimbal|lens|\d+\s?mm|aperture|f/\d+(?:\.\d+)?|depth of field|rack focus|"
        r"low angle|high angle|overhead|eye level)\b",
        re.IGNORECASE,
    ),
    "shot": re.compile(
        r"\b(wide shot|close-up|closeup|medium shot|long shot|establishing shot|"
        r"over-the-shoulder|bird'?s[- ]eye|dutch angle|two-shot|insert shot|point of view)\b",
        re.IGNORECASE,
    ),
    "lighting": re.compile(
        r"\b(lighting|light|lit|shadows?|glow(?:ing)?|illuminat\w*|backlit|backlight\w*|"
        r"rim light|key light|fill light|high-key|low-key|sunlight|moonlight|candlelight|"
        r"neon|golden hour|blue hour|sunset|sunrise|dawn|dusk|twilight|midday|noon|"
        r"overcast|silhouetted?|chiaroscuro|flicker\w*|lamplight|firelight)\b",
        re.IGNORECASE,
    ),
    "technical": re.compile(
        r"\b(\d+\s?fps|frame rate|aspect ratio|\d+(?:\.\d+)?:\d+|4k|8k|1080p|720p|"
        r"resolution|duration|\d+\s?mm film|film format)\b",
        re.IGNORECASE,
    ),
    "audio": re.compile(
        r"\b(sound|sounds|music|musical|score|audio|soundtrack|ambience|footsteps|sfx|"
        r"hum(?:ming)?|echo(?:es|ing)?|rumble|chimes?)\b",
        re.IGNORECASE,
    ),
}

# Parents whose attributes overlap (camera framing is a shot type, subject
# movement is an action).
RELATED_PARENTS: Dict[str, Tuple[str, ...]] = {
    "camera": ("shot",),
    "shot": ("camera",),
    "subject": ("action",),
    "action": ("subject",),
}

DEFAULT_DESCRIPTORS: Dict[str, List[str]] = {
    "lighting": [
        "soft diffused daylight",
        "harsh overhead fluorescent",
        "warm practical lamps",
        "cool moonlit wash",
    ],
    "lighting.time": [
        "early dawn haze",
        "blue hour twilight",
        "harsh midday sun",
        "late night streetlamps",
    ],
    "lighting.quality": [
        "soft and diffused",
        "hard with crisp shadows",
        "dappled through leaves",
        "high-contrast chiaroscuro",
    ],
    "lighting.source": [
        "flickering candlelight",
        "buzzing neon signage",
        "single bare bulb",
        "sunlight through blinds",
    ],
    "camera": [
        "slow dolly push-in",
        "handheld tracking shot",
        "static locked-off frame",
        "sweeping crane move",
    ],
    "camera.movement": [
        "slow dolly push-in",
        "gentle pan left",
        "handheld follow",
        "rising crane move",
    ],
    "camera.lens": [
        "35mm lens",
        "85mm portrait lens",
        "anamorphic widescreen lens",
        "14mm ultra-wide lens",
    ],
    "shot": [
        "wide establishing shot",
        "intimate close-up",
        "over-the-shoulder framing",
        "high bird's eye view",
    ],
    "subject": [
        "a weathered fisherman",
        "a young street musician",
        "an elderly botanist",
        "a lone cyclist",
    ],
    "subject.wardrobe": [
        "dressed in vintage 1940s attire",
        "wearing a worn leather jacket",
        "in a crisp linen suit",
        "bundled in a wool overcoat",
    ],
    "subject.appearance": [
        "weathered, sun-lined face",
        "tall with an athletic build",
        "silver hair tied back",
        "freckled and wide-eyed",
    ],
    "subject.emotion": [
        "quietly determined",
        "visibly exhausted",
        "barely contained joy",
        "guarded and watchful",
    ],
    "action": [
        "walking briskly",
        "pausing mid-step",
        "leaning against a railing",
        "turning to look back",
    ],
    "environment": [
        "a rain-slicked city street",
        "a quiet pine forest",
        "a crowded night market",
        "an abandoned warehouse",
    ],
    "environment.weather": [
        "light drizzle",
        "thick rolling fog",
        "crisp clear skies",
        "gusting dry wind",
    ],
    "style": [
        "gritty film noir",
        "muted pastel palette",
        "documentary realism",
        "saturated retro technicolor",
    ],
    "technical": [
        "24fps cinematic motion",
        "2.39:1 widescreen",
        "4K resolution",
        "16:9 framing",
    ],
    "audio": [
        "distant city ambience",
        "low orchestral score",
        "crackling vinyl hum",
        "wind through tall grass",
    ],
}


def parent_category(category: Optional[str]) -> Optional[str]:
    """Parent part of a dotted category id."""
    if not category:
        return None
    return category.split(".", 1)[0].strip().lower() or None


def compatible_parents(category: Optional[str]) -> Tuple[str, ...]:
    """The parent of category plus parents it overlaps with."""
    parent = parent_category(category)
    if parent is None:
        return ()
    return (parent,) + RELATED_PARENTS.get(parent, ())


def is_known_parent(category: Optional[str]) -> bool:
    return parent_category(category) in PARENT_CATEGORIES


def infer_parents(text: str) -> List[str]:
    """Parents whose term pattern matches text."""
    return [name for name, pattern in CATEGORY_PATTERNS.items() if pattern.search(text)]


def merge_descriptors(
    overrides: Optional[Mapping[str, Sequence[str]]] = None,
    base: Optional[Mapping[str, Sequence[str]]] = None,
) -> Dict[str, List[str]]:
    """Built-in descriptor sets with configured sets replacing them per category."""
    merged = {k: list(v) for k, v in (base if base is not None else DEFAULT_DESCRIPTORS).items()}
    for category, descriptors in (overrides or {}).items():
        merged[category] = [str(d) for d in descriptors]
    return merged


def lookup_descriptors(
    category: Optional[str],
    descriptors: Mapping[str, Sequence[str]],
) -> Tuple[Optional[str], List[str]]:
    """
    Canned descriptors for a category: exact id first, then its parent.

    Returns:
        (matched category id or None, descriptors)
    """
    if category and descriptors.get(category):
        return category, list(descriptors[category])
    parent = parent_category(category)
    if parent and descriptors.get(parent):
        return parent, list(descriptors[parent])
    return None, []
