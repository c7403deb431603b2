"""Scene parsing strategies.

Each strategy is a pure function ``(cleaned_text, scene_id) -> Scene | None``.
They are tried in the order of STRATEGIES; the first one to return a scene
wins and fallback_scene() always succeeds.

Strategies stay permissive: duplicate choice text is accepted here and
rejected (or repaired) by whoever commits the scene.
"""

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from questline.models import Choice, Scene

from .cleaning import collapse_whitespace, strip_code_fences

logger = logging.getLogger(__name__)

Strategy = Callable[[str, str], Scene | None]

FALLBACK_CHOICES: tuple[str, ...] = (
    "Continue exploring",
    "Take a different approach",
    "Consider your options",
)

# **Choice 1: Title** body text up to the next **Choice or the end
_MARKUP_CHOICE = re.compile(
    r"\*\*Choice\s*(\d+):\s*([^*]+?)\*\*\s*([^*]*?)(?=\*\*Choice|\s*$)",
    re.IGNORECASE,
)

# Choice 1: text  /  Option 2: text  - one per line
_LABELED_CHOICE = re.compile(r"\b(?:Choice|Option)\s*(\d+):[ \t]*([^\n]+)", re.IGNORECASE)


def _remove_spans(text: str, spans: list[tuple[int, int]]) -> str:
    parts: list[str] = []
    last = 0
    for start, end in spans:
        parts.append(text[last:start])
        last = end
    parts.append(text[last:])
    return collapse_whitespace("".join(parts))


def _choice_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw.strip()
    if isinstance(raw, dict) and isinstance(raw.get("text"), str):
        return raw["text"].strip()
    return ""


def parse_json_scene(text: str, scene_id: str) -> Scene | None:
    """A JSON object with a description string and a choices array."""
    try:
        data = json.loads(strip_code_fences(text), strict=False)
    except ValueError as e:
        logger.debug("JSON strategy skipped: %s", e)
        return None
    if not isinstance(data, dict):
        return None

    description = data.get("description")
    choices = data.get("choices")
    if not isinstance(description, str) or not description.strip():
        return None
    if not isinstance(choices, list):
        return None

    texts = [t for t in (_choice_text(c) for c in choices) if t]
    if not texts:
        return None
    return Scene(
        id=scene_id,
        description=description.strip(),
        choices=[Choice(id=i, text=t) for i, t in enumerate(texts, start=1)],
    )


def parse_markup_scene(text: str, scene_id: str) -> Scene | None:
    """Bold ``**Choice n: title** body`` blocks embedded in prose."""
    matches = list(_MARKUP_CHOICE.finditer(text))
    if not matches:
        return None

    choices: list[Choice] = []
    for match in matches:
        title = match.group(2).strip()
        body = collapse_whitespace(match.group(3))
        choices.append(Choice(
            id=int(match.group(1)),
            text=f"{title} - {body}" if body else title,
        ))
    description = _remove_spans(text, [m.span() for m in matches])
    return Scene(id=scene_id, description=description, choices=choices)


def parse_labeled_scene(text: str, scene_id: str) -> Scene | None:
    """Plain ``Choice n: text`` or ``Option n: text`` lines."""
    matches = list(_LABELED_CHOICE.finditer(text))
    choices = [
        Choice(id=int(m.group(1)), text=m.group(2).strip())
        for m in matches
        if m.group(2).strip()
    ]
    if not choices:
        return None
    description = _remove_spans(text, [m.span() for m in matches])
    return Scene(id=scene_id, description=description, choices=choices)


def fallback_scene(text: str, scene_id: str) -> Scene:
    """The whole buffer as narration plus generic choices, so play never stalls."""
    return Scene(
        id=scene_id,
        description=text,
        choices=[Choice(id=i, text=t) for i, t in enumerate(FALLBACK_CHOICES, start=1)],
    )


STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("json", parse_json_scene),
    ("markup", parse_markup_scene),
    ("labeled", parse_labeled_scene),
)
