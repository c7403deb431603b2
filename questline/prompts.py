"""Handlebars prompt rendering for scene generation.

Two templates are rendered per turn: a system prompt carrying the genre's
storytelling guidelines, and a user prompt carrying the character sheet,
the current scene, the chosen option and the recent history. Free text is
inserted with triple braces so names like "Crystal's Keeper" reach the model
unescaped.
"""

from collections.abc import Callable
from typing import Any

import pybars

from questline.models import Character, GameHistoryEntry, Genre, Scene

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} - iterate over the last N items."""
    result = []
    count = int(count)
    if count <= 0:
        return result
    for item in list(items)[-count:]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Templates ────────────────────────────────────────────


GENRE_GUIDELINES: dict[Genre, list[str]] = {
    "Fantasy": [
        "Include magical elements and fantastical creatures",
        "Reference the medieval/magical setting",
        "Consider magical abilities in choices",
        "Balance combat, diplomacy, and mystical solutions",
    ],
    "Sci-Fi": [
        "Include advanced technology and scientific concepts",
        "Reference space, future tech, or advanced civilizations",
        "Consider technological solutions in choices",
        "Balance action, problem-solving, and exploration",
    ],
    "Horror": [
        "Build tension and atmosphere",
        "Include psychological and supernatural elements",
        "Consider fight-or-flight responses in choices",
        "Balance investigation, survival, and confrontation",
    ],
    "Mystery": [
        "Include clues and red herrings",
        "Reference investigation techniques",
        "Consider deductive reasoning in choices",
        "Balance interrogation, investigation, and action",
    ],
}

SYSTEM_PROMPT = """\
You are a creative and engaging storyteller specializing in {{{genre}}} narratives. \
Your task is to continue the story based on the player's choices, maintaining \
consistency with the genre, character attributes, and previous events. Each \
response should be formatted as JSON with a scene description and 3 meaningful choices.

Guidelines:
- Keep descriptions vivid but concise (150-200 words)
- Maintain consistent tone and style
- Reference character attributes and equipment when relevant
- Create choices that are meaningful, distinct, and lead to different narrative paths
- Avoid repetitive scenarios
- Keep track of story continuity
{{#if guidelines}}

{{{genre}}}-specific guidelines:
{{#each guidelines}}
- {{{this}}}
{{/each}}
{{/if}}
"""

USER_PROMPT = """\
Character Information:
Name: {{{character.name}}}
Attributes:
{{#each character.attributes}}
  * {{{name}}} ({{value}}): {{{description}}}
{{/each}}
Equipment:
{{#each character.equipment}}
  * {{{name}}}: {{{description}}}
{{/each}}
{{#if character.backstory}}
Backstory: {{{character.backstory}}}
{{/if}}

Current Scene:
{{{scene}}}

Player Choice:
{{{choice}}}

Continue the story based on the player's choice and character attributes. \
Your response MUST be valid JSON in this exact format:
{"description": "A vivid description of what happens next...", \
"choices": [{"id": 1, "text": "First choice"}, {"id": 2, "text": "Second choice"}, \
{"id": 3, "text": "Third choice"}]}
{{#if history}}

Story History:
{{#last history history_limit}}
- Scene: {{{scene_description}}}
  Choice: {{{choice}}}
{{/last}}
{{/if}}
"""


def build_context(
    character: Character,
    scene: Scene | None,
    history: list[GameHistoryEntry],
    choice: str,
    history_limit: int = 5,
) -> dict[str, Any]:
    """Assemble template variables for the system and user prompts."""
    return {
        "genre": character.genre,
        "guidelines": GENRE_GUIDELINES.get(character.genre, []),
        "character": character.model_dump(),
        "scene": scene.description if scene else "",
        "choice": choice,
        "history": [
            {"scene_description": e.scene_description or "", "choice": e.choice}
            for e in history
        ] if history_limit > 0 else [],
        "history_limit": history_limit,
    }


def build_messages(
    character: Character,
    scene: Scene | None,
    history: list[GameHistoryEntry],
    choice: str,
    history_limit: int = 5,
) -> list[dict[str, str]]:
    """Render the chat transcript sent to the generation backend."""
    ctx = build_context(character, scene, history, choice, history_limit)
    return [
        {"role": "system", "content": render_prompt(SYSTEM_PROMPT, ctx).strip()},
        {"role": "user", "content": render_prompt(USER_PROMPT, ctx).strip()},
    ]
