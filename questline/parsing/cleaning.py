"""Buffer normalisation shared by every scene parsing strategy."""

import json
import re

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")  # keeps \t and \n
_INLINE_WHITESPACE = re.compile(r"[ \t]+")
_BLANK_RUNS = re.compile(r"\n{3,}")


def strip_code_fences(text: str) -> str:
    """Drop a surrounding ```json ... ``` fence if the model added one."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    return cleaned


def _decodes_as_json(text: str) -> bool:
    try:
        json.loads(strip_code_fences(text), strict=False)
    except ValueError:
        return False
    return True


def collapse_whitespace(text: str) -> str:
    """Collapse space/tab runs on each line and runs of blank lines."""
    lines = [_INLINE_WHITESPACE.sub(" ", line).strip() for line in text.split("\n")]
    return _BLANK_RUNS.sub("\n\n", "\n".join(lines)).strip()


def clean_buffer(buffer: str) -> str:
    """Normalise raw generator output before parsing.

    Control characters are removed and literal ``\\n`` / ``\\"`` escapes
    are unescaped. Text that already decodes as JSON keeps its escapes,
    since the JSON decoder resolves them itself and unescaping quotes inside
    string values would break the document.
    """
    text = buffer.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    if not _decodes_as_json(text):
        text = text.replace("\\n", "\n").replace('\\"', '"')
    return collapse_whitespace(text)
