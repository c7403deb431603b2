"""Resilient generator-output → Scene parsing.

parse_scene() runs the buffer through clean_buffer() and then the strategy
chain in order:

  1. json     - {"description": "...", "choices": ["...", {"text": "..."}]}
  2. markup   - **Choice 1: Title** body ...
  3. labeled  - Choice 1: text / Option 2: text lines
  4. fallback - whole buffer as description + three generic choices

It never raises. An empty buffer yields an empty scene, which callers read
as "still streaming".
"""

import logging

from questline.models import Scene

from .cleaning import clean_buffer, collapse_whitespace, strip_code_fences  # noqa: F401
from .strategies import (  # noqa: F401
    FALLBACK_CHOICES,
    STRATEGIES,
    fallback_scene,
    parse_json_scene,
    parse_labeled_scene,
    parse_markup_scene,
)

logger = logging.getLogger(__name__)

PENDING_SCENE_ID = "scene-pending"


def parse_scene(buffer: str | bytes | None, scene_id: str = PENDING_SCENE_ID) -> Scene:
    """Turn an accumulated generator buffer into a Scene."""
    if isinstance(buffer, bytes):
        buffer = buffer.decode("utf-8", errors="replace")
    if not isinstance(buffer, str) or not buffer.strip():
        return Scene(id=scene_id, description="", choices=[])

    try:
        text = clean_buffer(buffer)
    except Exception:
        logger.exception("Buffer cleaning failed, using raw text")
        text = buffer.strip()
    if not text:
        return Scene(id=scene_id, description="", choices=[])

    for name, strategy in STRATEGIES:
        try:
            scene = strategy(text, scene_id)
        except Exception:
            logger.exception("Scene strategy %s crashed", name)
            continue
        if scene is not None:
            logger.debug("Scene parsed by %s strategy, %d choices", name, len(scene.choices))
            return scene

    logger.debug("No strategy matched, using fallback scene")
    return fallback_scene(text, scene_id)
