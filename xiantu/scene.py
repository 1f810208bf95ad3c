"""Scene parsing and repair.

The generation service is asked for a JSON object describing one scene. Its
output is parsed here and normalised into a valid Scene. Structural failures
(not JSON, not an object) raise MalformedOutput; everything else is repaired
in place so that every parseable payload yields a schema-valid Scene.

Repairs applied, in order:
  tags            missing or fewer than 4 → placeholder set; more than 4 → first 4
  title           missing or blank → "Unknown Place"
  options         non-strings dropped; more than 4 → first 4
  state           unknown value → "ongoing"
  forced ending   final turn but still "ongoing" → "ended" with no options
  ended scene     options cleared; keyword folded to ASCII or replaced by fallback
  ongoing scene   no options → one placeholder option; keyword cleared
"""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from typing import Any

from xiantu.models import MAX_OPTIONS, TAG_COUNT, ConversationTurn, Scene

logger = logging.getLogger(__name__)

PLACEHOLDER_TAGS = ["mist", "void", "chaos", "unknown"]
PLACEHOLDER_TITLE = "Unknown Place"
PLACEHOLDER_OPTION = "Press onward."
FALLBACK_ENDING_KEYWORD = "misty mountain sunrise"

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", re.DOTALL)


class MalformedOutput(ValueError):
    """Raised when generation output is not a JSON object."""


def parse_scene(raw: str, *, force_end: bool = False) -> Scene:
    """Parse raw generation output into a repaired, validated Scene.

    force_end marks the final turn of a session: an "ongoing" answer is
    turned into an ending.
    """
    text = raw.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedOutput(f"Scene output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedOutput(f"Scene output must be a JSON object, got {type(data).__name__}")

    return Scene.model_validate(repair_scene(data, force_end=force_end))


def repair_scene(data: dict[str, Any], *, force_end: bool = False) -> dict[str, Any]:
    """Return a copy of a decoded scene object with every repair rule applied."""
    tags = _strings(data.get("tags"))
    if len(tags) < TAG_COUNT:
        logger.warning("Scene has %d usable tags; using placeholders", len(tags))
        tags = list(PLACEHOLDER_TAGS)
    elif len(tags) > TAG_COUNT:
        tags = tags[:TAG_COUNT]

    title = _text(data.get("title"))
    if not title:
        logger.warning("Scene has no title; using placeholder")
        title = PLACEHOLDER_TITLE

    options = _strings(data.get("options"))
    if len(options) > MAX_OPTIONS:
        logger.warning("Scene offers %d options; keeping the first %d", len(options), MAX_OPTIONS)
        options = options[:MAX_OPTIONS]

    state = data.get("state")
    if state not in ("ongoing", "ended"):
        if state is not None:
            logger.warning("Unknown scene state %r; treating as ongoing", state)
        state = "ongoing"

    if force_end and state == "ongoing":
        logger.warning("Final turn reached but scene is still ongoing; forcing the ending")
        state = "ended"

    keyword: str | None = None
    if state == "ended":
        options = []
        keyword = _ascii(_text(data.get("ending_keyword")))
        if not keyword:
            logger.warning("Ended scene has no usable ending keyword; using fallback")
            keyword = FALLBACK_ENDING_KEYWORD
    elif not options:
        logger.warning("Ongoing scene has no options; adding a placeholder")
        options = [PLACEHOLDER_OPTION]

    return {
        "title": title,
        "tags": tags,
        "description": _text(data.get("description")),
        "system_message": _text(data.get("system_message")) or None,
        "options": options,
        "state": state,
        "ending_keyword": keyword,
        "scene_art": _lines(data.get("scene_art")),
    }


def slim_for_history(scene: Scene) -> ConversationTurn:
    """The model's history entry for a scene, without its text art."""
    slim = scene.model_copy(update={"scene_art": []})
    return ConversationTurn(role="model", text=slim.model_dump_json(exclude_none=True))


# ---------------------------------------------------------------------------
# Field coercion helpers
# ---------------------------------------------------------------------------

def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _strings(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _lines(value: Any) -> list[str]:
    # Art lines keep their own spacing.
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _ascii(text: str) -> str:
    """Fold a keyword to plain ASCII for the image search ("Café" → "Cafe")."""
    folded = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    return " ".join(folded.split())
