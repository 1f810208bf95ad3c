"""Prompt text for the generation service.

SYSTEM_INSTRUCTION is sent once, with the opening call of a session. Each
player turn is a short Handlebars template rendered with the turn context.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pybars

from xiantu.models import Attributes, ConversationTurn, TurnState

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


SYSTEM_INSTRUCTION = """\
# Persona
You are the Game Master of a text adventure and, at the same time, the
"Heavenly Dao System" that assists the player. The world is one of
reincarnation and cultivation: the player starts from nothing and lives out a
random life on the path to immortality. Your voice is calm and objective, and
you build every scene out of words.

# Core rule: JSON output
You MUST return exactly one JSON object and nothing else. Never wrap it in
code fences or add any text before or after it. The object has this shape:

{
  "title": "A short name for the current place, e.g. \\"Woodshed\\".",
  "tags": ["Exactly four", "short words", "describing the", "surroundings"],
  "scene_art": [
    "An array of strings that draws the scene with text characters.",
    "Use symbols to sketch the picture, e.g. @ for the player.",
    "Keep the lines aligned for a monospaced font.",
    "Return [] when the moment cannot be drawn (e.g. pure inner monologue)."
  ],
  "description": "An objective description of the scene or event.",
  "system_message": "A system notice or narrator aside: status changes, items gained, plot triggers.",
  "options": ["1. First choice", "2. Second choice", "3. Third choice"],
  "state": "ongoing",
  "ending_keyword": "Only when state is \\"ended\\": a short ENGLISH phrase for an image search."
}

# Game flow
1. Input: you receive the player's starting attributes and the chosen story
   length, then each player choice together with the turn counters.
2. Turns: every message carries current_turn and max_turns. Pace the story
   so it can conclude by max_turns.
3. Ending: when current_turn reaches max_turns you MUST write an ending, good
   or bad, in "description", set "options" to [], set "state" to "ended" and
   give an English "ending_keyword" (e.g. "lonely mountain temple").
4. Options: while the story is ongoing, offer 3 to 4 meaningful choices.
5. Style: keep the tone of a cultivation novel and let "system_message"
   sound like the System speaking.

# First task
Next you will receive the player's starting attributes and story length.
Generate the opening scene from them.
"""

OPENING_TEMPLATE = (
    "The game begins. The player's attributes are: {{{attributes}}}. "
    "Game length: {{{turn_state}}}. Generate the opening scene."
)

CHOICE_TEMPLATE = (
    "The player chose: {{{choice}}}. Current state: {{{turn_state}}}."
    "{{#if final}} This is the FINAL turn: conclude the story now. Write the ending "
    'in "description", set "options" to [], set "state" to "ended" and give an '
    'English "ending_keyword".{{/if}}'
)


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def _turn_context(current_turn: int, max_turns: int) -> str:
    return json.dumps({"max_turns": max_turns, "current_turn": current_turn})


def opening_turn(attributes: Attributes, turn_state: TurnState) -> ConversationTurn:
    """The first user turn of a session."""
    text = render_prompt(OPENING_TEMPLATE, {
        "attributes": attributes.model_dump_json(),
        "turn_state": _turn_context(turn_state.current_turn, turn_state.max_turns),
    })
    return ConversationTurn(role="user", text=text)


def choice_turn(choice: str, current_turn: int, max_turns: int, final: bool) -> ConversationTurn:
    """A user turn carrying the player's choice; final adds the forced-ending instruction."""
    text = render_prompt(CHOICE_TEMPLATE, {
        "choice": choice,
        "turn_state": _turn_context(current_turn, max_turns),
        "final": final,
    })
    return ConversationTurn(role="user", text=text)
