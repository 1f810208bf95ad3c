"""Turn-based cultivation story sessions driven by an LLM.

Modules:
  models    pydantic types: Attributes, SessionSettings, Scene, SessionSnapshot…
  scene     parse + repair generation output into a valid Scene
  retry     bounded exponential backoff for overloaded upstreams
  llm       Gemini generateContent client and its error taxonomy
  prompts   system instruction and per-turn prompt templates
  storage   single-slot JSON save store
  images    Unsplash ending-illustration lookup
  session   the SessionController state machine
  config    defaults + config.json + environment
"""

from .models import (  # noqa: F401
    Attributes,
    ConversationTurn,
    Phase,
    Scene,
    SessionSettings,
    SessionSnapshot,
    SessionStatus,
    TurnState,
)
from .session import SNAPSHOT_KEY, SessionController  # noqa: F401
