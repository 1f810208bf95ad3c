"""Core domain models.

The session controller, the scene parser and the save store all operate on
these types. Pydantic is used for validation and serialisation at every data
boundary.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["user", "model"]
SceneState = Literal["ongoing", "ended"]
GameLength = Literal["short", "medium", "long"]

MAX_OPTIONS = 4
TAG_COUNT = 4


class Attributes(BaseModel):
    """Talent scores chosen by the player before the first scene."""

    model_config = ConfigDict(frozen=True)

    root_bone: int = Field(ge=0)
    insight: int = Field(ge=0)
    luck: int = Field(ge=0)
    background: int = Field(ge=0)

    def total(self) -> int:
        return self.root_bone + self.insight + self.luck + self.background


class SessionSettings(BaseModel):
    attributes: Attributes
    max_turns: int = Field(gt=0)

    @classmethod
    def for_length(
        cls, attributes: Attributes, length: GameLength, turn_lengths: dict[str, int]
    ) -> SessionSettings:
        """Build settings from a named game length ("short", "medium", "long")."""
        if length not in turn_lengths:
            raise ValueError(f"Unknown game length {length!r}")
        return cls(attributes=attributes, max_turns=turn_lengths[length])


class ConversationTurn(BaseModel):
    """One entry of the exchange history sent to the generation service."""

    role: Role
    text: str


class Scene(BaseModel):
    """One structured unit of narrative output."""

    title: str
    tags: list[str]
    description: str
    system_message: str | None = None
    options: list[str] = Field(default_factory=list, max_length=MAX_OPTIONS)
    state: SceneState = "ongoing"
    ending_keyword: str | None = None
    scene_art: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_state(self) -> Scene:
        if len(self.tags) != TAG_COUNT:
            raise ValueError(f"a scene carries exactly {TAG_COUNT} tags, got {len(self.tags)}")
        if self.state == "ongoing":
            if not self.options:
                raise ValueError("an ongoing scene needs at least one option")
            if self.ending_keyword is not None:
                raise ValueError("only ended scenes carry an ending keyword")
        else:
            if self.options:
                raise ValueError("an ended scene has no options")
            if not self.ending_keyword or not self.ending_keyword.isascii():
                raise ValueError("an ended scene needs a non-empty ASCII ending keyword")
        return self

    @property
    def is_ended(self) -> bool:
        return self.state == "ended"


class TurnState(BaseModel):
    current_turn: int = Field(default=0, ge=0)
    max_turns: int = Field(default=0, ge=0)


class SessionSnapshot(BaseModel):
    """The single persisted record of an in-progress session."""

    current_scene: Scene
    conversation_history: list[ConversationTurn]
    turn_state: TurnState
    timestamp: datetime

    @model_validator(mode="after")
    def _check_history(self) -> SessionSnapshot:
        if len(self.conversation_history) % 2:
            raise ValueError("history must hold complete user/model exchanges")
        for i, turn in enumerate(self.conversation_history):
            expected = "user" if i % 2 == 0 else "model"
            if turn.role != expected:
                raise ValueError(f"history entry {i} should be {expected!r}, got {turn.role!r}")
        return self


class Phase(str, Enum):
    IDLE = "idle"
    AWAITING_GENERATION = "awaiting_generation"
    SCENE_READY = "scene_ready"
    ERROR = "error"


class SessionStatus(BaseModel):
    """Read-only view of the controller handed to collaborators."""

    phase: Phase
    is_loading: bool
    error: str | None = None
    current_scene: Scene | None = None
    current_turn: int = 0
    max_turns: int = 0
    has_save: bool = False
    ending_image_url: str | None = None
    image_error: str | None = None
