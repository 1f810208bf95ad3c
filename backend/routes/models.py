"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel, Field

from xiantu.models import Attributes, GameLength


class StartBody(BaseModel):
    attributes: Attributes
    length: GameLength | None = None
    max_turns: int | None = Field(default=None, gt=0)


class ChoiceBody(BaseModel):
    choice: str = Field(min_length=1)


class EndingImage(BaseModel):
    url: str | None = None
    error: str | None = None


class UpdateSettings(BaseModel):
    gemini_api_key: str | None = None
    gemini_model: str | None = None
    unsplash_access_key: str | None = None
    turn_lengths: dict[str, int] | None = None
