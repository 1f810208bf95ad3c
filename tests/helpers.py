"""Shared test doubles: scripted generation clients and a recording sleep."""

import asyncio
import json
from typing import Any

from xiantu.models import ConversationTurn


def scene_data(**overrides: Any) -> dict[str, Any]:
    """A well-formed ongoing scene object; overrides set to None are dropped."""
    data: dict[str, Any] = {
        "title": "Woodshed",
        "tags": ["dim", "dusty", "cold", "quiet"],
        "scene_art": ["  ┌──┐  ", "  │@ │  ", "  └──┘  "],
        "description": "You open your eyes in a cramped woodshed.",
        "system_message": "[System] Your root bone stirs.",
        "options": ["1. Stand up", "2. Call for help", "3. Meditate"],
        "state": "ongoing",
    }
    data.update(overrides)
    return {k: v for k, v in data.items() if v is not None}


def scene_json(**overrides: Any) -> str:
    return json.dumps(scene_data(**overrides))


def ending_json(**overrides: Any) -> str:
    return scene_json(**{
        "title": "Summit",
        "description": "You ascend.",
        "options": [],
        "state": "ended",
        "ending_keyword": "mountain temple sunrise",
        **overrides,
    })


class StubLLM:
    """Returns scripted responses in order; the last one repeats.

    A response that is an exception instance is raised instead of returned.
    Every call is recorded as (history, turn, system_instruction).
    """

    def __init__(self, *responses: str | BaseException) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[list[ConversationTurn], ConversationTurn, str | None]] = []

    async def __call__(
        self,
        history: list[ConversationTurn],
        turn: ConversationTurn,
        system_instruction: str | None = None,
    ) -> str:
        self.calls.append((list(history), turn, system_instruction))
        if not self.responses:
            raise AssertionError("StubLLM has no scripted response")
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


class GatedLLM(StubLLM):
    """Like StubLLM, but each call waits until release() is called."""

    def __init__(self, *responses: str | BaseException) -> None:
        super().__init__(*responses)
        self.entered = asyncio.Event()
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def __call__(self, history, turn, system_instruction=None) -> str:
        self.entered.set()
        await self._gate.wait()
        return await super().__call__(history, turn, system_instruction)


class RecordingSleep:
    """Stands in for asyncio.sleep; records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
