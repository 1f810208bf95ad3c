"""Generation client — HTTP connection to the Gemini generateContent API.

The session controller injects a generation callable matching the protocol:

    async def __call__(self, history, turn, system_instruction=None) -> str: ...

`history` is the full exchange so far (alternating user/model turns), `turn`
is the new user turn, and `system_instruction` is sent only on the first call
of a session. The return value is the raw JSON text of one scene; parsing and
repair happen in xiantu.scene.

Production code constructs a GeminiLLM from config. Tests use the stub
clients defined in tests/helpers.py instead.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from xiantu.models import ConversationTurn

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash"


# ---------------------------------------------------------------------------
# Protocol — every generation client must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(
        self,
        history: list[ConversationTurn],
        turn: ConversationTurn,
        system_instruction: str | None = None,
    ) -> str: ...


# ---------------------------------------------------------------------------
# Errors — raised by GeminiLLM for all credential, connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the generation backend cannot be reached or returns an error."""


class MissingCredential(LLMError):
    """No API key is configured."""


class InvalidCredential(LLMError):
    """The backend rejected the API key."""


class TransientUpstreamOverload(LLMError):
    """The backend is overloaded or unavailable; worth retrying shortly."""


def is_overloaded(exc: BaseException) -> bool:
    """Retry predicate for generation calls."""
    return isinstance(exc, TransientUpstreamOverload)


# ---------------------------------------------------------------------------
# Response schema — constrains the model to the scene object
# ---------------------------------------------------------------------------

SCENE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING"},
        "tags": {"type": "ARRAY", "items": {"type": "STRING"}},
        "scene_art": {"type": "ARRAY", "items": {"type": "STRING"}},
        "description": {"type": "STRING"},
        "system_message": {"type": "STRING"},
        "options": {"type": "ARRAY", "items": {"type": "STRING"}},
        "state": {"type": "STRING", "enum": ["ongoing", "ended"]},
        "ending_keyword": {"type": "STRING"},
    },
    "required": ["title", "tags", "description", "options", "state"],
    "propertyOrdering": [
        "title", "tags", "scene_art", "description",
        "system_message", "options", "state", "ending_keyword",
    ],
}


# ---------------------------------------------------------------------------
# GeminiLLM — connects to the real backend
# ---------------------------------------------------------------------------

class GeminiLLM:
    """Async HTTP client for Gemini's generateContent endpoint.

    POST {base_url}/models/{model}:generateContent
      {"contents": [{"role": ..., "parts": [{"text": ...}]}, ...],
       "systemInstruction": {"parts": [{"text": ...}]},      (first call only)
       "generationConfig": {"responseMimeType": "application/json",
                            "responseSchema": SCENE_SCHEMA}}
    Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}

    Args:
        api_key:  Gemini API key. May be set later; an empty key fails each
                  call with MissingCredential before any request is made.
        model:    Model identifier. Defaults to "gemini-2.5-flash". Public so a
                  settings change applies to the running client.
        base_url: API root. Defaults to the public v1beta endpoint.
        timeout:  HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    def _build_request(
        self,
        history: list[ConversationTurn],
        turn: ConversationTurn,
        system_instruction: str | None,
    ) -> tuple[str, dict]:
        """Return (url, body) for one generateContent call."""
        url = f"{self._base_url}/models/{self.model}:generateContent"
        body: dict[str, Any] = {
            "contents": [
                {"role": t.role, "parts": [{"text": t.text}]}
                for t in [*history, turn]
            ],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": SCENE_SCHEMA,
            },
        }
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        return url, body

    def _parse_response(self, data: dict) -> str:
        """Extract the text of the first candidate."""
        candidates = data.get("candidates")
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            if reason:
                raise LLMError(f"Gemini blocked the prompt ({reason})")
            raise LLMError("Unexpected response format from Gemini")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        if not text:
            raise LLMError(
                f"Gemini returned no text (finishReason={candidates[0].get('finishReason')})"
            )
        return text

    def _status_error(self, resp: httpx.Response) -> LLMError:
        """Classify an HTTP error response."""
        status = resp.status_code
        try:
            err = resp.json().get("error", {})
        except ValueError:
            err = {}
        marker = err.get("status", "") if isinstance(err, dict) else ""
        body = resp.text or ""

        if status == 503 or marker == "UNAVAILABLE":
            return TransientUpstreamOverload(f"Gemini is overloaded (HTTP {status})")
        if status in (401, 403) or "API_KEY_INVALID" in body:
            return InvalidCredential(f"Gemini rejected the API key (HTTP {status})")
        return LLMError(f"Gemini returned HTTP {status}")

    async def __call__(
        self,
        history: list[ConversationTurn],
        turn: ConversationTurn,
        system_instruction: str | None = None,
    ) -> str:
        if not self.api_key:
            raise MissingCredential("Gemini API key is not configured")

        url, body = self._build_request(history, turn, system_instruction)
        logger.debug(
            "llm call model=%s history=%d turn_len=%d system=%s",
            self.model, len(history), len(turn.text), bool(system_instruction),
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to Gemini at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise self._status_error(e.response) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"Gemini timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"Gemini request failed: {e!r}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("Gemini returned a body that is not JSON") from e
        if not isinstance(data, dict):
            raise LLMError("Unexpected response format from Gemini")
        text = self._parse_response(data)
        logger.debug("llm response len=%d", len(text))
        return text
