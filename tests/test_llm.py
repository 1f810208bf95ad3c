"""Tests for xiantu.llm — GeminiLLM request building and error mapping."""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from xiantu.llm import (
    SCENE_SCHEMA,
    GeminiLLM,
    InvalidCredential,
    LLMError,
    MissingCredential,
    TransientUpstreamOverload,
)
from xiantu.models import ConversationTurn


def _mock_response(body: dict, status: int = 200, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.text = text
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _ok(text: str = '{"title": "Woodshed"}') -> MagicMock:
    return _mock_response({"candidates": [{"content": {"parts": [{"text": text}]}}]})


USER = ConversationTurn(role="user", text="The game begins.")
HISTORY = [
    ConversationTurn(role="user", text="start"),
    ConversationTurn(role="model", text='{"title": "Woodshed"}'),
]


@pytest.fixture
def llm() -> GeminiLLM:
    return GeminiLLM(api_key="secret")


# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------

class TestRequest:
    async def test_happy_path(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_ok('{"title": "Gate"}'))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm([], USER)
        assert result == '{"title": "Gate"}'

    async def test_posts_to_model_url(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_ok())
        with patch("httpx.AsyncClient.post", mock_post):
            await llm([], USER)
        url = mock_post.call_args[0][0]
        assert url == (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            "gemini-2.5-flash:generateContent"
        )

    async def test_custom_model_and_base_url(self) -> None:
        llm = GeminiLLM(api_key="k", model="gemini-2.0-pro", base_url="http://localhost:9000/")
        mock_post = AsyncMock(return_value=_ok())
        with patch("httpx.AsyncClient.post", mock_post):
            await llm([], USER)
        assert mock_post.call_args[0][0] == "http://localhost:9000/models/gemini-2.0-pro:generateContent"

    async def test_api_key_header(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_ok())
        with patch("httpx.AsyncClient.post", mock_post):
            await llm([], USER)
        headers = mock_post.call_args.kwargs["headers"]
        assert headers["x-goog-api-key"] == "secret"

    async def test_contents_are_history_plus_turn(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_ok())
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(HISTORY, USER)
        body = mock_post.call_args.kwargs["json"]
        assert body["contents"] == [
            {"role": "user", "parts": [{"text": "start"}]},
            {"role": "model", "parts": [{"text": '{"title": "Woodshed"}'}]},
            {"role": "user", "parts": [{"text": "The game begins."}]},
        ]

    async def test_json_mode_with_schema(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_ok())
        with patch("httpx.AsyncClient.post", mock_post):
            await llm([], USER)
        config = mock_post.call_args.kwargs["json"]["generationConfig"]
        assert config["responseMimeType"] == "application/json"
        assert config["responseSchema"] == SCENE_SCHEMA

    async def test_system_instruction_only_when_given(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_ok())
        with patch("httpx.AsyncClient.post", mock_post):
            await llm([], USER, "You are the GM.")
            await llm(HISTORY, USER)
        first = mock_post.call_args_list[0].kwargs["json"]
        second = mock_post.call_args_list[1].kwargs["json"]
        assert first["systemInstruction"] == {"parts": [{"text": "You are the GM."}]}
        assert "systemInstruction" not in second

    async def test_multi_part_text_joined(self, llm: GeminiLLM) -> None:
        body = {"candidates": [{"content": {"parts": [{"text": '{"a":'}, {"text": " 1}"}]}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm([], USER) == '{"a": 1}'


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

class TestErrors:
    async def test_missing_key_makes_no_request(self) -> None:
        llm = GeminiLLM(api_key="")
        mock_post = AsyncMock(return_value=_ok())
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(MissingCredential):
                await llm([], USER)
        mock_post.assert_not_called()

    async def test_key_set_after_construction(self) -> None:
        llm = GeminiLLM()
        llm.api_key = "late"
        mock_post = AsyncMock(return_value=_ok())
        with patch("httpx.AsyncClient.post", mock_post):
            await llm([], USER)
        assert mock_post.call_args.kwargs["headers"]["x-goog-api-key"] == "late"

    async def test_503_is_transient(self, llm: GeminiLLM) -> None:
        resp = _mock_response({"error": {"code": 503, "status": "UNAVAILABLE"}}, status=503)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(TransientUpstreamOverload, match="overloaded"):
                await llm([], USER)

    async def test_unavailable_marker_is_transient(self, llm: GeminiLLM) -> None:
        resp = _mock_response({"error": {"code": 500, "status": "UNAVAILABLE"}}, status=500)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(TransientUpstreamOverload):
                await llm([], USER)

    async def test_invalid_key(self, llm: GeminiLLM) -> None:
        body = {"error": {"code": 400, "status": "INVALID_ARGUMENT",
                          "details": [{"reason": "API_KEY_INVALID"}]}}
        resp = _mock_response(body, status=400, text='{"reason": "API_KEY_INVALID"}')
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(InvalidCredential):
                await llm([], USER)

    async def test_403_is_invalid_credential(self, llm: GeminiLLM) -> None:
        resp = _mock_response({"error": {"code": 403, "status": "PERMISSION_DENIED"}}, status=403)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(InvalidCredential):
                await llm([], USER)

    async def test_other_status_is_plain_llm_error(self, llm: GeminiLLM) -> None:
        resp = _mock_response({"error": {"code": 500, "status": "INTERNAL"}}, status=500)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMError, match="HTTP 500") as exc_info:
                await llm([], USER)
        assert type(exc_info.value) is LLMError

    async def test_connect_error(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Cannot connect"):
                await llm([], USER)

    async def test_timeout(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="timed out"):
                await llm([], USER)

    async def test_read_error(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ReadError("connection reset"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="request failed"):
                await llm([], USER)

    async def test_remote_protocol_error(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.RemoteProtocolError("peer closed"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError):
                await llm([], USER)

    async def test_body_not_json(self, llm: GeminiLLM) -> None:
        resp = _mock_response({})
        resp.json.side_effect = ValueError("Expecting value")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMError, match="not JSON"):
                await llm([], USER)

    async def test_body_not_object(self, llm: GeminiLLM) -> None:
        resp = _mock_response({})
        resp.json.return_value = ["candidates"]
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm([], USER)

    async def test_model_change_applies_to_next_call(self, llm: GeminiLLM) -> None:
        llm.model = "gemini-2.0-flash"
        mock_post = AsyncMock(return_value=_ok())
        with patch("httpx.AsyncClient.post", mock_post):
            await llm([], USER)
        assert "/models/gemini-2.0-flash:generateContent" in mock_post.call_args[0][0]

    async def test_no_candidates(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"unexpected": "format"}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm([], USER)

    async def test_blocked_prompt(self, llm: GeminiLLM) -> None:
        body = {"promptFeedback": {"blockReason": "SAFETY"}}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(LLMError, match="SAFETY"):
                await llm([], USER)

    async def test_empty_candidate(self, llm: GeminiLLM) -> None:
        body = {"candidates": [{"finishReason": "MAX_TOKENS", "content": {"parts": []}}]}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(LLMError, match="MAX_TOKENS"):
                await llm([], USER)
