"""Tests for chatgroup.llm — GeminiLLM, EchoLLM, ImagePayload."""

import base64
import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chatgroup.llm import (
    HARM_CATEGORIES,
    BlockedError,
    ConfigurationError,
    EchoLLM,
    EmptyResponseError,
    GeminiLLM,
    ImagePayload,
    TransportError,
    check_connection,
)
from helpers import StubLLM


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _text_body(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": "STOP"}]}


# ---------------------------------------------------------------------------
# EchoLLM
# ---------------------------------------------------------------------------

class TestEchoLLM:
    async def test_returns_prompt_unchanged(self) -> None:
        llm = EchoLLM()
        assert await llm("director", "hello world") == "hello world"

    async def test_stream_yields_words(self) -> None:
        llm = EchoLLM()
        chunks = [c async for c in llm.stream("character", "a b c")]
        assert "".join(chunks).strip() == "a b c"
        assert len(chunks) == 3


# ---------------------------------------------------------------------------
# ImagePayload
# ---------------------------------------------------------------------------

class TestImagePayload:
    def test_bare_base64_defaults_to_jpeg(self) -> None:
        img = ImagePayload.from_base64(base64.b64encode(b"\xff\xd8jpeg").decode())
        assert img.mime_type == "image/jpeg"
        assert img.data == b"\xff\xd8jpeg"

    def test_data_url_sets_mime_type(self) -> None:
        encoded = base64.b64encode(b"\x89PNG").decode()
        img = ImagePayload.from_base64(f"data:image/png;base64,{encoded}")
        assert img.mime_type == "image/png"
        assert img.to_base64() == encoded

    def test_invalid_base64_rejected(self) -> None:
        with pytest.raises(ValueError):
            ImagePayload.from_base64("not base64 at all!!")

    def test_non_image_mime_rejected(self) -> None:
        with pytest.raises(ValueError):
            ImagePayload(data=b"x", mime_type="application/pdf")


# ---------------------------------------------------------------------------
# GeminiLLM — generateContent
# ---------------------------------------------------------------------------

class TestGeminiLLM:
    @pytest.fixture
    def llm(self) -> GeminiLLM:
        return GeminiLLM(api_key="secret", model="gemini-test", api_base="http://gemini.local/v1beta/")

    async def test_happy_path(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("Elementary.")))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm("character", "Say something.")
        assert result == "Elementary."

    async def test_posts_to_model_url(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("character", "prompt")
        url = mock_post.call_args[0][0]
        assert url == "http://gemini.local/v1beta/models/gemini-test:generateContent"

    async def test_api_key_sent_in_header(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("character", "prompt")
        headers = mock_post.call_args.kwargs["headers"]
        assert headers["x-goog-api-key"] == "secret"

    async def test_safety_settings_least_restrictive(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("character", "prompt")
        settings = mock_post.call_args.kwargs["json"]["safetySettings"]
        assert {s["category"] for s in settings} == set(HARM_CATEGORIES)
        assert all(s["threshold"] == "BLOCK_NONE" for s in settings)

    async def test_text_only_body(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("character", "my prompt")
        contents = mock_post.call_args.kwargs["json"]["contents"]
        assert contents == [{"role": "user", "parts": [{"text": "my prompt"}]}]

    async def test_image_sent_as_inline_data(self, llm: GeminiLLM) -> None:
        image = ImagePayload(data=b"\x89PNG", mime_type="image/png")
        mock_post = AsyncMock(return_value=_mock_response(_text_body("A cat.")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("image", "What is this?", image)
        parts = mock_post.call_args.kwargs["json"]["contents"][0]["parts"]
        assert parts[0] == {
            "inlineData": {"mimeType": "image/png", "data": base64.b64encode(b"\x89PNG").decode()},
        }
        assert parts[1] == {"text": "What is this?"}

    async def test_multiple_parts_joined(self, llm: GeminiLLM) -> None:
        body = {"candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there"}]}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm("character", "prompt") == "Hello there"

    async def test_missing_api_key_raises_configuration_error(self) -> None:
        llm = GeminiLLM(api_key="")
        mock_post = AsyncMock()
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ConfigurationError):
                await llm("character", "prompt")
        mock_post.assert_not_called()

    async def test_empty_prompt_rejected(self, llm: GeminiLLM) -> None:
        with pytest.raises(ValueError):
            await llm("character", "   ")

    async def test_prompt_feedback_block_raises_blocked_error(self, llm: GeminiLLM) -> None:
        body = {"promptFeedback": {"blockReason": "PROHIBITED_CONTENT"}}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(BlockedError):
                await llm("character", "prompt")

    async def test_safety_finish_without_text_raises_blocked_error(self, llm: GeminiLLM) -> None:
        body = {"candidates": [{"finishReason": "SAFETY"}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(BlockedError):
                await llm("character", "prompt")

    async def test_no_candidates_raises_empty_response(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"candidates": []}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(EmptyResponseError):
                await llm("character", "prompt")

    async def test_whitespace_text_raises_empty_response(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("  \n")))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(EmptyResponseError):
                await llm("character", "prompt")

    async def test_connect_error_raises_transport_error(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(TransportError, match="Cannot connect"):
                await llm("character", "prompt")

    async def test_timeout_raises_transport_error(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(TransportError, match="timed out"):
                await llm("character", "prompt")

    async def test_http_error_raises_transport_error(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=503))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(TransportError, match="HTTP 503"):
                await llm("character", "prompt")

    async def test_invalid_json_raises_transport_error(self, llm: GeminiLLM) -> None:
        resp = _mock_response({})
        resp.json.side_effect = ValueError("not json")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(TransportError):
                await llm("character", "prompt")


# ---------------------------------------------------------------------------
# GeminiLLM — streaming
# ---------------------------------------------------------------------------

class _FakeStreamResponse:
    def __init__(self, lines: list[str], status: int = 200) -> None:
        self.lines = lines
        self.status_code = status
        self.lines_read = 0
        self.closed = False
        self.request_kwargs: dict = {}

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("", request=MagicMock(), response=self)

    async def aiter_lines(self):
        for line in self.lines:
            self.lines_read += 1
            yield line


def _patch_stream(fake: _FakeStreamResponse):
    @asynccontextmanager
    async def fake_stream(self, method, url, **kwargs):
        fake.request_kwargs = {"method": method, "url": url, **kwargs}
        try:
            yield fake
        finally:
            fake.closed = True

    return patch.object(httpx.AsyncClient, "stream", fake_stream)


def _sse(text: str) -> str:
    return "data: " + json.dumps(_text_body(text))


class TestGeminiLLMStream:
    @pytest.fixture
    def llm(self) -> GeminiLLM:
        return GeminiLLM(api_key="secret", model="gemini-test", api_base="http://gemini.local/v1beta")

    async def test_yields_fragments_in_order(self, llm: GeminiLLM) -> None:
        fake = _FakeStreamResponse([_sse("Ele"), "", _sse("men"), "", _sse("tary.")])
        with _patch_stream(fake):
            chunks = [c async for c in llm.stream("character", "prompt")]
        assert chunks == ["Ele", "men", "tary."]
        assert fake.closed

    async def test_requests_sse_endpoint(self, llm: GeminiLLM) -> None:
        fake = _FakeStreamResponse([_sse("ok")])
        with _patch_stream(fake):
            [c async for c in llm.stream("character", "prompt")]
        assert fake.request_kwargs["method"] == "POST"
        assert fake.request_kwargs["url"].endswith("models/gemini-test:streamGenerateContent")
        assert fake.request_kwargs["params"] == {"alt": "sse"}

    async def test_abandoning_iteration_stops_reading(self, llm: GeminiLLM) -> None:
        fake = _FakeStreamResponse([_sse("one"), _sse("two"), _sse("three"), _sse("four")])
        with _patch_stream(fake):
            stream = llm.stream("character", "prompt")
            first = await stream.__anext__()
            await stream.aclose()
        assert first == "one"
        assert fake.lines_read == 1
        assert fake.closed

    async def test_empty_fragments_skipped(self, llm: GeminiLLM) -> None:
        fake = _FakeStreamResponse([_sse(""), _sse("text")])
        with _patch_stream(fake):
            chunks = [c async for c in llm.stream("character", "prompt")]
        assert chunks == ["text"]

    async def test_blocked_chunk_raises(self, llm: GeminiLLM) -> None:
        blocked = "data: " + json.dumps({"promptFeedback": {"blockReason": "SAFETY"}})
        fake = _FakeStreamResponse([blocked])
        with _patch_stream(fake):
            with pytest.raises(BlockedError):
                [c async for c in llm.stream("character", "prompt")]

    async def test_http_error_raises_transport_error(self, llm: GeminiLLM) -> None:
        fake = _FakeStreamResponse([], status=500)
        with _patch_stream(fake):
            with pytest.raises(TransportError, match="HTTP 500"):
                [c async for c in llm.stream("character", "prompt")]

    async def test_missing_api_key(self) -> None:
        llm = GeminiLLM(api_key="")
        with pytest.raises(ConfigurationError):
            [c async for c in llm.stream("character", "prompt")]


# ---------------------------------------------------------------------------
# check_connection
# ---------------------------------------------------------------------------

class TestCheckConnection:
    async def test_true_when_model_answers(self) -> None:
        assert await check_connection(StubLLM("Hi!")) is True

    async def test_false_on_gateway_error(self) -> None:
        assert await check_connection(StubLLM(TransportError("down"))) is False

    async def test_false_without_credentials(self) -> None:
        assert await check_connection(GeminiLLM(api_key="")) is False
