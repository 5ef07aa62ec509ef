"""LLM gateway — HTTP connection to a generative-text backend.

The director and the character responder take an injected LLM callable
matching the protocol:

    async def __call__(self, stage: str, prompt: str, image=None) -> str: ...

`stage` identifies which component is calling (e.g. "director",
"character", "probe"). Implementations use it for logging only.

Two implementations are provided:

    GeminiLLM — real HTTP client for the Google Gemini REST API, with
                one-shot and streamed generation.
    EchoLLM   — returns the prompt back unchanged. Useful for smoke-testing
                the wiring without an API key.

Every backend failure is raised as a subclass of LLMError. Callers catch
LLMError and degrade to canned text; the error message is for logs only
and is never shown to end users.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_TIMEOUT = 8.0

GENERATION_CONFIG: dict[str, Any] = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 2048,
}

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_CIVIC_INTEGRITY",
)

# Least restrictive setting everywhere; persona prompts keep output family-friendly.
SAFETY_SETTINGS: list[dict[str, str]] = [
    {"category": category, "threshold": "BLOCK_NONE"} for category in HARM_CATEGORIES
]

_BLOCKED_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Base class for every gateway failure."""

    kind = "error"


class ConfigurationError(LLMError):
    """No API credential is configured."""

    kind = "configuration"


class BlockedError(LLMError):
    """The provider refused the request on content-policy grounds."""

    kind = "blocked"


class EmptyResponseError(LLMError):
    """The provider answered but produced no text."""

    kind = "empty"


class TransportError(LLMError):
    """Network, HTTP or protocol failure talking to the backend."""

    kind = "transport"


# ---------------------------------------------------------------------------
# Image payload
# ---------------------------------------------------------------------------

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)


@dataclass(frozen=True)
class ImagePayload:
    """Binary image content plus its MIME type. Any `image/*` type is accepted."""

    data: bytes
    mime_type: str = "image/jpeg"

    def __post_init__(self) -> None:
        if not self.mime_type.startswith("image/"):
            raise ValueError(f"Not an image MIME type: {self.mime_type!r}")
        if not self.data:
            raise ValueError("Image payload is empty")

    @classmethod
    def from_base64(cls, encoded: str, mime_type: str = "image/jpeg") -> ImagePayload:
        """Decode bare base64 or a `data:image/...;base64,` URL."""
        match = _DATA_URL.match(encoded.strip())
        if match:
            mime_type = match.group("mime")
            encoded = match.group("data")
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("Image data is not valid base64") from e
        return cls(data=data, mime_type=mime_type)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


# ---------------------------------------------------------------------------
# Protocols — every LLM implementation must match these signatures
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(
        self, stage: str, prompt: str, image: ImagePayload | None = None
    ) -> str: ...


class StreamingLLM(LLM, Protocol):
    def stream(
        self, stage: str, prompt: str, image: ImagePayload | None = None
    ) -> AsyncIterator[str]: ...


# ---------------------------------------------------------------------------
# GeminiLLM — connects to the Gemini REST API
# ---------------------------------------------------------------------------

class GeminiLLM:
    """Async HTTP client for the Gemini `generateContent` endpoints.

    Request:  POST {api_base}/models/{model}:generateContent
              {"contents": [{"role": "user", "parts": [...]}],
               "generationConfig": {...}, "safetySettings": [...]}
    Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}

    Streaming uses :streamGenerateContent?alt=sse, which sends one
    response object per `data:` line.

    Args:
        api_key:  Gemini API key. An empty key makes every call raise
                  ConfigurationError.
        model:    Model name. Defaults to "gemini-2.5-flash".
        api_base: Base URL of the REST API.
        timeout:  HTTP timeout in seconds. Defaults to 8. No retries.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = api_base.rstrip("/")
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ConfigurationError("GOOGLE_GENAI_API_KEY is not configured")
        return {"Content-Type": "application/json", "x-goog-api-key": self._api_key}

    def _url(self, method: str) -> str:
        return f"{self._base_url}/models/{self._model}:{method}"

    def _build_body(self, prompt: str, image: ImagePayload | None) -> dict[str, Any]:
        if not prompt.strip():
            raise ValueError("Prompt must not be empty")
        parts: list[dict[str, Any]] = []
        if image is not None:
            parts.append({
                "inlineData": {"mimeType": image.mime_type, "data": image.to_base64()},
            })
        parts.append({"text": prompt})
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": GENERATION_CONFIG,
            "safetySettings": SAFETY_SETTINGS,
        }

    def _extract_text(self, data: dict[str, Any]) -> str:
        """Return the text of one response object; raise BlockedError on refusal."""
        if not isinstance(data, dict):
            raise TransportError("Unexpected response format from Gemini backend")
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise BlockedError(f"Response blocked: {block_reason}")

        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        if not text and candidate.get("finishReason") in _BLOCKED_FINISH_REASONS:
            raise BlockedError(f"Response blocked: {candidate['finishReason']}")
        return text

    async def __call__(
        self, stage: str, prompt: str, image: ImagePayload | None = None
    ) -> str:
        body = self._build_body(prompt, image)
        headers = self._headers()
        url = self._url("generateContent")
        logger.debug(
            "llm call stage=%s model=%s prompt_len=%d image=%s",
            stage, self._model, len(prompt), image is not None,
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to Gemini backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"Gemini backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(f"Gemini backend timed out after {self._timeout}s") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError("Gemini backend returned invalid JSON") from e

        text = self._extract_text(data)
        if not text.strip():
            raise EmptyResponseError("Empty response received")
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text

    async def stream(
        self, stage: str, prompt: str, image: ImagePayload | None = None
    ) -> AsyncIterator[str]:
        """Yield text fragments as the backend produces them.

        Lines are read from the socket only when the consumer asks for the
        next fragment. Closing the generator exits the `async with` blocks,
        which closes the response and the client.
        """
        body = self._build_body(prompt, image)
        headers = self._headers()
        url = self._url("streamGenerateContent")
        logger.debug("llm stream stage=%s model=%s prompt_len=%d", stage, self._model, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                async with client.stream(
                    "POST", url, params={"alt": "sse"}, json=body, headers=headers
                ) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        payload = line[len("data:"):].strip()
                        if not payload:
                            continue
                        try:
                            chunk = json.loads(payload)
                        except json.JSONDecodeError as e:
                            raise TransportError("Gemini stream sent invalid JSON") from e
                        text = self._extract_text(chunk)
                        if text:
                            yield text
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to Gemini backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"Gemini backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(f"Gemini backend timed out after {self._timeout}s") from e


# ---------------------------------------------------------------------------
# EchoLLM — returns the prompt unchanged; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the prompt text as-is. No network calls.

    Lets you run the app end-to-end without credentials. The output is not
    valid director JSON, so every decision takes the fallback path.
    """

    async def __call__(
        self, stage: str, prompt: str, image: ImagePayload | None = None
    ) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        return prompt

    async def stream(
        self, stage: str, prompt: str, image: ImagePayload | None = None
    ) -> AsyncIterator[str]:
        for word in prompt.split(" "):
            yield word + " "


async def check_connection(llm: LLM) -> bool:
    """Return True if the backend answers a trivial prompt with text."""
    try:
        text = await llm("check", "Hello")
    except LLMError as e:
        logger.info("connection check failed: %s", e)
        return False
    return bool(text.strip())
