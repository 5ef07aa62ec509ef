"""Character responder — persona prompts, generation and canned fallbacks.

Every public method that produces chat content follows the same two-stage
shape: try the model, and on any gateway or template failure hand over to a
named fallback that needs no I/O. A turn therefore always completes with
something the user can read, and raw provider errors only reach the logs.

History rendering: the last CONTEXT_WINDOW messages become
"<speaker>: <content>" lines. User lines are "User", director lines are
"Director", assistant lines carry their author's name looked up in the
roster ("Unknown" once the author has left the room).
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

from chatgroup.llm import LLM, ImagePayload, LLMError
from chatgroup.models import Character, CharacterResponse, Message
from chatgroup.prompts import (
    CHARACTER_PROMPT,
    IMAGE_PROMPT,
    INTRODUCTION_PROMPT,
    NO_RECENT_MESSAGES,
    PROBE_PROMPT,
    PromptError,
    render_prompt,
)

logger = logging.getLogger(__name__)

CONTEXT_WINDOW = 10

IMAGE_PLACEHOLDER_MESSAGE = "Please analyze this image"

APOLOGY = "Sorry, I encountered an error processing your request."

# (keywords, template) — first rule with a matching keyword wins
FALLBACK_RULES: list[tuple[tuple[str, ...], str]] = [
    (("hello", "hi"), "Hello! I'm {name}. {description}"),
    (
        ("how are you",),
        "I'm doing well, thank you for asking! As {name}, I'm always eager "
        "to share my knowledge and insights.",
    ),
    (
        ("what do you think", "opinion"),
        "That's an interesting question! From my perspective as {name}, I'd "
        "need to think about this more carefully. Could you provide more context?",
    ),
]

DEFAULT_FALLBACK = (
    "I appreciate your question! As {name}, I find this topic quite "
    "fascinating. {description} Perhaps we could explore this further?"
)


@dataclass(frozen=True)
class ReplyContext:
    """The message a user turn replies to, as shown to the model."""

    author_name: str
    content: str


def contains_keyword(text: str, keyword: str) -> bool:
    """Case-insensitive whole-word (or whole-phrase) match."""
    return re.search(rf"\b{re.escape(keyword)}\b", text, re.IGNORECASE) is not None


def fallback_reply(character: Character, user_message: str) -> str:
    """Deterministic in-character reply used when the model is unavailable."""
    for keywords, template in FALLBACK_RULES:
        if any(contains_keyword(user_message, kw) for kw in keywords):
            return template.format(name=character.name, description=character.description)
    return DEFAULT_FALLBACK.format(name=character.name, description=character.description)


def speaker_label(message: Message, roster: Sequence[Character]) -> str:
    if message.role == "user":
        return "User"
    if message.role == "director":
        return "Director"
    for char in roster:
        if char.id == message.character_id:
            return char.name
    return "Unknown"


def render_history(
    history: Sequence[Message], roster: Sequence[Character], limit: int
) -> str:
    """Render the last `limit` messages, or the placeholder when there are none."""
    lines = [f"{speaker_label(m, roster)}: {m.content}" for m in list(history)[-limit:]]
    return "\n".join(lines) or NO_RECENT_MESSAGES


def resolve_reply_context(
    reply_to: str | None, history: Sequence[Message], roster: Sequence[Character]
) -> ReplyContext | None:
    """Look up the replied-to message in history; None if it is not there."""
    if not reply_to:
        return None
    for message in history:
        if message.id == reply_to:
            return ReplyContext(
                author_name=speaker_label(message, roster),
                content=message.content,
            )
    return None


class CharacterResponder:
    """Generates replies for characters through an injected LLM."""

    def __init__(self, llm: LLM) -> None:
        self._llm = llm

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def build_prompt(
        self,
        character: Character,
        user_message: str,
        history: Sequence[Message],
        reply_context: ReplyContext | None = None,
        roster: Sequence[Character] | None = None,
    ) -> str:
        context = {
            "name": character.name,
            "description": character.description,
            "history": render_history(history, roster or [character], CONTEXT_WINDOW),
            "message": user_message,
        }
        if reply_context is not None:
            context["reply_to_name"] = reply_context.author_name
            context["reply_to_content"] = reply_context.content
        return render_prompt(CHARACTER_PROMPT, context)

    def build_image_prompt(
        self, character: Character, user_message: str, broadcast: bool
    ) -> str:
        return render_prompt(IMAGE_PROMPT, {
            "name": character.name,
            "description": character.description,
            "message": user_message or IMAGE_PLACEHOLDER_MESSAGE,
            "broadcast": broadcast,
        })

    # ------------------------------------------------------------------
    # Text replies
    # ------------------------------------------------------------------

    async def _generate(
        self,
        character: Character,
        user_message: str,
        history: Sequence[Message],
        reply_context: ReplyContext | None,
        roster: Sequence[Character] | None,
    ) -> str:
        prompt = self.build_prompt(character, user_message, history, reply_context, roster)
        text = await self._llm("character", prompt)
        return text.strip()

    async def respond(
        self,
        character: Character,
        user_message: str,
        history: Sequence[Message],
        reply_context: ReplyContext | None = None,
        roster: Sequence[Character] | None = None,
    ) -> CharacterResponse:
        """Reply in character. Backend failures degrade to fallback_reply()."""
        try:
            content = await self._generate(
                character, user_message, history, reply_context, roster
            )
        except (LLMError, PromptError) as e:
            logger.warning("character %s: generation failed (%s), using fallback", character.id, e)
            content = ""
        if not content:
            content = fallback_reply(character, user_message)
        return CharacterResponse(content=content, character_id=character.id)

    async def respond_to_image(
        self,
        character: Character,
        user_message: str,
        image: ImagePayload,
        broadcast: bool = False,
    ) -> CharacterResponse:
        """Reply to a shared image. Failures become the generic apology."""
        try:
            prompt = self.build_image_prompt(character, user_message, broadcast)
            text = (await self._llm("image", prompt, image)).strip()
        except (LLMError, PromptError) as e:
            logger.warning("character %s: image reply failed (%s)", character.id, e)
            kind = e.kind if isinstance(e, LLMError) else "prompt"
            return CharacterResponse(content=APOLOGY, character_id=character.id, error=kind)
        if not text:
            return CharacterResponse(content=APOLOGY, character_id=character.id, error="empty")
        return CharacterResponse(content=text, character_id=character.id)

    async def respond_all(
        self,
        characters: Sequence[Character],
        user_message: str,
        history: Sequence[Message],
        image: ImagePayload | None = None,
        reply_context: ReplyContext | None = None,
        roster: Sequence[Character] | None = None,
    ) -> list[CharacterResponse]:
        """Fan out over characters concurrently and collect every outcome.

        One entry per character, in input order. A character whose task
        raised gets empty content and an error marker; the others are
        unaffected.
        """
        if image is not None:
            tasks = [
                self.respond_to_image(char, user_message, image, broadcast=True)
                for char in characters
            ]
        else:
            tasks = [
                self.respond(char, user_message, history, reply_context, roster)
                for char in characters
            ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        responses: list[CharacterResponse] = []
        for char, result in zip(characters, results):
            if isinstance(result, BaseException):
                logger.error("character %s: response task failed: %r", char.id, result)
                responses.append(CharacterResponse(
                    content="", character_id=char.id,
                    error=str(result) or "Failed to generate response",
                ))
            else:
                responses.append(result)
        return responses

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(
        self,
        character: Character,
        user_message: str,
        history: Sequence[Message],
        roster: Sequence[Character] | None = None,
    ) -> AsyncIterator[str]:
        """Yield reply fragments as they arrive. Errors reach the consumer."""
        stream = getattr(self._llm, "stream", None)
        if stream is None:
            raise TypeError(f"{type(self._llm).__name__} does not support streaming")
        prompt = self.build_prompt(character, user_message, history, roster=roster)
        async for chunk in stream("character", prompt):
            yield chunk

    # ------------------------------------------------------------------
    # Probe and introduction
    # ------------------------------------------------------------------

    async def should_respond(self, character: Character, user_message: str) -> bool:
        """Ask the character whether to join in. Unclear answers mean yes."""
        try:
            prompt = render_prompt(PROBE_PROMPT, {
                "name": character.name,
                "description": character.description,
                "message": user_message,
            })
            answer = (await self._llm("probe", prompt)).strip().lower()
        except (LLMError, PromptError) as e:
            logger.info("character %s: probe failed (%s), assuming yes", character.id, e)
            return True
        if answer == "no":
            return False
        if answer != "yes":
            logger.debug("character %s: unparseable probe answer %r", character.id, answer)
        return True

    async def introduce(self, character: Character) -> str:
        try:
            prompt = render_prompt(INTRODUCTION_PROMPT, {
                "name": character.name,
                "description": character.description,
            })
            text = (await self._llm("introduction", prompt)).strip()
        except (LLMError, PromptError) as e:
            logger.info("character %s: introduction failed (%s)", character.id, e)
            text = ""
        return text or f"Hello! I'm {character.name}. {character.description}"
