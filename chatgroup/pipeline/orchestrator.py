"""Pipeline orchestrator — runs one user turn end-to-end.

Turn flow:
  1. parse_turn() validates the raw request body (400 on bad input).
  2. The Director picks the responder(s).
  3. Broadcast → CharacterResponder.respond_all() fans out concurrently.
     Single    → one respond() call.
     Image turns use the image-aware prompt for every responder.
  4. Replies are assembled in roster order with the character's name.
     The director's reason rides along as metadata and never becomes a
     chat message.

Nothing here mutates the caller's room; the caller appends the returned
replies to its own log.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from chatgroup.characters import (
    APOLOGY,
    IMAGE_PLACEHOLDER_MESSAGE,
    CharacterResponder,
    resolve_reply_context,
)
from chatgroup.director import Director
from chatgroup.llm import LLM, ImagePayload
from chatgroup.models import Character, CharacterResponse, Message, check_unique_ids

logger = logging.getLogger(__name__)


class TurnError(Exception):
    """A turn that cannot be answered. `status` is the HTTP-equivalent class."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


# ---------------------------------------------------------------------------
# Request / result types
# ---------------------------------------------------------------------------

class ChatTurn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    user_message: str = Field(default="", alias="userMessage")
    image_data: str | None = Field(default=None, alias="imageData")
    characters: list[Character]
    messages: list[Message] = Field(default_factory=list)
    reply_to: str | None = Field(default=None, alias="replyTo")

    @model_validator(mode="after")
    def _unique_character_ids(self) -> ChatTurn:
        check_unique_ids(self.characters)
        return self

    @property
    def effective_message(self) -> str:
        return self.user_message or IMAGE_PLACEHOLDER_MESSAGE


class RoomReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str
    character_id: str = Field(alias="characterId")
    character_name: str = Field(alias="characterName")


class DecisionSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    should_broadcast: bool = Field(alias="shouldMultipleRespond")
    reason: str


class TurnResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    responses: list[RoomReply]
    director_decision: DecisionSummary = Field(alias="directorDecision")


def parse_turn(body: Any) -> ChatTurn:
    """Validate a raw request body. Raises TurnError(400) on bad input."""
    if not isinstance(body, dict):
        raise TurnError(400, "Missing required fields")
    if (
        not body.get("roomId")
        or (not body.get("userMessage") and not body.get("imageData"))
        or not isinstance(body.get("characters"), list)
    ):
        raise TurnError(400, "Missing required fields")
    payload = dict(body)
    if payload.get("messages") is None:
        payload["messages"] = []
    try:
        return ChatTurn.model_validate(payload)
    except ValidationError as e:
        raise TurnError(400, f"Invalid request: {e.error_count()} invalid fields") from e


# ---------------------------------------------------------------------------
# Turn
# ---------------------------------------------------------------------------

async def run_turn(
    *,
    turn: ChatTurn,
    llm: LLM,
    director: Director | None = None,
    responder: CharacterResponder | None = None,
) -> TurnResult:
    """Decide who answers and collect their replies."""
    director = director or Director(llm)
    responder = responder or CharacterResponder(llm)

    if not turn.characters:
        raise TurnError(500, "No character selected")

    image = None
    if turn.image_data:
        try:
            image = ImagePayload.from_base64(turn.image_data)
        except ValueError as e:
            raise TurnError(400, "Invalid image data") from e

    message = turn.effective_message
    decision = await director.decide(
        turn.characters, turn.messages, message, reply_to=turn.reply_to,
    )
    logger.info(
        "room %s: %s (%s)", turn.room_id,
        [c.id for c in decision.selected_characters], decision.reason,
    )

    reply_context = resolve_reply_context(turn.reply_to, turn.messages, turn.characters)

    if decision.should_broadcast:
        responders = list(decision.selected_characters)
        results = await responder.respond_all(
            responders, message, turn.messages,
            image=image, reply_context=reply_context, roster=turn.characters,
        )
    else:
        character = decision.selected_characters[0]
        responders = [character]
        if image is not None:
            result = await responder.respond_to_image(character, message, image)
        else:
            result = await responder.respond(
                character, message, turn.messages,
                reply_context=reply_context, roster=turn.characters,
            )
        results = [result]

    return TurnResult(
        responses=_assemble(responders, results),
        director_decision=DecisionSummary(
            should_broadcast=decision.should_broadcast, reason=decision.reason,
        ),
    )


def _assemble(
    responders: list[Character], results: list[CharacterResponse]
) -> list[RoomReply]:
    """Pair replies with character names, in roster order.

    Only characters that were actually asked get an entry.
    """
    by_id = {r.character_id: r for r in results}
    replies: list[RoomReply] = []
    for char in responders:
        result = by_id.get(char.id)
        content = result.content if result is not None else ""
        if not content:
            if result is not None and result.error:
                logger.warning("character %s failed: %s", char.id, result.error)
            content = APOLOGY
        replies.append(RoomReply(content=content, character_id=char.id, character_name=char.name))
    return replies
