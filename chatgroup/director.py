"""Director — decides which character(s) answer a user turn.

Decision order:
  1. Reply-pin     the turn replies to an assistant message whose author is
                   still in the roster → that author alone, no model call.
  2. Model         ask the LLM for {shouldMultipleRespond,
                   selectedCharacterIds, reason} as bare JSON.
  3. Parse         parse_decision() turns the raw text into ParsedDecision
                   or ParseFailure. All validation lives there.
  4. Fallback      any gateway error or ParseFailure → fallback_decision():
                   group keywords select the whole roster, otherwise the
                   first character answers alone.

Selections always come back non-empty and in roster order.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, ValidationError

from chatgroup.characters import contains_keyword
from chatgroup.llm import LLM, LLMError
from chatgroup.models import Character, DirectorDecision, Message
from chatgroup.prompts import DIRECTOR_PROMPT, NO_RECENT_MESSAGES, PromptError, render_prompt

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 5

GROUP_KEYWORDS = (
    "everyone",
    "everybody",
    "all",
    "all of you",
    "what do you all think",
)


class MalformedDecisionError(ValueError):
    """The director model's output is not a usable decision."""


# ---------------------------------------------------------------------------
# Parse results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedDecision:
    should_broadcast: bool
    characters: tuple[Character, ...]
    reason: str


@dataclass(frozen=True)
class ParseFailure:
    error: str
    # short category for the fallback reason; `error` only goes to the logs
    kind: str = "invalid decision"


DecisionParse = ParsedDecision | ParseFailure


class _DecisionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    should_multiple_respond: StrictBool = Field(alias="shouldMultipleRespond")
    selected_character_ids: list[StrictStr] = Field(alias="selectedCharacterIds", min_length=1)
    reason: StrictStr


_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def clean_response_text(text: str) -> str:
    """Strip markdown fences and cut the outermost {...} span."""
    cleaned = _FENCE.sub("", text)
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end < start:
        return cleaned.strip()
    return cleaned[start:end + 1]


def _load_payload(text: str) -> _DecisionPayload:
    try:
        data = json.loads(clean_response_text(text))
    except json.JSONDecodeError as e:
        raise MalformedDecisionError(f"invalid JSON: {e}") from e
    try:
        return _DecisionPayload.model_validate(data)
    except ValidationError as e:
        raise MalformedDecisionError(
            f"invalid decision object ({e.error_count()} errors)"
        ) from e


def parse_decision(text: str, characters: Sequence[Character]) -> DecisionParse:
    """Validate raw director output against the roster.

    Rejects output that is not a JSON object with all three fields, has an
    empty id list, or names any id that is not in the roster. A single-responder
    decision keeps only the first selected character in roster order.
    """
    try:
        payload = _load_payload(text)
    except MalformedDecisionError as e:
        return ParseFailure(error=str(e))

    known = {char.id for char in characters}
    unknown = [cid for cid in payload.selected_character_ids if cid not in known]
    if unknown:
        return ParseFailure(error=f"unknown character ids: {', '.join(unknown)}")

    wanted = set(payload.selected_character_ids)
    selected = tuple(char for char in characters if char.id in wanted)
    if not payload.should_multiple_respond:
        selected = selected[:1]
    return ParsedDecision(
        should_broadcast=payload.should_multiple_respond,
        characters=selected,
        reason=payload.reason,
    )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def find_message(messages: Sequence[Message], message_id: str | None) -> Message | None:
    if not message_id:
        return None
    for message in messages:
        if message.id == message_id:
            return message
    return None


def pinned_character(
    characters: Sequence[Character], messages: Sequence[Message], reply_to: str | None
) -> Character | None:
    """Author of the replied-to assistant message, if still in the roster."""
    target = find_message(messages, reply_to)
    if target is None or target.role != "assistant":
        return None
    for char in characters:
        if char.id == target.character_id:
            return char
    return None


def is_group_message(user_message: str) -> bool:
    return any(contains_keyword(user_message, kw) for kw in GROUP_KEYWORDS)


def fallback_decision(
    characters: Sequence[Character], user_message: str, cause: str
) -> DirectorDecision:
    """Keyword heuristic used when the model path cannot produce a decision."""
    if not characters:
        raise ValueError("Director needs at least one character")
    if is_group_message(user_message):
        return DirectorDecision(
            should_broadcast=True,
            selected_characters=list(characters),
            reason=f"Fallback: group question, everyone responds ({cause})",
            source="fallback",
        )
    return DirectorDecision(
        should_broadcast=False,
        selected_characters=[characters[0]],
        reason=f"Fallback: using first available character ({cause})",
        source="fallback",
    )


# ---------------------------------------------------------------------------
# Director
# ---------------------------------------------------------------------------

class Director:
    """Chooses responders for each user turn through an injected LLM."""

    def __init__(self, llm: LLM) -> None:
        self._llm = llm

    def build_prompt(
        self,
        characters: Sequence[Character],
        messages: Sequence[Message],
        user_message: str,
        reply_to: str | None = None,
    ) -> str:
        names = {char.id: char.name for char in characters}
        character_list = "\n".join(
            f"- {char.name} (ID: {char.id}): {char.description}" for char in characters
        )

        lines = []
        for msg in list(messages)[-HISTORY_WINDOW:]:
            if msg.role == "user":
                lines.append(f"User: {msg.content}")
            elif msg.role == "assistant":
                lines.append(f"{names.get(msg.character_id, 'Unknown')}: {msg.content}")

        context = {
            "characters": character_list,
            "history": "\n".join(lines) or NO_RECENT_MESSAGES,
            "message": user_message,
        }
        target = find_message(messages, reply_to)
        if target is not None and target.role == "assistant":
            context["reply_to_name"] = names.get(target.character_id, "Unknown")
        return render_prompt(DIRECTOR_PROMPT, context)

    async def _ask_model(
        self,
        characters: Sequence[Character],
        messages: Sequence[Message],
        user_message: str,
        reply_to: str | None,
    ) -> DecisionParse:
        try:
            prompt = self.build_prompt(characters, messages, user_message, reply_to)
            raw = await self._llm("director", prompt)
        except (LLMError, PromptError) as e:
            return ParseFailure(error=f"{type(e).__name__}: {e}", kind="gateway error")
        result = parse_decision(raw, characters)
        if isinstance(result, ParseFailure):
            logger.debug("director raw output: %r", raw)
        return result

    async def decide(
        self,
        characters: Sequence[Character],
        messages: Sequence[Message],
        user_message: str,
        reply_to: str | None = None,
    ) -> DirectorDecision:
        if not characters:
            raise ValueError("Director needs at least one character")

        pinned = pinned_character(characters, messages, reply_to)
        if pinned is not None:
            return DirectorDecision(
                should_broadcast=False,
                selected_characters=[pinned],
                reason=(
                    f"User is replying to {pinned.name}'s message, "
                    f"so {pinned.name} should respond."
                ),
                source="pin",
            )

        result = await self._ask_model(characters, messages, user_message, reply_to)
        if isinstance(result, ParseFailure):
            logger.warning("director decision failed: %s", result.error)
            return fallback_decision(characters, user_message, result.kind)

        logger.info(
            "director selected %s broadcast=%s",
            [c.id for c in result.characters], result.should_broadcast,
        )
        return DirectorDecision(
            should_broadcast=result.should_broadcast,
            selected_characters=list(result.characters),
            reason=result.reason,
            source="model",
        )
