"""Core domain models.

The director, the character responder and the room store all operate on
these types. Pydantic validates every value that crosses a data boundary.

Wire names follow the browser client (camelCase); Python code uses the
snake_case attribute names. Both spellings are accepted on input.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["user", "assistant", "director"]

DecisionSource = Literal["pin", "model", "fallback"]


class Character(BaseModel):
    """A persona that can answer in a room."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str
    description: str = ""
    avatar: str | None = None


class Message(BaseModel):
    """A single entry in a room's append-only message log."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    role: Role
    content: str = ""  # empty for image-only turns
    timestamp: str
    character_id: str | None = Field(default=None, alias="characterId")
    image_ref: str | None = Field(default=None, alias="imageUrl")
    reply_to_id: str | None = Field(default=None, alias="replyTo")
    reply_to_snapshot: str | None = Field(default=None, alias="replyToContent")

    @model_validator(mode="after")
    def _character_only_on_assistant(self) -> Message:
        if self.role == "assistant" and not self.character_id:
            raise ValueError("assistant messages need a characterId")
        if self.role != "assistant" and self.character_id:
            raise ValueError(f"{self.role} messages cannot carry a characterId")
        return self


def check_unique_ids(characters: list[Character]) -> None:
    """A roster is a set keyed on character id."""
    seen: set[str] = set()
    for char in characters:
        if char.id in seen:
            raise ValueError(f"Duplicate character id {char.id!r}")
        seen.add(char.id)


class Room(BaseModel):
    """A conversation with a roster of characters and its message log."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    characters: list[Character] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")

    @model_validator(mode="after")
    def _unique_character_ids(self) -> Room:
        check_unique_ids(self.characters)
        return self

    def get_character(self, character_id: str) -> Character | None:
        for char in self.characters:
            if char.id == character_id:
                return char
        return None


class DirectorDecision(BaseModel):
    """Which character(s) answer one user turn. Never persisted."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    should_broadcast: bool = Field(alias="shouldMultipleRespond")
    selected_characters: list[Character] = Field(min_length=1)
    reason: str
    source: DecisionSource = "model"


class CharacterResponse(BaseModel):
    """One character's reply. `error` is set when generation failed."""

    model_config = ConfigDict(populate_by_name=True)

    content: str
    character_id: str = Field(alias="characterId")
    error: str | None = None
