"""Pydantic request models for API endpoints."""

from pydantic import BaseModel, ConfigDict, Field

from chatgroup.models import Character


class CreateRoom(BaseModel):
    characters: list[Character] = Field(default_factory=list)


class SendMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str = ""
    image_data: str | None = Field(default=None, alias="imageData")
    image_url: str | None = Field(default=None, alias="imageUrl")
    reply_to: str | None = Field(default=None, alias="replyTo")
