"""Room CRUD, roster changes, message history and sending a turn."""

import logging

from fastapi import APIRouter, HTTPException, Request

from chatgroup.characters import IMAGE_PLACEHOLDER_MESSAGE
from chatgroup.models import Character
from chatgroup.pipeline.orchestrator import ChatTurn, TurnError, run_turn
from chatgroup.storage import RoomNotFoundError, Storage

from .models import CreateRoom, SendMessage

logger = logging.getLogger(__name__)

router = APIRouter()

ROOM_ERROR_MESSAGE = "Sorry, I encountered an error processing your message. Please try again."
IMAGE_ONLY_CONTENT = "📷 [Image]"


def _storage(request: Request) -> Storage:
    return request.app.state.storage


def _room_or_404(storage: Storage, room_id: str):
    room = storage.get_room(room_id)
    if not room:
        raise HTTPException(404, "Room not found")
    return room


@router.get("/rooms")
async def list_rooms(request: Request):
    """List all rooms, most recently updated first."""
    return [r.model_dump(by_alias=True) for r in _storage(request).list_rooms()]


@router.post("/rooms", status_code=201)
async def create_room(request: Request, body: CreateRoom):
    """Create a room with an initial roster."""
    ids = [c.id for c in body.characters]
    if len(ids) != len(set(ids)):
        raise HTTPException(409, "Duplicate character ids")
    return _storage(request).create_room(body.characters).model_dump(by_alias=True)


@router.get("/rooms/{room_id}")
async def get_room(request: Request, room_id: str):
    """Get a room with its roster and messages."""
    return _room_or_404(_storage(request), room_id).model_dump(by_alias=True)


@router.delete("/rooms/{room_id}")
async def delete_room(request: Request, room_id: str):
    """Delete a room and its history."""
    if not _storage(request).delete_room(room_id):
        raise HTTPException(404, "Room not found")
    return {"ok": True}


@router.post("/rooms/{room_id}/characters", status_code=201)
async def add_character(request: Request, room_id: str, body: Character):
    """Add a character to the roster."""
    storage = _storage(request)
    _room_or_404(storage, room_id)
    try:
        room = storage.add_character(room_id, body)
    except ValueError:
        raise HTTPException(409, f"Character '{body.id}' already exists")
    return room.model_dump(by_alias=True)


@router.delete("/rooms/{room_id}/characters/{character_id}")
async def remove_character(request: Request, room_id: str, character_id: str):
    """Remove a character from the roster; its past messages stay."""
    storage = _storage(request)
    _room_or_404(storage, room_id)
    try:
        room = storage.remove_character(room_id, character_id)
    except ValueError:
        raise HTTPException(404, "Character not found")
    return room.model_dump(by_alias=True)


@router.get("/rooms/{room_id}/messages")
async def get_messages(request: Request, room_id: str):
    """Get the message log of a room."""
    room = _room_or_404(_storage(request), room_id)
    return [m.model_dump(by_alias=True) for m in room.messages]


@router.post("/rooms/{room_id}/messages")
async def send_message(request: Request, room_id: str, body: SendMessage):
    """Store a user message, run the director turn and store the replies.

    On any failure the room gets an apology from the first character and
    the error status is returned.
    """
    storage = _storage(request)
    room = _room_or_404(storage, room_id)
    if not body.content and not body.image_data:
        raise HTTPException(400, "Message needs text or an image")

    snapshot = None
    if body.reply_to:
        target = next((m for m in room.messages if m.id == body.reply_to), None)
        snapshot = target.content if target else None

    user_message = storage.add_message(
        room_id, "user",
        body.content or IMAGE_ONLY_CONTENT,
        image_ref=body.image_url,
        reply_to_id=body.reply_to,
        reply_to_snapshot=snapshot,
    )

    turn = ChatTurn(
        room_id=room.id,
        user_message=body.content or (IMAGE_PLACEHOLDER_MESSAGE if body.image_data else ""),
        image_data=body.image_data,
        characters=room.characters,
        messages=room.messages,
        reply_to=body.reply_to,
    )
    try:
        result = await run_turn(turn=turn, llm=request.app.state.llm)
    except TurnError as e:
        _store_apology(storage, room_id, room.characters)
        raise HTTPException(e.status, e.message)
    except Exception:
        logger.exception("Turn failed in room %s", room_id)
        _store_apology(storage, room_id, room.characters)
        raise HTTPException(500, "Internal server error")

    new_messages = [user_message]
    for reply in result.responses:
        new_messages.append(storage.add_message(
            room_id, "assistant", reply.content, character_id=reply.character_id,
        ))
    return {
        "messages": [m.model_dump(by_alias=True) for m in new_messages],
        "directorDecision": result.director_decision.model_dump(by_alias=True),
    }


def _store_apology(storage: Storage, room_id: str, characters: list[Character]) -> None:
    if not characters:
        return
    try:
        storage.add_message(
            room_id, "assistant", ROOM_ERROR_MESSAGE, character_id=characters[0].id,
        )
    except (RoomNotFoundError, ValueError) as e:
        logger.warning("Could not store apology in room %s: %s", room_id, e)
