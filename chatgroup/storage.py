"""JSON file storage for rooms.

Each room is one JSON file under a configurable base directory. There is
no database or ORM; reads and writes go through plain helper methods that
load and dump JSON.

Directory layout:

    {base}/
      rooms/
        {room_id}.json        ← Room: roster, message log, timestamps

Rooms are owned here, not by the core: the director and the responders
read a snapshot and return new replies, which the store appends.
"""

from __future__ import annotations

import re
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path

from chatgroup.models import Character, Message, Role, Room

_ROOM_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class RoomNotFoundError(KeyError):
    """No room with the given id exists."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._rooms_root = base_path / "rooms"
        self._rooms_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _room_file(self, room_id: str) -> Path:
        if not _ROOM_ID.match(room_id):
            raise RoomNotFoundError(room_id)
        return self._rooms_root / f"{room_id}.json"

    def _write_room(self, room: Room) -> None:
        self._room_file(room.id).write_text(room.model_dump_json(by_alias=True, indent=2))

    def _touch(self, room: Room) -> Room:
        room.updated_at = _now()
        self._write_room(room)
        return room

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def create_room(self, characters: list[Character]) -> Room:
        now = _now()
        room = Room(
            id=_new_id("room"), characters=characters, messages=[],
            created_at=now, updated_at=now,
        )
        self._write_room(room)
        return room

    def get_room(self, room_id: str) -> Room | None:
        try:
            path = self._room_file(room_id)
        except RoomNotFoundError:
            return None
        if not path.exists():
            return None
        return Room.model_validate_json(path.read_text())

    def require_room(self, room_id: str) -> Room:
        room = self.get_room(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)
        return room

    def list_rooms(self) -> list[Room]:
        """All rooms, most recently updated first."""
        rooms = [Room.model_validate_json(p.read_text()) for p in self._rooms_root.glob("*.json")]
        return sorted(rooms, key=lambda r: r.updated_at, reverse=True)

    def delete_room(self, room_id: str) -> bool:
        try:
            path = self._room_file(room_id)
        except RoomNotFoundError:
            return False
        if not path.exists():
            return False
        path.unlink()
        return True

    # ------------------------------------------------------------------
    # Characters
    # ------------------------------------------------------------------

    def add_character(self, room_id: str, character: Character) -> Room:
        """Append a character to the roster. Ids are unique per room."""
        room = self.require_room(room_id)
        if room.get_character(character.id) is not None:
            raise ValueError(f"Character {character.id!r} is already in the room")
        room.characters.append(character)
        return self._touch(room)

    def remove_character(self, room_id: str, character_id: str) -> Room:
        """Drop a character from the roster. Its past messages stay."""
        room = self.require_room(room_id)
        remaining = [c for c in room.characters if c.id != character_id]
        if len(remaining) == len(room.characters):
            raise ValueError(f"Character {character_id!r} is not in the room")
        room.characters = remaining
        return self._touch(room)

    # ------------------------------------------------------------------
    # Messages (append-only)
    # ------------------------------------------------------------------

    def add_message(
        self,
        room_id: str,
        role: Role,
        content: str,
        character_id: str | None = None,
        image_ref: str | None = None,
        reply_to_id: str | None = None,
        reply_to_snapshot: str | None = None,
    ) -> Message:
        """Append one message, assigning its id and timestamp."""
        room = self.require_room(room_id)
        if role == "assistant" and room.get_character(character_id or "") is None:
            raise ValueError(f"Character {character_id!r} is not in the room")
        message = Message(
            id=_new_id("msg"),
            role=role,
            content=content,
            timestamp=_now(),
            character_id=character_id,
            image_ref=image_ref,
            reply_to_id=reply_to_id,
            reply_to_snapshot=reply_to_snapshot,
        )
        room.messages.append(message)
        self._touch(room)
        return message

    def get_messages(self, room_id: str) -> list[Message]:
        return self.require_room(room_id).messages
