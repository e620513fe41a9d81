from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, Set

from .errors import ValidationError

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)


class RoomKind(str, Enum):
    BOARD = "board"
    USER = "user"
    TASK = "task"


def room_key(kind: RoomKind | str, entity_id: str) -> str:
    kind = RoomKind(kind)
    if not entity_id:
        raise ValidationError("room entity id is required", field="roomKey")
    return f"{kind.value}:{entity_id}"


def board_room(board_id: str) -> str:
    return room_key(RoomKind.BOARD, board_id)


def user_room(user_id: str) -> str:
    return room_key(RoomKind.USER, user_id)


def task_room(task_id: str) -> str:
    return room_key(RoomKind.TASK, task_id)


def parse_room_key(key: str) -> tuple[RoomKind, str]:
    kind, sep, entity_id = key.partition(":")
    if not sep or not entity_id:
        raise ValidationError(f"malformed room key {key!r}", field="roomKey")
    try:
        return RoomKind(kind), entity_id
    except ValueError:
        raise ValidationError(f"unknown room kind {kind!r}", field="roomKey") from None


class RoomRegistry:
    """Membership bookkeeping: room key -> sessions, plus the reverse index.

    Every method runs in one critical section and never awaits, so a
    broadcast that checks membership right before delivering always sees the
    latest join, leave or disconnect. Empty rooms are dropped immediately.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rooms: Dict[str, Set[Session]] = {}
        self._joined: Dict[Session, Set[str]] = {}

    def join(self, session: Session, key: str) -> bool:
        """Add ``session`` to ``key``; returns False if it was already there."""
        parse_room_key(key)
        with self._lock:
            members = self._rooms.setdefault(key, set())
            if session in members:
                return False
            members.add(session)
            self._joined.setdefault(session, set()).add(key)
        logger.debug("session %s joined %s", session.id, key)
        return True

    def leave(self, session: Session, key: str) -> bool:
        with self._lock:
            members = self._rooms.get(key)
            if not members or session not in members:
                return False
            self._discard(session, key)
        logger.debug("session %s left %s", session.id, key)
        return True

    def remove_session(self, session: Session) -> Set[str]:
        """Drop ``session`` from every room it is in and return those keys."""
        with self._lock:
            keys = self._joined.pop(session, set())
            for key in keys:
                members = self._rooms.get(key)
                if members is None:
                    continue
                members.discard(session)
                if not members:
                    del self._rooms[key]
        if keys:
            logger.debug("session %s removed from %d room(s)", session.id, len(keys))
        return keys

    def members_of(self, key: str) -> FrozenSet[Session]:
        with self._lock:
            return frozenset(self._rooms.get(key, ()))

    def rooms_of(self, session: Session) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._joined.get(session, ()))

    def is_member(self, session: Session, key: str) -> bool:
        with self._lock:
            return session in self._rooms.get(key, ())

    def close(self) -> None:
        with self._lock:
            self._rooms.clear()
            self._joined.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)

    def _discard(self, session: Session, key: str) -> None:
        # caller holds the lock
        members = self._rooms[key]
        members.discard(session)
        if not members:
            del self._rooms[key]
        joined = self._joined.get(session)
        if joined is not None:
            joined.discard(key)
            if not joined:
                del self._joined[session]
