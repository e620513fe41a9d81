from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

from .rooms import RoomRegistry

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BroadcastInstruction:
    room: str
    event: str
    payload: Any


class BroadcastDispatcher:
    """Pushes events to whoever is in a room at the time of the call.

    Delivery is best-effort: no acknowledgement, no retry. A broadcast
    returns only after every member has been attempted.
    """

    def __init__(self, registry: RoomRegistry) -> None:
        self.registry = registry

    async def broadcast(self, room: str, event: str, payload: Any) -> int:
        members = self.registry.members_of(room)
        if not members:
            return 0
        results = await asyncio.gather(
            *(self._deliver(session, room, event, payload) for session in members),
            return_exceptions=True,
        )
        delivered = 0
        for session, result in zip(members, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "delivery of %s to session %s in %s failed: %r", event, session.id, room, result
                )
            elif result:
                delivered += 1
        logger.debug("%s -> %s: %d/%d delivered", event, room, delivered, len(members))
        return delivered

    async def dispatch(self, instructions: Iterable[BroadcastInstruction]) -> int:
        """Run ``instructions`` one after another, in the order given."""
        total = 0
        for instruction in instructions:
            total += await self.broadcast(instruction.room, instruction.event, instruction.payload)
        return total

    async def _deliver(self, session: Session, room: str, event: str, payload: Any) -> bool:
        # left or disconnected after the snapshot was taken
        if not self.registry.is_member(session, room):
            return False
        return await session.deliver(event, payload)
