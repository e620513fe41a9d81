from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Protocol

from fastapi import WebSocket
from pydantic import ValidationError as SchemaError

from .errors import AuthorizationError, QuickCollabError
from .rooms import RoomRegistry, board_room, task_room, user_room
from .schemas import inbound_event

if TYPE_CHECKING:
    from .coordinator import MutationCoordinator, MutationResult

logger = logging.getLogger(__name__)

TokenResolver = Callable[[str], Awaitable[Optional[str]]]


class SessionState(str, Enum):
    CONNECTED = "Connected"
    AUTHENTICATED = "Authenticated"
    DISCONNECTED = "Disconnected"


class Transport(Protocol):
    async def send(self, event: str, payload: Any) -> None: ...


class WebSocketTransport:
    """Frames outbound events as ``{"event": ..., "data": ...}`` JSON."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send(self, event: str, payload: Any) -> None:
        await self.websocket.send_json({"event": event, "data": payload})


class Session:
    """One live connection and its room memberships."""

    _HANDLERS = {
        "authenticate": "_on_authenticate",
        "joinBoard": "_on_join_board",
        "leaveBoard": "_on_leave_board",
        "joinTask": "_on_join_task",
        "leaveTask": "_on_leave_task",
        "joinUser": "_on_join_user",
        "createTask": "_on_create_task",
        "updateTask": "_on_update_task",
        "editTask": "_on_edit_task",
        "deleteTask": "_on_delete_task",
        "taskAssigned": "_on_assign_task",
        "commentAdded": "_on_comment_added",
        "inviteSent": "_on_invite_sent",
        "collaboratorAdded": "_on_collaborator_added",
    }

    def __init__(
        self,
        transport: Transport,
        registry: RoomRegistry,
        coordinator: MutationCoordinator,
        resolve_token: Optional[TokenResolver] = None,
        on_disconnect: Optional[Callable[[Session], None]] = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.transport = transport
        self.registry = registry
        self.coordinator = coordinator
        self.resolve_token = resolve_token
        self.on_disconnect = on_disconnect
        self.state = SessionState.CONNECTED
        self.principal_id: Optional[str] = None

    def __repr__(self) -> str:
        return f"<Session {self.id} {self.state.value} principal={self.principal_id}>"

    @property
    def rooms(self) -> frozenset[str]:
        return self.registry.rooms_of(self)

    @property
    def connected(self) -> bool:
        return self.state is not SessionState.DISCONNECTED

    # === Lifecycle ===

    def authenticate(self, principal_id: str) -> None:
        self._require_connected()
        if not principal_id:
            raise AuthorizationError("principal id is required")
        self.principal_id = principal_id
        self.state = SessionState.AUTHENTICATED
        logger.info("session %s authenticated as %s", self.id, principal_id)

    def join(self, key: str) -> bool:
        self._require_connected()
        return self.registry.join(self, key)

    def leave(self, key: str) -> bool:
        self._require_connected()
        return self.registry.leave(self, key)

    def disconnect(self) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        self.state = SessionState.DISCONNECTED
        self.registry.remove_session(self)
        logger.info("session %s disconnected", self.id)
        if self.on_disconnect is not None:
            self.on_disconnect(self)

    async def deliver(self, event: str, payload: Any) -> bool:
        if self.state is SessionState.DISCONNECTED:
            return False
        await self.transport.send(event, payload)
        return True

    # === Inbound events ===

    async def handle(self, message: Any) -> None:
        """Event-driven entry point: failures are logged and nothing is sent."""
        try:
            event = inbound_event.validate_python(message)
        except SchemaError as exc:
            logger.warning("session %s: dropped malformed message: %s", self.id, exc.errors()[:1])
            return
        try:
            await self.apply(event)
        except QuickCollabError as exc:
            logger.warning(
                "session %s: %s rejected (%s, field=%s): %s",
                self.id,
                event.event,
                exc.code,
                exc.field,
                exc.message,
            )
        except Exception:
            logger.exception("session %s: %s failed", self.id, event.event)

    async def apply(self, event: Any) -> Optional[MutationResult]:
        handler = getattr(self, self._HANDLERS[event.event])
        return await handler(event.data)

    async def _on_authenticate(self, data) -> None:
        principal = await self.resolve_token(data.token) if self.resolve_token else None
        if principal is None:
            raise AuthorizationError("invalid token")
        self.authenticate(principal)
        await self.deliver("authenticated", {"userId": principal})

    async def _join_and_ack(self, key: str) -> None:
        self.join(key)
        await self.deliver("joined", {"room": key})

    async def _leave_and_ack(self, key: str) -> None:
        self.leave(key)
        await self.deliver("left", {"room": key})

    async def _on_join_board(self, data) -> None:
        await self._join_and_ack(board_room(data.boardId))

    async def _on_leave_board(self, data) -> None:
        await self._leave_and_ack(board_room(data.boardId))

    async def _on_join_task(self, data) -> None:
        await self._join_and_ack(task_room(data.taskId))

    async def _on_leave_task(self, data) -> None:
        await self._leave_and_ack(task_room(data.taskId))

    async def _on_join_user(self, data) -> None:
        await self._join_and_ack(user_room(data.userId))

    async def _on_create_task(self, data) -> MutationResult:
        return await self.coordinator.create_task(self._require_principal(), data)

    async def _on_update_task(self, data) -> MutationResult:
        return await self.coordinator.update_task(self._require_principal(), data.id, data)

    async def _on_edit_task(self, data) -> MutationResult:
        return await self.coordinator.edit_task(self._require_principal(), data.id, data)

    async def _on_delete_task(self, data) -> MutationResult:
        return await self.coordinator.delete_task(self._require_principal(), data.taskId, board_id=data.boardId)

    async def _on_assign_task(self, data) -> MutationResult:
        return await self.coordinator.assign_task(self._require_principal(), data.id, data.assignedTo)

    async def _on_comment_added(self, data) -> MutationResult:
        return await self.coordinator.create_comment(self._require_principal(), data)

    async def _on_invite_sent(self, data) -> MutationResult:
        return await self.coordinator.relay_invite(self._require_principal(), data.boardId, data.userId)

    async def _on_collaborator_added(self, data) -> MutationResult:
        return await self.coordinator.relay_collaborator(
            self._require_principal(), data.boardId, data.collaborator.userId
        )

    def _require_connected(self) -> None:
        if self.state is SessionState.DISCONNECTED:
            raise AuthorizationError("session is disconnected")

    def _require_principal(self) -> str:
        self._require_connected()
        if self.state is not SessionState.AUTHENTICATED or self.principal_id is None:
            raise AuthorizationError("session is not authenticated")
        return self.principal_id
