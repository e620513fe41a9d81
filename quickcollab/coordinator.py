from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from .broadcast import BroadcastDispatcher, BroadcastInstruction
from .config import Settings
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from .models import Board, Collaborator, Role, Task, TaskStatus, User
from .rooms import board_room, task_room, user_room
from .schemas import (
    BoardCreate,
    BoardOut,
    CollaboratorAddedOut,
    CollaboratorOut,
    CommentCreate,
    CommentOut,
    InviteCreate,
    InviteOut,
    TaskCreate,
    TaskOut,
    TaskPatch,
    UserCreate,
    UserOut,
    board_out,
    collaborator_out,
    comment_out,
    task_out,
    user_out,
    user_summary,
)
from .storage import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")

TASK_CREATED = "taskCreated"
TASK_UPDATED = "taskUpdated"
TASK_EDITED = "taskEdited"
TASK_DELETED = "taskDeleted"
TASK_ASSIGNED = "taskAssigned"
COMMENT_ADDED = "commentAdded"
INVITE_SENT = "inviteSent"
COLLABORATOR_ADDED = "collaboratorAdded"


@dataclass
class MutationResult:
    entity: Any
    broadcasts: List[BroadcastInstruction] = field(default_factory=list)


class EntityLocks:
    """One ``asyncio.Lock`` per entity key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def _clean_title(value: Optional[str]) -> str:
    title = (value or "").strip()
    if not title:
        raise ValidationError("title is required", field="title")
    return title


class MutationCoordinator:
    """Validates, persists and fans out every board/task/comment mutation.

    Each mutation runs under the lock of the entity it changes, from the
    first read to the last broadcast, so two writers on the same task never
    interleave. The store is the source of truth: payloads are built from
    what the store hands back, never from the request.

    Concurrent writers on the same task are last-write-wins; no version
    token is checked.
    """

    def __init__(
        self,
        storage: Repository,
        dispatcher: BroadcastDispatcher,
        settings: Optional[Settings] = None,
    ) -> None:
        self.storage = storage
        self.dispatcher = dispatcher
        self.settings = settings or Settings()
        self.locks = EntityLocks()

    # === Users ===

    async def register_user(self, intent: UserCreate) -> MutationResult:
        if await self._read(self.storage.get_user_by_email, intent.email):
            raise ConflictError("email already registered", field="email")
        user = await self._write(self.storage.create_user, intent.email, intent.name)
        logger.info("user %s registered", user.id)
        return MutationResult(user_out(user))

    async def get_user(self, user_id: str) -> UserOut:
        return user_out(await self._load_user(user_id))

    # === Boards ===

    async def create_board(self, actor_id: str, intent: BoardCreate) -> MutationResult:
        title = _clean_title(intent.title)
        owner = await self._load_user(actor_id, "owner")
        board = await self._write(self.storage.create_board, title, owner)
        logger.info("board %s created by %s", board.id, owner.id)
        return MutationResult(board_out(board))

    async def invite_collaborator(self, actor_id: str, board_id: str, intent: InviteCreate) -> MutationResult:
        email = (intent.email or "").strip().lower()
        if not email:
            raise ValidationError("email is required", field="email")
        async with self.locks.hold(board_room(board_id)):
            board = await self._load_board(board_id)
            if board.owner != actor_id:
                raise AuthorizationError("only the board owner can invite collaborators")
            invitee = await self._read(self.storage.get_user_by_email, email)
            if invitee is None:
                raise NotFoundError(f"no user registered with {email}", field="email")
            if board.is_member(invitee.id):
                raise ConflictError(f"{email} is already a collaborator", field="email")
            board = await self._write(
                self.storage.add_collaborator,
                board.id,
                Collaborator(user_id=invitee.id, email=invitee.email, role=Role.MEMBER),
            )
            if board is None:
                raise NotFoundError("board not found", field="boardId")
            logger.info("user %s invited to board %s", invitee.id, board.id)
            invite, added = await self._invite_payloads(board, invitee.id)
            result = MutationResult(
                invite.collaborator,
                [
                    BroadcastInstruction(user_room(invitee.id), INVITE_SENT, invite.model_dump(mode="json")),
                    BroadcastInstruction(board_room(board.id), COLLABORATOR_ADDED, added.model_dump(mode="json")),
                ],
            )
            await self._publish(result)
            return result

    async def relay_invite(self, actor_id: str, board_id: str, user_id: str) -> MutationResult:
        """Re-announce a persisted invitation to the invited user's room."""
        board = await self._load_board(board_id)
        self._require_member(board, actor_id)
        invite, _ = await self._invite_payloads(board, user_id)
        result = MutationResult(
            invite.collaborator,
            [BroadcastInstruction(user_room(user_id), INVITE_SENT, invite.model_dump(mode="json"))],
        )
        await self._publish(result)
        return result

    async def relay_collaborator(self, actor_id: str, board_id: str, user_id: str) -> MutationResult:
        """Re-announce a persisted collaborator to the board room."""
        board = await self._load_board(board_id)
        self._require_member(board, actor_id)
        _, added = await self._invite_payloads(board, user_id)
        result = MutationResult(
            added.collaborator,
            [BroadcastInstruction(board_room(board.id), COLLABORATOR_ADDED, added.model_dump(mode="json"))],
        )
        await self._publish(result)
        return result

    # === Tasks ===

    async def create_task(self, actor_id: str, intent: TaskCreate) -> MutationResult:
        title = _clean_title(intent.title)
        if not intent.board:
            raise ValidationError("board is required", field="board")
        assigned_to = intent.assignedTo or None
        async with self.locks.hold(board_room(intent.board)):
            board = await self._load_board(intent.board, "board")
            self._require_member(board, actor_id)
            if assigned_to is not None:
                self._check_assignee(board, assigned_to)
            assignee = await self._assignee(assigned_to)
            task = await self._write(
                self.storage.create_task,
                board.id,
                title,
                description=intent.description,
                status=intent.status or TaskStatus.TODO,
                due_date=intent.dueDate,
                tags=list(intent.tags or []),
                assigned_to=assigned_to,
            )
            logger.info("task %s created on board %s", task.id, board.id)
            return await self._finish_task(task, TASK_CREATED, assignee)

    async def update_task(self, actor_id: str, task_id: Optional[str], patch: TaskPatch) -> MutationResult:
        return await self._patch_task(actor_id, task_id, patch, TASK_UPDATED)

    async def edit_task(self, actor_id: str, task_id: Optional[str], patch: TaskPatch) -> MutationResult:
        return await self._patch_task(actor_id, task_id, patch, TASK_EDITED)

    async def assign_task(self, actor_id: str, task_id: Optional[str], assigned_to: Optional[str]) -> MutationResult:
        if not task_id:
            raise ValidationError("task id is required", field="id")
        assigned_to = assigned_to or None
        async with self.locks.hold(task_room(task_id)):
            task = await self._load_task(task_id)
            board = await self._load_board(task.board)
            self._require_member(board, actor_id)
            if assigned_to is not None:
                self._check_assignee(board, assigned_to)
            assignee = await self._assignee(assigned_to)
            updated = await self._write(self.storage.update_task, task.id, {"assigned_to": assigned_to})
            if updated is None:
                raise NotFoundError("task not found", field="id")
            logger.info("task %s assigned to %s", task.id, assigned_to)
            return await self._finish_task(updated, TASK_ASSIGNED, assignee)

    async def delete_task(self, actor_id: str, task_id: Optional[str], board_id: Optional[str] = None) -> MutationResult:
        if not task_id:
            raise ValidationError("task id is required", field="taskId")
        async with self.locks.hold(task_room(task_id)):
            task = await self._load_task(task_id, "taskId")
            if board_id is not None and board_id != task.board:
                raise ValidationError("task does not belong to that board", field="boardId")
            board = await self._load_board(task.board)
            self._require_member(board, actor_id)
            if not await self._write(self.storage.delete_task, task.id):
                raise NotFoundError("task not found", field="taskId")
            logger.info("task %s deleted from board %s", task.id, task.board)
            result = MutationResult(task.id, [BroadcastInstruction(board_room(task.board), TASK_DELETED, task.id)])
            await self._publish(result)
            return result

    async def _patch_task(self, actor_id: str, task_id: Optional[str], patch: TaskPatch, event: str) -> MutationResult:
        if not task_id:
            raise ValidationError("task id is required", field="id")
        supplied = patch.model_fields_set
        async with self.locks.hold(task_room(task_id)):
            task = await self._load_task(task_id)
            board = await self._load_board(task.board)
            self._require_member(board, actor_id)

            changes: Dict[str, Any] = {}
            if "board" in supplied and patch.board != task.board:
                raise ValidationError("a task cannot move to another board", field="board")
            if "title" in supplied:
                changes["title"] = _clean_title(patch.title)
            if "description" in supplied:
                changes["description"] = patch.description
            if "status" in supplied:
                if patch.status is None:
                    raise ValidationError("status cannot be null", field="status")
                changes["status"] = patch.status
            if "dueDate" in supplied:
                changes["due_date"] = patch.dueDate
            if "tags" in supplied:
                changes["tags"] = list(patch.tags or [])
            if "assignedTo" in supplied:
                assigned_to = patch.assignedTo or None
                if assigned_to is not None:
                    self._check_assignee(board, assigned_to)
                changes["assigned_to"] = assigned_to

            assignee = await self._assignee(changes.get("assigned_to", task.assigned_to))
            updated = await self._write(self.storage.update_task, task.id, changes)
            if updated is None:
                raise NotFoundError("task not found", field="id")
            logger.info("task %s updated (%s)", task.id, ", ".join(sorted(changes)) or "no fields")
            return await self._finish_task(updated, event, assignee)

    async def _finish_task(self, task: Task, event: str, assignee: Optional[User]) -> MutationResult:
        # no store calls between persist and broadcast
        if assignee is not None and assignee.id != task.assigned_to:
            assignee = None
        entity = task_out(task, assignee)
        payload = entity.model_dump(mode="json")
        broadcasts = [BroadcastInstruction(board_room(task.board), event, payload)]
        if task.assigned_to:
            broadcasts.append(BroadcastInstruction(user_room(task.assigned_to), TASK_ASSIGNED, payload))
        result = MutationResult(entity, broadcasts)
        await self._publish(result)
        return result

    # === Comments ===

    async def create_comment(self, actor_id: str, intent: CommentCreate) -> MutationResult:
        content = (intent.content or "").strip()
        if not content:
            raise ValidationError("content is required", field="content")
        if not intent.taskId:
            raise ValidationError("task id is required", field="taskId")
        async with self.locks.hold(task_room(intent.taskId)):
            task = await self._load_task(intent.taskId, "taskId")
            author = await self._load_user(actor_id, "user")
            board = await self._load_board(task.board)
            self._require_member(board, author.id)
            comment = await self._write(self.storage.create_comment, task.id, author.id, content)
            logger.info("comment %s added to task %s", comment.id, task.id)
            entity = comment_out(comment, author)
            result = MutationResult(
                entity,
                [BroadcastInstruction(task_room(task.id), COMMENT_ADDED, entity.model_dump(mode="json"))],
            )
            await self._publish(result)
            return result

    # === Queries ===

    async def list_boards(self, actor_id: str) -> List[BoardOut]:
        boards = await self._read(self.storage.list_boards_for_user, actor_id)
        return [board_out(b) for b in boards]

    async def get_board(self, actor_id: str, board_id: str) -> BoardOut:
        board = await self._load_board(board_id)
        self._require_member(board, actor_id)
        return board_out(board)

    async def list_tasks(self, actor_id: str, board_id: str) -> List[TaskOut]:
        board = await self._load_board(board_id)
        self._require_member(board, actor_id)
        tasks = await self._read(self.storage.list_tasks, board.id)
        users = await self._users(t.assigned_to for t in tasks)
        return [task_out(t, users.get(t.assigned_to)) for t in tasks]

    async def list_comments(self, actor_id: str, task_id: str) -> List[CommentOut]:
        task = await self._load_task(task_id, "taskId")
        board = await self._load_board(task.board)
        self._require_member(board, actor_id)
        comments = await self._read(self.storage.list_comments, task.id)
        users = await self._users(c.user for c in comments)
        return [comment_out(c, users.get(c.user)) for c in comments]

    # === Helpers ===

    async def _invite_payloads(self, board: Board, user_id: str) -> tuple[InviteOut, CollaboratorAddedOut]:
        collaborator = board.collaborator(user_id)
        if collaborator is None or collaborator.role is Role.OWNER:
            raise NotFoundError("collaborator not found", field="userId")
        users = await self._users([user_id, board.owner])
        entry: CollaboratorOut = collaborator_out(collaborator, users.get(user_id))
        invite = InviteOut(
            boardId=board.id,
            boardTitle=board.title,
            invitedBy=user_summary(users.get(board.owner)),
            collaborator=entry,
        )
        return invite, CollaboratorAddedOut(boardId=board.id, collaborator=entry)

    async def _users(self, user_ids: Iterable[Optional[str]]) -> Dict[str, User]:
        found: Dict[str, User] = {}
        for user_id in set(u for u in user_ids if u):
            user = await self._read(self.storage.get_user, user_id)
            if user is not None:
                found[user_id] = user
        return found

    async def _assignee(self, user_id: Optional[str]) -> Optional[User]:
        return await self._read(self.storage.get_user, user_id) if user_id else None

    async def _load_user(self, user_id: Optional[str], field_name: str = "user") -> User:
        user = await self._read(self.storage.get_user, user_id) if user_id else None
        if user is None:
            raise NotFoundError("user not found", field=field_name)
        return user

    async def _load_board(self, board_id: Optional[str], field_name: str = "boardId") -> Board:
        board = await self._read(self.storage.get_board, board_id) if board_id else None
        if board is None:
            raise NotFoundError("board not found", field=field_name)
        return board

    async def _load_task(self, task_id: str, field_name: str = "id") -> Task:
        task = await self._read(self.storage.get_task, task_id)
        if task is None:
            raise NotFoundError("task not found", field=field_name)
        return task

    @staticmethod
    def _require_member(board: Board, user_id: Optional[str]) -> None:
        if not board.is_member(user_id):
            raise AuthorizationError("you are not a collaborator on this board")

    @staticmethod
    def _check_assignee(board: Board, user_id: str) -> None:
        if not board.is_member(user_id):
            raise ValidationError("assigned user must be a board collaborator", field="assignedTo")

    async def _read(self, method: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        return await self._call(method, args, kwargs, retry_timeouts=True)

    async def _write(self, method: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        # a timed-out write may have landed, so it fails instead of retrying
        return await self._call(method, args, kwargs, retry_timeouts=False)

    async def _call(self, method, args, kwargs, retry_timeouts: bool):
        attempts = max(self.settings.store_retries, 0) + 1
        name = getattr(method, "__name__", "store call")
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(method(*args, **kwargs), self.settings.store_timeout)
            except asyncio.TimeoutError as exc:
                if not retry_timeouts or attempt == attempts:
                    raise TransientStoreError(f"{name} timed out") from exc
                logger.warning("%s timed out (attempt %d/%d)", name, attempt, attempts)
            except TransientStoreError as exc:
                if attempt == attempts:
                    raise
                logger.warning("%s failed (attempt %d/%d): %s", name, attempt, attempts, exc.message)
            await asyncio.sleep(self.settings.retry_backoff * attempt)
        raise TransientStoreError(f"{name} failed")

    async def _publish(self, result: MutationResult) -> None:
        try:
            await self.dispatcher.dispatch(result.broadcasts)
        except Exception:
            # persisted already; broadcasts are best-effort
            logger.exception("broadcast of %s failed after persist", [b.event for b in result.broadcasts])
