from __future__ import annotations

import abc
import copy
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import ConflictError
from .models import Board, Collaborator, Comment, Role, Task, TaskStatus, User, now_utc

# Task attributes a caller may change after creation.
TASK_MUTABLE_FIELDS = frozenset(
    {"title", "description", "status", "due_date", "tags", "assigned_to"}
)


class Repository(abc.ABC):
    """Record store consumed by the coordinator.

    Every call is atomic for the single document it touches and returns
    detached copies. Implementations raise ``TransientStoreError`` only when
    nothing was applied, so such a call may be retried.
    """

    # === Users ===
    @abc.abstractmethod
    async def create_user(self, email: str, name: str) -> User: ...

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abc.abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    # === Boards ===
    @abc.abstractmethod
    async def create_board(self, title: str, owner: User) -> Board: ...

    @abc.abstractmethod
    async def get_board(self, board_id: str) -> Optional[Board]: ...

    @abc.abstractmethod
    async def list_boards_for_user(self, user_id: str) -> List[Board]: ...

    @abc.abstractmethod
    async def add_collaborator(self, board_id: str, collaborator: Collaborator) -> Optional[Board]:
        """Append a collaborator; ``ConflictError`` if the user is already listed."""

    # === Tasks ===
    @abc.abstractmethod
    async def create_task(
        self,
        board_id: str,
        title: str,
        description: Optional[str] = None,
        status: TaskStatus = TaskStatus.TODO,
        due_date: Optional[datetime] = None,
        tags: Optional[List[str]] = None,
        assigned_to: Optional[str] = None,
    ) -> Task: ...

    @abc.abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]: ...

    @abc.abstractmethod
    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[Task]:
        """Apply ``changes`` and return the stored task, or None if it is gone."""

    @abc.abstractmethod
    async def delete_task(self, task_id: str) -> bool: ...

    @abc.abstractmethod
    async def list_tasks(self, board_id: str) -> List[Task]: ...

    # === Comments ===
    @abc.abstractmethod
    async def create_comment(self, task_id: str, user_id: str, content: str) -> Comment: ...

    @abc.abstractmethod
    async def list_comments(self, task_id: str) -> List[Comment]: ...

    async def close(self) -> None:
        return None


class MemoryStorage(Repository):
    """In-memory store for users, boards, tasks and comments."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.boards: Dict[str, Board] = {}
        self.tasks: Dict[str, Task] = {}
        self.comments: Dict[str, Comment] = {}

    # === User operations ===
    async def create_user(self, email: str, name: str) -> User:
        email = email.strip().lower()
        if any(u.email == email for u in self.users.values()):
            raise ConflictError("email already registered", field="email")
        user = User(id=str(uuid.uuid4()), email=email, name=name.strip(), created_at=now_utc())
        self.users[user.id] = user
        return copy.deepcopy(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        return copy.deepcopy(self.users.get(user_id))

    async def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        for user in self.users.values():
            if user.email == email:
                return copy.deepcopy(user)
        return None

    # === Board operations ===
    async def create_board(self, title: str, owner: User) -> Board:
        now = now_utc()
        board = Board(
            id=str(uuid.uuid4()),
            title=title,
            owner=owner.id,
            created_at=now,
            updated_at=now,
            collaborators=[Collaborator(user_id=owner.id, email=owner.email, role=Role.OWNER)],
        )
        self.boards[board.id] = board
        return copy.deepcopy(board)

    async def get_board(self, board_id: str) -> Optional[Board]:
        return copy.deepcopy(self.boards.get(board_id))

    async def list_boards_for_user(self, user_id: str) -> List[Board]:
        return [copy.deepcopy(b) for b in self.boards.values() if b.is_member(user_id)]

    async def add_collaborator(self, board_id: str, collaborator: Collaborator) -> Optional[Board]:
        board = self.boards.get(board_id)
        if board is None:
            return None
        if board.is_member(collaborator.user_id):
            raise ConflictError("user is already a collaborator", field="email")
        board.collaborators.append(copy.deepcopy(collaborator))
        board.updated_at = now_utc()
        return copy.deepcopy(board)

    # === Task operations ===
    async def create_task(
        self,
        board_id: str,
        title: str,
        description: Optional[str] = None,
        status: TaskStatus = TaskStatus.TODO,
        due_date: Optional[datetime] = None,
        tags: Optional[List[str]] = None,
        assigned_to: Optional[str] = None,
    ) -> Task:
        now = now_utc()
        task = Task(
            id=str(uuid.uuid4()),
            title=title,
            board=board_id,
            created_at=now,
            updated_at=now,
            description=description,
            status=status,
            due_date=due_date,
            tags=list(tags or []),
            assigned_to=assigned_to,
        )
        self.tasks[task.id] = task
        return copy.deepcopy(task)

    async def get_task(self, task_id: str) -> Optional[Task]:
        return copy.deepcopy(self.tasks.get(task_id))

    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[Task]:
        task = self.tasks.get(task_id)
        if task is None:
            return None
        unknown = set(changes) - TASK_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"immutable task fields: {sorted(unknown)}")
        for name, value in changes.items():
            setattr(task, name, copy.deepcopy(value))
        task.updated_at = now_utc()
        return copy.deepcopy(task)

    async def delete_task(self, task_id: str) -> bool:
        return self.tasks.pop(task_id, None) is not None

    async def list_tasks(self, board_id: str) -> List[Task]:
        tasks = [t for t in self.tasks.values() if t.board == board_id]
        return [copy.deepcopy(t) for t in sorted(tasks, key=lambda t: (t.created_at, t.id))]

    # === Comment operations ===
    async def create_comment(self, task_id: str, user_id: str, content: str) -> Comment:
        comment = Comment(
            id=str(uuid.uuid4()),
            content=content,
            task=task_id,
            user=user_id,
            created_at=now_utc(),
        )
        self.comments[comment.id] = comment
        return copy.deepcopy(comment)

    async def list_comments(self, task_id: str) -> List[Comment]:
        comments = [c for c in self.comments.values() if c.task == task_id]
        # newest first
        return [copy.deepcopy(c) for c in sorted(comments, key=lambda c: c.created_at, reverse=True)]
