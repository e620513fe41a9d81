from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, BeforeValidator, Field, TypeAdapter

from .models import Board, Collaborator, Comment, Role, Task, TaskStatus, User


class ErrorEnvelope(BaseModel):
    code: str
    message: str
    field: Optional[str] = None


class Health(BaseModel):
    status: str = "ok"


class Version(BaseModel):
    version: str = "1.0.0"


# === Outbound payloads ===


class UserSummary(BaseModel):
    id: str
    email: str
    name: str


class UserOut(UserSummary):
    createdAt: datetime


class CollaboratorOut(BaseModel):
    userId: str
    email: str
    role: Role
    user: Optional[UserSummary] = None


class BoardOut(BaseModel):
    id: str
    title: str
    owner: str
    collaborators: list[CollaboratorOut]
    createdAt: datetime
    updatedAt: datetime


class TaskOut(BaseModel):
    id: str
    title: str
    description: Optional[str]
    status: TaskStatus
    board: str
    dueDate: Optional[datetime]
    tags: list[str]
    assignedTo: Optional[UserSummary]
    createdAt: datetime
    updatedAt: datetime


class CommentOut(BaseModel):
    id: str
    content: str
    task: str
    user: Optional[UserSummary]
    createdAt: datetime


class InviteOut(BaseModel):
    boardId: str
    boardTitle: str
    invitedBy: Optional[UserSummary]
    collaborator: CollaboratorOut


class CollaboratorAddedOut(BaseModel):
    boardId: str
    collaborator: CollaboratorOut


def user_summary(user: Optional[User]) -> Optional[UserSummary]:
    if user is None:
        return None
    return UserSummary(id=user.id, email=user.email, name=user.name)


def user_out(user: User) -> UserOut:
    return UserOut(id=user.id, email=user.email, name=user.name, createdAt=user.created_at)


def collaborator_out(collaborator: Collaborator, user: Optional[User] = None) -> CollaboratorOut:
    return CollaboratorOut(
        userId=collaborator.user_id,
        email=collaborator.email,
        role=collaborator.role,
        user=user_summary(user),
    )


def board_out(board: Board) -> BoardOut:
    return BoardOut(
        id=board.id,
        title=board.title,
        owner=board.owner,
        collaborators=[collaborator_out(c) for c in board.collaborators],
        createdAt=board.created_at,
        updatedAt=board.updated_at,
    )


def task_out(task: Task, assignee: Optional[User]) -> TaskOut:
    return TaskOut(
        id=task.id,
        title=task.title,
        description=task.description,
        status=task.status,
        board=task.board,
        dueDate=task.due_date,
        tags=list(task.tags),
        assignedTo=user_summary(assignee),
        createdAt=task.created_at,
        updatedAt=task.updated_at,
    )


def comment_out(comment: Comment, author: Optional[User]) -> CommentOut:
    return CommentOut(
        id=comment.id,
        content=comment.content,
        task=comment.task,
        user=user_summary(author),
        createdAt=comment.created_at,
    )


# === Inbound bodies ===
#
# Required fields are Optional here on purpose: presence and emptiness are
# checked by the coordinator so HTTP and socket callers get the same errors.


def _reference_id(value: Any) -> Any:
    # clients echo back resolved summaries, e.g. {"id": ..., "email": ...}
    if isinstance(value, dict):
        ref = value.get("id") or value.get("_id")
        if not ref:
            raise ValueError("user reference carries no id")
        return ref
    return value


UserRef = Annotated[Optional[str], BeforeValidator(_reference_id)]


class UserCreate(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    name: str = Field(min_length=1, max_length=140)


class BoardCreate(BaseModel):
    title: Optional[str] = None


class TaskCreate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    board: Optional[str] = Field(default=None, validation_alias=AliasChoices("board", "boardId"))
    dueDate: Optional[datetime] = None
    tags: Optional[list[str]] = None
    assignedTo: UserRef = None


class TaskPatch(BaseModel):
    """Partial task update; only fields present in the body are applied."""

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "_id", "taskId"))
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    board: Optional[str] = Field(default=None, validation_alias=AliasChoices("board", "boardId"))
    dueDate: Optional[datetime] = None
    tags: Optional[list[str]] = None
    assignedTo: UserRef = None


class TaskAssign(BaseModel):
    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "_id", "taskId"))
    assignedTo: UserRef = None


class TaskDelete(BaseModel):
    taskId: str
    boardId: Optional[str] = None


class CommentCreate(BaseModel):
    taskId: Optional[str] = Field(default=None, validation_alias=AliasChoices("taskId", "task"))
    content: Optional[str] = None


class InviteCreate(BaseModel):
    email: Optional[str] = None


class InviteRelay(BaseModel):
    boardId: str
    userId: str


class CollaboratorRef(BaseModel):
    userId: str


class CollaboratorRelay(BaseModel):
    boardId: str
    collaborator: CollaboratorRef


class BoardRoomRef(BaseModel):
    boardId: str


class TaskRoomRef(BaseModel):
    taskId: str


class UserRoomRef(BaseModel):
    userId: str


class Credentials(BaseModel):
    token: str


# === Tagged inbound socket events ===


class AuthenticateEvent(BaseModel):
    event: Literal["authenticate"]
    data: Credentials


class JoinBoardEvent(BaseModel):
    event: Literal["joinBoard"]
    data: BoardRoomRef


class LeaveBoardEvent(BaseModel):
    event: Literal["leaveBoard"]
    data: BoardRoomRef


class JoinTaskEvent(BaseModel):
    event: Literal["joinTask"]
    data: TaskRoomRef


class LeaveTaskEvent(BaseModel):
    event: Literal["leaveTask"]
    data: TaskRoomRef


class JoinUserEvent(BaseModel):
    event: Literal["joinUser"]
    data: UserRoomRef


class CreateTaskEvent(BaseModel):
    event: Literal["createTask"]
    data: TaskCreate


class UpdateTaskEvent(BaseModel):
    event: Literal["updateTask"]
    data: TaskPatch


class EditTaskEvent(BaseModel):
    event: Literal["editTask"]
    data: TaskPatch


class DeleteTaskEvent(BaseModel):
    event: Literal["deleteTask"]
    data: TaskDelete


class AssignTaskEvent(BaseModel):
    event: Literal["taskAssigned"]
    data: TaskAssign


class CommentAddedEvent(BaseModel):
    event: Literal["commentAdded"]
    data: CommentCreate


class InviteSentEvent(BaseModel):
    event: Literal["inviteSent"]
    data: InviteRelay


class CollaboratorAddedEvent(BaseModel):
    event: Literal["collaboratorAdded"]
    data: CollaboratorRelay


InboundEvent = Annotated[
    Union[
        AuthenticateEvent,
        JoinBoardEvent,
        LeaveBoardEvent,
        JoinTaskEvent,
        LeaveTaskEvent,
        JoinUserEvent,
        CreateTaskEvent,
        UpdateTaskEvent,
        EditTaskEvent,
        DeleteTaskEvent,
        AssignTaskEvent,
        CommentAddedEvent,
        InviteSentEvent,
        CollaboratorAddedEvent,
    ],
    Field(discriminator="event"),
]

inbound_event = TypeAdapter(InboundEvent)
