from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.concurrency import run_in_threadpool

from .errors import ConflictError, TransientStoreError
from .models import Board, Collaborator, Comment, Role, Task, TaskStatus, User, now_utc
from .storage import TASK_MUTABLE_FIELDS, Repository


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True)
    name: Mapped[str] = mapped_column(String(140))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)


class BoardRow(Base):
    __tablename__ = "boards"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(140))
    owner: Mapped[str] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    collaborators: Mapped[list[CollaboratorRow]] = relationship(
        back_populates="board",
        cascade="all, delete-orphan",
        order_by="CollaboratorRow.id",
    )


class CollaboratorRow(Base):
    __tablename__ = "board_collaborators"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    board_id: Mapped[str] = mapped_column(String(36), ForeignKey("boards.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(String(36))
    email: Mapped[str] = mapped_column(String(320))
    role: Mapped[str] = mapped_column(String(16))  # Owner|Member

    board: Mapped[BoardRow] = relationship(back_populates="collaborators")

    __table_args__ = (
        UniqueConstraint("board_id", "user_id", name="uq_collaborator"),
    )


class TaskRow(Base):
    __tablename__ = "tasks"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # no FK: tasks outlive their board unless the caller deletes them
    board_id: Mapped[str] = mapped_column(String(36), index=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=TaskStatus.TODO.value)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    assigned_to: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)


class CommentRow(Base):
    __tablename__ = "comments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    task_id: Mapped[str] = mapped_column(String(36), index=True)
    user_id: Mapped[str] = mapped_column(String(36))
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


# SQLite drops tzinfo on the way back out.
def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _user(row: UserRow) -> User:
    return User(id=row.id, email=row.email, name=row.name, created_at=_aware(row.created_at))


def _board(row: BoardRow) -> Board:
    return Board(
        id=row.id,
        title=row.title,
        owner=row.owner,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        collaborators=[
            Collaborator(user_id=c.user_id, email=c.email, role=Role(c.role)) for c in row.collaborators
        ],
    )


def _task(row: TaskRow) -> Task:
    return Task(
        id=row.id,
        title=row.title,
        board=row.board_id,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        description=row.description,
        status=TaskStatus(row.status),
        due_date=_aware(row.due_date),
        tags=list(row.tags or []),
        assigned_to=row.assigned_to,
    )


def _comment(row: CommentRow) -> Comment:
    return Comment(
        id=row.id,
        content=row.content,
        task=row.task_id,
        user=row.user_id,
        created_at=_aware(row.created_at),
    )


class SqlStorage(Repository):
    """SQLAlchemy-backed store; blocking sessions run in the threadpool."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._sessions()
        try:
            yield db
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("duplicate record") from exc
        except OperationalError as exc:
            db.rollback()
            raise TransientStoreError("database unavailable") from exc
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    async def close(self) -> None:
        await run_in_threadpool(self.engine.dispose)

    # === Users ===
    async def create_user(self, email: str, name: str) -> User:
        return await run_in_threadpool(self._create_user, email, name)

    def _create_user(self, email: str, name: str) -> User:
        with self._session() as db:
            row = UserRow(id=str(uuid.uuid4()), email=email.strip().lower(), name=name.strip(), created_at=now_utc())
            db.add(row)
            db.flush()
            return _user(row)

    async def get_user(self, user_id: str) -> Optional[User]:
        return await run_in_threadpool(self._get_user, user_id)

    def _get_user(self, user_id: str) -> Optional[User]:
        with self._session() as db:
            row = db.get(UserRow, user_id)
            return _user(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await run_in_threadpool(self._get_user_by_email, email)

    def _get_user_by_email(self, email: str) -> Optional[User]:
        with self._session() as db:
            row = db.scalars(select(UserRow).where(UserRow.email == email.strip().lower())).first()
            return _user(row) if row else None

    # === Boards ===
    async def create_board(self, title: str, owner: User) -> Board:
        return await run_in_threadpool(self._create_board, title, owner)

    def _create_board(self, title: str, owner: User) -> Board:
        with self._session() as db:
            now = now_utc()
            row = BoardRow(id=str(uuid.uuid4()), title=title, owner=owner.id, created_at=now, updated_at=now)
            row.collaborators.append(
                CollaboratorRow(user_id=owner.id, email=owner.email, role=Role.OWNER.value)
            )
            db.add(row)
            db.flush()
            return _board(row)

    async def get_board(self, board_id: str) -> Optional[Board]:
        return await run_in_threadpool(self._get_board, board_id)

    def _get_board(self, board_id: str) -> Optional[Board]:
        with self._session() as db:
            row = db.get(BoardRow, board_id)
            return _board(row) if row else None

    async def list_boards_for_user(self, user_id: str) -> List[Board]:
        return await run_in_threadpool(self._list_boards_for_user, user_id)

    def _list_boards_for_user(self, user_id: str) -> List[Board]:
        with self._session() as db:
            stmt = (
                select(BoardRow)
                .join(CollaboratorRow, CollaboratorRow.board_id == BoardRow.id)
                .where(CollaboratorRow.user_id == user_id)
                .order_by(BoardRow.created_at)
            )
            return [_board(row) for row in db.scalars(stmt).unique()]

    async def add_collaborator(self, board_id: str, collaborator: Collaborator) -> Optional[Board]:
        return await run_in_threadpool(self._add_collaborator, board_id, collaborator)

    def _add_collaborator(self, board_id: str, collaborator: Collaborator) -> Optional[Board]:
        with self._session() as db:
            row = db.get(BoardRow, board_id)
            if row is None:
                return None
            if row.owner == collaborator.user_id or any(
                c.user_id == collaborator.user_id for c in row.collaborators
            ):
                raise ConflictError("user is already a collaborator", field="email")
            row.collaborators.append(
                CollaboratorRow(user_id=collaborator.user_id, email=collaborator.email, role=collaborator.role.value)
            )
            row.updated_at = now_utc()
            db.flush()
            return _board(row)

    # === Tasks ===
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
        return await run_in_threadpool(
            self._create_task, board_id, title, description, status, due_date, tags, assigned_to
        )

    def _create_task(
        self,
        board_id: str,
        title: str,
        description: Optional[str],
        status: TaskStatus,
        due_date: Optional[datetime],
        tags: Optional[List[str]],
        assigned_to: Optional[str],
    ) -> Task:
        with self._session() as db:
            now = now_utc()
            row = TaskRow(
                id=str(uuid.uuid4()),
                board_id=board_id,
                title=title,
                description=description,
                status=status.value,
                due_date=_utc(due_date),
                tags=list(tags or []),
                assigned_to=assigned_to,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            db.flush()
            return _task(row)

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await run_in_threadpool(self._get_task, task_id)

    def _get_task(self, task_id: str) -> Optional[Task]:
        with self._session() as db:
            row = db.get(TaskRow, task_id)
            return _task(row) if row else None

    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[Task]:
        return await run_in_threadpool(self._update_task, task_id, changes)

    def _update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[Task]:
        unknown = set(changes) - TASK_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"immutable task fields: {sorted(unknown)}")
        with self._session() as db:
            row = db.scalars(select(TaskRow).where(TaskRow.id == task_id).with_for_update()).first()
            if row is None:
                return None
            for name, value in changes.items():
                if name == "status":
                    value = TaskStatus(value).value
                elif name == "tags":
                    value = list(value)
                elif name == "due_date":
                    value = _utc(value)
                setattr(row, name, value)
            row.updated_at = now_utc()
            db.flush()
            return _task(row)

    async def delete_task(self, task_id: str) -> bool:
        return await run_in_threadpool(self._delete_task, task_id)

    def _delete_task(self, task_id: str) -> bool:
        with self._session() as db:
            row = db.get(TaskRow, task_id)
            if row is None:
                return False
            db.delete(row)
            return True

    async def list_tasks(self, board_id: str) -> List[Task]:
        return await run_in_threadpool(self._list_tasks, board_id)

    def _list_tasks(self, board_id: str) -> List[Task]:
        with self._session() as db:
            stmt = select(TaskRow).where(TaskRow.board_id == board_id).order_by(TaskRow.created_at, TaskRow.id)
            return [_task(row) for row in db.scalars(stmt)]

    # === Comments ===
    async def create_comment(self, task_id: str, user_id: str, content: str) -> Comment:
        return await run_in_threadpool(self._create_comment, task_id, user_id, content)

    def _create_comment(self, task_id: str, user_id: str, content: str) -> Comment:
        with self._session() as db:
            row = CommentRow(
                id=str(uuid.uuid4()), task_id=task_id, user_id=user_id, content=content, created_at=now_utc()
            )
            db.add(row)
            db.flush()
            return _comment(row)

    async def list_comments(self, task_id: str) -> List[Comment]:
        return await run_in_threadpool(self._list_comments, task_id)

    def _list_comments(self, task_id: str) -> List[Comment]:
        with self._session() as db:
            stmt = select(CommentRow).where(CommentRow.task_id == task_id).order_by(CommentRow.created_at.desc())
            return [_comment(row) for row in db.scalars(stmt)]
