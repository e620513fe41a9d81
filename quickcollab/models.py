from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    TODO = "To Do"
    IN_PROGRESS = "In Progress"
    DONE = "Done"


class Role(str, Enum):
    OWNER = "Owner"
    MEMBER = "Member"


# === Domain objects returned by the stores ===


@dataclass
class User:
    id: str
    email: str
    name: str
    created_at: datetime


@dataclass
class Collaborator:
    user_id: str
    email: str
    role: Role = Role.MEMBER


@dataclass
class Board:
    id: str
    title: str
    owner: str
    created_at: datetime
    updated_at: datetime
    collaborators: List[Collaborator] = field(default_factory=list)

    def is_member(self, user_id: Optional[str]) -> bool:
        if user_id is None:
            return False
        if self.owner == user_id:
            return True
        return any(c.user_id == user_id for c in self.collaborators)

    def collaborator(self, user_id: str) -> Optional[Collaborator]:
        for c in self.collaborators:
            if c.user_id == user_id:
                return c
        return None


@dataclass
class Task:
    id: str
    title: str
    board: str
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    due_date: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    assigned_to: Optional[str] = None


@dataclass
class Comment:
    id: str
    content: str
    task: str
    user: str
    created_at: datetime
