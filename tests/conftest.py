from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from quickcollab.config import Settings
from quickcollab.hub import CollabHub
from quickcollab.models import Collaborator
from quickcollab.storage import MemoryStorage


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, object]] = []

    async def send(self, event: str, payload: object) -> None:
        self.sent.append((event, payload))

    def events(self) -> list[str]:
        return [event for event, _ in self.sent]

    def payloads(self, event: str) -> list[object]:
        return [payload for name, payload in self.sent if name == event]


class BrokenTransport(RecordingTransport):
    async def send(self, event: str, payload: object) -> None:
        raise ConnectionResetError("peer went away")


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def settings() -> Settings:
    return Settings(store_timeout=0.5, store_retries=2, retry_backoff=0.0)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def hub(storage, settings) -> CollabHub:
    return CollabHub(storage, settings)


@pytest.fixture
def world(storage):
    """Alice owns the "Launch" board, Bob collaborates on it, Carol does not."""

    async def build():
        alice = await storage.create_user("alice@example.com", "Alice")
        bob = await storage.create_user("bob@example.com", "Bob")
        carol = await storage.create_user("carol@example.com", "Carol")
        board = await storage.create_board("Launch", alice)
        board = await storage.add_collaborator(board.id, Collaborator(user_id=bob.id, email=bob.email))
        return SimpleNamespace(alice=alice, bob=bob, carol=carol, board=board)

    return run(build())
