from __future__ import annotations

import logging
from typing import Dict, Optional

from .auth import resolve_principal
from .broadcast import BroadcastDispatcher
from .config import Settings
from .coordinator import MutationCoordinator
from .db import SqlStorage, init_db, make_engine
from .rooms import RoomRegistry
from .session import Session, Transport
from .storage import MemoryStorage, Repository

logger = logging.getLogger(__name__)


def build_storage(settings: Settings) -> Repository:
    if not settings.database_url:
        return MemoryStorage()
    engine = make_engine(settings.database_url)
    init_db(engine)
    return SqlStorage(engine)


class CollabHub:
    """Everything one process needs to keep its clients in sync.

    Built once at startup and closed at shutdown; nothing here is global.
    """

    def __init__(self, storage: Repository, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()
        self.storage = storage
        self.registry = RoomRegistry()
        self.dispatcher = BroadcastDispatcher(self.registry)
        self.coordinator = MutationCoordinator(storage, self.dispatcher, self.settings)
        self.sessions: Dict[str, Session] = {}

    def open_session(self, transport: Transport, principal_id: Optional[str] = None) -> Session:
        session = Session(
            transport,
            self.registry,
            self.coordinator,
            resolve_token=self.resolve_token,
            on_disconnect=self._forget,
        )
        self.sessions[session.id] = session
        if principal_id is not None:
            session.authenticate(principal_id)
        logger.info("session %s opened (%d live)", session.id, len(self.sessions))
        return session

    async def resolve_token(self, token: str) -> Optional[str]:
        return await resolve_principal(self.storage, token)

    async def close(self) -> None:
        for session in list(self.sessions.values()):
            session.disconnect()
        self.registry.close()
        await self.storage.close()
        logger.info("hub closed")

    def _forget(self, session: Session) -> None:
        self.sessions.pop(session.id, None)
