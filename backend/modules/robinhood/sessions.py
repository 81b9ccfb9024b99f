"""
Robinhood session management

One session per application user. The SessionManager owns validity (expiry
against an injected clock) and serialization of writes; where sessions live
is up to the SessionStore handed to it:
- InMemorySessionStore: process memory, lost on restart (tests, local dev)
- DatabaseSessionStore: Postgres via SQLAlchemy, tokens Fernet-encrypted
"""
import asyncio
import logging
import time
import weakref
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import crud
from models.robinhood import ConnectionStatus, RobinhoodSessionData
from services.encryption import EncryptionService, get_encryption_service
from utils.logger import log_db_query
from .errors import NotConnectedError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserLocks:
    """
    Lazily created asyncio.Lock per user id; no lock spans users

    Entries are weak: a lock disappears once no holder or waiter references
    it, so the map does not grow with every user ever seen.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __call__(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class SessionStore(Protocol):
    async def get(self, user_id: str) -> Optional[RobinhoodSessionData]: ...

    async def set(self, user_id: str, session: RobinhoodSessionData) -> None: ...

    async def delete(self, user_id: str) -> None: ...


class InMemorySessionStore:
    def __init__(self):
        self._sessions: Dict[str, RobinhoodSessionData] = {}

    async def get(self, user_id: str) -> Optional[RobinhoodSessionData]:
        return self._sessions.get(user_id)

    async def set(self, user_id: str, session: RobinhoodSessionData) -> None:
        self._sessions[user_id] = session

    async def delete(self, user_id: str) -> None:
        self._sessions.pop(user_id, None)


class DatabaseSessionStore:
    """
    Sessions in the robinhood_sessions table

    SECURITY: tokens are encrypted before they reach the CRUD layer and
    decrypted only on read.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        encryption: Optional[EncryptionService] = None
    ):
        self._session_factory = session_factory
        self._encryption = encryption or get_encryption_service()

    async def get(self, user_id: str) -> Optional[RobinhoodSessionData]:
        start = time.perf_counter()
        async with self._session_factory() as db:
            row = await crud.get_session(db, user_id)
        log_db_query(logger, "SELECT", "robinhood_sessions", (time.perf_counter() - start) * 1000, int(row is not None))

        if row is None:
            return None

        expires_at = row.token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        return RobinhoodSessionData(
            access_token=self._encryption.decrypt(row.encrypted_access_token),
            refresh_token=(
                self._encryption.decrypt(row.encrypted_refresh_token)
                if row.encrypted_refresh_token else None
            ),
            expires_at=expires_at,
            account_id=row.account_id,
            account_url=row.account_url,
        )

    async def set(self, user_id: str, session: RobinhoodSessionData) -> None:
        start = time.perf_counter()
        async with self._session_factory() as db:
            await crud.upsert_session(
                db,
                user_id=user_id,
                encrypted_access_token=self._encryption.encrypt(session.access_token),
                encrypted_refresh_token=(
                    self._encryption.encrypt(session.refresh_token) if session.refresh_token else None
                ),
                token_expires_at=session.expires_at,
                account_id=session.account_id,
                account_url=session.account_url,
            )
        log_db_query(logger, "UPSERT", "robinhood_sessions", (time.perf_counter() - start) * 1000)

    async def delete(self, user_id: str) -> None:
        start = time.perf_counter()
        async with self._session_factory() as db:
            await crud.delete_session(db, user_id)
        log_db_query(logger, "DELETE", "robinhood_sessions", (time.perf_counter() - start) * 1000)


class SessionManager:
    """
    Owns the per-user Robinhood session

    A session is valid while expires_at > now. Reading an expired session
    deletes it, so the next read sees no session at all.
    """

    def __init__(self, store: SessionStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock
        self._locks = UserLocks()

    async def get(self, user_id: str) -> Optional[RobinhoodSessionData]:
        session = await self.store.get(user_id)
        if session is None:
            return None
        if session.is_valid(self.clock()):
            return session

        async with self._locks(user_id):
            # A login may have replaced the session while we waited
            current = await self.store.get(user_id)
            if current is not None and current.is_valid(self.clock()):
                return current
            if current is not None:
                await self.store.delete(user_id)
                logger.info(f"Purged expired Robinhood session for user {user_id}")
        return None

    async def require(self, user_id: str) -> RobinhoodSessionData:
        session = await self.get(user_id)
        if session is None:
            raise NotConnectedError(user_id)
        return session

    async def set(self, user_id: str, session: RobinhoodSessionData) -> None:
        async with self._locks(user_id):
            await self.store.set(user_id, session)
        logger.info(f"Stored Robinhood session for user {user_id} (expires {session.expires_at.isoformat()})")

    async def clear(self, user_id: str) -> None:
        async with self._locks(user_id):
            await self.store.delete(user_id)

    async def status(self, user_id: str) -> ConnectionStatus:
        session = await self.get(user_id)
        if session is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(connected=True, expires_at=session.expires_at)
