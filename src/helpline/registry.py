"""In-memory registry of live call sessions.

Every call-handling task (webhook turn, stream consumer) reaches its
``CallSession`` through this registry.  Mutations for one call id are
serialized by a per-call ``asyncio.Lock``; different calls never contend.
"""

import asyncio
import copy
import logging
from typing import Any, Callable

from helpline.errors import SessionNotFound
from helpline.session import CallSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self):
        self._sessions: dict[str, CallSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    async def create(self, call_id: str, **fields) -> CallSession:
        """Register a new session. Re-creating an existing id returns the live one."""
        session, _ = await self.register(call_id, **fields)
        return session

    async def register(self, call_id: str, **fields) -> tuple[CallSession, bool]:
        """Like ``create``, also reporting whether this call made the session."""
        async with self._registry_lock:
            existing = self._sessions.get(call_id)
            if existing is not None:
                logger.info("Session %s already registered", call_id)
                return copy.deepcopy(existing), False
            session = CallSession(call_id=call_id, **fields)
            self._sessions[call_id] = session
            self._locks[call_id] = asyncio.Lock()
            logger.info("Session %s created (%d live)", call_id, len(self._sessions))
            return copy.deepcopy(session), True

    async def get(self, call_id: str) -> CallSession | None:
        """Return a snapshot of the session, or None if unknown."""
        lock = self._locks.get(call_id)
        if lock is None:
            return None
        async with lock:
            session = self._sessions.get(call_id)
            return copy.deepcopy(session) if session is not None else None

    async def mutate(self, call_id: str, fn: Callable[[CallSession], Any]) -> Any:
        """Apply ``fn`` to the live session atomically and return its result.

        ``fn`` must be synchronous; it runs while the call's lock is held.
        """
        lock = self._locks.get(call_id)
        if lock is None:
            raise SessionNotFound(call_id)
        async with lock:
            session = self._sessions.get(call_id)
            if session is None:
                raise SessionNotFound(call_id)
            return fn(session)

    async def remove(self, call_id: str) -> CallSession | None:
        async with self._registry_lock:
            lock = self._locks.pop(call_id, None)
            session = self._sessions.pop(call_id, None)
        if lock is not None:
            # Let an in-progress mutation finish before handing back the final state
            async with lock:
                pass
        if session is not None:
            logger.info("Session %s removed (%d live)", call_id, len(self._sessions))
        return session

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
