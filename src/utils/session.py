"""Session primitives: per-session FIFO locks and an async session registry.

``SessionLocks`` serializes work for one session id while letting different
session ids run concurrently. ``AsyncSessionManager`` stores per-session
state objects behind an asyncio.Lock and prunes stale ones.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generic, Protocol, TypeVar, runtime_checkable

from loguru import logger


@runtime_checkable
class HasUpdatedAt(Protocol):
    """Protocol for objects with an updated_at timestamp."""

    updated_at: datetime


T = TypeVar("T")


class SessionNotFoundError(Exception):
    """Raised when a session ID is not found."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


@dataclass
class _LockEntry:
    lock: asyncio.Lock
    holders: int = 0  # tasks currently holding or waiting


class SessionLocks:
    """Strictly ordered per-session async locks.

    A task entering ``hold(session_id)`` waits until every earlier task for the
    same session has finished (normally or by raising). asyncio.Lock wakes
    waiters first-in first-out, which gives the queue its ordering. Entries
    are dropped once no task holds or waits on them.

    Usage:
        locks = SessionLocks()
        async with locks.hold("session-1"):
            ...  # step N's side effects complete before step N+1 starts
    """

    def __init__(self) -> None:
        self._entries: dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncGenerator[None, None]:
        entry = self._entries.get(session_id)
        if entry is None:
            entry = _LockEntry(lock=asyncio.Lock())
            self._entries[session_id] = entry
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._entries.get(session_id) is entry:
                del self._entries[session_id]

    def is_busy(self, session_id: str) -> bool:
        """True while any task holds or waits on the session's lock."""
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class AsyncSessionManager(Generic[T]):
    """Async-native session registry using asyncio.Lock.

    Does NOT block the event loop during lock acquisition.

    Usage:
        class OrchestratorRegistry(AsyncSessionManager[ReasoningOrchestrator]):
            async def get_or_create(self, session_id: str) -> ReasoningOrchestrator:
                ...
    """

    def __init__(self) -> None:
        self._sessions: dict[str, T] = {}
        self._lock = asyncio.Lock()

    def _get_session_unsafe(self, session_id: str) -> T:
        """Get session by ID without lock (caller must hold lock)."""
        if session_id not in self._sessions:
            raise SessionNotFoundError(session_id)
        return self._sessions[session_id]

    @asynccontextmanager
    async def locked(self) -> AsyncGenerator[dict[str, T], None]:
        """Acquire the registry lock and yield the sessions dict for bulk operations."""
        async with self._lock:
            yield self._sessions

    async def session_exists(self, session_id: str) -> bool:
        async with self._lock:
            return session_id in self._sessions

    async def session_count(self) -> int:
        async with self._lock:
            return len(self._sessions)

    async def register_session(self, session_id: str, state: T) -> None:
        async with self._lock:
            self._sessions[session_id] = state

    async def remove_session(self, session_id: str) -> T | None:
        async with self._lock:
            return self._sessions.pop(session_id, None)

    async def get_session(self, session_id: str) -> T:
        """Get session by ID.

        Raises:
            SessionNotFoundError: If session doesn't exist.

        """
        async with self._lock:
            return self._get_session_unsafe(session_id)

    async def cleanup_stale(
        self,
        max_age: timedelta,
        *,
        now: datetime | None = None,
        predicate: Callable[[T], bool] | None = None,
    ) -> list[str]:
        """Remove sessions whose ``updated_at`` is older than ``now - max_age``.

        Args:
            max_age: Maximum idle age.
            now: Reference time (defaults to datetime.now()).
            predicate: Optional extra filter; only sessions where it returns
                True are eligible (use it to skip busy sessions).

        Returns:
            List of removed session IDs.

        Raises:
            TypeError: If a session state has no ``updated_at`` attribute.

        """
        cutoff = (now or datetime.now()) - max_age

        async with self._lock:
            stale_ids: list[str] = []
            for session_id, state in self._sessions.items():
                if not isinstance(state, HasUpdatedAt):
                    raise TypeError(
                        f"Session state {type(state).__name__} must have 'updated_at' attribute"
                    )
                passes_predicate = predicate is None or predicate(state)
                if state.updated_at < cutoff and passes_predicate:
                    stale_ids.append(session_id)

            for session_id in stale_ids:
                del self._sessions[session_id]

        if stale_ids:
            logger.info(f"Removed {len(stale_ids)} stale session(s)")
        return stale_ids

    def get_all_sessions_snapshot(self) -> dict[str, T]:
        """Shallow copy of the sessions dict without taking the lock (eventually consistent)."""
        return dict(self._sessions)
