"""Conversation router — (chat, thread) → agent session, one turn at a time.

A conversation is a chat, or a thread inside a chat. Each conversation gets
its own agent session the first time it speaks, and its messages are
processed strictly one after another: a second message waits for the first
reply. Different conversations never wait on each other.

The wait is bounded. A waiter that times out proceeds without the lock and
logs a warning; a stuck agent call must not silence the conversation for
good.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

from clawbridge.config import Settings, get_settings
from clawbridge.logger import logger
from clawbridge.types import InboundMessage


def conversation_key(chat_id: str, thread_id: str | None = None) -> str:
    return f"{chat_id}:{thread_id}" if thread_id else chat_id


class SessionStore(Protocol):
    """Conversation key → session id mapping."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, session_id: str) -> None: ...

    def delete(self, key: str) -> bool: ...

    def items(self) -> Iterator[tuple[str, str]]: ...

    def __len__(self) -> int: ...


class InMemorySessionStore:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, session_id: str) -> None:
        self._data[key] = session_id

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def items(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._data.items()))

    def __len__(self) -> int:
        return len(self._data)


class SessionRegistrar(Protocol):
    def create_session(self, session_id: str, user_id: str | None = None) -> Any: ...


@dataclass
class ThreadContext:
    thread_id: str
    chat_id: str
    session_id: str
    last_activity_at: float
    message_count: int = 0


class ConversationRouter:
    def __init__(
        self,
        engine: SessionRegistrar,
        store: SessionStore | None = None,
        *,
        session_prefix: str = "slack_",
        lock_wait_timeout: float = 30.0,
    ) -> None:
        self._engine = engine
        self._store: SessionStore = store if store is not None else InMemorySessionStore()
        self._prefix = session_prefix
        self._lock_wait = lock_wait_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}  # holders + waiters, lock dropped at zero
        self._threads: dict[str, ThreadContext] = {}

    @classmethod
    def from_settings(
        cls,
        engine: SessionRegistrar,
        settings: Settings | None = None,
        store: SessionStore | None = None,
    ) -> ConversationRouter:
        s = settings or get_settings()
        return cls(
            engine,
            store,
            session_prefix=s.router.session_prefix,
            lock_wait_timeout=s.router.lock_wait_timeout,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def resolve_session(self, msg: InboundMessage) -> str:
        """Return the conversation's session id, creating the session on first use."""
        key = conversation_key(msg.chat_id, msg.thread_id)
        session_id = self._store.get(key)
        if session_id is not None:
            return session_id

        session_id = f"{self._prefix}{key}"
        self._engine.create_session(session_id, msg.sender_id)
        self._store.set(key, session_id)
        logger.info("New conversation session", key=key, session_id=session_id)
        return session_id

    # ------------------------------------------------------------------
    # Per-conversation serialization
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def processing(self, key: str) -> AsyncIterator[bool]:
        """Hold *key*'s slot for the duration of the block.

        Yields True when the slot was acquired, False when the wait timed
        out and the block runs unserialized.
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1

        acquired = False
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._lock_wait)
                acquired = True
            except TimeoutError:
                logger.warning(
                    "Conversation still busy, proceeding without lock",
                    key=key,
                    waited=self._lock_wait,
                )
            yield acquired
        finally:
            if acquired:
                lock.release()
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                self._locks.pop(key, None)

    def is_processing(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def track_thread(self, msg: InboundMessage, session_id: str) -> ThreadContext | None:
        if not msg.thread_id:
            return None
        key = conversation_key(msg.chat_id, msg.thread_id)
        ctx = self._threads.get(key)
        if ctx is None:
            ctx = self._threads[key] = ThreadContext(
                thread_id=msg.thread_id,
                chat_id=msg.chat_id,
                session_id=session_id,
                last_activity_at=time.time(),
            )
        ctx.last_activity_at = time.time()
        ctx.message_count += 1
        return ctx

    def thread_context(self, chat_id: str, thread_id: str) -> ThreadContext | None:
        return self._threads.get(conversation_key(chat_id, thread_id))

    def stats(self) -> dict[str, Any]:
        return {
            "active_sessions": len(self._store),
            "threads": len(self._threads),
            "processing": sorted(k for k, lock in self._locks.items() if lock.locked()),
            "sessions": dict(self._store.items()),
        }
