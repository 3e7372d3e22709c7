"""In-memory agent sessions with token estimation and lossy compression."""

from __future__ import annotations

import math
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from clawbridge.logger import logger

Role = Literal["user", "assistant", "system"]

_CJK_RE = re.compile(r"[\u4e00-\u9fff]")  # CJK Unified Ideographs

# Compression never runs on sessions this short, whatever their size
_MIN_MESSAGES_TO_COMPRESS = 10


def estimate_tokens(text: str) -> int:
    """Rough token count: CJK characters weigh 1.5, everything else 0.25."""
    cjk = len(_CJK_RE.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk * 1.5 + other * 0.25)


@dataclass
class ChatMessage:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Session:
    session_id: str
    user_id: str | None = None
    messages: list[ChatMessage] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    context_length: int = 0  # token estimate over messages

    def recompute_context_length(self) -> int:
        self.context_length = sum(estimate_tokens(m.content) for m in self.messages)
        return self.context_length


class SessionNotFoundError(KeyError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionManager:
    """Owns every agent session for the lifetime of the worker.

    ``add_message`` keeps ``context_length`` current and compresses a session
    once it passes ``max_context_tokens``: system messages plus the most
    recent ``keep_recent`` messages survive, the rest is discarded.
    """

    def __init__(
        self,
        max_context_tokens: int = 4000,
        keep_recent: int = 5,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._max_context = max_context_tokens
        self._keep_recent = keep_recent
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def create_session(self, session_id: str, user_id: str | None = None) -> Session:
        now = self._clock()
        session = Session(session_id=session_id, user_id=user_id, created_at=now, updated_at=now)
        self._sessions[session_id] = session
        logger.info("Session created", session_id=session_id, user_id=user_id)
        return session

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str, user_id: str | None = None) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = self.create_session(session_id, user_id)
        return session

    def delete_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def add_message(self, session_id: str, role: Role, content: str) -> Session:
        session = self._require(session_id)
        session.messages.append(ChatMessage(role=role, content=content))
        session.updated_at = self._clock()
        session.context_length += estimate_tokens(content)
        if session.context_length > self._max_context:
            self._compress(session)
        return session

    def get_messages(self, session_id: str) -> list[ChatMessage]:
        return list(self._require(session_id).messages)

    def clear_messages(self, session_id: str) -> None:
        session = self._require(session_id)
        session.messages = []
        session.context_length = 0
        session.updated_at = self._clock()

    def _compress(self, session: Session) -> None:
        if len(session.messages) <= _MIN_MESSAGES_TO_COMPRESS:
            return
        before = len(session.messages)
        system = [m for m in session.messages if m.role == "system"]
        recent = session.messages[-self._keep_recent :] if self._keep_recent > 0 else []
        # A system message among the recent tail is kept once
        tail = [m for m in recent if not any(m is s for s in system)]
        session.messages = system + tail
        session.recompute_context_length()
        logger.info(
            "Session context compressed",
            session_id=session.session_id,
            before=before,
            after=len(session.messages),
            tokens=session.context_length,
        )

    def all_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def user_sessions(self, user_id: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.user_id == user_id]

    def cleanup_expired_sessions(self, max_age: float = 24 * 3600) -> int:
        """Drop sessions idle for longer than *max_age* seconds."""
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if now - s.updated_at > max_age]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Expired sessions removed", count=len(expired))
        return len(expired)

    def stats(self) -> dict[str, Any]:
        total = len(self._sessions)
        messages = sum(len(s.messages) for s in self._sessions.values())
        return {
            "total_sessions": total,
            "total_messages": messages,
            "average_messages_per_session": messages / total if total else 0,
        }
