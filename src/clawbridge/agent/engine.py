"""Agent engine — sessions plus a pluggable LLM backend.

The dispatcher only sees this facade. Each call appends the user turn to the
session, sends the whole (possibly compressed) history to the backend and
records the assistant turn. A failed call leaves the history as it was.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from clawbridge.agent.sessions import ChatMessage, Session, SessionManager
from clawbridge.config import Settings, get_settings
from clawbridge.logger import logger


class AgentError(Exception):
    """An agent call failed. Wraps the backend error with the session id."""

    def __init__(self, session_id: str, message: str) -> None:
        self.session_id = session_id
        super().__init__(message)


class LLMBackend(Protocol):
    async def complete(self, messages: list[ChatMessage], *, system: str | None = None) -> str: ...

    def stream(
        self, messages: list[ChatMessage], *, system: str | None = None
    ) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


@dataclass
class StreamHandlers:
    on_delta: Callable[[str], Awaitable[None]] | None = None
    on_done: Callable[[str], Awaitable[None]] | None = None
    on_error: Callable[[str], Awaitable[None]] | None = None


class AgentEngine:
    def __init__(
        self,
        backend: LLMBackend,
        sessions: SessionManager | None = None,
        *,
        system_prompt: str | None = None,
    ) -> None:
        self.backend = backend
        self.sessions = sessions or SessionManager()
        self.system_prompt = system_prompt

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> AgentEngine:
        from clawbridge.agent.anthropic import AnthropicBackend

        s = settings or get_settings()
        return cls(
            AnthropicBackend.from_settings(s),
            SessionManager(s.agent.max_context_tokens, s.agent.keep_recent_messages),
            system_prompt=s.agent.system_prompt,
        )

    # --- Session passthroughs ---

    def create_session(self, session_id: str, user_id: str | None = None) -> Session:
        return self.sessions.create_session(session_id, user_id)

    def get_session(self, session_id: str) -> Session | None:
        return self.sessions.get_session(session_id)

    def delete_session(self, session_id: str) -> bool:
        return self.sessions.delete_session(session_id)

    def cleanup_expired_sessions(self, max_age: float = 24 * 3600) -> int:
        return self.sessions.cleanup_expired_sessions(max_age)

    def stats(self) -> dict[str, Any]:
        return self.sessions.stats()

    # --- Invocation ---

    def _begin_turn(self, session_id: str, text: str, user_id: str | None) -> list[ChatMessage]:
        self.sessions.get_or_create(session_id, user_id)
        self.sessions.add_message(session_id, "user", text)
        return self.sessions.get_messages(session_id)

    def _abandon_turn(self, session_id: str, text: str) -> None:
        session = self.sessions.get_session(session_id)
        if session is None or not session.messages:
            return
        last = session.messages[-1]
        if last.role == "user" and last.content == text:
            session.messages.pop()
            session.recompute_context_length()

    async def send_message(self, session_id: str, text: str, user_id: str | None = None) -> str:
        history = self._begin_turn(session_id, text, user_id)
        try:
            reply = await self.backend.complete(history, system=self.system_prompt)
        except Exception as exc:
            self._abandon_turn(session_id, text)
            logger.error("Agent call failed", session_id=session_id, err=str(exc))
            raise AgentError(session_id, f"Agent call failed: {exc}") from exc

        if not reply.strip():
            self._abandon_turn(session_id, text)
            raise AgentError(session_id, "Agent returned an empty reply")

        self.sessions.add_message(session_id, "assistant", reply)
        return reply

    async def send_message_stream(
        self,
        session_id: str,
        text: str,
        user_id: str | None = None,
        handlers: StreamHandlers | None = None,
    ) -> str:
        """Stream a reply, calling ``handlers`` as it arrives. Returns the full text."""
        handlers = handlers or StreamHandlers()
        history = self._begin_turn(session_id, text, user_id)
        parts: list[str] = []
        try:
            async for delta in self.backend.stream(history, system=self.system_prompt):
                if not delta:
                    continue
                parts.append(delta)
                if handlers.on_delta:
                    await handlers.on_delta(delta)
            reply = "".join(parts)
            if not reply.strip():
                raise AgentError(session_id, "Agent returned an empty reply")
        except Exception as exc:
            self._abandon_turn(session_id, text)
            err = exc if isinstance(exc, AgentError) else AgentError(
                session_id, f"Agent stream failed: {exc}"
            )
            logger.error("Agent stream failed", session_id=session_id, err=str(err))
            if handlers.on_error:
                await handlers.on_error(str(err))
            if err is exc:
                raise
            raise err from exc

        self.sessions.add_message(session_id, "assistant", reply)
        if handlers.on_done:
            await handlers.on_done(reply)
        return reply

    async def close(self) -> None:
        await self.backend.close()
