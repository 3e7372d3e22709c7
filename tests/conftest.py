"""Shared test fixtures for clawbridge."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

import pytest

from clawbridge.agent.sessions import ChatMessage
from clawbridge.types import InboundMessage, OnInbound

# ---------------------------------------------------------------------------
# Shared helpers (plain functions and classes, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "state_path"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (agent, supervisor, etc.) and cached property
    overrides (project_root, state_path).

    Usage::

        s = make_settings(project_root=tmp_path)
        s = make_settings(supervisor=SupervisorConfig(ready_timeout=0.1))
    """
    from clawbridge.config import (
        AgentConfig,
        DedupConfig,
        DispatchConfig,
        LoggingConfig,
        RouterConfig,
        SecretsConfig,
        ServerConfig,
        Settings,
        SlackConfig,
        SupervisorConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "agent": AgentConfig(),
        "router": RouterConfig(),
        "dedup": DedupConfig(),
        "dispatch": DispatchConfig(),
        "supervisor": SupervisorConfig(),
        "slack": SlackConfig(),
        "secrets": SecretsConfig(),
        "server": ServerConfig(enabled=False),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


@dataclass
class SentMessage:
    chat_id: str
    text: str
    reply_to: str | None = None
    thread_id: str | None = None


class FakeChannel:
    """In-memory Channel that records everything sent through it."""

    name = "fake"

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self.typing: list[tuple[str, str | None, bool]] = []
        self.connected = False
        self.on_message: OnInbound | None = None
        self.fail_sends = False

    async def connect(self, on_message: OnInbound) -> None:
        self.on_message = on_message
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to: str | None = None,
        thread_id: str | None = None,
    ) -> str | None:
        if self.fail_sends:
            raise ConnectionError("send failed")
        self.sent.append(SentMessage(chat_id, text, reply_to, thread_id))
        return f"out-{len(self.sent)}"

    async def set_typing(self, chat_id: str, message_id: str | None, is_typing: bool) -> None:
        self.typing.append((chat_id, message_id, is_typing))

    def is_connected(self) -> bool:
        return self.connected

    def texts(self) -> list[str]:
        return [m.text for m in self.sent]


class FakeBackend:
    """LLM backend double.

    ``reply`` may be a string or a callable taking the user's latest text.
    ``gate`` (an asyncio.Event) holds every call until it is set.
    """

    def __init__(self, reply="ok", *, chunks=None, error=None, gate=None, delay=0.0):
        self.reply = reply
        self.chunks = chunks
        self.error = error
        self.gate = gate
        self.delay = delay
        self.calls: list[list[ChatMessage]] = []
        self.closed = False

    def _text_for(self, messages: list[ChatMessage]) -> str:
        if callable(self.reply):
            return self.reply(messages[-1].content)
        return self.reply

    async def _wait(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)

    async def complete(self, messages, *, system=None):
        self.calls.append(list(messages))
        await self._wait()
        if self.error is not None:
            raise self.error
        return self._text_for(messages)

    async def stream(self, messages, *, system=None) -> AsyncIterator[str]:
        self.calls.append(list(messages))
        await self._wait()
        if self.error is not None:
            raise self.error
        for chunk in self.chunks if self.chunks is not None else [self._text_for(messages)]:
            yield chunk

    async def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True, scope="session")
def _clean_git_env():
    """Strip git env vars that pre-commit leaks during its stash cycle."""
    import os

    for var in ("GIT_INDEX_FILE", "GIT_DIR", "GIT_WORK_TREE"):
        os.environ.pop(var, None)


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean Settings singleton.

    Built from pure defaults with the project root in a temp dir, so the
    restart state file never touches the real working tree.
    """
    safe = make_settings(project_root=tmp_path)
    monkeypatch.setattr("clawbridge.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / ".restart-state.json"


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def make_msg():
    """Factory fixture for creating inbound messages with defaults."""

    def _make(
        *,
        message_id: str = "M1",
        chat_id: str = "C1",
        sender_id: str = "U1",
        sender_name: str = "Alice",
        content: str = "hello",
        timestamp: str = "2024-01-01T00:00:00+00:00",
        thread_id: str | None = None,
    ) -> InboundMessage:
        return InboundMessage(
            message_id=message_id,
            chat_id=chat_id,
            sender_id=sender_id,
            sender_name=sender_name,
            content=content,
            timestamp=timestamp,
            thread_id=thread_id,
        )

    return _make
