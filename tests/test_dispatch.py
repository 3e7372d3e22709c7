"""Tests for the message dispatch pipeline and reply splitting."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import FakeBackend, FakeChannel, SentMessage, make_settings

from clawbridge.agent.engine import AgentEngine
from clawbridge.config import DispatchConfig
from clawbridge.dedup import MessageDeduplicator
from clawbridge.dispatch import ERROR_REPLY_PREFIX, MessageDispatcher, split_message
from clawbridge.router import ConversationRouter

# ---------------------------------------------------------------------------
# split_message
# ---------------------------------------------------------------------------


class TestSplitMessage:
    def test_short_text_is_one_chunk(self):
        assert split_message("hello", 10) == ["hello"]
        assert split_message("", 10) == [""]

    def test_exact_limit_is_one_chunk(self):
        assert split_message("a" * 10, 10) == ["a" * 10]

    def test_prefers_paragraph_break(self):
        text = "a" * 12 + "\n\n" + "b" * 12
        chunks = split_message(text, 20)
        assert chunks == ["a" * 12 + "\n\n", "b" * 12]

    def test_falls_back_to_line_break(self):
        text = "a" * 12 + "\n" + "b" * 12
        assert split_message(text, 20) == ["a" * 12 + "\n", "b" * 12]

    def test_hard_cut_without_separators(self):
        assert split_message("x" * 25, 10) == ["x" * 10, "x" * 10, "x" * 5]

    def test_ignores_break_too_early_in_window(self):
        # The break at index 1 is before 30% of the limit, so it is not used
        text = "a\n" + "b" * 30
        chunks = split_message(text, 20)
        assert chunks[0] == text[:20]

    def test_reassembles_and_respects_limit(self):
        text = "\n\n".join(f"Paragraph {i}\n" + "word " * (i * 7 % 40) for i in range(30))
        chunks = split_message(text, 120)
        assert "".join(chunks) == text
        assert all(0 < len(c) <= 120 for c in chunks)

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            split_message("abc", 0)


# ---------------------------------------------------------------------------
# MessageDispatcher
# ---------------------------------------------------------------------------


def _dispatcher(channel, backend=None, *, on_restart=None, **kwargs) -> MessageDispatcher:
    engine = AgentEngine(backend or FakeBackend(reply=lambda text: f"echo: {text}"))
    router = ConversationRouter(engine)
    return MessageDispatcher(
        channel, engine, router, MessageDeduplicator(), on_restart=on_restart, **kwargs
    )


class TestDispatchBasics:
    async def test_top_level_reply(self, channel, make_msg):
        dispatcher = _dispatcher(channel)
        await dispatcher.handle(make_msg(content="hi"))

        assert channel.sent == [SentMessage("C1", "echo: hi")]
        assert channel.typing == [("C1", "M1", True), ("C1", "M1", False)]

    async def test_thread_reply_is_anchored(self, channel, make_msg):
        dispatcher = _dispatcher(channel)
        await dispatcher.handle(make_msg(message_id="M5", content="hi", thread_id="T1"))

        assert channel.sent == [SentMessage("C1", "echo: hi", reply_to="M5", thread_id="T1")]

    async def test_long_thread_reply_anchors_only_first_chunk(self, channel, make_msg):
        dispatcher = _dispatcher(channel, FakeBackend(reply="x" * 25), max_message_length=10)
        await dispatcher.handle(make_msg(content="hi", thread_id="T1"))

        assert [(m.reply_to, m.thread_id) for m in channel.sent] == [
            ("M1", "T1"),
            (None, "T1"),
            (None, "T1"),
        ]
        assert "".join(channel.texts()) == "x" * 25

    async def test_empty_content_is_ignored(self, channel, make_msg):
        backend = FakeBackend()
        dispatcher = _dispatcher(channel, backend)
        await dispatcher.handle(make_msg(content="   \n"))
        assert channel.sent == []
        assert backend.calls == []

    async def test_duplicate_delivery_is_dropped(self, channel, make_msg):
        backend = FakeBackend()
        dispatcher = _dispatcher(channel, backend)
        await dispatcher.handle(make_msg(message_id="M1", content="hi"))
        await dispatcher.handle(make_msg(message_id="M1", content="hi"))

        assert len(channel.sent) == 1
        assert len(backend.calls) == 1

    async def test_same_message_id_in_other_chat_is_not_a_duplicate(self, channel, make_msg):
        backend = FakeBackend()
        dispatcher = _dispatcher(channel, backend)
        await dispatcher.handle(make_msg(chat_id="C1", message_id="1700000000.000100"))
        await dispatcher.handle(make_msg(chat_id="C2", message_id="1700000000.000100"))

        assert [m.chat_id for m in channel.sent] == ["C1", "C2"]
        assert len(backend.calls) == 2

    async def test_session_reused_across_messages(self, channel, make_msg):
        backend = FakeBackend()
        dispatcher = _dispatcher(channel, backend)
        await dispatcher.handle(make_msg(message_id="M1", content="first"))
        await dispatcher.handle(make_msg(message_id="M2", content="second"))

        assert [m.content for m in backend.calls[1]] == ["first", "ok", "second"]
        assert dispatcher.router.stats()["sessions"] == {"C1": "slack_C1"}

    async def test_batch_mode(self, channel, make_msg):
        backend = FakeBackend(reply="batch reply", chunks=["never", "used"])
        dispatcher = _dispatcher(channel, backend, streaming=False)
        await dispatcher.handle(make_msg())
        assert channel.texts() == ["batch reply"]

    async def test_streaming_mode_joins_deltas(self, channel, make_msg):
        dispatcher = _dispatcher(channel, FakeBackend(chunks=["str", "eam", "ed"]))
        await dispatcher.handle(make_msg())
        assert channel.texts() == ["streamed"]

    async def test_typing_indicator_disabled(self, channel, make_msg):
        dispatcher = _dispatcher(channel, typing_indicator=False)
        await dispatcher.handle(make_msg())
        assert channel.typing == []

    async def test_typing_failure_does_not_block_reply(self, make_msg):
        channel = FakeChannel()
        channel.set_typing = AsyncMock(side_effect=RuntimeError("no reactions scope"))
        dispatcher = _dispatcher(channel)
        await dispatcher.handle(make_msg(content="hi"))
        assert channel.texts() == ["echo: hi"]

    async def test_from_settings(self, channel, make_msg):
        s = make_settings(dispatch=DispatchConfig(streaming=False, max_message_length=50))
        engine = AgentEngine(FakeBackend())
        dispatcher = MessageDispatcher.from_settings(
            channel, engine, ConversationRouter(engine), settings=s
        )
        assert dispatcher.streaming is False
        assert dispatcher.max_message_length == 50
        assert dispatcher.restart_commands == ("/restart",)


class TestDispatchErrors:
    async def test_agent_error_becomes_one_error_reply(self, channel, make_msg):
        dispatcher = _dispatcher(channel, FakeBackend(error=RuntimeError("model overloaded")))
        await dispatcher.handle(make_msg(content="hi"))

        [sent] = channel.sent
        assert sent.text.startswith(ERROR_REPLY_PREFIX)
        assert "model overloaded" in sent.text
        # Typing is cleared even on failure
        assert channel.typing[-1] == ("C1", "M1", False)

    async def test_error_reply_in_thread_is_anchored(self, channel, make_msg):
        dispatcher = _dispatcher(channel, FakeBackend(error=RuntimeError("boom")))
        await dispatcher.handle(make_msg(thread_id="T1"))
        assert channel.sent[0].reply_to == "M1"
        assert channel.sent[0].thread_id == "T1"

    async def test_empty_reply_is_an_error(self, channel, make_msg):
        dispatcher = _dispatcher(channel, FakeBackend(reply=""), streaming=False)
        await dispatcher.handle(make_msg())
        assert channel.texts()[0].startswith(ERROR_REPLY_PREFIX)
        assert "empty" in channel.texts()[0]

    async def test_send_failure_is_swallowed(self, make_msg):
        channel = FakeChannel()
        channel.fail_sends = True
        dispatcher = _dispatcher(channel)
        await dispatcher.handle(make_msg())  # must not raise
        assert channel.sent == []

    async def test_failed_message_does_not_block_the_next(self, channel, make_msg):
        calls = {"n": 0}

        def reply(text):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("first fails")
            return f"echo: {text}"

        dispatcher = _dispatcher(channel, FakeBackend(reply=reply))
        await dispatcher.handle(make_msg(message_id="M1", content="one"))
        await dispatcher.handle(make_msg(message_id="M2", content="two"))
        assert channel.texts()[1] == "echo: two"


class TestRestartCommand:
    async def test_restart_routed_to_handler(self, channel, make_msg):
        on_restart = AsyncMock()
        backend = FakeBackend()
        dispatcher = _dispatcher(channel, backend, on_restart=on_restart)
        msg = make_msg(content=" /restart ")

        await dispatcher.handle(msg)

        on_restart.assert_awaited_once_with(msg)
        assert backend.calls == []
        assert channel.sent == []

    async def test_restart_not_deduplicated(self, channel, make_msg):
        on_restart = AsyncMock()
        dispatcher = _dispatcher(channel, on_restart=on_restart)
        await dispatcher.handle(make_msg(content="/restart"))
        await dispatcher.handle(make_msg(content="/restart"))
        assert on_restart.await_count == 2

    async def test_restart_without_handler(self, channel, make_msg):
        dispatcher = _dispatcher(channel)
        await dispatcher.handle(make_msg(content="/restart"))
        assert channel.texts() == ["Restart is not available in this deployment."]

    async def test_restart_with_extra_words_goes_to_agent(self, channel, make_msg):
        on_restart = AsyncMock()
        dispatcher = _dispatcher(channel, on_restart=on_restart)
        await dispatcher.handle(make_msg(content="/restart please"))
        on_restart.assert_not_awaited()
        assert channel.texts() == ["echo: /restart please"]


class TestConcurrency:
    async def test_same_conversation_is_serialized(self, channel, make_msg):
        active = {"now": 0, "max": 0}

        class TrackingBackend(FakeBackend):
            async def complete(self, messages, *, system=None):
                active["now"] += 1
                active["max"] = max(active["max"], active["now"])
                await asyncio.sleep(0.02)
                active["now"] -= 1
                return f"re: {messages[-1].content}"

        dispatcher = _dispatcher(channel, TrackingBackend(), streaming=False)
        await asyncio.gather(
            *(dispatcher.handle(make_msg(message_id=f"M{i}", content=f"m{i}")) for i in range(4))
        )

        assert active["max"] == 1
        assert channel.texts() == ["re: m0", "re: m1", "re: m2", "re: m3"]

    async def test_other_conversations_are_not_blocked(self, channel, make_msg):
        gate = asyncio.Event()

        class GatedBackend(FakeBackend):
            async def complete(self, messages, *, system=None):
                if messages[-1].content == "slow":
                    await gate.wait()
                return f"re: {messages[-1].content}"

        dispatcher = _dispatcher(channel, GatedBackend(), streaming=False)
        slow = asyncio.create_task(dispatcher.handle(make_msg(chat_id="C1", content="slow")))
        await asyncio.sleep(0)

        await asyncio.wait_for(
            dispatcher.handle(make_msg(chat_id="C2", message_id="M2", content="fast")), timeout=1
        )
        assert channel.texts() == ["re: fast"]

        gate.set()
        await slow
        assert channel.texts() == ["re: fast", "re: slow"]

    async def test_thread_and_channel_are_separate_conversations(self, channel, make_msg):
        gate = asyncio.Event()

        class GatedBackend(FakeBackend):
            async def complete(self, messages, *, system=None):
                if messages[-1].content == "slow":
                    await gate.wait()
                return "done"

        dispatcher = _dispatcher(channel, GatedBackend(), streaming=False)
        slow = asyncio.create_task(dispatcher.handle(make_msg(content="slow")))
        await asyncio.sleep(0)
        await asyncio.wait_for(
            dispatcher.handle(make_msg(message_id="M2", content="in thread", thread_id="T1")),
            timeout=1,
        )
        gate.set()
        await slow
        assert len(channel.sent) == 2
