"""Message dispatch pipeline — one inbound chat message to one agent reply.

Per message:
  1. drop empty content
  2. intercept the restart command
  3. drop duplicates (at-least-once delivery)
  4. wait for the conversation's slot
  5. typing indicator on
  6. ask the agent (streaming or batch)
  7. send the reply, split to fit the platform limit
  8. typing indicator off

Any failure becomes a single error reply in the chat. Nothing raised here
reaches the channel's event loop.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol

from clawbridge.agent.engine import AgentError, StreamHandlers
from clawbridge.commands import is_restart_command
from clawbridge.config import Settings, get_settings
from clawbridge.dedup import MessageDeduplicator
from clawbridge.logger import logger
from clawbridge.router import ConversationRouter, conversation_key
from clawbridge.types import Channel, InboundMessage

ERROR_REPLY_PREFIX = "Sorry, something went wrong while processing your message:\n\n"

# A boundary closer to the start of the window than this wastes the chunk
_MIN_SPLIT_RATIO = 0.3
_SEPARATORS = ("\n\n", "\n")

RestartHandler = Callable[[InboundMessage], Awaitable[None]]


class AgentClient(Protocol):
    async def send_message(self, session_id: str, text: str, user_id: str | None = None) -> str: ...

    async def send_message_stream(
        self,
        session_id: str,
        text: str,
        user_id: str | None = None,
        handlers: StreamHandlers | None = None,
    ) -> str: ...


def split_message(text: str, limit: int) -> list[str]:
    """Split *text* into chunks of at most *limit* characters.

    Prefers paragraph breaks, then line breaks, then a hard cut. A break is
    only used if it falls past 30% of the limit. Each chunk keeps its
    trailing separator, so ``"".join(chunks) == text``.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if len(text) <= limit:
        return [text]

    min_cut = limit * _MIN_SPLIT_RATIO
    chunks: list[str] = []
    rest = text
    while len(rest) > limit:
        window = rest[:limit]
        cut = limit
        for sep in _SEPARATORS:
            idx = window.rfind(sep)
            if idx != -1 and idx + len(sep) >= min_cut:
                cut = idx + len(sep)
                break
        chunks.append(rest[:cut])
        rest = rest[cut:]
    if rest:
        chunks.append(rest)
    return chunks


class MessageDispatcher:
    def __init__(
        self,
        channel: Channel,
        engine: AgentClient,
        router: ConversationRouter,
        dedup: MessageDeduplicator,
        *,
        on_restart: RestartHandler | None = None,
        streaming: bool = True,
        typing_indicator: bool = True,
        restart_commands: Sequence[str] = ("/restart",),
        max_message_length: int = 4000,
    ) -> None:
        self.channel = channel
        self.engine = engine
        self.router = router
        self.dedup = dedup
        self.on_restart = on_restart
        self.streaming = streaming
        self.typing_indicator = typing_indicator
        self.restart_commands = tuple(restart_commands)
        self.max_message_length = max_message_length

    @classmethod
    def from_settings(
        cls,
        channel: Channel,
        engine: AgentClient,
        router: ConversationRouter,
        *,
        on_restart: RestartHandler | None = None,
        settings: Settings | None = None,
    ) -> MessageDispatcher:
        s = settings or get_settings()
        return cls(
            channel,
            engine,
            router,
            MessageDeduplicator.from_config(s.dedup),
            on_restart=on_restart,
            streaming=s.dispatch.streaming,
            typing_indicator=s.dispatch.typing_indicator,
            restart_commands=s.dispatch.restart_commands,
            max_message_length=s.dispatch.max_message_length,
        )

    async def handle(self, msg: InboundMessage) -> None:
        """Run the full pipeline for one inbound message. Never raises."""
        try:
            await self._process(msg)
        except Exception as exc:
            logger.exception(
                "Message processing failed",
                chat_id=msg.chat_id,
                thread_id=msg.thread_id,
                message_id=msg.message_id,
            )
            await self._send_error(msg, exc)

    async def _process(self, msg: InboundMessage) -> None:
        if not msg.content.strip():
            return

        if is_restart_command(msg.content, self.restart_commands):
            if self.on_restart is None:
                await self.send_reply(msg, "Restart is not available in this deployment.")
                return
            logger.info("Restart command received", chat_id=msg.chat_id, sender=msg.sender_id)
            await self.on_restart(msg)
            return

        if self.dedup.check_and_mark(f"{msg.chat_id}:{msg.message_id}"):
            logger.debug(
                "Duplicate message dropped", chat_id=msg.chat_id, message_id=msg.message_id
            )
            return

        key = conversation_key(msg.chat_id, msg.thread_id)
        async with self.router.processing(key):
            session_id = self.router.resolve_session(msg)
            self.router.track_thread(msg, session_id)
            logger.info(
                "Processing message",
                key=key,
                session_id=session_id,
                sender=msg.sender_name,
                chars=len(msg.content),
            )

            await self._set_typing(msg, True)
            try:
                reply = await self._invoke(session_id, msg)
                await self.send_reply(msg, reply)
            finally:
                await self._set_typing(msg, False)

    async def _invoke(self, session_id: str, msg: InboundMessage) -> str:
        if not self.streaming:
            reply = await self.engine.send_message(session_id, msg.content, msg.sender_id)
        else:
            parts: list[str] = []

            async def on_delta(delta: str) -> None:
                parts.append(delta)

            async def on_error(error: str) -> None:
                logger.warning("Agent stream reported error", session_id=session_id, error=error)

            returned = await self.engine.send_message_stream(
                session_id,
                msg.content,
                msg.sender_id,
                StreamHandlers(on_delta=on_delta, on_error=on_error),
            )
            reply = "".join(parts) or returned

        if not reply or not reply.strip():
            raise AgentError(session_id, "Agent returned an empty reply")
        return reply

    async def send_reply(self, msg: InboundMessage, text: str) -> None:
        """Send *text* in response to *msg*, split across messages if needed.

        In a thread the first chunk is anchored to *msg* and the rest follow
        inside the thread; outside threads every chunk is top-level.
        """
        chunks = split_message(text, self.max_message_length)
        for i, chunk in enumerate(chunks):
            if msg.thread_id:
                reply_to = msg.message_id if i == 0 else None
                await self.channel.send_message(
                    msg.chat_id, chunk, reply_to=reply_to, thread_id=msg.thread_id
                )
            else:
                await self.channel.send_message(msg.chat_id, chunk)
        if len(chunks) > 1:
            logger.info("Reply split", chat_id=msg.chat_id, chunks=len(chunks), chars=len(text))

    async def _send_error(self, msg: InboundMessage, exc: BaseException) -> None:
        try:
            await self.send_reply(msg, f"{ERROR_REPLY_PREFIX}{str(exc) or type(exc).__name__}")
        except Exception:
            logger.error("Failed to send error reply", chat_id=msg.chat_id, exc_info=True)

    async def _set_typing(self, msg: InboundMessage, is_typing: bool) -> None:
        if not self.typing_indicator:
            return
        try:
            await self.channel.set_typing(msg.chat_id, msg.message_id, is_typing)
        except Exception:
            logger.debug("Typing indicator update failed", chat_id=msg.chat_id, exc_info=True)
