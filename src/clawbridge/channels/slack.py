"""SlackChannel — Channel protocol implementation backed by Slack Socket Mode.

Chat ids are Slack channel ids, message ids are message ``ts`` values, and a
thread id is the ``ts`` of the thread's root message. Slack has no bot typing
indicator, so "typing" is shown as a reaction on the message being answered.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import time
from datetime import UTC, datetime
from typing import Any

from clawbridge.config import Settings, get_settings
from clawbridge.dedup import MessageDeduplicator
from clawbridge.logger import logger
from clawbridge.types import InboundMessage, OnInbound

_IGNORED_SUBTYPES = frozenset(
    {"message_changed", "message_deleted", "bot_message", "channel_join", "channel_leave"}
)


class _TtlCache:
    """Bounded cache with per-entry TTL for Slack API lookups."""

    def __init__(self, ttl_seconds: float = 3600, max_size: int = 500) -> None:
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._data: dict[str, tuple[str, float]] = {}  # key → (value, expiry_mono)

    def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expiry = entry
        if time.monotonic() > expiry:
            del self._data[key]
            return None
        return value

    def put(self, key: str, value: str) -> None:
        if len(self._data) >= self._max_size:
            now = time.monotonic()
            self._data = {k: v for k, v in self._data.items() if v[1] > now}
        if len(self._data) >= self._max_size:
            del self._data[next(iter(self._data))]
        self._data[key] = (value, time.monotonic() + self._ttl)


class SlackChannel:
    name = "slack"

    def __init__(self, bot_token: str, app_token: str, *, typing_reaction: str = "eyes") -> None:
        self._bot_token = bot_token
        self._app_token = app_token
        self._typing_reaction = typing_reaction
        self._on_message: OnInbound | None = None
        self._connected = False
        self._shutting_down = False

        # Lazy-initialised in connect()
        self._app: Any = None
        self._handler: Any = None
        self._handler_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._bot_user_id: str = ""
        # Slack fires both `message` and `app_mention` for an @mention
        self._seen_events = MessageDeduplicator(max_entries=500, ttl_seconds=120)
        self._user_name_cache = _TtlCache(ttl_seconds=3600, max_size=500)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SlackChannel:
        s = settings or get_settings()
        if s.slack.bot_token is None or s.slack.app_token is None:
            raise ValueError("Slack requires slack.bot_token and slack.app_token")
        return cls(
            s.slack.bot_token.get_secret_value(),
            s.slack.app_token.get_secret_value(),
            typing_reaction=s.slack.typing_reaction,
        )

    # ------------------------------------------------------------------
    # Channel protocol
    # ------------------------------------------------------------------

    async def connect(self, on_message: OnInbound) -> None:
        from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
        from slack_bolt.async_app import AsyncApp

        self._on_message = on_message
        self._app = AsyncApp(token=self._bot_token)

        # Cache bot user ID so we can strip self-mentions from inbound text
        try:
            auth = await self._app.client.auth_test()
            self._bot_user_id = auth.get("user_id", "")
        except Exception:
            logger.warning("Failed to resolve bot user ID (mention stripping disabled)")

        self._register_handlers()

        self._handler = AsyncSocketModeHandler(self._app, self._app_token)
        self._handler_task = asyncio.create_task(
            self._handler.start_async(), name="slack-socket-mode"
        )
        self._handler_task.add_done_callback(self._on_handler_done)
        self._connected = True
        logger.info("Slack channel connected (Socket Mode)", bot_user_id=self._bot_user_id)

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to: str | None = None,
        thread_id: str | None = None,
    ) -> str | None:
        if not self._app:
            logger.warning("Slack send before connect", chat_id=chat_id)
            return None
        kwargs: dict[str, Any] = {"channel": chat_id, "text": text}
        thread_ts = thread_id or reply_to
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        resp = await self._app.client.chat_postMessage(**kwargs)
        return resp.get("ts")

    async def set_typing(self, chat_id: str, message_id: str | None, is_typing: bool) -> None:
        if not self._app or not message_id:
            return
        method = (
            self._app.client.reactions_add if is_typing else self._app.client.reactions_remove
        )
        try:
            await method(channel=chat_id, timestamp=message_id, name=self._typing_reaction)
        except Exception as exc:
            logger.debug("Slack typing reaction failed", err=str(exc), typing=is_typing)

    def is_connected(self) -> bool:
        return self._connected and self._handler_task is not None and not self._handler_task.done()

    async def disconnect(self) -> None:
        self._shutting_down = True
        self._connected = False
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            self._reconnect_task = None
        if self._handler:
            with contextlib.suppress(Exception):
                await self._handler.close_async()
        if self._handler_task and not self._handler_task.done():
            self._handler_task.cancel()
        logger.info("Slack channel disconnected")

    # ------------------------------------------------------------------
    # Internal: reconnect on unexpected task exit
    # ------------------------------------------------------------------

    def _on_handler_done(self, task: asyncio.Task[None]) -> None:
        if not self._connected or self._shutting_down:
            return
        exc = task.exception() if not task.cancelled() else None
        logger.warning(
            "Slack Socket Mode task exited unexpectedly, scheduling reconnect",
            exc=str(exc) if exc else "cancelled",
        )
        self._connected = False
        coro = self._reconnect_with_backoff()
        try:
            self._reconnect_task = task.get_loop().create_task(coro, name="slack-reconnect")
        except RuntimeError:
            coro.close()
            logger.debug("Cannot schedule Slack reconnect, event loop closing")

    async def _reconnect_with_backoff(self, delay: float = 5.0) -> None:
        """Reconnect with exponential backoff, capped at 5 minutes."""
        await asyncio.sleep(delay)
        if self._connected or self._shutting_down or self._on_message is None:
            return
        logger.info("Slack attempting reconnect", delay=delay)
        try:
            self._handler = None
            self._handler_task = None
            await self.connect(self._on_message)
            self._reconnect_task = None
        except Exception as exc:
            logger.warning("Slack reconnect failed, will retry", delay=delay, exc=str(exc))
            self._connected = False
            coro = self._reconnect_with_backoff(min(delay * 2, 300))
            try:
                self._reconnect_task = asyncio.create_task(coro, name="slack-reconnect")
            except RuntimeError:
                coro.close()

    # ------------------------------------------------------------------
    # Internal: Slack event handlers
    # ------------------------------------------------------------------

    def _register_handlers(self) -> None:
        assert self._app is not None

        @self._app.event("message")
        async def _handle_message(event: dict[str, Any]) -> None:
            await self._on_slack_event(event)

        @self._app.event("app_mention")
        async def _handle_mention(event: dict[str, Any]) -> None:
            await self._on_slack_event(event)

    def _strip_bot_mention(self, text: str) -> str:
        if not self._bot_user_id:
            return text
        return re.sub(rf"<@{re.escape(self._bot_user_id)}>", "", text).strip()

    async def _on_slack_event(self, event: dict[str, Any]) -> None:
        msg = await self.to_inbound(event)
        if msg is None or self._on_message is None:
            return
        logger.info(
            "Slack inbound message",
            channel=msg.chat_id,
            user=msg.sender_id,
            thread=msg.thread_id,
            text_len=len(msg.content),
        )
        await self._on_message(msg)

    async def to_inbound(self, event: dict[str, Any]) -> InboundMessage | None:
        """Convert a Slack message event, or return None for events we skip."""
        if event.get("bot_id") or event.get("subtype") in _IGNORED_SUBTYPES:
            return None
        channel_id = event.get("channel")
        user_id = event.get("user")
        ts = event.get("ts", "")
        if not channel_id or not user_id or not ts:
            return None
        if self._seen_events.check_and_mark(f"{channel_id}:{ts}"):
            return None

        # A thread root carries thread_ts == ts once it has replies
        thread_ts = event.get("thread_ts")
        thread_id = thread_ts if thread_ts and thread_ts != ts else None

        return InboundMessage(
            message_id=ts,
            chat_id=channel_id,
            sender_id=user_id,
            sender_name=await self._resolve_user_name(user_id),
            content=self._strip_bot_mention(event.get("text", "")),
            timestamp=datetime.fromtimestamp(float(ts), tz=UTC).isoformat(),
            thread_id=thread_id,
            message_type=event.get("channel_type") or "message",
        )

    async def _resolve_user_name(self, user_id: str) -> str:
        """Look up a Slack user's display name, falling back to user ID."""
        cached = self._user_name_cache.get(user_id)
        if cached is not None:
            return cached
        if not self._app:
            return user_id
        try:
            resp = await self._app.client.users_info(user=user_id)
            user = resp.get("user", {})
            profile = user.get("profile", {})
            name = (
                profile.get("display_name")
                or profile.get("real_name")
                or user.get("real_name")
                or user_id
            )
            self._user_name_cache.put(user_id, name)
            return name
        except Exception:
            return user_id
