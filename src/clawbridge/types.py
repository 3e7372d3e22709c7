"""Types shared by the worker's channel, router and dispatch layers."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol


@dataclass
class InboundMessage:
    message_id: str
    chat_id: str
    sender_id: str
    sender_name: str
    content: str
    timestamp: str
    thread_id: str | None = None  # set when the message lives in a thread
    message_type: str = "text"


OnInbound = Callable[[InboundMessage], Awaitable[None]]


class Channel(Protocol):
    name: str

    async def connect(self, on_message: OnInbound) -> None: ...

    async def disconnect(self) -> None: ...

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to: str | None = None,
        thread_id: str | None = None,
    ) -> str | None:
        """Send *text* and return the platform message id when known.

        ``reply_to`` anchors the message to an earlier one; ``thread_id``
        places it inside that thread without an anchor.
        """
        ...

    async def set_typing(self, chat_id: str, message_id: str | None, is_typing: bool) -> None: ...

    def is_connected(self) -> bool:
        """True iff the channel can currently receive inbound events."""
        ...
