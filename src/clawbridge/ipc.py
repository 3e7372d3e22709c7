"""Supervisor ↔ worker IPC — line-framed JSON over the worker's stdio.

Worker → supervisor frames go to the worker's stdout; supervisor → worker
frames go to its stdin. Every frame is a single line::

    ---CLAWBRIDGE_IPC---{"type": "ready"}

The marker lets the supervisor tell frames apart from anything else the
worker (or a library inside it) prints; unmarked lines are relayed to the
log. There is no acknowledgement or retry: if a frame is lost the durable
restart state file is the fallback both sides re-read.

Message vocabulary:
  worker → supervisor: ``ready``, ``restart``, ``error``
  supervisor → worker: ``state``
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import IO, Any

from clawbridge.logger import logger
from clawbridge.state import RestartState

IPC_MARKER = "---CLAWBRIDGE_IPC---"

# Set by the supervisor in the worker's environment.
SUPERVISED_ENV = "CLAWBRIDGE_SUPERVISED"


@dataclass(frozen=True)
class ReadyMessage:
    """Worker fully initialized and serving traffic."""


@dataclass(frozen=True)
class RestartMessage:
    """Worker asks for a supervised restart (e.g. a user's restart command)."""


@dataclass(frozen=True)
class ErrorMessage:
    """Informational; never triggers supervisor action by itself."""

    error: str


@dataclass(frozen=True)
class StateMessage:
    """Supervisor forwards the current restart state to the worker."""

    state: RestartState


@dataclass(frozen=True)
class UnknownMessage:
    """A well-formed frame with a type this version doesn't know."""

    type_name: str
    payload: dict[str, Any] = field(default_factory=dict)


IpcMessage = ReadyMessage | RestartMessage | ErrorMessage | StateMessage


def to_payload(msg: IpcMessage) -> dict[str, Any]:
    match msg:
        case ReadyMessage():
            return {"type": "ready"}
        case RestartMessage():
            return {"type": "restart"}
        case ErrorMessage(error=error):
            return {"type": "error", "error": error}
        case StateMessage(state=state):
            return {"type": "state", "state": state.to_dict()}
    raise TypeError(f"Not an IPC message: {msg!r}")


def from_payload(data: dict[str, Any]) -> IpcMessage | UnknownMessage:
    """Build a message from a decoded frame. Raises ValueError on bad fields."""
    match data.get("type"):
        case "ready":
            return ReadyMessage()
        case "restart":
            return RestartMessage()
        case "error":
            return ErrorMessage(error=str(data.get("error", "")))
        case "state":
            raw_state = data.get("state")
            if not isinstance(raw_state, dict):
                raise ValueError("state frame without a state object")
            return StateMessage(state=RestartState.from_dict(raw_state))
        case other:
            return UnknownMessage(type_name=str(other), payload=data)


def encode_frame(msg: IpcMessage) -> str:
    """Serialize *msg* as one marker-prefixed line, newline included."""
    return f"{IPC_MARKER}{json.dumps(to_payload(msg))}\n"


def decode_frame(line: str) -> IpcMessage | UnknownMessage | None:
    """Parse one line. Returns None for non-frame or malformed lines."""
    line = line.strip()
    if not line.startswith(IPC_MARKER):
        return None
    body = line[len(IPC_MARKER) :]
    try:
        data = json.loads(body)
        if not isinstance(data, dict):
            raise ValueError("frame is not a JSON object")
        return from_payload(data)
    except (json.JSONDecodeError, TypeError, ValueError) as exc:
        logger.warning("Malformed IPC frame ignored", err=str(exc), frame=body[:200])
        return None


async def pump_frames(
    reader: asyncio.StreamReader,
    on_message: Callable[[IpcMessage | UnknownMessage], Awaitable[None]],
    on_passthrough: Callable[[str], None] | None = None,
) -> None:
    """Read lines until EOF, dispatching frames and relaying everything else."""
    while True:
        raw = await reader.readline()
        if not raw:
            return
        line = raw.decode(errors="replace")
        msg = decode_frame(line)
        if msg is not None:
            await on_message(msg)
        elif on_passthrough is not None and line.strip() and not line.startswith(IPC_MARKER):
            on_passthrough(line.rstrip("\n"))


# ---------------------------------------------------------------------------
# Worker side
# ---------------------------------------------------------------------------


class WorkerChannel:
    """The worker's end of the IPC channel.

    When the worker runs without a supervisor (``clawbridge worker`` from a
    shell), ``send`` is a no-op and ``listen`` returns immediately.
    """

    def __init__(
        self,
        *,
        stdin: IO[str] | None = None,
        stdout: IO[str] | None = None,
        supervised: bool | None = None,
    ) -> None:
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout
        self.supervised = (
            supervised if supervised is not None else os.environ.get(SUPERVISED_ENV) == "1"
        )

    def send(self, msg: IpcMessage) -> bool:
        if not self.supervised:
            return False
        try:
            self._stdout.write(encode_frame(msg))
            self._stdout.flush()
        except (OSError, ValueError) as exc:
            # Supervisor gone (broken pipe) or stdout closed during shutdown
            logger.warning("Failed to send IPC frame", type=to_payload(msg)["type"], err=str(exc))
            return False
        return True

    async def listen(
        self,
        on_message: Callable[[IpcMessage | UnknownMessage], Awaitable[None]],
        *,
        reader: asyncio.StreamReader | None = None,
    ) -> None:
        """Dispatch supervisor frames from stdin until it closes."""
        if reader is None:
            if not self.supervised:
                return
            loop = asyncio.get_running_loop()
            reader = asyncio.StreamReader()
            await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), self._stdin)
        await pump_frames(reader, on_message)
        logger.debug("IPC input closed")
