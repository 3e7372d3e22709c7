"""Durable restart state shared by the supervisor and the worker.

A single JSON record at ``Settings.state_path``. Presence of the file means
a restart or rollback is in flight; absence means idle. Both processes
read-modify-write it, so every reader treats a corrupt or vanished file as
absent instead of raising.

On disk the keys are camelCase (``chatIds``, ``stashCreated``, ...); in
Python the dataclass uses snake_case.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from clawbridge.config import get_settings
from clawbridge.logger import logger
from clawbridge.utils import now_ms, write_json_atomic

RestartStatus = Literal["restarting", "rollback", "success"]

_VALID_STATUSES: frozenset[str] = frozenset({"restarting", "rollback", "success"})


@dataclass
class RestartState:
    chat_ids: list[str] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)  # aligned with chat_ids
    status: RestartStatus = "restarting"
    timestamp: int = field(default_factory=now_ms)
    error: str | None = None  # only set when status == "rollback"
    stash_created: bool | None = None
    has_conflict: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "chatIds": list(self.chat_ids),
            "messageIds": list(self.message_ids),
            "status": self.status,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            d["error"] = self.error
        if self.stash_created is not None:
            d["stashCreated"] = self.stash_created
        if self.has_conflict is not None:
            d["hasConflict"] = self.has_conflict
        return d

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RestartState:
        """Build from the on-disk shape. Raises ValueError on a bad record."""
        status = raw.get("status")
        if status not in _VALID_STATUSES:
            raise ValueError(f"Invalid restart status: {status!r}")
        chat_ids = raw.get("chatIds", [])
        message_ids = raw.get("messageIds", [])
        if not isinstance(chat_ids, list) or not isinstance(message_ids, list):
            raise ValueError("chatIds and messageIds must be lists")
        return cls(
            chat_ids=[str(c) for c in chat_ids],
            message_ids=[str(m) for m in message_ids],
            status=status,
            timestamp=int(raw.get("timestamp", 0)),
            error=raw.get("error"),
            stash_created=raw.get("stashCreated"),
            has_conflict=raw.get("hasConflict"),
        )

    def add_chat(self, chat_id: str, message_id: str) -> None:
        """Record a chat to notify; a chat already present keeps its first anchor."""
        if chat_id in self.chat_ids:
            return
        self.chat_ids.append(chat_id)
        self.message_ids.append(message_id)

    def notification_targets(self) -> list[tuple[str, str | None]]:
        """Unique ``(chat_id, anchor_message_id)`` pairs in recorded order."""
        seen: set[str] = set()
        targets: list[tuple[str, str | None]] = []
        for i, chat_id in enumerate(self.chat_ids):
            if not chat_id or chat_id in seen:
                continue
            seen.add(chat_id)
            anchor = self.message_ids[i] if i < len(self.message_ids) else None
            targets.append((chat_id, anchor or None))
        return targets


def _resolve(path: Path | None) -> Path:
    return path if path is not None else get_settings().state_path


def read_state(path: Path | None = None) -> RestartState | None:
    """Return the current state, or None when idle.

    An unreadable or malformed file is removed and reported as idle.
    """
    p = _resolve(path)
    try:
        raw = json.loads(p.read_text())
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read restart state, discarding", path=str(p), err=str(exc))
        clear_state(p)
        return None

    try:
        if not isinstance(raw, dict):
            raise ValueError("restart state must be a JSON object")
        return RestartState.from_dict(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("Malformed restart state, discarding", path=str(p), err=str(exc))
        clear_state(p)
        return None


def write_state(state: RestartState, path: Path | None = None) -> None:
    p = _resolve(path)
    try:
        write_json_atomic(p, state.to_dict(), indent=2)
    except OSError as exc:
        logger.error("Failed to write restart state", path=str(p), err=str(exc))


def update_state(path: Path | None = None, **changes: Any) -> RestartState | None:
    """Patch the existing state. Does nothing (returns None) when idle."""
    current = read_state(path)
    if current is None:
        return None
    updated = replace(current, **changes)
    write_state(updated, path)
    return updated


def clear_state(path: Path | None = None) -> None:
    p = _resolve(path)
    try:
        p.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to remove restart state", path=str(p), err=str(exc))
        return
    logger.debug("Restart state cleared", path=str(p))
