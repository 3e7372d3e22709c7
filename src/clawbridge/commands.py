"""Chat command matching.

Commands are whole messages: surrounding whitespace is ignored, anything else
(extra words, different case) makes the message ordinary agent input.
"""

from __future__ import annotations

from collections.abc import Iterable

from clawbridge.config import get_settings


def _is_exact_command(text: str, commands: Iterable[str]) -> bool:
    return text.strip() in {c.strip() for c in commands}


def is_restart_command(text: str, commands: Iterable[str] | None = None) -> bool:
    """Check if a message is a restart command (default ``/restart``)."""
    if commands is None:
        commands = get_settings().dispatch.restart_commands
    return _is_exact_command(text, commands)
