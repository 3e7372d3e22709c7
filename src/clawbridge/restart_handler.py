"""Worker side of the restart protocol.

``request_restart`` runs when a user sends the restart command: it records
who asked in the restart state file and asks the supervisor for a restart.
``deliver_restart_outcome`` runs on the next worker once the supervisor has
decided how the restart went (``success`` or ``rollback``), and tells every
chat that asked.

The outcome can reach the worker twice: as an IPC ``state`` frame and via
the delayed re-read of the state file after ready. Whichever comes first
delivers; the other is a no-op.
"""

from __future__ import annotations

from pathlib import Path

from clawbridge.ipc import RestartMessage, WorkerChannel
from clawbridge.logger import logger
from clawbridge.state import RestartState, clear_state, read_state, write_state
from clawbridge.types import Channel, InboundMessage

RESTART_ACK = "Restarting... I'll post here once the new version is up."
RESTART_UNAVAILABLE = (
    "Restart is unavailable: this worker isn't running under the supervisor. "
    "Start it with `clawbridge` instead of `clawbridge worker`."
)
RESTART_SUCCESS = "Restart succeeded. The new code is live."
RESTART_ROLLBACK = (
    "Restart failed, rolled back to the last working version.\n\n"
    "Error: {error}\n\n"
    "Fix the code and send /restart again."
)
CONFLICT_HINT = (
    "\n\nYour changes were put back in the working tree, but restoring them "
    "conflicted. Resolve the conflict by hand (see `git status` and `git stash list`)."
)


def format_outcome(state: RestartState) -> str | None:
    """The chat message for a finished restart, or None while still restarting."""
    if state.status == "success":
        return RESTART_SUCCESS
    if state.status == "rollback":
        text = RESTART_ROLLBACK.format(error=state.error or "unknown error")
        if state.has_conflict:
            text += CONFLICT_HINT
        return text
    return None


class RestartHandler:
    def __init__(
        self,
        channel: Channel,
        ipc: WorkerChannel,
        *,
        state_path: Path | None = None,
    ) -> None:
        self.channel = channel
        self.ipc = ipc
        self._state_path = state_path
        self._delivered = False

    @property
    def delivered(self) -> bool:
        return self._delivered

    async def _reply(self, msg: InboundMessage, text: str) -> None:
        await self.channel.send_message(
            msg.chat_id,
            text,
            reply_to=msg.message_id if msg.thread_id else None,
            thread_id=msg.thread_id,
        )

    async def request_restart(self, msg: InboundMessage) -> None:
        if not self.ipc.supervised:
            logger.warning("Restart requested but worker is unsupervised", chat_id=msg.chat_id)
            await self._reply(msg, RESTART_UNAVAILABLE)
            return

        state = read_state(self._state_path)
        if state is None or state.status != "restarting":
            state = RestartState()
        # Anchor the outcome to the thread root when there is one
        state.add_chat(msg.chat_id, msg.thread_id or msg.message_id)
        write_state(state, self._state_path)

        await self._reply(msg, RESTART_ACK)
        if not self.ipc.send(RestartMessage()):
            logger.error("Failed to request restart from supervisor")
            clear_state(self._state_path)
            await self._reply(msg, RESTART_UNAVAILABLE)
            return
        logger.info("Restart requested", chat_ids=state.chat_ids)

    async def deliver_restart_outcome(self, state: RestartState | None = None) -> bool:
        """Notify the recorded chats of a finished restart. Returns True if delivered."""
        if self._delivered:
            return False
        if state is None:
            state = read_state(self._state_path)
        if state is None:
            return False

        text = format_outcome(state)
        if text is None:
            logger.debug("Restart still in progress, nothing to deliver")
            return False
        if not self.channel.is_connected():
            logger.warning("Channel not connected, restart outcome not delivered yet")
            return False

        self._delivered = True
        for chat_id, anchor in state.notification_targets():
            try:
                await self.channel.send_message(chat_id, text, reply_to=anchor)
            except Exception:
                logger.error("Failed to send restart outcome", chat_id=chat_id, exc_info=True)
            else:
                logger.info("Restart outcome sent", chat_id=chat_id, status=state.status)

        clear_state(self._state_path)
        return True
