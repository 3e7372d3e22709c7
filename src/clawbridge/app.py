"""Worker application — owns the runtime objects and their lifecycle.

Startup: connect the chat channel, start the HTTP server, start listening
for supervisor frames, announce ``ready``. A few seconds later the restart
state file is re-read in case the supervisor's ``state`` frame was lost.
"""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Any

from aiohttp import web

from clawbridge.agent.engine import AgentEngine
from clawbridge.config import Settings, get_settings
from clawbridge.dispatch import MessageDispatcher, split_message
from clawbridge.http_server import start_http_server
from clawbridge.ipc import IpcMessage, ReadyMessage, StateMessage, UnknownMessage, WorkerChannel
from clawbridge.logger import bind_process_role, logger, set_log_level
from clawbridge.restart_handler import RestartHandler
from clawbridge.router import ConversationRouter
from clawbridge.state import read_state
from clawbridge.types import Channel, InboundMessage
from clawbridge.utils import create_background_task


class BridgeApp:
    """Main worker class — wires channel, agent, router and dispatcher."""

    def __init__(
        self,
        *,
        channel: Channel | None = None,
        engine: AgentEngine | None = None,
        ipc: WorkerChannel | None = None,
        settings: Settings | None = None,
    ) -> None:
        s = settings or get_settings()
        self.settings = s
        if channel is None:
            from clawbridge.channels.slack import SlackChannel

            channel = SlackChannel.from_settings(s)
        self.channel: Channel = channel
        self.engine = engine or AgentEngine.from_settings(s)
        self.ipc = ipc or WorkerChannel()
        self.router = ConversationRouter.from_settings(self.engine, s)
        self.restart = RestartHandler(self.channel, self.ipc, state_path=s.state_path)
        self.dispatcher = MessageDispatcher.from_settings(
            self.channel,
            self.engine,
            self.router,
            on_restart=self.restart.request_restart,
            settings=s,
        )
        self._http_runner: web.AppRunner | None = None
        self._tasks: list[asyncio.Task[Any]] = []
        self._shutting_down = False
        self._signals_received = 0
        self._stopped = asyncio.Event()

    # ------------------------------------------------------------------
    # HttpDeps
    # ------------------------------------------------------------------

    def channels_connected(self) -> bool:
        return self.channel.is_connected()

    def status(self) -> dict[str, Any]:
        state = read_state(self.settings.state_path)
        return {
            "supervised": self.ipc.supervised,
            "channel": {"name": self.channel.name, "connected": self.channel.is_connected()},
            "router": self.router.stats(),
            "agent": self.engine.stats(),
            "restart_state": state.to_dict() if state else None,
        }

    async def send_message(self, chat_id: str, text: str) -> None:
        for chunk in split_message(text, self.dispatcher.max_message_length):
            await self.channel.send_message(chat_id, chunk)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _on_inbound(self, msg: InboundMessage) -> None:
        if self._shutting_down:
            return
        create_background_task(self.dispatcher.handle(msg), name=f"inbound-{msg.message_id}")

    async def _on_ipc(self, msg: IpcMessage | UnknownMessage) -> None:
        match msg:
            case StateMessage(state=state):
                logger.info("Restart state received from supervisor", status=state.status)
                await self.restart.deliver_restart_outcome(state)
            case UnknownMessage(type_name=type_name):
                logger.warning("Unknown IPC message type", type=type_name)
            case _:
                logger.warning("Unexpected IPC frame from supervisor", frame=type(msg).__name__)

    async def _listen_ipc(self) -> None:
        await self.ipc.listen(self._on_ipc)
        if self.ipc.supervised and not self._shutting_down:
            logger.warning("Supervisor closed the IPC channel, shutting down")
            await self.shutdown("supervisor gone")

    async def _check_restart_state(self) -> None:
        await asyncio.sleep(self.settings.supervisor.worker_state_check_delay)
        await self.restart.deliver_restart_outcome()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        s = self.settings
        await self.channel.connect(self._on_inbound)

        if s.server.enabled:
            self._http_runner = await start_http_server(self, s.server.host, s.server.port)

        self._tasks.append(create_background_task(self._listen_ipc(), name="ipc-listen"))
        self.ipc.send(ReadyMessage())
        logger.info("Worker ready", supervised=self.ipc.supervised)
        self._tasks.append(
            create_background_task(self._check_restart_state(), name="restart-state-check")
        )

    async def run(self) -> None:
        bind_process_role("worker")
        set_log_level(self.settings.logging.level)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)
        await self.start()
        await self._stopped.wait()

    def _on_signal(self, sig: signal.Signals) -> None:
        """First signal shuts down gracefully, a second one force-exits.

        Counted here rather than in shutdown(): the supervisor closes stdin
        before its SIGTERM, so shutdown is usually already running.
        """
        self._signals_received += 1
        if self._signals_received > 1:
            logger.info("Force shutdown", signal=sig.name)
            os._exit(1)
        create_background_task(self.shutdown(sig.name), name="shutdown")

    async def shutdown(self, reason: str) -> None:
        """Graceful shutdown. Later calls are no-ops."""
        if self._shutting_down:
            logger.debug("Shutdown already in progress", reason=reason)
            return
        self._shutting_down = True
        logger.info("Worker shutting down", reason=reason)

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks.clear()

        if self._http_runner:
            await self._http_runner.cleanup()
            self._http_runner = None
        try:
            await self.channel.disconnect()
        except Exception:
            logger.warning("Channel disconnect failed", exc_info=True)
        await self.engine.close()
        self._stopped.set()
