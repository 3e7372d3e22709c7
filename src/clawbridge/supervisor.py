"""Worker process supervisor — spawn, monitor, restart, roll back.

The supervisor is the long-lived parent process. It runs the worker
(``python -m clawbridge worker``) as a child with the IPC channel on the
child's stdin/stdout, and decides what each lifecycle event means:

  ready            the new code booted; commit it (or restore the stash
                   after a rollback) and tell the worker how it went
  restart request  kill and respawn, new code stays uncommitted until ready
  exit 0           voluntary restart
  exit != 0 /      startup failure or crash; retry, then roll back to the
  ready timeout    last verified commit

Git strategy: HEAD always holds code that has booted successfully. New code
is only committed after the worker it runs in has signalled ready. When a
restart fails, the working tree is stashed, the worker is started from HEAD,
and the stash is popped back once that worker is ready so the change can be
fixed in place.

Events are handled one at a time under ``_events``. Exits and frames from a
worker that is no longer current are ignored by process identity.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sys
from pathlib import Path
from typing import Literal

from clawbridge import git_ops
from clawbridge.config import SupervisorConfig, get_settings
from clawbridge.ipc import (
    SUPERVISED_ENV,
    ErrorMessage,
    IpcMessage,
    ReadyMessage,
    RestartMessage,
    StateMessage,
    UnknownMessage,
    encode_frame,
    pump_frames,
)
from clawbridge.logger import bind_process_role, logger, set_log_level
from clawbridge.state import RestartState, clear_state, read_state, update_state, write_state
from clawbridge.utils import create_background_task

SupervisorPhase = Literal["idle", "starting", "ready", "restarting", "crashed", "shutting_down"]


class Supervisor:
    def __init__(
        self,
        *,
        command: list[str] | None = None,
        cwd: Path | None = None,
        state_path: Path | None = None,
        config: SupervisorConfig | None = None,
    ) -> None:
        s = get_settings()
        self._cfg = config or s.supervisor
        self._command = (
            command
            or self._cfg.worker_command
            or [sys.executable, "-m", "clawbridge", "worker"]
        )
        self._cwd = cwd or s.project_root
        self._state_path = state_path or s.state_path

        self.phase: SupervisorPhase = "idle"
        self.exit_code = 0
        self._proc: asyncio.subprocess.Process | None = None
        self._retries = 0
        self._restarting = False
        self._shutting_down = False
        self._ready_task: asyncio.Task[None] | None = None
        self._cleanup_task: asyncio.Task[None] | None = None
        self._events = asyncio.Lock()
        self._done = asyncio.Event()

    @property
    def worker(self) -> asyncio.subprocess.Process | None:
        return self._proc

    @property
    def retries(self) -> int:
        return self._retries

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """Start the worker and block until shutdown. Returns the exit code."""
        bind_process_role("supervisor")
        set_log_level(get_settings().logging.level)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: create_background_task(self.shutdown(s.name), name="shutdown"),
            )

        await self.start()
        await self._done.wait()
        return self.exit_code

    async def start(self) -> None:
        logger.info(
            "Supervisor starting",
            cwd=str(self._cwd),
            state_file=str(self._state_path),
            command=self._command,
        )
        existing = read_state(self._state_path)
        if existing is not None:
            logger.info("Found pending restart state", status=existing.status)
        await self._spawn()

    async def wait_closed(self) -> None:
        await self._done.wait()

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def _spawn(self) -> None:
        if self._shutting_down:
            return
        self.phase = "starting"
        env = {**os.environ, SUPERVISED_ENV: "1"}
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                cwd=str(self._cwd),
                env=env,
            )
        except OSError as exc:
            logger.error("Failed to spawn worker", command=self._command, err=str(exc))
            self.phase = "crashed"
            await self._handle_failure(f"Failed to spawn worker: {exc}")
            return

        self._proc = proc
        if self._shutting_down:
            # Shutdown arrived while the exec was in flight
            await self._kill_worker()
            return
        logger.info("Worker spawned", worker_pid=proc.pid)
        create_background_task(self._read_worker(proc), name=f"worker-stdout-{proc.pid}")
        create_background_task(self._watch_exit(proc), name=f"worker-exit-{proc.pid}")
        self._ready_task = create_background_task(
            self._ready_deadline(proc), name=f"ready-timer-{proc.pid}"
        )

    async def _read_worker(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None

        async def on_message(msg: IpcMessage | UnknownMessage) -> None:
            await self._on_message(proc, msg)

        def on_output(line: str) -> None:
            logger.info("worker", line=line, worker_pid=proc.pid)

        await pump_frames(proc.stdout, on_message, on_output)

    def _send(self, msg: IpcMessage) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.stdin.is_closing():
            return
        try:
            proc.stdin.write(encode_frame(msg).encode())
        except (ConnectionResetError, BrokenPipeError) as exc:
            logger.warning("Failed to send IPC frame to worker", err=str(exc))

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_message(
        self, proc: asyncio.subprocess.Process, msg: IpcMessage | UnknownMessage
    ) -> None:
        async with self._events:
            if proc is not self._proc or self._shutting_down:
                logger.debug("Ignoring frame from stale worker", worker_pid=proc.pid)
                return
            match msg:
                case ReadyMessage():
                    await self._on_ready()
                case RestartMessage():
                    logger.info("Worker requested restart")
                    self._ensure_restart_state()
                    await self._restart("restart requested")
                case ErrorMessage(error=error):
                    logger.warning("Worker reported error", error=error)
                case StateMessage():
                    logger.warning("Unexpected state frame from worker")
                case UnknownMessage(type_name=type_name):
                    logger.warning("Unknown IPC message type", type=type_name)

    async def _on_ready(self) -> None:
        self._cancel_ready_timer()
        self.phase = "ready"
        self._retries = 0
        logger.info("Worker ready", worker_pid=self._proc.pid if self._proc else None)

        state = read_state(self._state_path)
        if state is None:
            return

        if state.status == "restarting":
            try:
                committed = await asyncio.to_thread(
                    git_ops.commit_all, self._cfg.commit_message, self._cwd
                )
                if committed:
                    logger.info("Verified code committed")
            except (git_ops.GitCommandError, OSError) as exc:
                logger.warning("Auto-commit failed", err=str(exc))
            state = update_state(self._state_path, status="success") or state
        elif state.status == "rollback" and state.stash_created:
            try:
                outcome = await asyncio.to_thread(
                    git_ops.restore_stash, self._cfg.stash_label, self._cwd
                )
            except (git_ops.GitCommandError, OSError) as exc:
                logger.error("Failed to restore stash", err=str(exc))
                outcome = "conflict"
            if outcome == "conflict":
                state = update_state(self._state_path, has_conflict=True) or state

        self._send(StateMessage(state=state))
        self._schedule_state_cleanup()

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        async with self._events:
            if proc is not self._proc or self._shutting_down or self._restarting:
                logger.debug("Worker exit ignored", worker_pid=proc.pid, code=code)
                return
            logger.info("Worker exited", worker_pid=proc.pid, code=code)
            self._proc = None
            self._cancel_ready_timer()

            if code == 0:
                self._ensure_restart_state()
                await self._restart("worker exited cleanly")
                return

            self.phase = "crashed"
            await self._handle_failure(f"Worker exited with code {code}")

    async def _ready_deadline(self, proc: asyncio.subprocess.Process) -> None:
        await asyncio.sleep(self._cfg.ready_timeout)
        async with self._events:
            if proc is not self._proc or self.phase != "starting" or self._shutting_down:
                return
            # Cleared before handling so _kill_worker doesn't cancel this task
            self._ready_task = None
            logger.error(
                "Worker did not signal ready in time",
                timeout=self._cfg.ready_timeout,
                worker_pid=proc.pid,
            )
            self.phase = "crashed"
            await self._handle_failure(
                f"Startup timed out after {self._cfg.ready_timeout:g}s without a ready signal"
            )

    # ------------------------------------------------------------------
    # Restart / failure / rollback
    # ------------------------------------------------------------------

    def _ensure_restart_state(self) -> None:
        if read_state(self._state_path) is None:
            logger.info("No restart state on file, writing a minimal one")
            write_state(RestartState(), self._state_path)

    async def _restart(self, reason: str) -> None:
        if self._restarting or self._shutting_down:
            logger.debug("Restart already in progress, dropping", reason=reason)
            return
        self._restarting = True
        self.phase = "restarting"
        logger.info("Restarting worker", reason=reason)
        try:
            await self._kill_worker()
        finally:
            # Spawn failures re-enter _handle_failure and may restart again
            self._restarting = False
        await self._spawn()

    async def _handle_failure(self, reason: str) -> None:
        if self._shutting_down:
            return
        if self._retries < self._cfg.max_restart_retries:
            self._retries += 1
            logger.warning(
                "Worker failed, retrying",
                reason=reason,
                attempt=self._retries,
                max_retries=self._cfg.max_restart_retries,
            )
            await self._restart(reason)
            return

        state = read_state(self._state_path)
        if state is None:
            logger.critical(
                "Worker failed on first boot and there is nothing to roll back to",
                reason=reason,
            )
            await self._abort()
            return

        await self.rollback(reason)

    async def rollback(self, reason: str) -> None:
        """Stash the working tree and restart from the last verified commit."""
        logger.warning("Rolling back to last verified commit", reason=reason)
        await self._kill_worker()
        # A stash from an earlier rollback may still be waiting to be restored
        previous = read_state(self._state_path)
        earlier_stash = bool(previous and previous.stash_created)
        try:
            stashed = await asyncio.to_thread(
                git_ops.stash_changes, self._cfg.stash_label, self._cwd
            )
        except (git_ops.GitCommandError, OSError) as exc:
            logger.critical("Rollback failed, waiting for operator", err=str(exc))
            self._persist_rollback(
                RestartState(
                    status="rollback",
                    error=f"Rollback failed: {exc}",
                    stash_created=earlier_stash or None,
                )
            )
            self.phase = "crashed"
            return

        self._persist_rollback(
            RestartState(status="rollback", error=reason, stash_created=stashed or earlier_stash)
        )
        self._retries = 0
        await self._restart(f"rollback: {reason}")

    def _persist_rollback(self, patch: RestartState) -> None:
        updated = update_state(
            self._state_path,
            status=patch.status,
            error=patch.error,
            stash_created=patch.stash_created,
        )
        if updated is None:
            write_state(patch, self._state_path)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _kill_worker(self) -> None:
        """SIGTERM the current worker, SIGKILL if it outlives the grace period."""
        proc = self._proc
        self._proc = None
        self._cancel_ready_timer()
        if proc is None or proc.returncode is not None:
            return

        if proc.stdin is not None:
            proc.stdin.close()
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._cfg.graceful_shutdown_timeout)
        except TimeoutError:
            logger.warning(
                "Worker ignored SIGTERM, killing",
                worker_pid=proc.pid,
                timeout=self._cfg.graceful_shutdown_timeout,
            )
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        logger.info("Worker stopped", worker_pid=proc.pid, code=proc.returncode)

    def _cancel_ready_timer(self) -> None:
        if self._ready_task is not None:
            self._ready_task.cancel()
            self._ready_task = None

    def _schedule_state_cleanup(self) -> None:
        async def _cleanup() -> None:
            await asyncio.sleep(self._cfg.state_cleanup_delay)
            clear_state(self._state_path)

        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
        self._cleanup_task = create_background_task(_cleanup(), name="state-cleanup")

    async def _abort(self) -> None:
        self.exit_code = 1
        await self.shutdown("abort")

    async def shutdown(self, reason: str = "shutdown") -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        self.phase = "shutting_down"
        logger.info("Supervisor shutting down", reason=reason)
        await self._kill_worker()
        if self._cleanup_task is not None and not self._cleanup_task.done():
            self._cleanup_task.cancel()
        self._done.set()
