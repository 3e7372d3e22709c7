"""Embedded HTTP server for health checks, status, and manual sends.

Runs inside the worker on ``server.host:server.port`` (loopback by default).
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Protocol

from aiohttp import web

from clawbridge.git_ops import get_head_commit_message, get_head_sha, is_repo_dirty
from clawbridge.logger import logger

_start_time = time.monotonic()


class HttpDeps(Protocol):
    """Dependencies injected by app.py."""

    def channels_connected(self) -> bool: ...

    def status(self) -> dict[str, Any]: ...

    async def send_message(self, chat_id: str, text: str) -> None: ...


deps_key = web.AppKey("deps", HttpDeps)


async def _handle_health(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    head_sha, head_commit, dirty = await asyncio.gather(
        asyncio.to_thread(get_head_sha),
        asyncio.to_thread(get_head_commit_message),
        asyncio.to_thread(is_repo_dirty),
    )
    return web.json_response(
        {
            "status": "ok",
            "uptime_seconds": round(time.monotonic() - _start_time),
            "head_sha": head_sha,
            "head_commit": head_commit,
            "dirty": dirty,
            "channels_connected": deps.channels_connected(),
        }
    )


async def _handle_api_status(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response(deps.status())


async def _handle_api_send(request: web.Request) -> web.Response:
    """Post a message to a chat as the bot."""
    deps = request.app[deps_key]
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return web.json_response({"error": "body must be JSON"}, status=400)
    if not isinstance(body, dict):
        return web.json_response({"error": "body must be a JSON object"}, status=400)

    chat_id = body.get("chat_id", "")
    text = body.get("text", "")
    if not chat_id or not text:
        return web.json_response({"error": "chat_id and text required"}, status=400)

    try:
        await deps.send_message(chat_id, text)
    except Exception as exc:
        logger.error("HTTP send failed", chat_id=chat_id, err=str(exc))
        return web.json_response({"error": str(exc)}, status=502)
    return web.json_response({"status": "ok"})


def create_app(deps: HttpDeps) -> web.Application:
    app = web.Application()
    app[deps_key] = deps
    app.router.add_get("/health", _handle_health)
    app.router.add_get("/api/status", _handle_api_status)
    app.router.add_post("/api/send", _handle_api_send)
    return app


async def start_http_server(deps: HttpDeps, host: str, port: int) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    runner = web.AppRunner(create_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server listening", host=host, port=port)
    return runner
