from __future__ import annotations

import contextlib
import logging
from typing import Any, Awaitable, Callable, Protocol

from aiohttp import web

from common.errors import SessionNotFound, SpawnError
from common.shell_ws import ShellWebsocketBridge, TerminalDuplex

RouteGuard = Callable[[Callable[[web.Request], Awaitable[web.StreamResponse]]], Callable[[web.Request], Awaitable[web.StreamResponse]]]

_LOG = logging.getLogger("common.web_terminal")


class AttachedTerminal(TerminalDuplex, Protocol):
    def close(self) -> None: ...


class TerminalProvider(Protocol):
    def create_terminal(self) -> str: ...

    async def attach_terminal(self, session_id: str, cols: int | None = None, rows: int | None = None) -> AttachedTerminal: ...


def _size_param(request: web.Request, name: str) -> int | None:
    raw = request.query.get(name, "")
    if not raw.isdigit():
        return None
    return max(1, int(raw))


async def _reject(ws: web.WebSocketResponse, reason: str) -> None:
    with contextlib.suppress(ConnectionError):
        await ws.send_str(f"\r\n[terminal-error] {reason}\r\n")
        await ws.close()


def setup_terminal_routes(
    app: web.Application,
    provider: TerminalProvider,
    *,
    guard: RouteGuard | None = None,
    bridge: ShellWebsocketBridge | None = None,
    heartbeat: float | None = 30.0,
) -> None:
    """Mounts ``POST /api/terminal/new`` and ``GET /ws/terminal/{session_id}``.

    The first reserves a single-use session id; the second spawns the shell
    for that id and pumps it over the websocket. Leaving the websocket, for
    any reason, closes the terminal.
    """
    shell_bridge = bridge or ShellWebsocketBridge()

    async def api_terminal_new(_: web.Request) -> web.Response:
        payload: dict[str, Any] = {"ok": True, "session_id": provider.create_terminal()}
        return web.json_response(payload)

    async def ws_terminal(request: web.Request) -> web.StreamResponse:
        session_id = request.match_info["session_id"]
        ws = web.WebSocketResponse(heartbeat=heartbeat)
        await ws.prepare(request)
        try:
            terminal = await provider.attach_terminal(
                session_id,
                cols=_size_param(request, "cols"),
                rows=_size_param(request, "rows"),
            )
        except SessionNotFound:
            await _reject(ws, "invalid or expired session")
            return ws
        except SpawnError as exc:
            _LOG.warning("terminal spawn failed sid=%s err=%s", session_id, exc.reason)
            await _reject(ws, exc.reason)
            return ws
        _LOG.info("terminal attached sid=%s peer=%s", session_id, request.remote)
        try:
            await shell_bridge.handle_websocket(ws, terminal)
        finally:
            with contextlib.suppress(SessionNotFound):
                terminal.close()
            _LOG.info("terminal detached sid=%s", session_id)
        return ws

    new_handler = api_terminal_new
    ws_handler = ws_terminal
    if guard is not None:
        new_handler = guard(new_handler)
        ws_handler = guard(ws_handler)

    app.router.add_post("/api/terminal/new", new_handler)
    app.router.add_get("/ws/terminal/{session_id}", ws_handler)
