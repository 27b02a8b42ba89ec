from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Protocol

from aiohttp import web

from common.errors import ClosedError

_LOG = logging.getLogger("common.shell_ws")


class TerminalDuplex(Protocol):
    async def write(self, data: bytes | str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def output(self) -> AsyncIterator[bytes]: ...


class ShellWebsocketBridge:
    """Pumps a websocket to and from an interactive terminal until either side ends."""

    async def _apply_text(self, terminal: TerminalDuplex, text: str) -> None:
        try:
            payload: Any = json.loads(text)
        except ValueError:
            await terminal.write(text)
            return
        if not isinstance(payload, dict):
            await terminal.write(text)
            return
        kind = payload.get("type")
        if kind == "resize":
            try:
                terminal.resize(int(payload["cols"]), int(payload["rows"]))
            except (KeyError, TypeError, ValueError):
                _LOG.debug("ignored malformed resize payload=%s", payload)
        elif kind == "data":
            await terminal.write(str(payload.get("data", "")))

    async def handle_websocket(self, ws: web.WebSocketResponse, terminal: TerminalDuplex) -> None:
        async def ws_to_shell() -> None:
            async for msg in ws:
                if msg.type == web.WSMsgType.TEXT:
                    await self._apply_text(terminal, msg.data)
                elif msg.type == web.WSMsgType.BINARY:
                    await terminal.write(bytes(msg.data))
                elif msg.type in (web.WSMsgType.CLOSE, web.WSMsgType.ERROR):
                    break

        async def shell_to_ws() -> None:
            async for chunk in terminal.output():
                await ws.send_bytes(chunk)
            with contextlib.suppress(ConnectionError):
                await ws.send_str("\r\n[process exited]\r\n")

        tasks = [
            asyncio.create_task(ws_to_shell(), name="terminal-ws-in"),
            asyncio.create_task(shell_to_ws(), name="terminal-ws-out"),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for t in pending:
            t.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await t
        for t in done:
            exc = t.exception()
            if exc is None:
                continue
            if isinstance(exc, (ClosedError, ConnectionError)):
                _LOG.debug("terminal bridge closed task=%s err=%s", t.get_name(), exc)
            else:
                _LOG.warning("terminal bridge failed task=%s err_type=%s err=%s", t.get_name(), type(exc).__name__, exc)
        if not ws.closed:
            with contextlib.suppress(ConnectionError):
                await ws.close()
