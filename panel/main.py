from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
from typing import Any

from common.auth import build_verifier
from common.config import load_config
from common.log import setup_logging
from panel.jobs import JobTracker
from panel.sessions import SessionRegistry
from panel.sources import LogSourceCatalog
from panel.web import PanelWebApp


class PanelDaemon:
    def __init__(self, config: dict[str, Any]):
        self.config = config
        self.logger = logging.getLogger("panel.main")
        self.sources = LogSourceCatalog.from_config(config)
        self.jobs = JobTracker.from_config(config)
        self.registry = SessionRegistry.from_config(config, self.sources, self.jobs)
        self.web = PanelWebApp(config, self.registry, self.jobs, build_verifier(config.get("auth") or {}))
        self.stop_event = asyncio.Event()
        self._shutdown_task: asyncio.Task[None] | None = None
        self._stopping = False

    async def start(self) -> None:
        await self.web.start()

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        self.logger.info("shutting down sessions=%s", len(self.registry.snapshot()))
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.registry.close(), timeout=5.0)
        await self.jobs.close()
        await self.web.stop()


def _install_signal_handlers(app: PanelDaemon) -> None:
    loop = asyncio.get_running_loop()
    force_exit_seconds = float(app.config.get("shutdown_force_exit_seconds", 6.0))
    force_exit_handle: asyncio.TimerHandle | None = None

    async def _shutdown() -> None:
        nonlocal force_exit_handle
        try:
            await app.stop()
        finally:
            if force_exit_handle is not None:
                force_exit_handle.cancel()
                force_exit_handle = None
            app.stop_event.set()

    def _force_exit() -> None:
        if app.stop_event.is_set():
            return
        app.logger.error("shutdown did not finish in %.1fs, forcing process exit", force_exit_seconds)
        os._exit(130)

    def _trigger_shutdown() -> None:
        nonlocal force_exit_handle
        if app._shutdown_task and not app._shutdown_task.done():
            return
        if force_exit_seconds > 0:
            force_exit_handle = loop.call_later(force_exit_seconds, _force_exit)
        app._shutdown_task = asyncio.create_task(_shutdown(), name="panel-shutdown")

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _trigger_shutdown)


async def _amain(config_path: str) -> None:
    cfg = load_config(config_path)
    setup_logging(cfg.get("log_level", "info"))
    app = PanelDaemon(cfg)
    await app.start()
    _install_signal_handlers(app)
    await app.stop_event.wait()


def main() -> None:
    parser = argparse.ArgumentParser(description="Host panel streaming daemon")
    parser.add_argument("config", help="path to panel yaml config")
    args = parser.parse_args()
    asyncio.run(_amain(args.config))


if __name__ == "__main__":
    main()
