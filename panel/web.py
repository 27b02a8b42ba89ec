from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, Awaitable, Callable

from aiohttp import web

from common.auth import TOKEN_COOKIE, AllowAllVerifier, TokenVerifier
from common.errors import NotFound, SlowConsumerError, SpawnError
from common.web_terminal import setup_terminal_routes
from panel.jobs import JobTracker, compress_spec, extract_spec
from panel.sessions import SessionRegistry

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

DEFAULT_SSE_KEEPALIVE = 20.0

REGISTRY_KEY = web.AppKey("registry", SessionRegistry)
JOBS_KEY = web.AppKey("jobs", JobTracker)
CLAIMS_KEY = web.RequestKey("claims", dict)

ALL_SERVICES_UNIT = "php*-fpm"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _error(status: int, error: str, detail: str | None = None) -> web.Response:
    body: dict[str, Any] = {"ok": False, "error": error}
    if detail:
        body["detail"] = detail
    return web.json_response(body, status=status)


def service_target(service: str) -> str:
    """Maps the legacy `?service=` query onto a journal target."""
    service = service.strip()
    if not service:
        return ""
    return f"journal:{ALL_SERVICES_UNIT if service == 'all' else service}"


def sse_frame(data: Any, event: str | None = None) -> bytes:
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {json.dumps(data, separators=(',', ':'))}\n\n".encode("utf-8")


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except NotFound:
        return _error(404, "not_found")
    except SpawnError as exc:
        return _error(502, "spawn_failed", f"{exc.command}: {exc.reason}")
    except ValueError as exc:
        return _error(400, "bad_request", str(exc))


class PanelWebApp:
    def __init__(
        self,
        config: dict[str, Any],
        registry: SessionRegistry,
        jobs: JobTracker | None = None,
        verifier: TokenVerifier | None = None,
    ):
        self.config = config
        self.registry = registry
        self.jobs = jobs
        self.verifier = verifier or AllowAllVerifier()
        self.keepalive = float(config.get("sse_keepalive_seconds", DEFAULT_SSE_KEEPALIVE))
        self.logger = logging.getLogger("panel.web")
        self.started_at = time.time()
        self.app = web.Application(middlewares=[error_middleware])
        self.app[REGISTRY_KEY] = registry
        if jobs is not None:
            self.app[JOBS_KEY] = jobs
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/api/health", self.api_health)
        self.app.router.add_get("/api/logs/stream", self.auth(self.api_logs_stream))
        self.app.router.add_get("/api/sessions", self.auth(self.api_sessions))
        self.app.router.add_post("/api/jobs", self.auth(self.api_job_start))
        self.app.router.add_get("/api/jobs", self.auth(self.api_job_list))
        self.app.router.add_get("/api/jobs/{job_id}", self.auth(self.api_job_poll))
        self.app.router.add_post("/api/jobs/{job_id}/cancel", self.auth(self.api_job_cancel))
        self.app.router.add_delete("/api/jobs/{job_id}", self.auth(self.api_job_reap))
        setup_terminal_routes(self.app, self.registry, guard=self.auth)

    def _request_token(self, request: web.Request) -> str:
        header = request.headers.get("Authorization", "")
        if header.lower().startswith("bearer "):
            return header[7:].strip()
        return request.cookies.get(TOKEN_COOKIE, "")

    def auth(self, handler: Handler) -> Handler:
        async def _wrapped(request: web.Request) -> web.StreamResponse:
            claims = self.verifier.verify(self._request_token(request))
            if claims is None:
                return _error(401, "unauthorized")
            request[CLAIMS_KEY] = claims
            return await handler(request)

        return _wrapped

    async def api_health(self, _: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "uptime": round(time.time() - self.started_at, 1),
                "sessions": len(self.registry.snapshot()),
            }
        )

    async def api_sessions(self, _: web.Request) -> web.Response:
        return web.json_response({"ok": True, "sessions": self.registry.snapshot()})

    async def api_logs_stream(self, request: web.Request) -> web.StreamResponse:
        target = request.query.get("target", "").strip()
        if not target:
            target = service_target(request.query.get("service", ""))
        if not target:
            return _error(400, "bad_request", "target is required")
        subscription = await self.registry.subscribe(target)
        resp = web.StreamResponse(status=200, headers=SSE_HEADERS)
        try:
            await resp.prepare(request)
        except BaseException:
            subscription.unsubscribe()
            raise
        peer = request.remote
        self.logger.info("log stream opened peer=%s target=%s sid=%s", peer, target, subscription.session_id)
        sent = 0
        reason = "end"
        async with subscription:
            try:
                await resp.write(sse_frame({"session": subscription.session_id, "target": target}, event="session"))
                while True:
                    try:
                        record = await asyncio.wait_for(subscription.__anext__(), timeout=self.keepalive)
                    except asyncio.TimeoutError:
                        await resp.write(b": keepalive\n\n")
                        continue
                    except StopAsyncIteration:
                        await resp.write(sse_frame({"reason": "end"}, event="end"))
                        break
                    except SlowConsumerError:
                        reason = "slow_consumer"
                        await resp.write(sse_frame({"reason": "slow_consumer"}, event="error"))
                        break
                    await resp.write(sse_frame(record.to_dict()))
                    sent += 1
            except ConnectionResetError:
                reason = "client_disconnected"
        self.logger.info("log stream closed peer=%s target=%s sent=%s reason=%s", peer, target, sent, reason)
        with contextlib.suppress(ConnectionResetError):
            await resp.write_eof()
        return resp

    def _require_jobs(self) -> JobTracker:
        if self.jobs is None:
            raise ValueError("background jobs are not enabled")
        return self.jobs

    async def api_job_start(self, request: web.Request) -> web.Response:
        jobs = self._require_jobs()
        try:
            data = await request.json()
        except json.JSONDecodeError as exc:
            raise ValueError("request body must be JSON") from exc
        if not isinstance(data, dict):
            raise ValueError("request body must be an object")
        action = str(data.get("action", "")).lower()
        if action in {"extract", "unzip"}:
            archive = str(data.get("archive") or data.get("targetPath") or "").strip()
            if not archive:
                raise ValueError("archive is required")
            spec = extract_spec(archive, data.get("destination") or None)
        elif action in {"compress", "zip"}:
            paths = data.get("paths")
            if not isinstance(paths, list):
                raise ValueError("paths must be a list")
            spec = compress_spec([str(p) for p in paths], str(data.get("destination") or ""))
        else:
            raise ValueError(f"unknown job action: {action!r}")
        job_id = await jobs.start(spec)
        return web.json_response({"ok": True, "job_id": job_id})

    async def api_job_list(self, _: web.Request) -> web.Response:
        records = await self._require_jobs().list_jobs()
        return web.json_response({"ok": True, "jobs": [r.to_dict() for r in records]})

    async def api_job_poll(self, request: web.Request) -> web.Response:
        record = await self._require_jobs().poll(request.match_info["job_id"])
        return web.json_response({"ok": True, "job": record.to_dict()})

    async def api_job_cancel(self, request: web.Request) -> web.Response:
        record = await self._require_jobs().cancel(request.match_info["job_id"])
        return web.json_response({"ok": True, "job": record.to_dict()})

    async def api_job_reap(self, request: web.Request) -> web.Response:
        await self._require_jobs().reap(request.match_info["job_id"])
        return web.json_response({"ok": True})

    async def start(self) -> None:
        bind = self.config.get("bind", "127.0.0.1")
        port = int(self.config.get("port", 3001))
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, bind, port)
        await self.site.start()
        self.logger.info("panel listening bind=%s port=%s", bind, port)

    async def stop(self) -> None:
        if self.runner:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.runner.cleanup(), timeout=5.0)
            self.runner = None
            self.site = None
