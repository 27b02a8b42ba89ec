from __future__ import annotations

import asyncio
import collections
import contextlib
import itertools
import logging
import os
import secrets
import time
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Protocol

from common.errors import SessionNotFound
from common.records import LogRecord
from panel.broadcast import DEFAULT_MAX_PENDING, BroadcastChannel, Subscription
from panel.process import DEFAULT_BUFFER_BYTES, IoMode, ProcessHandle, spawn
from panel.sources import LaunchPlan
from panel.tailer import DEFAULT_MAX_LINE_BYTES, LogTailer, Spawner

if TYPE_CHECKING:
    from panel.jobs import JobTracker

DEFAULT_GRACE_PERIOD = 10.0
DEFAULT_HISTORY_LINES = 200
DEFAULT_TERMINAL_TTL = 120

SessionHook = Callable[[str, "StreamSession"], Any]


class SourceResolver(Protocol):
    def resolve(self, target: str) -> LaunchPlan: ...


class SessionKind(str, Enum):
    LOG_STREAM = "log_stream"
    TERMINAL = "terminal"
    BACKGROUND_JOB = "background_job"


class SessionState(str, Enum):
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(slots=True, eq=False)
class StreamSession:
    id: str
    kind: SessionKind
    target: str
    channel: BroadcastChannel[LogRecord] | None = None
    history: collections.deque[LogRecord] = field(default_factory=collections.deque)
    state: SessionState = SessionState.ACTIVE
    tailer: LogTailer | None = None
    process_ref: weakref.ReferenceType[ProcessHandle] | None = None
    drain_task: asyncio.Task[None] | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def process(self) -> ProcessHandle | None:
        return self.process_ref() if self.process_ref is not None else None

    @property
    def subscriber_count(self) -> int:
        if self.kind is SessionKind.TERMINAL:
            return 0 if self.state is SessionState.CLOSED else 1
        return self.channel.subscriber_count if self.channel is not None else 0

    def publish(self, record: LogRecord) -> None:
        self.history.append(record)
        if self.channel is not None:
            self.channel.publish(record)

    def describe(self) -> dict[str, Any]:
        proc = self.process
        return {
            "id": self.id,
            "kind": self.kind.value,
            "target": self.target,
            "state": self.state.value,
            "subscribers": self.subscriber_count,
            "pid": proc.pid if proc is not None else None,
            "process_state": proc.state.value if proc is not None else None,
            "created_at": self.created_at,
        }


class LogSubscription:
    """Records for one client: the session's recent tail first, then live records."""

    def __init__(self, session: StreamSession, sub: Subscription[LogRecord], prelude: list[LogRecord]):
        self.session = session
        self._sub = sub
        self._prelude = collections.deque(prelude)

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def target(self) -> str:
        return self.session.target

    @property
    def closed(self) -> bool:
        return self._sub.closed and not self._prelude

    def __aiter__(self) -> "LogSubscription":
        return self

    async def __anext__(self) -> LogRecord:
        if self._prelude:
            return self._prelude.popleft()
        return await self._sub.__anext__()

    def unsubscribe(self) -> None:
        self._prelude.clear()
        self._sub.unsubscribe()

    async def __aenter__(self) -> "LogSubscription":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.unsubscribe()


class TerminalSession:
    def __init__(self, registry: "SessionRegistry", session: StreamSession, handle: ProcessHandle):
        self._registry = registry
        self.session = session
        self.handle = handle

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def pid(self) -> int | None:
        return self.handle.pid

    async def write(self, data: bytes | str) -> None:
        await self.handle.write(data)

    def resize(self, cols: int, rows: int) -> None:
        self.handle.resize(cols, rows)

    def output(self) -> AsyncIterator[bytes]:
        return self.handle.__aiter__()

    def close(self) -> None:
        self._registry.close_terminal(self.id)


class SessionRegistry:
    def __init__(
        self,
        sources: SourceResolver,
        *,
        jobs: JobTracker | None = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        max_pending: int = DEFAULT_MAX_PENDING,
        history_lines: int = DEFAULT_HISTORY_LINES,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        buffer_bytes: int = DEFAULT_BUFFER_BYTES,
        shell: str | None = None,
        shell_args: list[str] | None = None,
        terminal_cols: int = 80,
        terminal_rows: int = 30,
        terminal_ttl: float = DEFAULT_TERMINAL_TTL,
        spawner: Spawner = spawn,
    ):
        self.logger = logging.getLogger("panel.sessions")
        self.sources = sources
        self.jobs = jobs
        self.grace_period = max(0.0, float(grace_period))
        self.max_pending = max_pending
        self.history_lines = max(0, int(history_lines))
        self.max_line_bytes = max_line_bytes
        self.buffer_bytes = buffer_bytes
        self.shell = shell or os.environ.get("SHELL", "/bin/bash")
        self.shell_args = list(shell_args or [])
        self.terminal_cols = terminal_cols
        self.terminal_rows = terminal_rows
        self.terminal_ttl = max(10.0, float(terminal_ttl))
        self.spawner = spawner
        self._sessions: dict[str, StreamSession] = {}
        self._by_target: dict[str, StreamSession] = {}
        self._target_locks: dict[str, asyncio.Lock] = {}
        self._terminals: dict[str, TerminalSession] = {}
        self._pending_terminals: dict[str, float] = {}
        self._hooks: list[SessionHook] = []
        self._ids = itertools.count(1)
        self._closing = False

    @classmethod
    def from_config(cls, cfg: dict[str, Any], sources: SourceResolver, jobs: JobTracker | None = None) -> "SessionRegistry":
        shell = str(cfg.get("shell") or "") or None
        return cls(
            sources,
            jobs=jobs,
            grace_period=float(cfg.get("grace_period_seconds", DEFAULT_GRACE_PERIOD)),
            max_pending=int(cfg.get("subscriber_queue_size", DEFAULT_MAX_PENDING)),
            history_lines=int(cfg.get("history_lines", DEFAULT_HISTORY_LINES)),
            max_line_bytes=int(cfg.get("max_line_bytes", DEFAULT_MAX_LINE_BYTES)),
            buffer_bytes=int(cfg.get("output_buffer_bytes", DEFAULT_BUFFER_BYTES)),
            shell=shell,
            shell_args=[str(a) for a in cfg.get("shell_args", []) or []],
            terminal_cols=int(cfg.get("terminal_cols", 80)),
            terminal_rows=int(cfg.get("terminal_rows", 30)),
            terminal_ttl=float(cfg.get("terminal_session_ttl", DEFAULT_TERMINAL_TTL)),
        )

    def add_hook(self, hook: SessionHook) -> None:
        self._hooks.append(hook)

    def _fire(self, event: str, session: StreamSession) -> None:
        for hook in list(self._hooks):
            try:
                hook(event, session)
            except Exception:
                self.logger.exception("session hook failed event=%s sid=%s", event, session.id)

    def _new_id(self, kind: SessionKind) -> str:
        return f"{kind.value}-{int(time.time() * 1000):x}-{next(self._ids)}"

    def get(self, session_id: str) -> StreamSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def find(self, target: str) -> StreamSession | None:
        return self._by_target.get(target)

    def snapshot(self) -> list[dict[str, Any]]:
        return [s.describe() for s in self._sessions.values()]

    # -- log streams -----------------------------------------------------

    def _resolve(self, target: str) -> tuple[SessionKind, LaunchPlan]:
        if target.startswith("job:"):
            if self.jobs is None:
                raise ValueError("background jobs are not enabled")
            return SessionKind.BACKGROUND_JOB, self.jobs.stream_plan(target[len("job:"):])
        return SessionKind.LOG_STREAM, self.sources.resolve(target)

    async def subscribe(self, target: str) -> LogSubscription:
        if self._closing:
            raise RuntimeError("session registry is closing")
        lock = self._target_locks.setdefault(target, asyncio.Lock())
        async with lock:
            session = self._by_target.get(target)
            if session is None:
                try:
                    session = await self._open_stream(target)
                except BaseException:
                    if self._target_locks.get(target) is lock and not self._by_target.get(target):
                        self._target_locks.pop(target, None)
                    raise
            elif session.channel is None:
                raise ValueError(f"target {target!r} is not a log stream")
            elif session.state is SessionState.DRAINING:
                self._cancel_drain(session)
                session.state = SessionState.ACTIVE
                self.logger.info("session reattached sid=%s target=%s", session.id, target)
            assert session.channel is not None
            prelude = [record.as_history() for record in session.history]
            sub = session.channel.subscribe()
        self.logger.debug(
            "subscribed sid=%s target=%s subscribers=%s replay=%s",
            session.id,
            target,
            session.channel.subscriber_count,
            len(prelude),
        )
        return LogSubscription(session, sub, prelude)

    async def _open_stream(self, target: str) -> StreamSession:
        kind, plan = self._resolve(target)
        channel: BroadcastChannel[LogRecord] = BroadcastChannel(name=target, max_pending=self.max_pending)
        session = StreamSession(
            id=self._new_id(kind),
            kind=kind,
            target=target,
            channel=channel,
            history=collections.deque(maxlen=self.history_lines),
        )
        channel.on_empty = lambda _ch: self._on_empty(session)
        session.tailer = LogTailer(
            plan,
            session.publish,
            max_line_bytes=self.max_line_bytes,
            buffer_bytes=self.buffer_bytes,
            spawner=self.spawner,
            on_finished=lambda _t: self._evict(session, "source ended"),
        )
        self._sessions[session.id] = session
        self._by_target[target] = session
        handle = await session.tailer.start()
        if handle is not None:
            session.process_ref = weakref.ref(handle)
        self.logger.info(
            "session opened sid=%s kind=%s target=%s pid=%s",
            session.id,
            kind.value,
            target,
            handle.pid if handle is not None else None,
        )
        self._fire("created", session)
        return session

    def _on_empty(self, session: StreamSession) -> None:
        if session.state is not SessionState.ACTIVE:
            return
        session.state = SessionState.DRAINING
        self.logger.debug("session draining sid=%s grace=%.1fs", session.id, self.grace_period)
        session.drain_task = asyncio.get_running_loop().create_task(
            self._drain_later(session), name=f"session-drain-{session.id}"
        )

    async def _drain_later(self, session: StreamSession) -> None:
        await asyncio.sleep(self.grace_period)
        if session.state is SessionState.DRAINING and session.subscriber_count == 0:
            self._evict(session, "grace period expired")

    def _cancel_drain(self, session: StreamSession) -> None:
        task = session.drain_task
        session.drain_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _evict(self, session: StreamSession, reason: str) -> None:
        if session.state is SessionState.CLOSED:
            return
        session.state = SessionState.CLOSED
        self._cancel_drain(session)
        self._sessions.pop(session.id, None)
        if self._by_target.get(session.target) is session:
            self._by_target.pop(session.target, None)
            lock = self._target_locks.get(session.target)
            if lock is not None and not lock.locked():
                self._target_locks.pop(session.target, None)
        terminal = self._terminals.pop(session.id, None)
        if terminal is not None:
            terminal.handle.kill()
        if session.tailer is not None:
            session.tailer.stop()
        if session.channel is not None:
            session.channel.close()
        self.logger.info("session closed sid=%s kind=%s target=%s reason=%s", session.id, session.kind.value, session.target, reason)
        self._fire("evicted", session)

    # -- terminals -------------------------------------------------------

    def _prune_pending(self) -> None:
        now = time.monotonic()
        for sid in [sid for sid, exp in self._pending_terminals.items() if exp <= now]:
            self._pending_terminals.pop(sid, None)

    def create_terminal(self) -> str:
        self._prune_pending()
        sid = secrets.token_hex(16)
        self._pending_terminals[sid] = time.monotonic() + self.terminal_ttl
        return sid

    def _consume_pending(self, session_id: str) -> bool:
        self._prune_pending()
        exp = self._pending_terminals.pop(session_id, 0.0)
        return exp > time.monotonic()

    async def attach_terminal(self, session_id: str, cols: int | None = None, rows: int | None = None) -> TerminalSession:
        if self._closing or not self._consume_pending(session_id):
            raise SessionNotFound(session_id)
        handle = await self.spawner(
            self.shell,
            list(self.shell_args),
            IoMode.PTY,
            cwd=os.environ.get("HOME") or None,
            cols=cols or self.terminal_cols,
            rows=rows or self.terminal_rows,
            buffer_bytes=self.buffer_bytes,
        )
        session = StreamSession(
            id=session_id,
            kind=SessionKind.TERMINAL,
            target=f"terminal:{session_id}",
            process_ref=weakref.ref(handle),
        )
        terminal = TerminalSession(self, session, handle)
        self._sessions[session_id] = session
        self._by_target[session.target] = session
        self._terminals[session_id] = terminal
        handle.on_close(lambda _h: self._evict(session, "shell exited"))
        self.logger.info("terminal opened sid=%s shell=%s pid=%s", session_id, self.shell, handle.pid)
        self._fire("created", session)
        return terminal

    def close_terminal(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.kind is not SessionKind.TERMINAL:
            raise SessionNotFound(session_id)
        self._evict(session, "client disconnected")

    # -- shutdown --------------------------------------------------------

    async def close(self) -> None:
        self._closing = True
        self._pending_terminals.clear()
        sessions = list(self._sessions.values())
        handles = [s.process for s in sessions]
        for session in sessions:
            self._evict(session, "shutdown")
        for handle in handles:
            if handle is None:
                continue
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(handle.wait_closed(), timeout=3.0)
