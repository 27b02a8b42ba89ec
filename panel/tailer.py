from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

from common.errors import SpawnError
from common.records import (
    DEFAULT_SEVERITY,
    SEVERITY_ERROR,
    SEVERITY_INFO,
    LogRecord,
    ParsedLine,
    Raw,
    Structured,
    coerce_severity,
    now_ms,
)
from panel.process import DEFAULT_BUFFER_BYTES, IoMode, ProcessHandle, spawn
from panel.sources import LaunchPlan

DEFAULT_MAX_LINE_BYTES = 64 * 1024
TRUNCATED_MARKER = " [truncated]"

UNIT_SUFFIXES = frozenset(
    {
        "service",
        "socket",
        "timer",
        "scope",
        "slice",
        "mount",
        "automount",
        "target",
        "path",
        "device",
        "swap",
    }
)

Publish = Callable[[LogRecord], None]
Spawner = Callable[..., Awaitable[ProcessHandle]]


class LineSplitter:
    """Cuts a byte stream into lines, carrying partial lines across reads."""

    def __init__(self, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES):
        self.max_line_bytes = max(1, int(max_line_bytes))
        self._carry = bytearray()
        self._discarding = False

    def _cap(self, line: bytes) -> tuple[bytes, bool]:
        if len(line) > self.max_line_bytes:
            return line[: self.max_line_bytes], True
        return line, False

    def feed(self, data: bytes) -> list[tuple[bytes, bool]]:
        out: list[tuple[bytes, bool]] = []
        self._carry.extend(data)
        start = 0
        while True:
            idx = self._carry.find(b"\n", start)
            if idx < 0:
                break
            line = bytes(self._carry[start:idx])
            start = idx + 1
            if self._discarding:
                # Tail of a line already emitted as truncated.
                self._discarding = False
                continue
            out.append(self._cap(line))
        del self._carry[:start]
        if len(self._carry) > self.max_line_bytes and not self._discarding:
            out.append((bytes(self._carry[: self.max_line_bytes]), True))
            self._discarding = True
        if self._discarding:
            self._carry.clear()
        return out

    def flush(self) -> list[tuple[bytes, bool]]:
        if self._discarding or not self._carry:
            self._carry.clear()
            self._discarding = False
            return []
        line = bytes(self._carry)
        self._carry.clear()
        return [self._cap(line)]


def _strip_unit_suffix(unit: str) -> str:
    name, dot, suffix = unit.rpartition(".")
    if dot and name and suffix in UNIT_SUFFIXES:
        return name
    return unit


def _journal_message(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        # journald emits non-UTF-8 payloads as arrays of byte values.
        try:
            return bytes(int(b) & 0xFF for b in value).decode("utf-8", errors="replace")
        except (TypeError, ValueError):
            return json.dumps(value)
    return str(value)


def _journal_timestamp(value: Any, received_at: float) -> float:
    try:
        return int(str(value).strip()) / 1000.0
    except (TypeError, ValueError):
        return received_at


def parse_line(line: str, fallback_source: str, received_at: float | None = None) -> ParsedLine:
    received = now_ms() if received_at is None else received_at
    candidate = line.strip()
    entry: Any = None
    if candidate.startswith("{") and candidate.endswith("}"):
        try:
            entry = json.loads(candidate)
        except ValueError:
            entry = None
    if isinstance(entry, dict) and ("MESSAGE" in entry or "__REALTIME_TIMESTAMP" in entry):
        unit = entry.get("_SYSTEMD_UNIT")
        source = _strip_unit_suffix(str(unit)) if unit else fallback_source
        return Structured(
            LogRecord(
                timestamp=_journal_timestamp(entry.get("__REALTIME_TIMESTAMP"), received),
                message=_journal_message(entry.get("MESSAGE")),
                source=source,
                severity=coerce_severity(entry.get("PRIORITY", DEFAULT_SEVERITY)),
            )
        )
    return Raw(LogRecord(timestamp=received, message=line, source=fallback_source, severity=DEFAULT_SEVERITY))


class LogTailer:
    def __init__(
        self,
        plan: LaunchPlan,
        publish: Publish,
        *,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        buffer_bytes: int = DEFAULT_BUFFER_BYTES,
        spawner: Spawner = spawn,
        on_finished: Callable[["LogTailer"], Any] | None = None,
    ):
        self.logger = logging.getLogger("panel.tailer")
        self.plan = plan
        self.publish = publish
        self.max_line_bytes = max_line_bytes
        self.buffer_bytes = buffer_bytes
        self.spawner = spawner
        self.on_finished = on_finished
        self.handle: ProcessHandle | None = None
        self.failed = False
        self.records_emitted = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def source(self) -> str:
        return self.plan.source

    def _emit(self, record: LogRecord) -> None:
        self.records_emitted += 1
        self.publish(record)

    def _fail(self, message: str) -> None:
        self.failed = True
        self.logger.warning("log source unavailable source=%s reason=%s", self.source, message)
        self._emit(LogRecord.raw(message, self.source, SEVERITY_ERROR))

    async def start(self) -> ProcessHandle | None:
        for notice in self.plan.notices:
            self._emit(LogRecord.raw(notice, self.source, SEVERITY_INFO))
        if self.plan.error:
            self._fail(self.plan.error)
            return None
        try:
            handle = await self.spawner(
                self.plan.command,
                list(self.plan.args),
                IoMode.PIPE,
                buffer_bytes=self.buffer_bytes,
            )
        except SpawnError as exc:
            self._fail(f"Failed to start log source {self.plan.command}: {exc.reason}")
            return None
        self.handle = handle
        self._task = asyncio.create_task(self._pump(handle), name=f"tailer-{self.source}-{handle.pid}")
        return handle

    def _emit_lines(self, lines: list[tuple[bytes, bool]]) -> None:
        for raw_line, truncated in lines:
            text = raw_line.decode("utf-8", errors="replace").rstrip("\r")
            if not text.strip():
                continue
            if truncated:
                self._emit(
                    LogRecord(
                        timestamp=now_ms(),
                        message=text + TRUNCATED_MARKER,
                        source=self.source,
                        severity=DEFAULT_SEVERITY,
                        truncated=True,
                    )
                )
                continue
            self._emit(parse_line(text, self.source).record)

    async def _pump(self, handle: ProcessHandle) -> None:
        splitter = LineSplitter(self.max_line_bytes)
        try:
            async for chunk in handle:
                self._emit_lines(splitter.feed(chunk))
            self._emit_lines(splitter.flush())
            code = await handle.wait_closed()
            self.logger.info(
                "log source ended source=%s pid=%s state=%s code=%s records=%s",
                self.source,
                handle.pid,
                handle.state.value,
                code,
                self.records_emitted,
            )
        finally:
            if self.on_finished is not None:
                self.on_finished(self)

    def stop(self) -> None:
        if self.handle is not None:
            self.handle.kill()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)
