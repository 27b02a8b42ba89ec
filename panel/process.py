from __future__ import annotations

import asyncio
import collections
import contextlib
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from enum import Enum
from typing import Any, AsyncIterator, Callable

from common.errors import ClosedError, SpawnError

DEFAULT_BUFFER_BYTES = 256 * 1024
DEFAULT_CHUNK_SIZE = 4096
DEFAULT_DRAIN_TIMEOUT = 2.0

CloseCallback = Callable[["ProcessHandle"], Any]


class IoMode(str, Enum):
    PIPE = "pipe"
    PTY = "pty"


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ProcessState.EXITED, ProcessState.KILLED, ProcessState.FAILED})


class _OutputProtocol(asyncio.StreamReaderProtocol):
    def __init__(self, reader: asyncio.StreamReader, loop: asyncio.AbstractEventLoop):
        super().__init__(reader, loop=loop)
        self.lost: asyncio.Future[None] = loop.create_future()

    def connection_lost(self, exc: Exception | None) -> None:
        # A pty master reports EIO once the last slave descriptor is gone.
        if isinstance(exc, OSError) and exc.errno == errno.EIO:
            exc = None
        super().connection_lost(exc)
        if not self.lost.done():
            self.lost.set_result(None)


def _acquire_controlling_tty() -> None:
    os.setsid()
    with contextlib.suppress(OSError):
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _winsize(cols: int, rows: int) -> bytes:
    return struct.pack("HHHH", max(1, int(rows)), max(1, int(cols)), 0, 0)


class ProcessHandle:
    """One spawned OS process and the descriptors that carry its output.

    Output is read through a bounded ``asyncio.StreamReader``: once
    ``buffer_bytes`` are pending the read transport pauses, the kernel pipe
    fills and the child blocks on write. Nothing grows without bound.
    """

    def __init__(
        self,
        command: str,
        args: list[str],
        io_mode: IoMode = IoMode.PIPE,
        *,
        buffer_bytes: int = DEFAULT_BUFFER_BYTES,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
    ):
        self.logger = logging.getLogger("panel.process")
        self.command = command
        self.args = tuple(args)
        self.io_mode = IoMode(io_mode)
        self.buffer_bytes = max(1024, int(buffer_bytes))
        self.chunk_size = max(1, int(chunk_size))
        self.drain_timeout = drain_timeout
        self.state = ProcessState.STARTING
        self.exit_code: int | None = None
        self.error: str | None = None
        self.pid: int | None = None
        self.stderr_tail: collections.deque[str] = collections.deque(maxlen=20)
        self._proc: asyncio.subprocess.Process | None = None
        self._reader: asyncio.StreamReader | None = None
        self._out_transport: asyncio.ReadTransport | None = None
        self._out_protocol: _OutputProtocol | None = None
        self._pty_writer: asyncio.StreamWriter | None = None
        self._master_fd: int | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()
        self._close_callbacks: list[CloseCallback] = []

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.command} pid={self.pid} state={self.state.value}>"

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def buffered(self) -> int:
        """Bytes read from the child but not yet consumed."""
        if self._reader is None:
            return 0
        return len(self._reader._buffer)

    async def _start(
        self,
        env: dict[str, str] | None,
        cwd: str | None,
        cols: int,
        rows: int,
    ) -> None:
        loop = asyncio.get_running_loop()
        try:
            if self.io_mode is IoMode.PTY:
                await self._start_pty(loop, env, cwd, cols, rows)
            else:
                await self._start_pipe(loop, env, cwd)
        except (OSError, ValueError) as exc:
            self.state = ProcessState.FAILED
            self.error = f"{type(exc).__name__}: {exc}"
            self._closed.set()
            self.logger.warning("spawn failed cmd=%s err=%s", self.command, self.error)
            raise SpawnError(self.command, self.error) from exc
        assert self._proc is not None
        self.pid = self._proc.pid
        self.state = ProcessState.RUNNING
        self.logger.debug("spawned cmd=%s args=%s pid=%s mode=%s", self.command, list(self.args), self.pid, self.io_mode.value)
        self._monitor_task = asyncio.create_task(self._monitor(), name=f"process-monitor-{self.pid}")

    async def _connect_output(self, loop: asyncio.AbstractEventLoop, fd: int) -> None:
        # StreamReader pauses its transport at twice its limit.
        self._reader = asyncio.StreamReader(limit=max(1, self.buffer_bytes // 2), loop=loop)
        protocol = _OutputProtocol(self._reader, loop)
        transport, _ = await loop.connect_read_pipe(lambda: protocol, os.fdopen(fd, "rb", buffering=0))
        self._out_transport = transport
        self._out_protocol = protocol

    async def _start_pipe(self, loop: asyncio.AbstractEventLoop, env: dict[str, str] | None, cwd: str | None) -> None:
        read_fd, write_fd = os.pipe()
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=subprocess.PIPE,
                stdout=write_fd,
                stderr=subprocess.PIPE,
                env=env,
                cwd=cwd,
                start_new_session=True,
            )
        except BaseException:
            os.close(read_fd)
            raise
        finally:
            os.close(write_fd)
        await self._connect_output(loop, read_fd)
        self._stderr_task = asyncio.create_task(self._drain_stderr(), name=f"process-stderr-{self._proc.pid}")

    async def _start_pty(
        self,
        loop: asyncio.AbstractEventLoop,
        env: dict[str, str] | None,
        cwd: str | None,
        cols: int,
        rows: int,
    ) -> None:
        master_fd, slave_fd = pty.openpty()
        try:
            fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, _winsize(cols, rows))
            envp = dict(os.environ if env is None else env)
            envp.setdefault("TERM", "xterm-256color")
            self._proc = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=envp,
                cwd=cwd,
                preexec_fn=_acquire_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        self._master_fd = master_fd
        write_fd = os.dup(master_fd)
        await self._connect_output(loop, master_fd)
        w_transport, w_protocol = await loop.connect_write_pipe(
            lambda: asyncio.StreamReaderProtocol(asyncio.StreamReader(loop=loop), loop=loop),
            os.fdopen(write_fd, "wb", buffering=0),
        )
        self._pty_writer = asyncio.StreamWriter(w_transport, w_protocol, None, loop)

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            try:
                line = await self._proc.stderr.readline()
            except (ValueError, asyncio.LimitOverrunError):
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self.stderr_tail.append(text)
                self.logger.warning("stderr pid=%s cmd=%s: %s", self.pid, self.command, text)

    async def _monitor(self) -> None:
        assert self._proc is not None
        code = await self._proc.wait()
        self.exit_code = code
        if self.state is ProcessState.RUNNING:
            self.state = ProcessState.EXITED
            self.logger.debug("exited pid=%s code=%s", self.pid, code)
        protocol = self._out_protocol
        if protocol is not None and not protocol.lost.done():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.shield(protocol.lost), timeout=self.drain_timeout)
        self._release()

    def _release(self) -> None:
        if self._closed.is_set():
            return
        if self._out_transport is not None:
            self._out_transport.close()
        if self._pty_writer is not None:
            self._pty_writer.close()
        if self._proc is not None and self._proc.stdin is not None:
            self._proc.stdin.close()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
        self._master_fd = None
        self._closed.set()
        callbacks, self._close_callbacks = self._close_callbacks, []
        for cb in callbacks:
            self._notify(cb)

    def _notify(self, cb: CloseCallback) -> None:
        try:
            cb(self)
        except Exception:
            self.logger.exception("close callback failed pid=%s", self.pid)

    def on_close(self, callback: CloseCallback) -> None:
        if self._closed.is_set():
            asyncio.get_running_loop().call_soon(self._notify, callback)
            return
        self._close_callbacks.append(callback)

    async def wait_closed(self) -> int | None:
        await self._closed.wait()
        return self.exit_code

    async def read(self, n: int | None = None) -> bytes:
        if self._reader is None:
            return b""
        return await self._reader.read(n or self.chunk_size)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.read()
            if not chunk:
                return
            yield chunk

    async def write(self, data: bytes | str) -> None:
        if self.state is not ProcessState.RUNNING:
            raise ClosedError(f"process {self.pid} is {self.state.value}")
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        writer = self._pty_writer if self.io_mode is IoMode.PTY else (self._proc.stdin if self._proc else None)
        if writer is None:
            raise ClosedError(f"process {self.pid} has no input channel")
        try:
            writer.write(payload)
            await writer.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ClosedError(f"process {self.pid} input closed") from exc

    def resize(self, cols: int, rows: int) -> None:
        if self.io_mode is not IoMode.PTY:
            return
        if self.state is not ProcessState.RUNNING or self._master_fd is None:
            raise ClosedError(f"process {self.pid} is {self.state.value}")
        fcntl.ioctl(self._master_fd, termios.TIOCSWINSZ, _winsize(cols, rows))
        self.logger.debug("resize pid=%s cols=%s rows=%s", self.pid, cols, rows)

    def kill(self, sig: int = signal.SIGKILL) -> bool:
        if self.is_terminal or self._proc is None:
            return False
        self.state = ProcessState.KILLED
        self.logger.debug("kill pid=%s sig=%s", self.pid, sig)
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            with contextlib.suppress(ProcessLookupError):
                self._proc.send_signal(sig)
        if self._out_transport is not None:
            self._out_transport.close()
        return True

    def terminate(self) -> bool:
        return self.kill(signal.SIGTERM)


async def spawn(
    command: str,
    args: list[str] | None = None,
    io_mode: IoMode = IoMode.PIPE,
    *,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    cols: int = 80,
    rows: int = 24,
    buffer_bytes: int = DEFAULT_BUFFER_BYTES,
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
) -> ProcessHandle:
    handle = ProcessHandle(
        command,
        list(args or []),
        io_mode,
        buffer_bytes=buffer_bytes,
        drain_timeout=drain_timeout,
    )
    await handle._start(env, cwd, cols, rows)
    return handle
