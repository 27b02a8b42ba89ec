from __future__ import annotations

import asyncio
from typing import Callable

from panel.process import ProcessHandle, spawn


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


async def read_until(handle: ProcessHandle, needle: bytes, timeout: float = 5.0) -> bytes:
    buf = b""

    async def _loop() -> bytes:
        nonlocal buf
        while needle not in buf:
            chunk = await handle.read()
            if not chunk:
                break
            buf += chunk
        return buf

    return await asyncio.wait_for(_loop(), timeout)


class CountingSpawner:
    def __init__(self) -> None:
        self.calls = 0
        self.handles: list[ProcessHandle] = []

    async def __call__(self, *args, **kwargs) -> ProcessHandle:
        self.calls += 1
        handle = await spawn(*args, **kwargs)
        self.handles.append(handle)
        return handle
