from __future__ import annotations

import asyncio

import pytest

from common.errors import SessionNotFound
from panel.process import ProcessState
from panel.sessions import SessionKind, SessionRegistry, SessionState
from panel.sources import LaunchPlan
from tests.helpers import read_until, wait_until


class ScriptSources:
    """Maps ``sh:<name>`` targets to shell snippets."""

    def __init__(self, scripts: dict[str, str]):
        self.scripts = scripts

    def resolve(self, target: str) -> LaunchPlan:
        scheme, _, name = target.partition(":")
        if scheme != "sh" or name not in self.scripts:
            raise ValueError(f"unknown target {target!r}")
        return LaunchPlan(target=target, source=name, command="sh", args=("-c", self.scripts[name]))


SCRIPTS = {
    "forever": "echo started; sleep 30",
    "two": "printf 'l1\\nl2\\n'; sleep 30",
    "short": "printf 'x\\ny\\n'",
}


@pytest.fixture
async def registry(spawner):
    reg = SessionRegistry(ScriptSources(SCRIPTS), grace_period=0.3, spawner=spawner, shell="/bin/sh")
    yield reg
    await reg.close()


async def test_concurrent_subscribers_share_one_process(registry, spawner):
    first, second = await asyncio.gather(registry.subscribe("sh:forever"), registry.subscribe("sh:forever"))

    assert spawner.calls == 1
    assert first.session_id == second.session_id
    session = registry.get(first.session_id)
    assert session.kind is SessionKind.LOG_STREAM
    assert session.subscriber_count == 2

    for sub in (first, second):
        record = await asyncio.wait_for(sub.__anext__(), timeout=5.0)
        assert record.message == "started"


async def test_reattach_within_grace_reuses_process(registry, spawner):
    sub = await registry.subscribe("sh:forever")
    session = registry.get(sub.session_id)
    pid = session.process.pid

    sub.unsubscribe()
    assert session.state is SessionState.DRAINING

    again = await registry.subscribe("sh:forever")
    assert again.session_id == session.id
    assert session.state is SessionState.ACTIVE
    assert session.process.pid == pid
    assert spawner.calls == 1

    await asyncio.sleep(0.5)
    assert registry.find("sh:forever") is session
    again.unsubscribe()


async def test_grace_expiry_kills_and_next_subscribe_respawns(registry, spawner):
    sub = await registry.subscribe("sh:forever")
    first_handle = spawner.handles[0]
    sub.unsubscribe()

    await wait_until(lambda: registry.find("sh:forever") is None)
    await asyncio.wait_for(first_handle.wait_closed(), timeout=5.0)
    assert first_handle.state is ProcessState.KILLED

    fresh = await registry.subscribe("sh:forever")
    assert spawner.calls == 2
    assert fresh.session_id != sub.session_id
    assert registry.get(fresh.session_id).process.pid != first_handle.pid


async def test_new_subscriber_gets_recent_history_first(registry):
    first = await registry.subscribe("sh:two")
    seen = [await asyncio.wait_for(first.__anext__(), timeout=5.0) for _ in range(2)]
    assert [r.message for r in seen] == ["l1", "l2"]
    assert not any(r.history for r in seen)

    second = await registry.subscribe("sh:two")
    replay = [await asyncio.wait_for(second.__anext__(), timeout=5.0) for _ in range(2)]
    assert [r.message for r in replay] == ["l1", "l2"]
    assert all(r.history for r in replay)


async def test_natural_end_closes_stream_and_evicts(registry):
    events = []
    registry.add_hook(lambda event, session: events.append((event, session.target)))

    async with await registry.subscribe("sh:short") as sub:
        messages = [r.message async for r in sub]

    assert messages == ["x", "y"]
    await wait_until(lambda: registry.find("sh:short") is None)
    assert events == [("created", "sh:short"), ("evicted", "sh:short")]


async def test_unknown_target_is_rejected(registry, spawner):
    with pytest.raises(ValueError):
        await registry.subscribe("sh:missing")
    assert spawner.calls == 0
    assert registry.snapshot() == []


async def test_terminal_lifecycle(registry, home):
    sid = registry.create_terminal()
    terminal = await registry.attach_terminal(sid)
    handle = terminal.handle
    assert registry.get(sid).kind is SessionKind.TERMINAL

    await terminal.write("pwd\n")
    assert str(home).encode() in await read_until(handle, str(home).encode())

    registry.close_terminal(sid)
    await asyncio.wait_for(handle.wait_closed(), timeout=5.0)
    assert handle.state is ProcessState.KILLED
    with pytest.raises(SessionNotFound):
        registry.get(sid)
    with pytest.raises(SessionNotFound):
        registry.close_terminal(sid)


async def test_terminal_ids_are_single_use(registry, home):
    with pytest.raises(SessionNotFound):
        await registry.attach_terminal("not-a-session")

    sid = registry.create_terminal()
    terminal = await registry.attach_terminal(sid)
    with pytest.raises(SessionNotFound):
        await registry.attach_terminal(sid)
    terminal.close()


async def test_shell_exit_evicts_terminal(registry, home):
    sid = registry.create_terminal()
    terminal = await registry.attach_terminal(sid)
    await terminal.write("exit\n")
    await wait_until(lambda: registry.find(f"terminal:{sid}") is None)
    assert terminal.handle.state is ProcessState.EXITED


async def test_close_tears_down_everything(spawner, home):
    reg = SessionRegistry(ScriptSources(SCRIPTS), grace_period=30, spawner=spawner, shell="/bin/sh")
    await reg.subscribe("sh:forever")
    await reg.attach_terminal(reg.create_terminal())

    await reg.close()

    assert reg.snapshot() == []
    assert all(h.closed for h in spawner.handles)
    with pytest.raises(RuntimeError):
        await reg.subscribe("sh:forever")
