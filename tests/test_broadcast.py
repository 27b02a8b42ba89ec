from __future__ import annotations

import pytest

from common.errors import SlowConsumerError
from panel.broadcast import BroadcastChannel


async def _drain(sub):
    return [item async for item in sub]


async def test_every_subscriber_sees_items_in_order():
    channel: BroadcastChannel[int] = BroadcastChannel("t")
    first = channel.subscribe()
    second = channel.subscribe()
    for i in (1, 2, 3):
        assert channel.publish(i) == 2
    channel.close()

    assert await _drain(first) == [1, 2, 3]
    assert await _drain(second) == [1, 2, 3]


async def test_late_subscriber_only_sees_later_items():
    channel: BroadcastChannel[str] = BroadcastChannel("t")
    early = channel.subscribe()
    channel.publish("a")
    late = channel.subscribe()
    channel.publish("b")
    channel.close()

    assert await _drain(early) == ["a", "b"]
    assert await _drain(late) == ["b"]


async def test_slow_consumer_is_dropped_without_affecting_others():
    channel: BroadcastChannel[int] = BroadcastChannel("t", max_pending=2)
    slow = channel.subscribe()
    fast = channel.subscribe()
    channel.publish(1)
    channel.publish(2)
    assert await fast.get() == 1
    assert await fast.get() == 2

    assert channel.publish(3) == 1
    assert channel.subscriber_count == 1
    assert slow.closed

    with pytest.raises(SlowConsumerError):
        await slow.get()
    assert await fast.get() == 3


async def test_unsubscribe_is_idempotent_and_fires_on_empty_once():
    channel: BroadcastChannel[int] = BroadcastChannel("t")
    emptied = []
    channel.on_empty = emptied.append
    sub = channel.subscribe()

    sub.unsubscribe()
    sub.unsubscribe()

    assert emptied == [channel]
    assert channel.publish(1) == 0
    assert await _drain(sub) == []


async def test_subscribe_to_closed_channel_ends_immediately():
    channel: BroadcastChannel[int] = BroadcastChannel("t")
    channel.close()
    sub = channel.subscribe()
    assert sub.closed
    assert await _drain(sub) == []
    assert channel.publish(1) == 0
