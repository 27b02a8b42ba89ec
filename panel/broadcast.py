from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Generic, TypeVar

from common.errors import SlowConsumerError

T = TypeVar("T")

DEFAULT_MAX_PENDING = 1000

_END = object()


class Subscription(Generic[T]):
    """One consumer's view of a channel: every item published after subscribe, in order."""

    def __init__(self, channel: "BroadcastChannel[T]", max_pending: int):
        self._channel = channel
        self.max_pending = max_pending
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._done = False
        self.error: BaseException | None = None
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._done

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, item: T) -> bool:
        if self._done:
            return False
        if self._queue.qsize() >= self.max_pending:
            return False
        self._queue.put_nowait(item)
        return True

    def _finish(self, error: BaseException | None = None) -> None:
        if self._done:
            return
        self._done = True
        if error is not None:
            self.error = error
            # Undelivered backlog is dropped with the consumer.
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(_END)

    async def get(self) -> T:
        item = await self._queue.get()
        if item is _END:
            self._queue.put_nowait(_END)
            if self.error is not None:
                raise self.error
            raise StopAsyncIteration
        self.delivered += 1
        return item

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        return await self.get()

    def unsubscribe(self) -> None:
        self._channel.unsubscribe(self)


class BroadcastChannel(Generic[T]):
    def __init__(self, name: str = "", max_pending: int = DEFAULT_MAX_PENDING):
        self.logger = logging.getLogger("panel.broadcast")
        self.name = name
        self.max_pending = max(1, int(max_pending))
        self._subscribers: set[Subscription[T]] = set()
        self._closed = False
        self.published = 0
        self.on_empty: Callable[["BroadcastChannel[T]"], Any] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self, self.max_pending)
        if self._closed:
            sub._finish()
            return sub
        self._subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription[T]) -> None:
        self._detach(sub, None)

    def _detach(self, sub: Subscription[T], error: BaseException | None) -> None:
        if sub not in self._subscribers:
            sub._finish(error)
            return
        self._subscribers.discard(sub)
        sub._finish(error)
        if not self._subscribers and not self._closed and self.on_empty is not None:
            self.on_empty(self)

    def publish(self, item: T) -> int:
        if self._closed:
            return 0
        self.published += 1
        delivered = 0
        for sub in list(self._subscribers):
            if sub._offer(item):
                delivered += 1
                continue
            self.logger.warning(
                "slow consumer dropped channel=%s pending=%s cap=%s",
                self.name,
                sub.pending,
                sub.max_pending,
            )
            self._detach(sub, SlowConsumerError(f"subscriber of {self.name or 'channel'} fell behind by {sub.max_pending} items"))
        return delivered

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        subs, self._subscribers = self._subscribers, set()
        for sub in subs:
            sub._finish()
