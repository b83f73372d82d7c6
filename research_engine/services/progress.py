"""Fire-and-forget progress channel.

The orchestrator and fetcher publish ProgressEvents; any number of independent
subscribers receive them through their own bounded queue. Publishing never
blocks and never raises: a full subscriber queue drops the event for that
subscriber only, and a failing listener callback is logged and skipped.
"""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable

from loguru import logger

from research_engine.models.events import ProgressEvent

Listener = Callable[[ProgressEvent], None]


class Subscription:
    def __init__(self, channel: "ProgressChannel", maxsize: int):
        self._channel = channel
        self.queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: ProgressEvent | None) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            if event is None:
                # make room for the close marker
                self.queue.get_nowait()
                self.queue.put_nowait(None)
            else:
                self.dropped += 1

    def drain(self) -> list[ProgressEvent]:
        """Return everything currently buffered without waiting."""
        events: list[ProgressEvent] = []
        while not self.queue.empty():
            item = self.queue.get_nowait()
            if item is not None:
                events.append(item)
        return events

    def unsubscribe(self) -> None:
        self._channel.unsubscribe(self)

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self.queue.get()
            if item is None:
                return
            yield item


class ProgressChannel:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Listener] = []
        self.closed = False

    def subscribe(self, maxsize: int = 512) -> Subscription:
        subscription = Subscription(self, maxsize=max(maxsize, 1))
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def publish(self, event: ProgressEvent) -> None:
        if self.closed:
            return
        for subscription in list(self._subscriptions):
            subscription.offer(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Progress listener failed on {event.event.value}: {e}")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for subscription in list(self._subscriptions):
            subscription.offer(None)


def publish(channel: ProgressChannel | None, event: ProgressEvent) -> None:
    """Publish when a channel is attached; no-op otherwise."""
    if channel is not None:
        channel.publish(event)
