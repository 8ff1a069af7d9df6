"""Per-session publish/subscribe channel for thinking events.

Every subscriber owns an unbounded ``asyncio.Queue``, so publishing never
blocks and never drops, and a slow consumer only delays itself. Subscribers
of the same session each see every event once, in publication order.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any

from loguru import logger

from thinktree.tools.thinking_types import ThinkingEvent

_CLOSED = object()


class EventSubscription:
    """Async iterator over one subscriber's events.

    Iteration ends after a ``session_completed`` or ``error`` event, or once
    :meth:`close` has been called. Closing is idempotent and safe from any
    task at any time, including while another task awaits the next event.

    Example:
        async with bus.subscribe(session_id) as events:
            async for event in events:
                print(event.type)
    """

    def __init__(self, bus: EventBus, session_id: str) -> None:
        self.session_id = session_id
        self._bus = bus
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: ThinkingEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        """Stop receiving events and wake a pending ``__anext__``."""
        if self._closed:
            return
        self._closed = True
        self._bus._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def pending(self) -> int:
        """Number of buffered events not yet consumed."""
        return self._queue.qsize()

    def __aiter__(self) -> AsyncIterator[ThinkingEvent]:
        return self

    async def __anext__(self) -> ThinkingEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        if item.type.is_terminal:
            # Deliver the terminal event, then end on the next call.
            self._finished = True
            self.close()
        return item

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """Fan-out of :class:`ThinkingEvent` objects keyed by session id."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventSubscription]] = defaultdict(list)

    def subscribe(self, session_id: str) -> EventSubscription:
        """Register a subscriber. Events published after this call are kept."""
        subscription = EventSubscription(self, session_id)
        self._subscribers[session_id].append(subscription)
        return subscription

    def closed_subscription(self, session_id: str) -> EventSubscription:
        """An already-exhausted subscription for sessions that have ended."""
        subscription = EventSubscription(self, session_id)
        subscription._closed = True
        subscription._finished = True
        return subscription

    def publish(self, event: ThinkingEvent) -> int:
        """Deliver ``event`` to every current subscriber of its session.

        Returns:
            Number of subscribers the event was delivered to.

        """
        subscribers = list(self._subscribers.get(event.session_id, ()))
        for subscription in subscribers:
            subscription._deliver(event)
        logger.debug(
            f"Published {event.type.value} for session {event.session_id} "
            f"to {len(subscribers)} subscriber(s)"
        )
        return len(subscribers)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def close_session(self, session_id: str) -> None:
        """Close every subscription of a session (e.g. on deletion)."""
        for subscription in list(self._subscribers.get(session_id, ())):
            subscription.close()
        self._subscribers.pop(session_id, None)

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        subscribers = self._subscribers.get(subscription.session_id)
        if not subscribers:
            return
        try:
            subscribers.remove(subscription)
        except ValueError:
            return
        if not subscribers:
            del self._subscribers[subscription.session_id]
