"""
Change notification fan-out.

The notifier is an ordinary object constructed at application start and
injected where needed. Each connected client owns a ``Subscription`` with a
bounded queue; ``publish`` never waits on any subscriber. Delivery is
at-most-once: a full queue or a disconnected client misses the event and
relies on its next full refresh.
"""

import asyncio
import itertools
import logging
import threading
from typing import Dict, Iterable, List, Optional, Set
from uuid import uuid4

from student_tracker import config
from student_tracker.errors import ValidationFailed
from student_tracker.models import ChangeEvent, EventKind

logger = logging.getLogger(__name__)

ALL_EVENT_KINDS = frozenset(EventKind)


def parse_event_kinds(names: Optional[Iterable[str]]) -> Set[EventKind]:
    """
    Convert event names to EventKind values.

    None or '*' selects every kind.
    """
    if names is None:
        return set(ALL_EVENT_KINDS)
    kinds = set()
    for name in names:
        if name == '*':
            return set(ALL_EVENT_KINDS)
        try:
            kinds.add(EventKind(name))
        except ValueError:
            raise ValidationFailed(f"Unknown event type: {name}", field="events")
    return kinds


class Subscription:
    """One subscriber's event types and pending events."""

    def __init__(self, kinds: Iterable[EventKind], maxsize: int):
        self.id = uuid4().hex
        self.kinds: Set[EventKind] = set(kinds)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        # Loop that consumes the queue; publishers on other threads hand off to it
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def add_kinds(self, kinds: Iterable[EventKind]) -> None:
        self.kinds |= set(kinds)

    def remove_kinds(self, kinds: Iterable[EventKind]) -> None:
        self.kinds -= set(kinds)

    def wants(self, kind: EventKind) -> bool:
        return kind in self.kinds

    def deliver(self, event: ChangeEvent) -> None:
        """Queue an event without blocking; safe to call from any thread."""
        loop = self._loop
        if loop is not None and loop.is_running() and not self._on_loop_thread(loop):
            loop.call_soon_threadsafe(self._put, event)
        else:
            self._put(event)

    def _put(self, event: ChangeEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Subscriber %s queue full, dropped %s event #%d",
                self.id, event.kind.value, event.sequence,
            )

    @staticmethod
    def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    async def next_event(self) -> ChangeEvent:
        """Wait for the next event addressed to this subscriber."""
        self._loop = asyncio.get_running_loop()
        return await self.queue.get()

    def drain(self) -> List[ChangeEvent]:
        """Take every queued event without waiting."""
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return events


class ChangeNotifier:
    """Publish/subscribe service for record change events."""

    def __init__(self, queue_size: int = config.SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, kinds: Optional[Iterable[EventKind]] = None) -> Subscription:
        """Register a subscriber. ``kinds`` defaults to every event kind."""
        subscription = Subscription(ALL_EVENT_KINDS if kinds is None else kinds, self.queue_size)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.info("Subscriber %s connected (%d active)", subscription.id, self.subscriber_count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            removed = self._subscriptions.pop(subscription.id, None)
        if removed is not None:
            logger.info("Subscriber %s disconnected (%d active)", subscription.id, self.subscriber_count)

    def publish(self, event: ChangeEvent) -> ChangeEvent:
        """
        Broadcast an event to every interested subscriber.

        Args:
            event: The change to announce

        Returns:
            The event as delivered, stamped with its sequence number
        """
        with self._lock:
            stamped = event.model_copy(update={"sequence": next(self._sequence)})
            subscriptions = list(self._subscriptions.values())

        delivered = 0
        for subscription in subscriptions:
            if subscription.wants(stamped.kind):
                subscription.deliver(stamped)
                delivered += 1
        logger.debug("Published %s #%d to %d subscribers", stamped.kind.value, stamped.sequence, delivered)
        return stamped
