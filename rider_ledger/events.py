"""
Fire-and-forget fan-out of ledger events to admin observers.

Delivery is at-most-once: each subscriber owns a bounded queue and an event
that does not fit is dropped for that subscriber. Observers reconcile through
the query side, so a lost event only delays a dashboard refresh.
"""

import itertools
import logging
import queue
import threading
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from .models import EventName, LedgerEvent

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(
        self,
        topics: Optional[Iterable[EventName]] = None,
        max_pending: int = 100,
        callback: Optional[Callable[[LedgerEvent], None]] = None,
    ):
        self.id = uuid4()
        self.topics = frozenset(EventName(t) for t in topics) if topics else None
        self.callback = callback
        self.dropped = 0
        self.closed = False
        self._queue: queue.Queue = queue.Queue(maxsize=max_pending)

    def wants(self, event: LedgerEvent) -> bool:
        if self.closed:
            return False
        return self.topics is None or event.name in self.topics

    def offer(self, event: LedgerEvent) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[LedgerEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True

    def drain(self) -> list[LedgerEvent]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class NotificationPublisher:
    def __init__(self, max_pending: int = 100):
        self.max_pending = max_pending
        self._subscribers: dict = {}
        self._guard = threading.Lock()
        self._sequence = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        topics: Optional[Iterable[EventName]] = None,
        callback: Optional[Callable[[LedgerEvent], None]] = None,
        max_pending: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(topics, max_pending or self.max_pending, callback)
        with self._guard:
            self._subscribers[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._guard:
            self._subscribers.pop(subscription.id, None)
        subscription.close()

    def publish(
        self,
        name: EventName,
        rider_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> LedgerEvent:
        event = LedgerEvent(
            sequence=next(self._sequence),
            name=EventName(name),
            rider_id=rider_id,
            payload=payload or {},
        )
        for subscription in list(self._subscribers.values()):
            if not subscription.wants(event):
                continue
            if subscription.callback is not None:
                try:
                    subscription.callback(event)
                except Exception:
                    logger.exception(f"[EVENTS] Subscriber {subscription.id} failed on {event.name.value}")
            elif not subscription.offer(event):
                logger.debug(
                    f"[EVENTS] Dropped {event.name.value} #{event.sequence} for subscriber {subscription.id} "
                    f"({subscription.dropped} dropped so far)"
                )
        return event
