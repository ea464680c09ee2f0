"""
events.py - In-process publish/subscribe for phase and approval events.

The engine publishes PhaseEvents; the presentation layer subscribes, either
with a callback or with an async stream. The bus assigns each event a
per-instance sequence number, so events of one instance are delivered in
the order they were published. No ordering holds across instances.

Usage:
    from phaseflow.runtime.events import EventBus

    bus = EventBus()
    sub = bus.subscribe(print, instance_id="wfi-...", kinds={EventKind.APPROVAL_REQUIRED})
    ...
    sub.unsubscribe()

    async for event in bus.stream("wfi-..."):
        ...
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Deque, Dict, FrozenSet, List, Optional, Tuple

from .types import EventKind, InstanceId, PhaseEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[PhaseEvent], None]

DEFAULT_HISTORY_SIZE = 1000


@dataclass
class Subscription:
    """Handle returned by EventBus.subscribe()."""

    id: int
    callback: EventCallback
    instance_id: Optional[InstanceId] = None
    kinds: Optional[FrozenSet[EventKind]] = None
    _bus: Optional["EventBus"] = field(default=None, repr=False)

    def matches(self, event: PhaseEvent) -> bool:
        if self.instance_id is not None and event.instance_id != self.instance_id:
            return False
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        return True

    def unsubscribe(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe(self)
            self._bus = None


class EventBus:
    """Observer channel between the engine and its consumers."""

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE):
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._subscriptions: Dict[int, Subscription] = {}
        self._seq: Dict[InstanceId, int] = defaultdict(int)
        self._history: Dict[InstanceId, Deque[PhaseEvent]] = {}
        self._history_size = history_size

    def subscribe(
        self,
        callback: EventCallback,
        instance_id: Optional[InstanceId] = None,
        kinds: Optional[List[EventKind]] = None,
    ) -> Subscription:
        """Register a callback, optionally filtered by instance and event kind."""
        sub = Subscription(
            id=next(self._ids),
            callback=callback,
            instance_id=instance_id,
            kinds=frozenset(EventKind(k) for k in kinds) if kinds is not None else None,
            _bus=self,
        )
        with self._lock:
            self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def publish(self, event: PhaseEvent) -> PhaseEvent:
        """Assign the event's sequence number and deliver it to subscribers.

        Subscriber errors are logged and do not affect the publisher.
        """
        with self._lock:
            self._seq[event.instance_id] += 1
            event.seq = self._seq[event.instance_id]
            history = self._history.get(event.instance_id)
            if history is None:
                history = self._history[event.instance_id] = deque(maxlen=self._history_size)
            history.append(event)
            targets = [s for s in self._subscriptions.values() if s.matches(event)]

            logger.debug(
                "Event %s #%d for %s phase %d",
                event.kind.value,
                event.seq,
                event.instance_id,
                event.phase_index,
            )
            for sub in targets:
                try:
                    sub.callback(event)
                except Exception:
                    logger.warning(
                        "Event subscriber %d failed on %s", sub.id, event.kind.value, exc_info=True
                    )
        return event

    def history(self, instance_id: InstanceId, since_seq: int = 0) -> List[PhaseEvent]:
        """Retained events of one instance with seq greater than since_seq."""
        with self._lock:
            return [e for e in self._history.get(instance_id, ()) if e.seq > since_seq]

    def forget(self, instance_id: InstanceId) -> None:
        """Drop retained history for an instance."""
        with self._lock:
            self._history.pop(instance_id, None)
            self._seq.pop(instance_id, None)

    def open_queue(
        self, instance_id: InstanceId, since_seq: int = 0
    ) -> Tuple["asyncio.Queue[PhaseEvent]", Subscription]:
        """Queue pre-filled with retained events and fed with live ones.

        Must be called from the event loop that will consume the queue. The
        caller unsubscribes when done.
        """
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[PhaseEvent]" = asyncio.Queue()

        def enqueue(event: PhaseEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        with self._lock:
            for event in self.history(instance_id, since_seq):
                queue.put_nowait(event)
            sub = self.subscribe(enqueue, instance_id=instance_id)
        return queue, sub

    async def stream(
        self, instance_id: InstanceId, since_seq: int = 0
    ) -> AsyncIterator[PhaseEvent]:
        """Yield retained then live events of one instance, in seq order.

        Runs until the consumer stops iterating.
        """
        queue, sub = self.open_queue(instance_id, since_seq)
        try:
            while True:
                yield await queue.get()
        finally:
            sub.unsubscribe()
