"""
Event bus implementation for publish-subscribe messaging.

Upload sessions publish status, progress and retry events here; handlers are
dispatched by background workers so a slow observer never stalls a transfer.
"""

import asyncio
import fnmatch
import itertools
import logging
import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..domain.events import Event, EventPriority
from ..interfaces.lifecycle import IComponent
from ..interfaces.messaging import IEventBus

logger = logging.getLogger(__name__)


class EventSubscription:
    """Represents an event subscription."""

    def __init__(self, subscription_id: str, event_pattern: str,
                 handler: Callable[[Event], Any], priority: EventPriority):
        self.subscription_id = subscription_id
        self.event_pattern = event_pattern
        self.handler = handler
        self.priority = priority
        self.created_at = time.time()
        self.call_count = 0
        self.last_called: Optional[float] = None
        self.error_count = 0


class EventBus(IComponent, IEventBus):
    """
    Priority-queue event bus.

    With the default single worker, events of equal priority are delivered in
    publication order, which keeps progress notifications monotonic.
    """

    def __init__(self, max_workers: int = 1, queue_size: int = 1000):
        self._subscriptions: Dict[str, List[EventSubscription]] = defaultdict(list)
        self._wildcard_subscriptions: List[EventSubscription] = []
        self._event_queue: Optional[asyncio.PriorityQueue[Tuple[int, int, Event]]] = None
        self._queue_size = queue_size
        self._sequence = itertools.count()
        self._workers: List[asyncio.Task[None]] = []
        self._max_workers = max_workers
        self._running = False

        self._metrics: Dict[str, int] = {
            'events_published': 0,
            'events_processed': 0,
            'events_failed': 0,
            'events_dropped': 0,
        }

    @property
    def name(self) -> str:
        return "EventBus"

    async def start(self) -> None:
        """Start the event bus and worker tasks."""
        if self._running:
            return

        self._event_queue = asyncio.PriorityQueue(maxsize=self._queue_size)
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_process())
            for _ in range(self._max_workers)
        ]

        logger.debug(f"Event bus started with {self._max_workers} worker(s)")

    async def stop(self) -> None:
        """Drain pending events, then stop the workers."""
        if not self._running:
            return

        if self._event_queue is not None:
            await self._event_queue.join()

        self._running = False
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        logger.debug("Event bus stopped")

    async def check_health(self) -> Dict[str, Any]:
        return {
            'healthy': True,
            'status': 'running' if self._running else 'stopped',
            'details': {
                'workers_count': len(self._workers),
                'subscriptions_count': self._subscription_count(),
                'queue_size': self._event_queue.qsize() if self._event_queue else 0,
                **self._metrics,
            }
        }

    async def publish(self, event: Union[Event, str], data: Any = None,
                      priority: EventPriority = EventPriority.NORMAL) -> str:
        """Publish an event to the event bus."""
        if not self._running or self._event_queue is None:
            raise RuntimeError("Event bus is not running")

        if isinstance(event, str):
            event = Event(name=event, data=data, priority=priority)

        try:
            self._event_queue.put_nowait((-event.priority.value, next(self._sequence), event))
        except asyncio.QueueFull:
            self._metrics['events_dropped'] += 1
            logger.error(f"Event queue full, dropping event: {event.name}")
            raise RuntimeError("Event queue is full")

        self._metrics['events_published'] += 1
        return event.event_id

    async def subscribe(self, event_name: str, handler: Callable[[Event], Any],
                        priority: EventPriority = EventPriority.NORMAL) -> str:
        """Subscribe to events with the given name pattern."""
        subscription = EventSubscription(
            subscription_id=str(uuid.uuid4()),
            event_pattern=event_name,
            handler=handler,
            priority=priority
        )

        if '*' in event_name or '?' in event_name:
            self._wildcard_subscriptions.append(subscription)
            self._wildcard_subscriptions.sort(key=lambda s: s.priority.value, reverse=True)
        else:
            self._subscriptions[event_name].append(subscription)
            self._subscriptions[event_name].sort(key=lambda s: s.priority.value, reverse=True)

        logger.debug(f"Added subscription for '{event_name}' (ID: {subscription.subscription_id})")
        return subscription.subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        """Unsubscribe using subscription ID."""
        for subscriptions in list(self._subscriptions.values()) + [self._wildcard_subscriptions]:
            for i, subscription in enumerate(subscriptions):
                if subscription.subscription_id == subscription_id:
                    subscriptions.pop(i)
                    return True
        return False

    async def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            'subscriptions_count': self._subscription_count(),
        }

    def _subscription_count(self) -> int:
        return sum(len(subs) for subs in self._subscriptions.values()) + len(self._wildcard_subscriptions)

    async def _worker_process(self) -> None:
        assert self._event_queue is not None
        while self._running:
            _, _, event = await self._event_queue.get()
            try:
                await self._process_event(event)
            finally:
                self._event_queue.task_done()

    async def _process_event(self, event: Event) -> None:
        """Call every handler whose pattern matches the event name."""
        matching = list(self._subscriptions.get(event.name, []))
        matching.extend(
            subscription for subscription in self._wildcard_subscriptions
            if fnmatch.fnmatch(event.name, subscription.event_pattern)
        )
        matching.sort(key=lambda s: s.priority.value, reverse=True)

        for subscription in matching:
            try:
                result = subscription.handler(event)
                if asyncio.iscoroutine(result):
                    await result
                subscription.call_count += 1
                subscription.last_called = time.time()
            except Exception as e:
                subscription.error_count += 1
                self._metrics['events_failed'] += 1
                logger.error(f"Handler error for event {event.name}: {e}")

        self._metrics['events_processed'] += 1
