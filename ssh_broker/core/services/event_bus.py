"""
Event bus implementation for publish-subscribe messaging between managers.

Handlers are awaited in-line by ``publish`` in priority order, so a
publisher knows its cascade (e.g. tunnel closure after a connection
closes) has run once ``publish`` returns. A failing handler is logged
and counted without affecting the others.
"""

import asyncio
import fnmatch
import logging
import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Union

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
    """In-process event bus with exact and wildcard subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[EventSubscription]] = defaultdict(list)
        self._wildcard_subscriptions: List[EventSubscription] = []
        self._running = False

        self._metrics: Dict[str, Any] = {
            'events_published': 0,
            'events_processed': 0,
            'events_failed': 0,
            'subscriptions_count': 0,
        }

    @property
    def name(self) -> str:
        return "EventBus"

    async def start(self) -> None:
        self._running = True
        logger.info("Event bus started")

    async def stop(self) -> None:
        self._running = False
        self._subscriptions.clear()
        self._wildcard_subscriptions.clear()
        self._metrics['subscriptions_count'] = 0
        logger.info("Event bus stopped")

    async def check_health(self) -> Dict[str, Any]:
        return {
            'healthy': True,
            'status': 'running' if self._running else 'stopped',
            'details': dict(self._metrics),
        }

    async def publish(self, event: Union[Event, str], data: Any = None,
                      priority: EventPriority = EventPriority.NORMAL,
                      source: Optional[str] = None) -> str:
        if isinstance(event, str):
            event = Event(name=event, data=data, priority=priority, source=source)

        self._metrics['events_published'] += 1
        logger.debug(f"Published event: {event.name} (ID: {event.event_id})")

        await self._dispatch(event)
        return event.event_id

    async def subscribe(self, event_name: str, handler: Callable[[Event], Any],
                        priority: EventPriority = EventPriority.NORMAL) -> str:
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

        self._metrics['subscriptions_count'] += 1
        logger.debug(f"Added subscription for '{event_name}' (ID: {subscription.subscription_id})")
        return subscription.subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        for subscriptions in list(self._subscriptions.values()) + [self._wildcard_subscriptions]:
            for i, subscription in enumerate(subscriptions):
                if subscription.subscription_id == subscription_id:
                    subscriptions.pop(i)
                    self._metrics['subscriptions_count'] -= 1
                    return True
        return False

    async def get_metrics(self) -> Dict[str, Any]:
        return dict(self._metrics)

    async def _dispatch(self, event: Event) -> None:
        matching = list(self._subscriptions.get(event.name, []))
        matching.extend(
            s for s in self._wildcard_subscriptions
            if fnmatch.fnmatch(event.name, s.event_pattern)
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
