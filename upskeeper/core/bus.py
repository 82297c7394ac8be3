"""
A simple, in-memory, async-friendly Event Bus.

This provides a lightweight pub/sub mechanism for decoupling the polling
service from its consumers (battery safety, line alerts, tray, API push).

``subscribe`` returns a Subscription handle that owns the callback. The bus
keeps only weak references to handles, so a subscriber stays attached for
exactly as long as somebody holds its handle.
"""

import asyncio
import inspect
import logging
import weakref
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

CONNECTION_STATE_CHANGED = "connectionStateChanged"
UPS_STATIC_DATA = "upsStaticData"
UPS_TELEMETRY_UPDATED = "upsTelemetryUpdated"
THEME_SYSTEM_CHANGED = "themeSystemChanged"
NOTIFICATION = "notification"
CRITICAL_ALERT = "criticalAlert"

CHANNELS = (
    CONNECTION_STATE_CHANGED,
    UPS_STATIC_DATA,
    UPS_TELEMETRY_UPDATED,
    THEME_SYSTEM_CHANGED,
    NOTIFICATION,
    CRITICAL_ALERT,
)

# Callbacks may be plain functions or coroutine functions taking one argument.
EventCallback = Callable[[Any], Union[None, Awaitable[None]]]


class Subscription:
    """Handle for one subscriber. Call it (or ``unsubscribe()``) to detach."""

    def __init__(self, bus: "EventBus", channel: str, callback: EventCallback):
        self._bus = weakref.ref(bus)
        self.channel = channel
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        bus = self._bus()
        if bus is not None:
            bus._remove(self)

    __call__ = unsubscribe


class EventBus:
    """
    A simple asynchronous event bus for pub/sub interactions.

    Delivery is sequential in subscription order, and publications on one
    channel never overlap. A failing subscriber is logged and skipped.
    """
    def __init__(self):
        self._subscribers: Dict[str, List[weakref.ref]] = defaultdict(list)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def subscribe(self, channel: str, callback: EventCallback) -> Subscription:
        """
        Subscribes a callback to a channel.

        Args:
            channel: The channel to subscribe to (e.g. "upsTelemetryUpdated").
            callback: Called with the event payload on every publication.

        Returns:
            The subscription handle. Keep a reference to it.
        """
        subscription = Subscription(self, channel, callback)
        self._subscribers[channel].append(weakref.ref(subscription))
        logger.debug("New subscription to channel: %s", channel)
        return subscription

    def subscriber_count(self, channel: str) -> int:
        return len(self._live(channel))

    async def publish(self, channel: str, data: Any) -> None:
        """
        Publishes an event to all subscribers of a channel.

        Args:
            channel: The channel to publish the event to.
            data: The data payload of the event.
        """
        async with self._locks[channel]:
            subscribers = self._live(channel)
            if not subscribers:
                return
            logger.debug("Publishing event to channel '%s' for %d subscribers.", channel, len(subscribers))
            for subscription in subscribers:
                if not subscription.active:
                    continue
                try:
                    result = subscription.callback(data)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Subscriber %r on channel '%s' failed", subscription.callback, channel)

    def _live(self, channel: str) -> List[Subscription]:
        refs = self._subscribers.get(channel)
        if not refs:
            return []
        live = []
        alive_refs = []
        for ref in refs:
            subscription = ref()
            if subscription is not None and subscription.active:
                live.append(subscription)
                alive_refs.append(ref)
        self._subscribers[channel] = alive_refs
        return live

    def _remove(self, subscription: Subscription) -> None:
        refs = self._subscribers.get(subscription.channel, [])
        self._subscribers[subscription.channel] = [r for r in refs if r() is not subscription]
