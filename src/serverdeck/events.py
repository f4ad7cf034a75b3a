"""Owned event channels with explicit subscriptions."""

from __future__ import annotations

import logging as py_logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = py_logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION_SIZE = 10_000

STATUS_CHANGED = "status-changed"
LOG = "log"
SERVER_READY = "server-ready"
DOWNLOAD_PROGRESS = "download-progress"
TUNNEL_STATUS_CHANGED = "tunnel-status-changed"
TUNNEL_INFO_UPDATED = "tunnel-info-updated"


@dataclass(frozen=True)
class Event:
    topic: str
    instance_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "instance_id": self.instance_id,
            "timestamp": self.timestamp.isoformat(),
            **self.payload,
        }


class Subscription:
    """Bounded mailbox attached to one or more channels.

    When the mailbox is full the oldest event is dropped and counted in
    ``dropped``.
    """

    def __init__(self, maxsize: int = DEFAULT_SUBSCRIPTION_SIZE) -> None:
        self._queue: queue.Queue[Event] = queue.Queue(maxsize=maxsize)
        self._channels: list[EventChannel] = []
        self._lock = threading.Lock()
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return not self._channels

    def put(self, event: Event) -> None:
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        continue
                    self.dropped += 1

    def get(self, timeout: float | None = None) -> Event | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        events: list[Event] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def attach(self, channel: EventChannel) -> None:
        self._channels.append(channel)

    def unsubscribe(self) -> None:
        for channel in list(self._channels):
            channel.remove(self)
        self._channels.clear()


class EventChannel:
    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        subscription: Subscription | None = None,
        *,
        maxsize: int = DEFAULT_SUBSCRIPTION_SIZE,
    ) -> Subscription:
        target = subscription or Subscription(maxsize=maxsize)
        with self._lock:
            self._subscribers.append(target)
        target.attach(self)
        return target

    def remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, topic: str, instance_id: str, **payload: Any) -> Event:
        event = Event(topic=topic, instance_id=instance_id, payload=payload)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.put(event)
        logger.debug("event channel=%s topic=%s instance=%s", self.name, topic, instance_id)
        return event
