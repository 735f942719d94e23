import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)

ALL_USERS = "*"


@dataclass
class Event:
    type: str
    user_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "user_id": self.user_id,
            "timestamp": self.ts,
            "data": self.payload,
        }


class Subscription:
    """Bounded per-subscriber queue. Oldest events are dropped when full."""

    def __init__(self, bus: "NotificationBus", user_id: str, maxsize: int):
        self.bus = bus
        self.user_id = user_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: Event) -> None:
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self.bus.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class NotificationBus:
    """In-process publish/subscribe stream keyed by user id.

    Stores publish inserted notifications and alert rows here; pollers publish
    snapshots and credential problems; the websocket endpoint and the alarm
    listener consume it.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, user_id: str = ALL_USERS) -> Subscription:
        sub = Subscription(self, user_id, self.queue_size)
        self._subscribers.setdefault(user_id, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.user_id)
        if not subs:
            return
        try:
            subs.remove(sub)
        except ValueError:
            return
        if not subs:
            del self._subscribers[sub.user_id]

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return sum(len(subs) for subs in self._subscribers.values())
        return len(self._subscribers.get(user_id, []))

    def publish(self, event_type: str, user_id: str, payload: Optional[Dict[str, Any]] = None) -> Event:
        event = Event(type=event_type, user_id=user_id, payload=payload or {})
        targets = list(self._subscribers.get(user_id, []))
        if user_id != ALL_USERS:
            targets.extend(self._subscribers.get(ALL_USERS, []))
        for sub in targets:
            sub.offer(event)
        logger.debug("Published %s for %s to %s subscribers", event_type, user_id, len(targets))
        return event
