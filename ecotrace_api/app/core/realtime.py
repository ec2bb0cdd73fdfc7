"""
In-process realtime publish/subscribe hub.

Clients subscribe to named channels and receive events through an
``asyncio.Queue``.  The websocket endpoint (``/ws``) is the main
consumer: it subscribes on behalf of a browser and forwards every event
as JSON.  Services publish through the ``broadcast_*`` helpers, which
know which channels each kind of event belongs to:

* ``user.{id}.carbon`` and ``global.stats`` for carbon updates
* ``user.{id}.activities`` and ``global.activities`` for new activities
* ``leaderboard.{period}`` for recomputed rankings
* ``global.system`` for operator messages

Delivery is best effort.  A subscriber whose queue is full misses the
event and the drop is counted.
"""

import asyncio
import itertools
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

CHANNEL_TEMPLATES = {
    "USER_CARBON": "user.{user_id}.carbon",
    "USER_ACTIVITIES": "user.{user_id}.activities",
    "LEADERBOARD": "leaderboard.{period}",
    "GLOBAL_STATS": "global.stats",
    "GLOBAL_ACTIVITIES": "global.activities",
    "GLOBAL_SYSTEM": "global.system",
}


def user_carbon_channel(user_id: str) -> str:
    return CHANNEL_TEMPLATES["USER_CARBON"].format(user_id=user_id)


def user_activities_channel(user_id: str) -> str:
    return CHANNEL_TEMPLATES["USER_ACTIVITIES"].format(user_id=user_id)


def leaderboard_channel(period: str) -> str:
    return CHANNEL_TEMPLATES["LEADERBOARD"].format(period=period)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``RealtimeHub.subscribe``."""

    id: int
    channels: Set[str]
    queue: "asyncio.Queue[Dict[str, Any]]"
    loop: Optional[asyncio.AbstractEventLoop] = None
    created_at: str = field(default_factory=_now)

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()


class RealtimeHub:
    """Route published events to channel subscribers."""

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)
        self._published = 0
        self._dropped = 0
        self._started_at = _now()

    def reset(self) -> None:
        with self._lock:
            self._subscribers.clear()
            self._published = 0
            self._dropped = 0
            self._started_at = _now()

    def subscribe(self, channels: Iterable[str]) -> Subscription:
        wanted = {c.strip() for c in channels if c and c.strip()}
        if not wanted:
            raise ValueError("At least one channel is required")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        sub = Subscription(
            id=next(self._ids),
            channels=wanted,
            queue=asyncio.Queue(maxsize=self.queue_size),
            loop=loop,
        )
        with self._lock:
            for channel in wanted:
                self._subscribers[channel].add(sub)
        logger.debug("Subscription %s opened for %s", sub.id, sorted(wanted))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            for channel in sub.channels:
                subscribers = self._subscribers.get(channel)
                if subscribers is None:
                    continue
                subscribers.discard(sub)
                if not subscribers:
                    del self._subscribers[channel]
        logger.debug("Subscription %s closed", sub.id)

    def _deliver(self, sub: Subscription, event: Dict[str, Any]) -> bool:
        try:
            sub.queue.put_nowait(event)
        except asyncio.QueueFull:
            with self._lock:
                self._dropped += 1
            logger.warning("Subscription %s queue full, dropped %s", sub.id, event["type"])
            return False
        return True

    def publish(self, channel: str, event_type: str, data: Dict[str, Any]) -> int:
        """Publish ``data`` on ``channel`` and return the number of deliveries."""
        event = {"type": event_type, "channel": channel, "data": data, "timestamp": _now()}
        with self._lock:
            targets = list(self._subscribers.get(channel, ()))
            self._published += 1
        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None
        delivered = 0
        for sub in targets:
            if sub.loop is not None and sub.loop is not current_loop:
                # Subscriber lives on another event loop; hand the event over.
                sub.loop.call_soon_threadsafe(self._deliver, sub, event)
                delivered += 1
            elif self._deliver(sub, event):
                delivered += 1
        return delivered

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            channels = {name: len(subs) for name, subs in self._subscribers.items()}
            unique = {sub.id for subs in self._subscribers.values() for sub in subs}
            return {
                "active_subscriptions": len(unique),
                "channels": channels,
                "messages_published": self._published,
                "messages_dropped": self._dropped,
                "supported_channels": list(CHANNEL_TEMPLATES.values()),
                "started_at": self._started_at,
            }

    # Event helpers -----------------------------------------------------

    def broadcast_carbon_update(
        self,
        user_id: str,
        activity_id: str,
        carbon_kg: float,
        confidence: str,
        timestamp: Optional[str] = None,
    ) -> int:
        data = {
            "user_id": user_id,
            "activity_id": activity_id,
            "carbon_kg": carbon_kg,
            "confidence": confidence,
            "timestamp": timestamp or _now(),
        }
        delivered = self.publish(user_carbon_channel(user_id), "carbon_updated", data)
        delivered += self.publish(CHANNEL_TEMPLATES["GLOBAL_STATS"], "carbon_updated", data)
        logger.info(
            "Carbon update broadcast",
            extra={"context": {"user_id": user_id, "carbon_kg": carbon_kg, "delivered": delivered}},
        )
        return delivered

    def broadcast_activity_update(
        self,
        user_id: str,
        activity_id: str,
        activity_type: str,
        repository: Optional[Dict[str, Any]] = None,
        timestamp: Optional[str] = None,
    ) -> int:
        data = {
            "user_id": user_id,
            "activity_id": activity_id,
            "activity_type": activity_type,
            "repository": repository,
            "timestamp": timestamp or _now(),
        }
        delivered = self.publish(user_activities_channel(user_id), "activity_created", data)
        delivered += self.publish(CHANNEL_TEMPLATES["GLOBAL_ACTIVITIES"], "activity_created", data)
        logger.info(
            "Activity update broadcast",
            extra={"context": {"user_id": user_id, "activity_type": activity_type}},
        )
        return delivered

    def broadcast_leaderboard_update(self, period: str, updated_users: List[str]) -> int:
        data = {"period_type": period, "updated_users": updated_users, "timestamp": _now()}
        return self.publish(leaderboard_channel(period), "leaderboard_updated", data)

    def broadcast_system_message(self, message: str, level: str = "info") -> int:
        data = {"message": message, "level": level, "timestamp": _now()}
        return self.publish(CHANNEL_TEMPLATES["GLOBAL_SYSTEM"], "system_message", data)


hub = RealtimeHub()
