"""Process-scoped realtime state: pub/sub channels and auction viewers.

Both objects are created once by the application factory and injected
into the components that need them; nothing here is a module singleton.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

MOD_CHANNEL = "noti-mod"

Subscriber = Callable[[str, dict], None]


def notification_channel(type_slug: str, user_id: str) -> str:
    return f"{type_slug}:{user_id}"


class RealtimeHub:
    """In-memory channel registry; transports subscribe per connection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)

    def subscribe(self, channel: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers[channel].append(callback)

    def unsubscribe(self, channel: str, callback: Subscriber) -> None:
        with self._lock:
            callbacks = self._subscribers.get(channel, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(channel, None)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def publish(self, channel: str, event: str, payload: dict[str, Any]) -> int:
        """Deliver to every subscriber of ``channel``; returns the fan-out count."""
        with self._lock:
            callbacks = list(self._subscribers.get(channel, []))
        for callback in callbacks:
            try:
                callback(event, payload)
            except Exception:
                logger.warning("Subscriber on %s failed for %s", channel, event, exc_info=True)
        return len(callbacks)


UpdateParticipantType = Literal["push", "pop"]


class PresenceTracker:
    """Advisory viewer counts per auction room.

    Never authoritative and never raises into callers: bidding correctness
    does not depend on it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rooms: dict[str, set[str]] = defaultdict(set)

    def update_participant(self, user_id: str, stuff_id: str, action: UpdateParticipantType) -> int:
        try:
            with self._lock:
                room = self._rooms[stuff_id]
                if action == "push":
                    room.add(user_id)
                elif action == "pop":
                    room.discard(user_id)
                else:
                    logger.warning("Unknown participant action %r", action)
                count = len(room)
                if not room:
                    self._rooms.pop(stuff_id, None)
                return count
        except Exception:
            logger.exception("Error updating participants of auction %s", stuff_id)
            return 0

    def count(self, stuff_id: str) -> int:
        with self._lock:
            return len(self._rooms.get(stuff_id, ()))

    def invalidate(self, stuff_id: str) -> None:
        """Forget a room, e.g. once its auction ends."""
        with self._lock:
            self._rooms.pop(stuff_id, None)
