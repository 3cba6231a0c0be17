"""Build completion fan-out.

The notifier keeps the set of subscribers currently waiting for the next
successful build. Delivery is one-shot per registration: a broadcast pushes the
new build stamp to everyone registered and then empties the set, so a client
has to register again (reconnect) to hear about the following build.

A subscriber that registers after at least one successful build is sent the
latest stamp immediately, so it never waits for a build that already happened.

Subscribers are registered from HTTP request threads while broadcasts run on
the scheduler worker thread, so every access to the subscriber set holds a lock.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

try:
    import orjson
except ImportError:
    orjson = None  # type: ignore

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Subscriber", "SubscriberNotifier", "STAMP_KEY", "encode_stamp"]

STAMP_KEY = "LAST_SUCCESS_BUILD_STAMP"


def encode_stamp(stamp: int) -> str:
    """Serialize the stamp message, e.g. ``{"LAST_SUCCESS_BUILD_STAMP": 1700000000000}``."""
    payload = {STAMP_KEY: stamp}
    if orjson:
        return orjson.dumps(payload).decode("utf-8")
    return json.dumps(payload, separators=(",", ":"))


class Subscriber(Protocol):
    """A long-lived outbound channel to one client."""

    def send(self, payload: Dict[str, Any]) -> None:
        ...


class SubscriberNotifier:
    """Hold waiting subscribers and push build stamps to them.

    Attributes:
        broadcasts (int): Number of broadcasts performed.
        deliveries (int): Number of successful sends.
        dropped (int): Number of subscribers dropped because sending failed.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        """Initialize an empty notifier.

        Args:
            clock (Optional[Callable[[], float]]): Wall clock returning seconds,
                defaults to ``time.time``. Injected by tests.
        """
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self._stamp: Optional[int] = None
        self.broadcasts = 0
        self.deliveries = 0
        self.dropped = 0

    @property
    def stamp(self) -> Optional[int]:
        """The stamp of the most recent successful build, or None before the first one."""
        with self._lock:
            return self._stamp

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def register(self, subscriber: Subscriber) -> None:
        """Add a subscriber; send it the latest stamp right away if there is one.

        The subscriber is added even when it already received the catch-up
        stamp, so it also hears about the next build.

        Args:
            subscriber (Subscriber): The channel to notify.

        Returns:
            None
        """
        with self._lock:
            self._subscribers.append(subscriber)
            stamp = self._stamp
            logger.info(f"[notifier] new live reload client ({len(self._subscribers)} waiting)")
            if stamp is not None:
                if not self._deliver(subscriber, stamp):
                    self._subscribers.remove(subscriber)

    def is_registered(self, subscriber: Subscriber) -> bool:
        """Return True while ``subscriber`` still waits for the next broadcast."""
        with self._lock:
            return any(s is subscriber for s in self._subscribers)

    def unregister(self, subscriber: Subscriber) -> None:
        """Remove a subscriber that disconnected before being notified."""
        with self._lock:
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                pass

    def broadcast(self) -> int:
        """Record a new successful build and notify every waiting subscriber.

        The new stamp is derived from the wall clock in milliseconds but is
        always strictly greater than the previous one, even if the clock went
        backwards or did not advance.

        Returns:
            int: The new build stamp.
        """
        with self._lock:
            stamp = int(self._clock() * 1000)
            if self._stamp is not None and stamp <= self._stamp:
                stamp = self._stamp + 1
            self._stamp = stamp
            subscribers, self._subscribers = self._subscribers, []
            self.broadcasts += 1
            for subscriber in subscribers:
                self._deliver(subscriber, stamp)
        logger.info(f"[notifier] build {stamp} announced to {len(subscribers)} client(s)")
        return stamp

    def _deliver(self, subscriber: Subscriber, stamp: int) -> bool:
        """Send one stamp. Must be called with the lock held."""
        try:
            subscriber.send({STAMP_KEY: stamp})
        except OSError as e:
            self.dropped += 1
            logger.debug(f"[notifier] dropping disconnected client: {e}")
            return False
        self.deliveries += 1
        return True

    def __repr__(self) -> str:
        return f"<SubscriberNotifier stamp={self._stamp} waiting={len(self._subscribers)}>"
