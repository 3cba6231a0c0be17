"""Tests for build stamp fan-out to live reload subscribers."""

from __future__ import annotations

import json
import threading
from typing import Any

from live_rebuild.notifier import STAMP_KEY, SubscriberNotifier, encode_stamp


def test_encode_stamp() -> None:
    assert json.loads(encode_stamp(1700000000000)) == {"LAST_SUCCESS_BUILD_STAMP": 1700000000000}
    assert " " not in encode_stamp(5)


def test_register_before_first_build_waits(notifier: SubscriberNotifier, subscriber: Any) -> None:
    notifier.register(subscriber)

    assert subscriber.received == []
    assert notifier.stamp is None
    assert notifier.is_registered(subscriber)


def test_broadcast_is_one_shot(notifier: SubscriberNotifier, subscriber: Any, fake_clock: Any) -> None:
    notifier.register(subscriber)

    stamp = notifier.broadcast()

    assert stamp == 1700000000000
    assert subscriber.received == [{STAMP_KEY: stamp}]
    assert notifier.subscriber_count == 0
    assert not notifier.is_registered(subscriber)

    fake_clock.advance(1)
    notifier.broadcast()
    assert len(subscriber.received) == 1


def test_broadcast_reaches_every_waiting_subscriber(notifier: SubscriberNotifier, make_subscriber: Any) -> None:
    subs = [make_subscriber() for _ in range(3)]
    for sub in subs:
        notifier.register(sub)

    stamp = notifier.broadcast()

    assert all(sub.received == [{STAMP_KEY: stamp}] for sub in subs)
    assert notifier.deliveries == 3


def test_late_subscriber_catches_up_immediately(
    notifier: SubscriberNotifier, subscriber: Any, make_subscriber: Any, fake_clock: Any
) -> None:
    first = notifier.broadcast()

    notifier.register(subscriber)
    assert subscriber.received == [{STAMP_KEY: first}]
    # Still registered for the next build
    assert notifier.is_registered(subscriber)

    fake_clock.advance(2)
    second = notifier.broadcast()
    assert subscriber.received == [{STAMP_KEY: first}, {STAMP_KEY: second}]


def test_stamps_strictly_increase(notifier: SubscriberNotifier, fake_clock: Any) -> None:
    first = notifier.broadcast()
    # Clock did not move
    second = notifier.broadcast()
    fake_clock.advance(-60)
    third = notifier.broadcast()

    assert first < second < third
    assert second == first + 1
    assert third == second + 1


def test_failed_delivery_drops_subscriber_only(notifier: SubscriberNotifier, make_subscriber: Any) -> None:
    dead = make_subscriber(fail=True)
    alive = make_subscriber()
    notifier.register(dead)
    notifier.register(alive)

    stamp = notifier.broadcast()

    assert alive.received == [{STAMP_KEY: stamp}]
    assert notifier.dropped == 1


def test_failed_catch_up_is_not_registered(notifier: SubscriberNotifier, make_subscriber: Any) -> None:
    notifier.broadcast()
    dead = make_subscriber(fail=True)

    notifier.register(dead)

    assert not notifier.is_registered(dead)
    assert notifier.subscriber_count == 0


def test_unregister_is_idempotent(notifier: SubscriberNotifier, subscriber: Any) -> None:
    notifier.register(subscriber)
    notifier.unregister(subscriber)
    notifier.unregister(subscriber)

    notifier.broadcast()
    assert subscriber.received == []


def test_concurrent_register_and_broadcast(notifier: SubscriberNotifier, make_subscriber: Any) -> None:
    subs = [make_subscriber() for _ in range(50)]
    threads = [threading.Thread(target=notifier.register, args=(sub,)) for sub in subs]
    threads.append(threading.Thread(target=notifier.broadcast))
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # Each subscriber got the stamp exactly once: either as catch-up or from the broadcast
    for sub in subs:
        assert sub.received == [{STAMP_KEY: notifier.stamp}]
