from __future__ import annotations

import threading

from serverdeck.events import LOG, STATUS_CHANGED, EventChannel, Subscription
from serverdeck.locking import KeyedLock


def test_publish_reaches_every_subscriber() -> None:
    channel = EventChannel("process")
    first = channel.subscribe()
    second = channel.subscribe()

    event = channel.publish(STATUS_CHANGED, "alpha", status="running", pid=42)

    assert first.get(timeout=1) is event
    assert second.get(timeout=1) is event
    assert event.to_dict()["status"] == "running"
    assert event.to_dict()["instance_id"] == "alpha"


def test_unsubscribe_detaches_from_all_channels() -> None:
    process = EventChannel("process")
    tunnel = EventChannel("tunnel")
    merged = Subscription()
    process.subscribe(merged)
    tunnel.subscribe(merged)

    process.publish(LOG, "alpha", line="one")
    tunnel.publish(LOG, "alpha", line="two")
    assert [event.payload["line"] for event in merged.drain()] == ["one", "two"]

    merged.unsubscribe()
    process.publish(LOG, "alpha", line="three")

    assert merged.closed
    assert merged.drain() == []
    assert process.subscriber_count() == 0
    assert tunnel.subscriber_count() == 0


def test_full_subscription_drops_oldest() -> None:
    channel = EventChannel("process")
    subscription = channel.subscribe(maxsize=2)

    for index in range(5):
        channel.publish(LOG, "alpha", line=str(index))

    assert [event.payload["line"] for event in subscription.drain()] == ["3", "4"]
    assert subscription.dropped == 3


def test_get_times_out_with_none() -> None:
    assert Subscription().get(timeout=0.01) is None


def test_keyed_lock_serializes_same_key_only() -> None:
    locks = KeyedLock()
    entered = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def hold_alpha() -> None:
        with locks.hold("alpha"):
            entered.set()
            release.wait(5)
            order.append("first-alpha")

    worker = threading.Thread(target=hold_alpha)
    worker.start()
    entered.wait(5)

    with locks.hold("beta"):
        order.append("beta")
    release.set()
    with locks.hold("alpha"):
        order.append("second-alpha")
    worker.join(5)

    assert order == ["beta", "first-alpha", "second-alpha"]


def test_keyed_lock_is_reentrant() -> None:
    locks = KeyedLock()
    with locks.hold("alpha"):
        with locks.hold("alpha"):
            pass
    locks.discard("alpha")
