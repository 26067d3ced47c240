"""
Tests for the bounded event publisher.

Covers:
    - drop-newest behaviour when the queue is full
    - pattern subscriptions ("*", "filing.*", exact)
    - subscriber isolation (one failing handler does not block others)
    - stats counters, discard_pending, background dispatcher
    - app wiring (sync mode in testing)
"""

import threading

from filing_engine.services import event_publisher as events
from filing_engine.services.event_publisher import EventPublisher, get_publisher


class TestPublish:
    def test_full_queue_drops_newest(self):
        publisher = EventPublisher(maxsize=1)
        seen = []
        publisher.subscribe("*", lambda e: seen.append(e.payload["n"]))

        assert publisher.publish(events.FILING_FILED, {"n": 1}) is True
        assert publisher.publish(events.FILING_FILED, {"n": 2}) is False
        publisher.drain()

        assert seen == [1]
        assert publisher.stats()["dropped"] == 1
        assert publisher.stats()["published"] == 1

    def test_payload_is_copied(self):
        publisher = EventPublisher()
        seen = []
        publisher.subscribe("*", lambda e: seen.append(e.payload))
        payload = {"filing_id": "f-1"}
        publisher.publish(events.FILING_PREPARED, payload)
        payload["filing_id"] = "changed"
        publisher.drain()
        assert seen == [{"filing_id": "f-1"}]

    def test_event_to_dict(self):
        publisher = EventPublisher()
        seen = []
        publisher.subscribe("*", seen.append)
        publisher.publish(events.WORKFLOW_COMPLETED)
        publisher.drain()
        data = seen[0].to_dict()
        assert data["event_type"] == "workflow.completed"
        assert data["payload"] == {}
        assert data["occurred_at"]


class TestSubscriptions:
    def test_pattern_matching(self):
        publisher = EventPublisher()
        filing, workflow, exact, everything = [], [], [], []
        publisher.subscribe("filing.*", lambda e: filing.append(e.event_type))
        publisher.subscribe("workflow.*", lambda e: workflow.append(e.event_type))
        publisher.subscribe(events.FILING_FILED, lambda e: exact.append(e.event_type))
        publisher.subscribe("*", lambda e: everything.append(e.event_type))

        for event_type in (events.FILING_PREPARED, events.FILING_FILED, events.WORKFLOW_FAILED):
            publisher.publish(event_type)
        publisher.drain()

        assert filing == ["filing.prepared", "filing.filed"]
        assert workflow == ["workflow.failed"]
        assert exact == ["filing.filed"]
        assert len(everything) == 3

    def test_prefix_pattern_needs_dot_boundary(self):
        publisher = EventPublisher()
        seen = []
        publisher.subscribe("filing.*", seen.append)
        publisher.publish("filings_export.done")
        publisher.drain()
        assert seen == []

    def test_failing_subscriber_is_isolated(self):
        publisher = EventPublisher()
        seen = []

        def _broken(event):
            raise RuntimeError("sink offline")

        publisher.subscribe("*", _broken)
        publisher.subscribe("*", lambda e: seen.append(e.event_type))
        publisher.publish(events.FILING_REJECTED)
        publisher.drain()

        assert seen == ["filing.rejected"]
        stats = publisher.stats()
        assert stats["failed_deliveries"] == 1
        assert stats["delivered"] == 1

    def test_unsubscribe(self):
        publisher = EventPublisher()
        seen = []
        handler = seen.append
        publisher.subscribe("*", handler)
        publisher.unsubscribe("*", handler)
        publisher.unsubscribe("*", handler)
        publisher.publish(events.FILING_FILED)
        publisher.drain()
        assert seen == []


class TestDispatch:
    def test_drain_limit(self):
        publisher = EventPublisher()
        for _ in range(3):
            publisher.publish(events.FILING_PREPARED)
        assert publisher.drain(max_events=2) == 2
        assert publisher.stats()["queued"] == 1
        assert publisher.drain() == 1

    def test_discard_pending(self):
        publisher = EventPublisher()
        seen = []
        publisher.subscribe("*", seen.append)
        publisher.publish(events.FILING_PREPARED)
        publisher.publish(events.FILING_FILED)
        assert publisher.discard_pending() == 2
        assert publisher.drain() == 0
        assert seen == []

    def test_background_dispatcher(self):
        publisher = EventPublisher()
        delivered = threading.Event()
        publisher.subscribe(events.FILING_FILED, lambda e: delivered.set())
        publisher.start()
        publisher.start()
        try:
            publisher.publish(events.FILING_FILED)
            assert delivered.wait(timeout=5)
        finally:
            publisher.stop()


class TestAppWiring:
    def test_testing_app_uses_sync_dispatch(self, app, publisher):
        assert get_publisher() is publisher
        assert publisher._thread is None
        assert publisher.stats()["capacity"] == app.config["EVENT_QUEUE_MAXSIZE"]
