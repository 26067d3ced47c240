"""
Regulatory Filing Platform
Event Publisher — fire-and-forget notification of state changes.

Delivery contract: at-most-once, best-effort.
    - publish() never blocks and never raises.
    - Events go into a bounded queue (EVENT_QUEUE_MAXSIZE). When the queue is
      full the NEW event is dropped, counted in ``dropped`` and logged.
    - Subscribers run on the dispatcher (background thread, or the caller of
      drain()). A failing subscriber is logged and does not affect others.

Topics are dotted event types ("filing.filed", "workflow.step_completed").
Subscribing to "filing.*" matches every filing event; "*" matches all.

Usage:
    publisher = get_publisher()
    publisher.subscribe("filing.*", audit_sink)
    publisher.publish("filing.filed", {"filing_id": "..."})
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_MAXSIZE = 1000

# Event types emitted by the engine
FILING_PREPARED = "filing.prepared"
FILING_STATUS_CHANGED = "filing.status_changed"
FILING_FILED = "filing.filed"
FILING_REJECTED = "filing.rejected"
FILING_AMENDED = "filing.amended"
WORKFLOW_INITIATED = "workflow.initiated"
WORKFLOW_STEP_STARTED = "workflow.step_started"
WORKFLOW_STEP_COMPLETED = "workflow.step_completed"
WORKFLOW_STEP_FAILED = "workflow.step_failed"
WORKFLOW_COMPLETED = "workflow.completed"
WORKFLOW_FAILED = "workflow.failed"
REMINDER_SENT = "reminder.sent"


@dataclass
class Event:
    event_type: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


def _matches(pattern: str, event_type: str) -> bool:
    if pattern == "*" or pattern == event_type:
        return True
    if pattern.endswith(".*"):
        return event_type.startswith(pattern[:-1])
    return False


class EventPublisher:
    """Bounded, drop-newest event queue with pattern subscriptions."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_MAXSIZE) -> None:
        self._queue: queue.Queue[Event] = queue.Queue(maxsize=maxsize)
        self._subscribers: dict[str, list[Callable[[Event], None]]] = defaultdict(list)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.published = 0
        self.dropped = 0
        self.delivered = 0
        self.failed_deliveries = 0

    # ── Subscriptions ────────────────────────────────────────────────────

    def subscribe(self, pattern: str, handler: Callable[[Event], None]) -> None:
        with self._lock:
            self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: Callable[[Event], None]) -> None:
        with self._lock:
            handlers = self._subscribers.get(pattern, [])
            if handler in handlers:
                handlers.remove(handler)

    def _handlers_for(self, event_type: str) -> list[Callable[[Event], None]]:
        with self._lock:
            return [
                handler
                for pattern, handlers in self._subscribers.items()
                if _matches(pattern, event_type)
                for handler in handlers
            ]

    # ── Publish ──────────────────────────────────────────────────────────

    def publish(self, event_type: str, payload: dict | None = None) -> bool:
        """Enqueue an event. Returns False when it was dropped."""
        event = Event(event_type=event_type, payload=dict(payload or {}))
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._lock:
                self.dropped += 1
            logger.warning("Event queue full, dropped %s", event_type,
                           extra={"event_type": event_type})
            return False
        with self._lock:
            self.published += 1
        return True

    # ── Dispatch ─────────────────────────────────────────────────────────

    def _deliver(self, event: Event) -> None:
        for handler in self._handlers_for(event.event_type):
            try:
                handler(event)
                with self._lock:
                    self.delivered += 1
            except Exception:
                with self._lock:
                    self.failed_deliveries += 1
                logger.exception("Event subscriber failed for %s", event.event_type,
                                 extra={"event_type": event.event_type})

    def drain(self, max_events: int | None = None) -> int:
        """Dispatch queued events on the calling thread. Returns the number dispatched."""
        count = 0
        while max_events is None or count < max_events:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            self._deliver(event)
            self._queue.task_done()
            count += 1
        return count

    def discard_pending(self) -> int:
        """Drop every queued event without delivering it. Returns the number discarded."""
        count = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return count
            self._queue.task_done()
            count += 1

    def start(self) -> None:
        """Start the background dispatcher thread (idempotent)."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="event-publisher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            self._deliver(event)
            self._queue.task_done()

    def stats(self) -> dict:
        with self._lock:
            return {
                "queued": self._queue.qsize(),
                "capacity": self._queue.maxsize,
                "published": self.published,
                "dropped": self.dropped,
                "delivered": self.delivered,
                "failed_deliveries": self.failed_deliveries,
            }


# ── App wiring ───────────────────────────────────────────────────────────────

_fallback_publisher: EventPublisher | None = None
_fallback_lock = threading.Lock()


def init_app(app) -> EventPublisher:
    """Create the app's publisher; start the dispatcher unless dispatch mode is sync."""
    publisher = EventPublisher(maxsize=app.config.get("EVENT_QUEUE_MAXSIZE", DEFAULT_QUEUE_MAXSIZE))
    app.extensions["event_publisher"] = publisher
    if app.config.get("EVENT_DISPATCH_MODE", "background") == "background":
        publisher.start()
    logger.info("EventPublisher initialized (maxsize=%d, mode=%s)",
                publisher._queue.maxsize, app.config.get("EVENT_DISPATCH_MODE"))
    return publisher


def get_publisher() -> EventPublisher:
    """The current app's publisher, or a process-wide one outside an app context."""
    global _fallback_publisher
    if has_app_context():
        publisher = current_app.extensions.get("event_publisher")
        if publisher is not None:
            return publisher
    with _fallback_lock:
        if _fallback_publisher is None:
            _fallback_publisher = EventPublisher()
        return _fallback_publisher
