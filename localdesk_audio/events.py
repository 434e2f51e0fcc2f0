"""In-process host event bus with a bounded replay buffer.

WHY: Dictation readers and download campaigns run on background threads
and report everything (progress, transcripts, errors, completion) as
events. The UI layer is an external collaborator: it either subscribes
directly or polls the HTTP surface. Both need the same ordered stream.

HOW: EventBus keeps a deque of envelopes {"seq", "type", "payload"} under a
threading.Lock and fans each new envelope out to subscriber callbacks
outside the lock. Sequence numbers are assigned under the lock so they are
strictly increasing across threads.

RULES:
- emit() never raises because of a subscriber; failures are logged
- seq starts at 1 and increases by 1 per event
- The buffer keeps at most max_events envelopes (oldest dropped first)
- Subscribers are called on the emitting thread
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 1000

Subscriber = Callable[[dict[str, Any]], None]


class EventBus:
    """Thread-safe publisher for host events."""

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS) -> None:
        self._events: deque[dict[str, Any]] = deque(maxlen=max_events)
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._seq = 0

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback and return a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Publish one event and return its envelope.

        WHY: Every producer in the package reports through this single
        call so ordering and buffering are consistent.

        HOW: Builds the envelope and appends it under the lock, then calls
        each subscriber from a snapshot of the subscriber list.

        RULES:
        - payload defaults to an empty dict
        - A subscriber exception is logged and does not reach the producer
        """
        with self._lock:
            self._seq += 1
            envelope = {"seq": self._seq, "type": event_type, "payload": payload or {}}
            self._events.append(envelope)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(envelope)
            except Exception:
                logger.exception("Event subscriber failed for %s", event_type)

        return envelope

    def events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        """Snapshot of buffered events, optionally filtered by type."""
        with self._lock:
            snapshot = list(self._events)
        if event_type is None:
            return snapshot
        return [e for e in snapshot if e["type"] == event_type]

    def since(self, seq: int) -> list[dict[str, Any]]:
        """Buffered events with a sequence number greater than seq."""
        with self._lock:
            return [e for e in self._events if e["seq"] > seq]

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
