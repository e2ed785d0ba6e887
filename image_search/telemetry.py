from __future__ import annotations

import threading
from collections import deque
from typing import Deque, List

from loguru import logger

from .config import TELEMETRY_CAPACITY
from .schemas import Feedback, TelemetryEvent


class TelemetrySink:
    """In-memory ring buffer of the most recent search events (newest first)."""

    def __init__(self, capacity: int = TELEMETRY_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._lock = threading.Lock()
        self._events: Deque[TelemetryEvent] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._events.maxlen or 0

    def record(self, event: TelemetryEvent) -> None:
        with self._lock:
            # appendleft on a full deque drops from the right (the oldest)
            self._events.appendleft(event)
        logger.debug("Telemetry recorded for request {}", event.request_id)

    def add_feedback(self, request_id: str, feedback: Feedback) -> bool:
        with self._lock:
            for i, event in enumerate(self._events):
                if event.request_id == request_id:
                    self._events[i] = event.model_copy(update={"feedback": feedback})
                    return True
        logger.info("Feedback for unknown request {}", request_id)
        return False

    def get_events(self) -> List[TelemetryEvent]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
