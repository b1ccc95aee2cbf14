"""
Time-bounded event window owned by the PatternEngine.

One window exists per (contract, detector). After every append() or evict()
the window holds exactly the events whose received_at lies in
[now - horizon, now], ordered by received_at.
"""

import bisect
from collections import deque
from typing import Iterator, Optional

from treasurex.framework.models import EventSource, StreamEvent


class PatternWindow:
    def __init__(self, contract_id: str, horizon_seconds: float) -> None:
        if horizon_seconds <= 0:
            raise ValueError("horizon_seconds must be positive")
        self.contract_id = contract_id
        self.horizon_seconds = horizon_seconds
        self._events: deque[StreamEvent] = deque()
        self._now: Optional[float] = None

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[StreamEvent]:
        return iter(self._events)

    @property
    def now(self) -> Optional[float]:
        """Reference time of the last append/evict."""
        return self._now

    @property
    def span_seconds(self) -> float:
        if len(self._events) < 2:
            return 0.0
        return self._events[-1].received_at - self._events[0].received_at

    def append(self, event: StreamEvent) -> None:
        """Insert in received_at order, then evict relative to the newest time seen."""
        if event.contract_id != self.contract_id:
            raise ValueError(f"event for {event.contract_id} appended to window of {self.contract_id}")
        if not self._events or event.received_at >= self._events[-1].received_at:
            self._events.append(event)
        else:
            # Late arrival: keep ordering
            events = list(self._events)
            bisect.insort(events, event, key=lambda e: e.received_at)
            self._events = deque(events)
        now = event.received_at if self._now is None else max(self._now, event.received_at)
        self.evict(now)

    def evict(self, now: float) -> int:
        """Drop events older than now - horizon. Returns the number dropped."""
        self._now = now if self._now is None else max(self._now, now)
        cutoff = self._now - self.horizon_seconds
        dropped = 0
        while self._events and self._events[0].received_at < cutoff:
            self._events.popleft()
            dropped += 1
        return dropped

    def events(self, *sources: EventSource) -> list[StreamEvent]:
        """Events in order, optionally filtered by source."""
        if not sources:
            return list(self._events)
        return [e for e in self._events if e.source in sources]

    def since(self, start: float, *sources: EventSource) -> list[StreamEvent]:
        return [e for e in self.events(*sources) if e.received_at >= start]

    def latest(self) -> Optional[StreamEvent]:
        return self._events[-1] if self._events else None
