"""
Per-(subscriber, alert kind) delivery rate limiting with deferred queues.

Each key keeps a sliding log of delivery times, so at most `max_alerts`
deliveries fall inside any rolling `window_seconds`. Alerts over the cap go to
a bounded FIFO per subscriber and are released oldest-first as capacity frees.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

from treasurex.framework.models import Alert, AlertKind, RateLimitState, Subscription

logger = logging.getLogger(__name__)

RateKey = tuple[str, AlertKind]


@dataclass(frozen=True)
class DeferredAlert:
    subscription: Subscription
    alert: Alert
    deferred_at: float


class RateLimiter:
    """
    Sliding-log limiter plus deferred-alert queues.

    All methods are synchronous, so a check-and-record never interleaves
    with another coroutine.

    Usage:
        limiter = RateLimiter(max_alerts=5, window_seconds=300)
        if limiter.try_acquire("user-1", AlertKind.WHALE, now):
            ...deliver...
        else:
            limiter.defer(subscription, alert, now)
    """

    def __init__(self, max_alerts: int, window_seconds: float, max_deferred: int = 100) -> None:
        if max_alerts < 1:
            raise ValueError("max_alerts must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_deferred < 1:
            raise ValueError("max_deferred must be at least 1")
        self.max_alerts = max_alerts
        self.window_seconds = window_seconds
        self.max_deferred = max_deferred
        self._states: dict[RateKey, RateLimitState] = {}
        self._deferred: dict[str, deque[DeferredAlert]] = {}

    # ------------------------------------------------------------------
    # Sliding log
    # ------------------------------------------------------------------

    def state(self, subscriber_id: str, kind: AlertKind, now: float) -> RateLimitState:
        """Return the (evicted) log for one key."""
        state = self._states.setdefault((subscriber_id, kind), RateLimitState())
        cutoff = now - self.window_seconds
        drop = 0
        while drop < len(state.sent_at) and state.sent_at[drop] <= cutoff:
            drop += 1
        if drop:
            del state.sent_at[:drop]
        return state

    def try_acquire(self, subscriber_id: str, kind: AlertKind, now: float) -> bool:
        """Record a delivery at ``now`` if the key is under its cap."""
        state = self.state(subscriber_id, kind, now)
        if state.count >= self.max_alerts:
            return False
        state.sent_at.append(now)
        return True

    def next_available(self, subscriber_id: str, kind: AlertKind, now: float) -> float:
        """Earliest time a delivery for this key would be accepted."""
        state = self.state(subscriber_id, kind, now)
        if state.count < self.max_alerts:
            return now
        return state.sent_at[state.count - self.max_alerts] + self.window_seconds

    # ------------------------------------------------------------------
    # Deferred queues
    # ------------------------------------------------------------------

    def defer(self, subscription: Subscription, alert: Alert, now: float) -> Optional[DeferredAlert]:
        """
        Queue an over-cap alert for later delivery.

        Returns:
            The entry evicted to make room when the queue was full, else None
        """
        queue = self._deferred.setdefault(subscription.subscriber_id, deque())
        dropped = None
        if len(queue) >= self.max_deferred:
            dropped = queue.popleft()
            logger.warning(
                "Deferred queue full, dropping oldest | subscriber=%s | alert_id=%s | capacity=%d",
                subscription.subscriber_id,
                dropped.alert.id,
                self.max_deferred,
            )
        queue.append(DeferredAlert(subscription, alert, now))
        return dropped

    def has_deferred(self, subscriber_id: str, kind: AlertKind) -> bool:
        return any(entry.alert.type == kind for entry in self._deferred.get(subscriber_id, ()))

    def deferred(self, subscriber_id: str) -> list[DeferredAlert]:
        return list(self._deferred.get(subscriber_id, ()))

    def deferred_keys(self) -> list[RateKey]:
        """Keys with at least one queued alert, in first-queued order."""
        keys: dict[RateKey, None] = {}
        for subscriber_id, queue in self._deferred.items():
            for entry in queue:
                keys.setdefault((subscriber_id, entry.alert.type), None)
        return list(keys)

    def pending_count(self) -> int:
        return sum(len(queue) for queue in self._deferred.values())

    def take_ready(self, subscriber_id: str, kind: AlertKind, now: float) -> list[DeferredAlert]:
        """
        Release queued alerts of ``kind`` oldest-first while capacity allows.

        Each released alert is recorded against the log at ``now``. Queued
        alerts of other kinds keep their positions.
        """
        queue = self._deferred.get(subscriber_id)
        if not queue:
            return []
        ready: list[DeferredAlert] = []
        remaining: deque[DeferredAlert] = deque()
        blocked = False
        for entry in queue:
            if entry.alert.type == kind and not blocked:
                if self.try_acquire(subscriber_id, kind, now):
                    ready.append(entry)
                    continue
                blocked = True
            remaining.append(entry)
        if remaining:
            self._deferred[subscriber_id] = remaining
        else:
            del self._deferred[subscriber_id]
        return ready

    def discard_subscriber(self, subscriber_id: str) -> int:
        queue = self._deferred.pop(subscriber_id, None)
        return len(queue) if queue else 0

    def sweep(self, now: float) -> int:
        """Drop empty logs. Returns how many keys were removed."""
        removed = 0
        for key in list(self._states):
            if not self.state(key[0], key[1], now).count and not self.has_deferred(*key):
                del self._states[key]
                removed += 1
        return removed
