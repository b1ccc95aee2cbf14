"""
Alert routing: subscription fan-out, priority ordering, and rate limiting.

AlertRouter takes a new Alert from the AlertManager and:
1. Looks up matching subscriptions (contract, kind, min confidence, expiry)
2. Checks each subscriber against the RateLimiter, highest tier first, and
   puts accepted alerts on that subscriber's bounded outbox
3. Defers over-cap alerts to the RateLimiter queues; `flush_deferred` moves
   them to the outboxes once the rolling window frees capacity

Each outbox has one worker task that calls the sink, so a slow subscriber
delays only its own alerts. A failed or timed-out delivery is logged and
counted for that subscriber only.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from treasurex.framework.alert_sink import AlertSink
from treasurex.framework.errors import DeliveryError
from treasurex.framework.models import Alert, AlertKind, PriorityTier, Subscription
from treasurex.framework.rate_limiter import DeferredAlert, RateLimiter
from treasurex.framework.subscription_registry import SubscriptionRegistry

if TYPE_CHECKING:
    from treasurex.runtime.metrics_publisher import MetricsPublisher

logger = logging.getLogger(__name__)

QUEUED = "queued"
DEFERRED = "deferred"


@dataclass
class DispatchReport:
    """Subscriber ids per outcome for one dispatch or flush."""

    queued: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)

    def record(self, subscriber_id: str, outcome: str) -> None:
        getattr(self, outcome).append(subscriber_id)


class AlertRouter:
    """
    Routes alerts from the AlertManager to subscriber sinks.

    dispatch() and flush_deferred() never wait on a sink; delivery happens in
    per-subscriber worker tasks. drain() waits for the outboxes to empty and
    close() also stops the workers.

    Usage:
        router = AlertRouter(registry, LoggingSink(), RateLimiter(5, 300))
        report = await router.dispatch(alert)
        await router.flush_deferred()   # periodically
        await router.close()            # on shutdown
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        sink: AlertSink,
        rate_limiter: RateLimiter,
        delivery_timeout: float = 5.0,
        outbox_size: int = 100,
        metrics: Optional["MetricsPublisher"] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            registry: Subscription lookup
            sink: Transport used for every delivery
            rate_limiter: Per-(subscriber, kind) caps and deferred queues
            delivery_timeout: Seconds one sink.deliver() call may take
            outbox_size: Alerts waiting for delivery per subscriber; the
                         oldest is dropped when a full outbox gets another
            metrics: Optional MetricsPublisher
            clock: Epoch-seconds clock
        """
        if outbox_size < 1:
            raise ValueError("outbox_size must be at least 1")
        self.registry = registry
        self.sink = sink
        self.rate_limiter = rate_limiter
        self.delivery_timeout = delivery_timeout
        self.outbox_size = outbox_size
        self._metrics = metrics
        self._clock = clock
        self._outboxes: dict[str, asyncio.Queue[Alert]] = {}
        self._workers: dict[str, asyncio.Task] = {}

    async def dispatch(self, alert: Alert) -> DispatchReport:
        """
        Queue ``alert`` for every matching subscriber, highest tier first.

        Returns:
            DispatchReport with subscriber ids queued / deferred
        """
        now = self._clock()
        by_tier: dict[PriorityTier, list[Subscription]] = defaultdict(list)
        for subscription in self.registry.match(alert, now):
            by_tier[subscription.priority].append(subscription)

        report = DispatchReport()
        for tier in sorted(by_tier, reverse=True):
            for subscription in by_tier[tier]:
                subscriber_id = subscription.subscriber_id
                # Queued alerts of the same kind go first.
                if self.rate_limiter.has_deferred(subscriber_id, alert.type) or not self.rate_limiter.try_acquire(
                    subscriber_id, alert.type, now
                ):
                    self._defer(subscription, alert, now)
                    report.record(subscriber_id, DEFERRED)
                else:
                    self._enqueue(subscriber_id, alert)
                    report.record(subscriber_id, QUEUED)

        logger.info(
            "Alert dispatched | alert_id=%s | kind=%s | contract=%s | queued=%d | deferred=%d",
            alert.id,
            alert.type.value,
            alert.contract_id,
            len(report.queued),
            len(report.deferred),
        )
        return report

    async def flush_deferred(self, now: Optional[float] = None) -> DispatchReport:
        """
        Queue deferred alerts whose rate-limit window has freed up.

        Subscribers are flushed tier by tier, highest first. Entries whose
        subscription is gone or no longer matches the alert are discarded.
        """
        now = self._clock() if now is None else now
        by_tier: dict[PriorityTier, list[tuple[str, AlertKind]]] = defaultdict(list)
        for subscriber_id, kind in self.rate_limiter.deferred_keys():
            tier = max(
                entry.subscription.priority
                for entry in self.rate_limiter.deferred(subscriber_id)
                if entry.alert.type == kind
            )
            by_tier[tier].append((subscriber_id, kind))

        report = DispatchReport()
        for tier in sorted(by_tier, reverse=True):
            for subscriber_id, kind in by_tier[tier]:
                for entry in self.rate_limiter.take_ready(subscriber_id, kind, now):
                    if not self._still_subscribed(entry, now):
                        logger.info(
                            "Deferred alert discarded, subscription gone or narrowed | subscriber=%s | alert_id=%s",
                            subscriber_id,
                            entry.alert.id,
                        )
                        continue
                    self._enqueue(subscriber_id, entry.alert)
                    report.record(subscriber_id, QUEUED)
        if report.queued:
            logger.info(
                "Deferred alerts flushed | queued=%d | still_pending=%d",
                len(report.queued),
                self.rate_limiter.pending_count(),
            )
        return report

    async def drain(self) -> None:
        """Wait until every queued alert has been handed to the sink."""
        await asyncio.gather(*(outbox.join() for outbox in list(self._outboxes.values())))

    async def close(self) -> None:
        """Drain the outboxes, then stop every worker."""
        await self.drain()
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._outboxes.clear()
        logger.info("AlertRouter closed | workers=%d", len(workers))

    def sweep_idle(self) -> int:
        """Stop workers of subscribers with an empty outbox and no subscriptions left."""
        removed = 0
        for subscriber_id, outbox in list(self._outboxes.items()):
            if outbox.empty() and not self.registry.for_subscriber(subscriber_id):
                self._workers.pop(subscriber_id).cancel()
                del self._outboxes[subscriber_id]
                removed += 1
        return removed

    def outbox_size_for(self, subscriber_id: str) -> int:
        outbox = self._outboxes.get(subscriber_id)
        return outbox.qsize() if outbox is not None else 0

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _enqueue(self, subscriber_id: str, alert: Alert) -> None:
        outbox = self._outboxes.get(subscriber_id)
        if outbox is None:
            outbox = self._outboxes[subscriber_id] = asyncio.Queue(maxsize=self.outbox_size)
            self._workers[subscriber_id] = asyncio.get_running_loop().create_task(
                self._work(subscriber_id, outbox)
            )
        if outbox.full():
            dropped = outbox.get_nowait()
            outbox.task_done()
            self._increment("AlertsDropped")
            logger.warning(
                "Outbox full, dropping oldest | subscriber=%s | alert_id=%s | capacity=%d",
                subscriber_id,
                dropped.id,
                self.outbox_size,
            )
        outbox.put_nowait(alert)

    async def _work(self, subscriber_id: str, outbox: "asyncio.Queue[Alert]") -> None:
        while True:
            alert = await outbox.get()
            try:
                await self._deliver(subscriber_id, alert)
            finally:
                outbox.task_done()

    def _still_subscribed(self, entry: DeferredAlert, now: float) -> bool:
        current = self.registry.get(entry.subscription.subscription_id)
        return current is not None and not current.is_expired(now) and current.matches(entry.alert)

    def _defer(self, subscription: Subscription, alert: Alert, now: float) -> None:
        dropped = self.rate_limiter.defer(subscription, alert, now)
        self._increment("AlertsDeferred")
        if dropped is not None:
            self._increment("AlertsDropped")
        logger.info(
            "Alert deferred by rate limit | subscriber=%s | alert_id=%s | kind=%s | next_slot=%.0f",
            subscription.subscriber_id,
            alert.id,
            alert.type.value,
            self.rate_limiter.next_available(subscription.subscriber_id, alert.type, now),
        )

    async def _deliver(self, subscriber_id: str, alert: Alert) -> bool:
        try:
            await asyncio.wait_for(self.sink.deliver(subscriber_id, alert), timeout=self.delivery_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Delivery timed out | subscriber=%s | alert_id=%s | timeout=%.1fs",
                subscriber_id,
                alert.id,
                self.delivery_timeout,
            )
        except DeliveryError as exc:
            logger.warning("Delivery failed | subscriber=%s | alert_id=%s | error=%s", subscriber_id, alert.id, exc)
        except Exception:
            logger.exception("Sink raised unexpectedly | subscriber=%s | alert_id=%s", subscriber_id, alert.id)
        else:
            self._increment("AlertsDelivered")
            return True
        self._increment("DeliveryFailures")
        return False

    def _increment(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.increment(name)
