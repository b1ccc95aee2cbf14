"""
Pipeline orchestration for end-to-end stream processing.

PipelineRunner coordinates:
1. Draining the shared event queue fed by the feed connectors
2. Running the PatternEngine per event (one task per event, bounded)
3. Turning pattern results and risk analyses into alerts (AlertManager)
4. Housekeeping on fixed intervals: deferred-alert flush, window and
   rate-limit sweeps, subscription expiry, and rescans of subscribed contracts
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from treasurex.framework.alert_manager import AlertManager
from treasurex.framework.errors import AnalysisError
from treasurex.framework.models import Alert, RiskAnalysis, StreamEvent
from treasurex.framework.pattern_engine import PatternEngine
from treasurex.framework.subscription_registry import SubscriptionRegistry
from treasurex.scanner.risk_scorer import ContractRiskScorer, contracts_to_rescan

logger = logging.getLogger(__name__)


class PipelineRunner:
    """
    Wires queue -> PatternEngine -> AlertManager -> AlertRouter.

    Usage (ConnectorManager):
        runner = PipelineRunner(engine, alert_manager, registry, scorer)
        await asyncio.gather(connector.stream(queue), runner.run(queue, stop))
    """

    def __init__(
        self,
        engine: PatternEngine,
        alert_manager: AlertManager,
        registry: SubscriptionRegistry,
        scorer: Optional[ContractRiskScorer] = None,
        max_concurrency: int = 64,
        flush_interval: float = 1.0,
        sweep_interval: float = 60.0,
        rescan_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            engine: PatternEngine evaluating every event
            alert_manager: AlertManager receiving results and analyses
            registry: Subscription registry (rescan targets, expiry)
            scorer: Optional risk scorer for periodic rescans
            max_concurrency: Events evaluated concurrently
            flush_interval: Seconds between deferred-alert flushes
            sweep_interval: Seconds between window / rate-limit / expiry sweeps
            rescan_interval: Seconds between rescans of subscribed contracts
                             (None disables rescans)
            clock: Epoch-seconds clock
        """
        self.engine = engine
        self.alert_manager = alert_manager
        self.registry = registry
        self.scorer = scorer
        self.flush_interval = flush_interval
        self.sweep_interval = sweep_interval
        self.rescan_interval = rescan_interval
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task] = set()
        self.events_processed = 0

    async def run(self, queue: "asyncio.Queue[StreamEvent]", stop: asyncio.Event) -> None:
        """
        Process events until ``stop`` is set and the queue is drained.

        Pending evaluations finish, eligible deferred alerts are flushed once
        more, and the router drains its outboxes before returning.
        """
        periodic = [
            asyncio.create_task(self._every(self.flush_interval, self.flush_deferred, stop)),
            asyncio.create_task(self._every(self.sweep_interval, self.sweep, stop)),
        ]
        if self.scorer is not None and self.rescan_interval:
            periodic.append(asyncio.create_task(self._every(self.rescan_interval, self.rescan_subscribed, stop)))

        logger.info(
            "PipelineRunner started | detectors=%s | rescan_interval=%s",
            self.engine.detector_names,
            self.rescan_interval,
        )
        try:
            await self._drain(queue, stop)
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            await self.flush_deferred()
            await self.alert_manager.router.close()
        finally:
            for task in periodic:
                task.cancel()
            await asyncio.gather(*periodic, return_exceptions=True)
        logger.info("PipelineRunner stopped | events_processed=%d", self.events_processed)

    async def handle_event(self, event: StreamEvent) -> list[Alert]:
        """Evaluate one event and forward every detection to the AlertManager."""
        alerts: list[Alert] = []
        for result in await self.engine.process(event):
            name = self.engine.detector_for_kind(result.type) or result.type.value
            context = {
                "detector_name": name,
                "config_hash": self.engine.config_hash_for(name) if name in self.engine.detector_names else "",
                "source": event.source.value,
            }
            alert = await self.alert_manager.process(result, context)
            if alert is not None:
                alerts.append(alert)
        return alerts

    async def handle_analysis(self, analysis: RiskAnalysis) -> Optional[Alert]:
        context = {"detector_name": "risk-scorer"}
        if self.scorer is not None:
            context["config_hash"] = self.scorer.config_hash
        return await self.alert_manager.process(analysis, context)

    async def rescan_subscribed(self) -> int:
        """
        Rescan subscribed contracts without a fresh cached analysis.

        Returns:
            Number of contracts scanned successfully
        """
        if self.scorer is None:
            return 0
        targets = contracts_to_rescan(self.scorer, sorted(self.registry.contracts()))
        if not targets:
            return 0
        results = await asyncio.gather(*(self._rescan_one(self.scorer, c) for c in targets))
        scanned = sum(results)
        logger.info("Rescan finished | targets=%d | scanned=%d", len(targets), scanned)
        return scanned

    async def flush_deferred(self) -> None:
        await self.alert_manager.router.flush_deferred()

    async def sweep(self) -> None:
        now = self._clock()
        windows = self.engine.sweep(now)
        keys = self.alert_manager.router.rate_limiter.sweep(now)
        expired = self.registry.purge_expired(now)
        workers = self.alert_manager.router.sweep_idle()
        logger.debug(
            "Sweep finished | windows_removed=%d | rate_keys_removed=%d | subscriptions_expired=%d | workers_stopped=%d",
            windows,
            keys,
            expired,
            workers,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _drain(self, queue: "asyncio.Queue[StreamEvent]", stop: asyncio.Event) -> None:
        while not (stop.is_set() and queue.empty()):
            try:
                event = await asyncio.wait_for(queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            await self._semaphore.acquire()
            task = asyncio.create_task(self._handle_guarded(event))
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._semaphore.release()

    async def _handle_guarded(self, event: StreamEvent) -> None:
        try:
            await self.handle_event(event)
        except Exception:
            logger.exception(
                "Event processing failed | source=%s | contract=%s", event.source.value, event.contract_id
            )
        finally:
            self.events_processed += 1

    async def _rescan_one(self, scorer: ContractRiskScorer, contract_id: str) -> bool:
        try:
            analysis = await scorer.analyze(contract_id)
        except AnalysisError as exc:
            logger.warning("Rescan failed | contract=%s | error=%s", contract_id, exc)
            return False
        await self.handle_analysis(analysis)
        return True

    async def _every(self, interval: float, job: Callable[[], Awaitable[object]], stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await job()
            except Exception:
                logger.exception("Periodic job failed | job=%s", getattr(job, "__name__", job))
