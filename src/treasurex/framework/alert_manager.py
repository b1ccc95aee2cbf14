"""
Alert manager: turns pattern results and risk analyses into deduplicated alerts.

For each source the manager:
1. Builds a candidate Alert whose id hashes (kind, contract, dedup bucket)
2. Suppresses it if history already holds a live alert with that id
   (refreshing the stored confidence and timestamp instead)
3. Otherwise appends it to bounded history, archives it, and hands it to the
   AlertRouter for fan-out
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, Union

from treasurex.framework.alert_router import AlertRouter
from treasurex.framework.lineage import (
    LineageContext,
    generate_alert_id,
    generate_correlation_id,
    get_pipeline_version,
)
from treasurex.framework.models import (
    Alert,
    AlertKind,
    AlertPriority,
    PatternResult,
    RiskAnalysis,
)

if TYPE_CHECKING:
    from treasurex.framework.alert_archive import AlertArchive
    from treasurex.runtime.metrics_publisher import MetricsPublisher

logger = logging.getLogger(__name__)

AlertSource = Union[PatternResult, RiskAnalysis]


class AlertManager:
    """
    Owns alert history and decides which candidates reach the router.

    Usage:
        manager = AlertManager(router, risk_lookup=scorer.cached)
        alert = await manager.process(result, {"detector_name": "breakout"})
    """

    def __init__(
        self,
        router: AlertRouter,
        risk_lookup: Optional[Callable[[str], Optional[RiskAnalysis]]] = None,
        dedup_bucket_seconds: float = 300.0,
        history_capacity: int = 10_000,
        history_max_age_seconds: float = 86_400.0,
        risk_alert_threshold: float = 50.0,
        rug_pull_alert_threshold: float = 70.0,
        high_priority_confidence: float = 85.0,
        low_priority_confidence: float = 60.0,
        archive: Optional["AlertArchive"] = None,
        metrics: Optional["MetricsPublisher"] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            router: AlertRouter used for every new alert
            risk_lookup: contract id -> fresh cached RiskAnalysis (or None),
                         attached to pattern alerts
            dedup_bucket_seconds: Width of the dedup time bucket
            history_capacity: Maximum alerts kept in history
            history_max_age_seconds: Alerts older than this leave history
            risk_alert_threshold: Safety score at or below which a scan alerts
            rug_pull_alert_threshold: Rug-pull risk at or above which a scan alerts
            high_priority_confidence: Confidence at or above which priority is high
            low_priority_confidence: Confidence below which priority is low
            archive: Optional DynamoDB AlertArchive
            metrics: Optional MetricsPublisher
            clock: Epoch-seconds clock
        """
        if dedup_bucket_seconds <= 0:
            raise ValueError("dedup_bucket_seconds must be positive")
        if history_capacity < 1:
            raise ValueError("history_capacity must be at least 1")
        self.router = router
        self._risk_lookup = risk_lookup
        self.dedup_bucket_seconds = dedup_bucket_seconds
        self.history_capacity = history_capacity
        self.history_max_age_seconds = history_max_age_seconds
        self.risk_alert_threshold = risk_alert_threshold
        self.rug_pull_alert_threshold = rug_pull_alert_threshold
        self.high_priority_confidence = high_priority_confidence
        self.low_priority_confidence = low_priority_confidence
        self._archive = archive
        self._metrics = metrics
        self._clock = clock
        self._history: "OrderedDict[str, Alert]" = OrderedDict()

    async def process(
        self, source: AlertSource, context: Optional[Mapping[str, Any]] = None
    ) -> Optional[Alert]:
        """
        Turn one PatternResult or RiskAnalysis into an alert.

        Args:
            source: Pattern engine result or risk scorer analysis
            context: Optional {"detector_name", "config_hash", "risk"}; "risk"
                     overrides the cached analysis attached to pattern alerts

        Returns:
            The new alert, the existing alert when deduplicated, or None when a
            risk analysis is below the alert thresholds
        """
        context = context or {}
        now = self._clock()
        candidate = self._build(source, context, now)
        if candidate is None:
            return None

        self._evict(now)
        existing = self._history.get(candidate.id)
        if existing is not None:
            refreshed = replace(
                existing,
                confidence=max(existing.confidence, candidate.confidence),
                timestamp=max(existing.timestamp, candidate.timestamp),
            )
            self._history[candidate.id] = refreshed
            self._increment("AlertsSuppressed")
            logger.debug(
                "Alert suppressed as duplicate | alert_id=%s | kind=%s | contract=%s",
                candidate.id,
                candidate.type.value,
                candidate.contract_id,
            )
            return refreshed

        self._history[candidate.id] = candidate
        self._evict(now)
        self._increment("AlertsCreated")
        logger.info(
            "Alert created | alert_id=%s | kind=%s | contract=%s | confidence=%.2f | priority=%s",
            candidate.id,
            candidate.type.value,
            candidate.contract_id,
            candidate.confidence,
            candidate.priority.value,
        )
        if self._archive is not None:
            await asyncio.to_thread(self._archive.put, candidate)
        await self.router.dispatch(candidate)
        return candidate

    def history(self) -> list[Alert]:
        """Alerts in history, oldest first."""
        self._evict(self._clock())
        return list(self._history.values())

    def get(self, alert_id: str) -> Optional[Alert]:
        return self._history.get(alert_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _build(self, source: AlertSource, context: Mapping[str, Any], now: float) -> Optional[Alert]:
        if isinstance(source, PatternResult):
            risk = context.get("risk")
            if risk is None and self._risk_lookup is not None:
                risk = self._risk_lookup(source.contract_id)
            kind = source.type
            confidence = source.confidence
            timestamp = source.detected_at
            patterns: tuple[PatternResult, ...] = (source,)
            lineage = LineageContext(
                correlation_id=source.correlation_id
                or generate_correlation_id(kind.value, source.contract_id, timestamp),
                source=context.get("source", "stream"),
                detector_name=context.get("detector_name", kind.value),
                config_hash=context.get("config_hash", ""),
                processed_at=now,
                pipeline_version=get_pipeline_version(),
            )
        elif isinstance(source, RiskAnalysis):
            rug_pull = source.risk_breakdown.rug_pull_risk
            if source.safety_score > self.risk_alert_threshold and rug_pull < self.rug_pull_alert_threshold:
                return None
            risk = source
            kind = AlertKind.RISK
            confidence = round(max(100.0 - source.safety_score, rug_pull), 2)
            timestamp = source.computed_at
            patterns = ()
            lineage = LineageContext(
                correlation_id=generate_correlation_id("scan", source.contract_id, timestamp),
                source="scan",
                detector_name=context.get("detector_name", "risk-scorer"),
                config_hash=context.get("config_hash", ""),
                processed_at=now,
                pipeline_version=get_pipeline_version(),
            )
        else:
            raise TypeError(f"cannot build an alert from {type(source).__name__}")

        return Alert(
            id=generate_alert_id(kind.value, source.contract_id, timestamp, self.dedup_bucket_seconds),
            type=kind,
            contract_id=source.contract_id,
            confidence=confidence,
            patterns=patterns,
            risk=risk,
            timestamp=timestamp,
            priority=self._priority(confidence, risk),
            lineage=lineage,
        )

    def _priority(self, confidence: float, risk: Optional[RiskAnalysis]) -> AlertPriority:
        if confidence >= self.high_priority_confidence:
            return AlertPriority.HIGH
        if risk is not None and risk.risk_breakdown.risk_level == "high":
            return AlertPriority.HIGH
        if confidence < self.low_priority_confidence:
            return AlertPriority.LOW
        return AlertPriority.NORMAL

    def _evict(self, now: float) -> None:
        cutoff = now - self.history_max_age_seconds
        for alert_id in [k for k, alert in self._history.items() if alert.timestamp < cutoff]:
            del self._history[alert_id]
        while len(self._history) > self.history_capacity:
            self._history.popitem(last=False)

    def _increment(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.increment(name)
