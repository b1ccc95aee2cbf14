"""
Pattern engine: sliding windows plus the detector registry.

For each StreamEvent the engine updates the windows of every detector that
consumes the event's source, then evaluates those detectors. Evaluation is
serialized per contract (one asyncio.Lock per contract id) and concurrent
across contracts.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Mapping, Optional

from treasurex.framework.base_detector import BaseDetector
from treasurex.framework.models import AlertKind, PatternResult, StreamEvent
from treasurex.framework.pattern_window import PatternWindow

if TYPE_CHECKING:
    from treasurex.runtime.metrics_publisher import MetricsPublisher

logger = logging.getLogger(__name__)


class PatternEngine:
    """
    Owns every PatternWindow and evaluates registered detectors against them.

    Usage:
        engine = PatternEngine(registry.load_active_modules(), pattern_config)
        results = await engine.process(event)
    """

    def __init__(
        self,
        detectors: Mapping[str, BaseDetector],
        config: Optional[Mapping[str, Mapping[str, Any]]] = None,
        metrics: Optional["MetricsPublisher"] = None,
    ) -> None:
        """
        Args:
            detectors: Pattern name -> detector instance
            config: Pattern name -> per-deployment parameter overrides
            metrics: Optional MetricsPublisher
        """
        config = config or {}
        self._detectors = dict(detectors)
        self._params = {name: det.params(config.get(name)) for name, det in self._detectors.items()}
        self._horizons = {name: det.horizon_seconds(self._params[name]) for name, det in self._detectors.items()}
        self._hashes = {name: det.config_hash(self._params[name]) for name, det in self._detectors.items()}
        self._windows: dict[tuple[str, str], PatternWindow] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._metrics = metrics

    @property
    def detector_names(self) -> list[str]:
        return list(self._detectors)

    def detector_for_kind(self, kind: AlertKind) -> Optional[str]:
        """Name of the first registered detector emitting ``kind``."""
        for name, detector in self._detectors.items():
            if detector.kind == kind:
                return name
        return None

    def params_for(self, name: str) -> dict[str, Any]:
        return dict(self._params[name])

    def config_hash_for(self, name: str) -> str:
        return self._hashes[name]

    def window(self, contract_id: str, name: str) -> Optional[PatternWindow]:
        return self._windows.get((contract_id, name))

    async def process(self, event: StreamEvent) -> list[PatternResult]:
        """
        Add one event and evaluate the affected detectors.

        Returns:
            PatternResults at or above each detector's min_confidence
        """
        lock = self._locks.setdefault(event.contract_id, asyncio.Lock())
        async with lock:
            return self._process_locked(event)

    def _process_locked(self, event: StreamEvent) -> list[PatternResult]:
        results: list[PatternResult] = []
        for name, detector in self._detectors.items():
            if event.source not in detector.sources:
                continue
            key = (event.contract_id, name)
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = PatternWindow(event.contract_id, self._horizons[name])
            window.append(event)

            params = self._params[name]
            try:
                result = detector.evaluate(window, params)
            except Exception:
                logger.exception(
                    "Detector failed | pattern=%s | contract=%s", name, event.contract_id
                )
                continue
            if result is None or result.confidence < float(params.get("min_confidence", 0.0)):
                continue
            results.append(result)
            if self._metrics is not None:
                self._metrics.increment("PatternsDetected")
            logger.info(
                "Pattern detected | pattern=%s | contract=%s | confidence=%.2f",
                name,
                event.contract_id,
                result.confidence,
            )
        return results

    def sweep(self, now: float) -> int:
        """
        Evict every window to ``now`` and drop empty windows and idle locks.

        Returns:
            Number of windows removed
        """
        removed = 0
        for key, window in list(self._windows.items()):
            lock = self._locks.get(key[0])
            if lock is not None and lock.locked():
                continue
            window.evict(now)
            if not len(window):
                del self._windows[key]
                removed += 1
        active_contracts = {contract for contract, _ in self._windows}
        for contract in list(self._locks):
            if contract not in active_contracts and not self._locks[contract].locked():
                del self._locks[contract]
        return removed
