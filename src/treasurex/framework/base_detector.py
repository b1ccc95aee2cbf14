"""
Base detector abstraction for pattern recognition.

Every detector (breakout, accumulation, distribution, whale, ...) inherits from
BaseDetector and implements the standard interface for:
1. Declaring which feed sources it consumes and how much history it needs
2. Evaluating a PatternWindow into a PatternResult (or nothing)
3. Scoring confidence as a clamped weighted sum of named factors

Detectors are pure: the same window and parameters always give the same
result. They hold no state between calls; the PatternEngine owns the windows.
"""

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from treasurex.framework.errors import DetectorError
from treasurex.framework.lineage import hash_config
from treasurex.framework.models import AlertKind, EventSource, PatternResult
from treasurex.framework.pattern_window import PatternWindow


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def weighted_confidence(factors: Mapping[str, float], weights: Mapping[str, float]) -> float:
    """
    Combine factor scores into a confidence in [0, 100].

    Each factor score is clamped to [0, 1] before weighting; the weighted sum
    is clamped to [0, 100]. Factors without a weight contribute nothing.

    Args:
        factors: Factor name -> raw score (1.0 means "fully present")
        weights: Factor name -> weight (weights of one detector normally sum to 100)

    Returns:
        Confidence rounded to 2 decimals
    """
    total = sum(clamp(score) * float(weights.get(name, 0.0)) for name, score in factors.items())
    return round(clamp(total, 0.0, 100.0), 2)


class BaseDetector(ABC):
    """
    Abstract base class for pattern detectors.

    Subclasses set the class attributes and implement horizon_seconds() and evaluate().
    """

    # Subclasses override these
    kind: AlertKind
    detector_name: str  # e.g., "breakout"
    sources: frozenset[EventSource]
    DEFAULTS: dict[str, Any] = {}

    def params(self, overrides: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        """
        Merge per-deployment overrides onto the detector defaults.

        Nested dicts (weights) are merged one level deep so a deployment can
        override a single weight.
        """
        merged: dict[str, Any] = {
            key: dict(value) if isinstance(value, dict) else value for key, value in self.DEFAULTS.items()
        }
        for key, value in (overrides or {}).items():
            if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
                merged[key].update(value)
            else:
                merged[key] = value
        return merged

    def config_hash(self, params: Mapping[str, Any]) -> str:
        return hash_config(dict(params))

    @abstractmethod
    def horizon_seconds(self, params: Mapping[str, Any]) -> float:
        """
        Return how much history this detector needs.

        The PatternEngine sizes this detector's windows to the horizon.
        """

    @abstractmethod
    def evaluate(self, window: PatternWindow, params: Mapping[str, Any]) -> Optional[PatternResult]:
        """
        Evaluate the window.

        Args:
            window: Events for one contract, already evicted to the horizon
            params: Merged detector parameters (see params())

        Returns:
            PatternResult if the pattern is present, otherwise None
        """

    def _result(
        self, window: PatternWindow, confidence: float, signals: Mapping[str, float]
    ) -> PatternResult:
        """Build a PatternResult stamped with the newest event of the window."""
        latest = window.latest()
        if latest is None:
            raise DetectorError(f"{self.detector_name}: empty window for {window.contract_id}")
        return PatternResult(
            type=self.kind,
            contract_id=window.contract_id,
            confidence=confidence,
            contributing_signals={name: round(float(value), 6) for name, value in signals.items()},
            detected_at=latest.received_at,
            correlation_id=latest.correlation_id,
        )
