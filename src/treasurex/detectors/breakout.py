"""Breakout detector: a sharp price move confirmed on several timeframes with heavy volume."""

import statistics
from typing import Any, Mapping, Optional

from treasurex.framework.base_detector import BaseDetector, weighted_confidence
from treasurex.framework.models import AlertKind, EventSource, PatternResult, StreamEvent
from treasurex.framework.pattern_window import PatternWindow

TIMEFRAME_SECONDS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "1h": 3600,
    "4h": 14400,
}


def _reference_price(event: StreamEvent) -> float:
    return float(event.payload.get("open", event.payload["price"]))


class BreakoutDetector(BaseDetector):
    """
    Flags a breakout when:
    - the price change over at least `confirmations` of the timeframes reaches
      `price_change`, where a timeframe's change runs from the reference price
      (open, else price) of its oldest event to the latest price
    - mean volume in the shortest timeframe is at least `volume_multiplier`
      times the baseline (latest event's baseline_volume, else the mean volume
      of older events in the window)
    """

    kind = AlertKind.BREAKOUT
    detector_name = "breakout"
    sources = frozenset({EventSource.PRICE})
    DEFAULTS: dict[str, Any] = {
        "timeframes": ["1m", "5m", "15m", "1h", "4h"],
        "confirmations": 3,
        "volume_multiplier": 2.5,
        "price_change": 0.05,
        "min_confidence": 70.0,
        "weights": {"price_move": 30.0, "volume_deviation": 30.0, "confirmations": 40.0},
    }

    def horizon_seconds(self, params: Mapping[str, Any]) -> float:
        return float(max(TIMEFRAME_SECONDS[tf] for tf in params["timeframes"]))

    def evaluate(self, window: PatternWindow, params: Mapping[str, Any]) -> Optional[PatternResult]:
        prices = window.events(EventSource.PRICE)
        if not prices:
            return None
        latest = prices[-1]
        now = latest.received_at
        last_price = float(latest.payload["price"])
        threshold = float(params["price_change"])

        changes: dict[str, float] = {}
        for tf in params["timeframes"]:
            in_frame = [e for e in prices if e.received_at >= now - TIMEFRAME_SECONDS[tf]]
            reference = _reference_price(in_frame[0])
            if reference <= 0:
                continue
            changes[tf] = last_price / reference - 1.0

        confirmed = [tf for tf, change in changes.items() if change >= threshold]
        if len(confirmed) < int(params["confirmations"]):
            return None

        shortest = min(TIMEFRAME_SECONDS[tf] for tf in params["timeframes"])
        recent = [e for e in prices if e.received_at >= now - shortest]
        older = [e for e in prices if e.received_at < now - shortest]
        baseline = latest.payload.get("baseline_volume")
        if baseline is None and older:
            baseline = statistics.fmean(float(e.payload["volume"]) for e in older)
        if not baseline or float(baseline) <= 0:
            return None

        volume_ratio = statistics.fmean(float(e.payload["volume"]) for e in recent) / float(baseline)
        multiplier = float(params["volume_multiplier"])
        if volume_ratio < multiplier:
            return None

        best_change = max(changes[tf] for tf in confirmed)
        factors = {
            "price_move": best_change / (2 * threshold),
            "volume_deviation": volume_ratio / (2 * multiplier),
            "confirmations": len(confirmed) / len(params["timeframes"]),
        }
        confidence = weighted_confidence(factors, params["weights"])
        return self._result(
            window,
            confidence,
            {
                "price_change": best_change,
                "volume_ratio": volume_ratio,
                "confirmed_timeframes": len(confirmed),
            },
        )
