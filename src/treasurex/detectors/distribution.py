"""Distribution detector: volume spikes and large transfers under a price ceiling."""

import statistics
from typing import Any, Mapping, Optional

from treasurex.framework.base_detector import BaseDetector, weighted_confidence
from treasurex.framework.models import AlertKind, EventSource, PatternResult
from treasurex.framework.pattern_window import PatternWindow


class DistributionDetector(BaseDetector):
    """
    Flags distribution (exit activity) within `max_period_hours` when all hold:
    - at least one price event has volume >= `spike_multiplier` x median volume
    - at least `min_large_transfers` transfers of >= `large_transfer_usd`
    - price resistance: `resistance_touches` prices within `resistance_tolerance`
      of the window high, with the latest price below that band
    """

    kind = AlertKind.DISTRIBUTION
    detector_name = "distribution"
    sources = frozenset({EventSource.PRICE, EventSource.TRANSACTION, EventSource.WHALE_TRANSFER})
    DEFAULTS: dict[str, Any] = {
        "max_period_hours": 48.0,
        "spike_multiplier": 3.0,
        "large_transfer_usd": 50_000.0,
        "min_large_transfers": 1,
        "resistance_tolerance": 0.01,
        "resistance_touches": 2,
        "min_confidence": 50.0,
        "weights": {"volume_spikes": 35.0, "large_transfers": 35.0, "price_resistance": 30.0},
    }

    def horizon_seconds(self, params: Mapping[str, Any]) -> float:
        return float(params["max_period_hours"]) * 3600

    def evaluate(self, window: PatternWindow, params: Mapping[str, Any]) -> Optional[PatternResult]:
        prices = window.events(EventSource.PRICE)
        if len(prices) < 3:
            return None

        volumes = [float(e.payload["volume"]) for e in prices]
        baseline = statistics.median(volumes)
        if baseline <= 0:
            return None
        spike_multiplier = float(params["spike_multiplier"])
        spike_ratio = max(volumes) / baseline
        if spike_ratio < spike_multiplier:
            return None

        threshold = float(params["large_transfer_usd"])
        transfers = [
            e
            for e in window.events(EventSource.TRANSACTION, EventSource.WHALE_TRANSFER)
            if float(e.payload["amount_usd"]) >= threshold
        ]
        min_transfers = int(params["min_large_transfers"])
        if len(transfers) < min_transfers:
            return None

        values = [float(e.payload["price"]) for e in prices]
        high = max(values)
        band = high * (1 - float(params["resistance_tolerance"]))
        touches = sum(1 for v in values if v >= band)
        required_touches = int(params["resistance_touches"])
        if touches < required_touches or values[-1] >= band:
            return None

        factors = {
            "volume_spikes": spike_ratio / (2 * spike_multiplier),
            "large_transfers": len(transfers) / (2 * max(min_transfers, 1)),
            "price_resistance": touches / (2 * required_touches),
        }
        confidence = weighted_confidence(factors, params["weights"])
        return self._result(
            window,
            confidence,
            {
                "spike_ratio": spike_ratio,
                "large_transfers": len(transfers),
                "large_transfer_usd": sum(float(e.payload["amount_usd"]) for e in transfers),
                "resistance_touches": touches,
                "drawdown_from_high": 1 - values[-1] / high,
            },
        )
