"""Accumulation detector: quiet buildup by a few wallets while price holds flat."""

import statistics
from collections import defaultdict
from typing import Any, Mapping, Optional

from treasurex.framework.base_detector import BaseDetector, weighted_confidence
from treasurex.framework.models import AlertKind, EventSource, PatternResult, StreamEvent
from treasurex.framework.pattern_window import PatternWindow


def _volume_profile(prices: list[StreamEvent], buckets: int) -> list[float]:
    """Sum price-event volume into `buckets` equal slices of the observed span."""
    start = prices[0].received_at
    span = prices[-1].received_at - start
    profile = [0.0] * buckets
    for event in prices:
        index = min(int((event.received_at - start) / span * buckets), buckets - 1)
        profile[index] += float(event.payload["volume"])
    return profile


class AccumulationDetector(BaseDetector):
    """
    Flags accumulation when, over at least `min_period_hours`:
    - the bucketed volume profile never drops (beyond `volume_tolerance`)
    - the price coefficient of variation stays under `price_stability`
    - the top `top_wallets` wallets hold at least `wallet_concentration` of
      buy-side transaction volume
    """

    kind = AlertKind.ACCUMULATION
    detector_name = "accumulation"
    sources = frozenset({EventSource.PRICE, EventSource.TRANSACTION})
    DEFAULTS: dict[str, Any] = {
        "min_period_hours": 12.0,
        "horizon_hours": 24.0,
        "volume_buckets": 4,
        "volume_tolerance": 0.0,
        "price_stability": 0.02,
        "wallet_concentration": 0.7,
        "top_wallets": 5,
        "min_confidence": 50.0,
        "weights": {
            "volume_trend": 30.0,
            "wallet_concentration": 30.0,
            "time_in_pattern": 20.0,
            "price_stability": 20.0,
        },
    }

    def horizon_seconds(self, params: Mapping[str, Any]) -> float:
        return float(max(params["horizon_hours"], params["min_period_hours"])) * 3600

    def evaluate(self, window: PatternWindow, params: Mapping[str, Any]) -> Optional[PatternResult]:
        prices = window.events(EventSource.PRICE)
        if len(prices) < 2:
            return None
        min_period = float(params["min_period_hours"]) * 3600
        span = prices[-1].received_at - prices[0].received_at
        if span <= 0 or span < min_period:
            return None

        profile = _volume_profile(prices, int(params["volume_buckets"]))
        tolerance = float(params["volume_tolerance"])
        if any(later < earlier * (1 - tolerance) for earlier, later in zip(profile, profile[1:])):
            return None

        values = [float(e.payload["price"]) for e in prices]
        mean_price = statistics.fmean(values)
        if mean_price <= 0:
            return None
        volatility = statistics.pstdev(values) / mean_price
        ceiling = float(params["price_stability"])
        if volatility > ceiling:
            return None

        concentration = self._wallet_concentration(
            window.events(EventSource.TRANSACTION), int(params["top_wallets"])
        )
        if concentration is None or concentration < float(params["wallet_concentration"]):
            return None

        if profile[0] > 0:
            growth = profile[-1] / profile[0] - 1.0
        else:
            growth = 1.0 if profile[-1] > 0 else 0.0
        factors = {
            "volume_trend": growth,
            "wallet_concentration": concentration,
            "time_in_pattern": span / (2 * min_period) if min_period else 1.0,
            "price_stability": 1.0 - volatility / ceiling,
        }
        confidence = weighted_confidence(factors, params["weights"])
        return self._result(
            window,
            confidence,
            {
                "volume_growth": growth,
                "wallet_concentration": concentration,
                "hours_in_pattern": span / 3600,
                "price_volatility": volatility,
            },
        )

    @staticmethod
    def _wallet_concentration(transactions: list[StreamEvent], top_n: int) -> Optional[float]:
        by_wallet: dict[str, float] = defaultdict(float)
        for event in transactions:
            wallet = event.payload.get("wallet")
            if not wallet or event.payload.get("side", "buy") != "buy":
                continue
            by_wallet[wallet] += float(event.payload["amount_usd"])
        total = sum(by_wallet.values())
        if total <= 0:
            return None
        top = sorted(by_wallet.values(), reverse=True)[:top_n]
        return sum(top) / total
