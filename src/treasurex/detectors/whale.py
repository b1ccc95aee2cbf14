"""Whale detector: single large transactions, optionally from seasoned wallets only."""

import math
from typing import Any, Mapping, Optional

from treasurex.framework.base_detector import BaseDetector, weighted_confidence
from treasurex.framework.errors import ConfigError
from treasurex.framework.models import AlertKind, EventSource, PatternResult, StreamEvent
from treasurex.framework.pattern_window import PatternWindow


class WhaleDetector(BaseDetector):
    """
    Flags whale activity when the newest transaction in the window is at or
    above `min_transaction_usd`. Earlier qualifying transactions inside
    `time_window_seconds` raise confidence. With `min_wallet_age_seconds` set,
    transactions from younger wallets, or without a known wallet age, do not
    qualify.
    """

    kind = AlertKind.WHALE
    detector_name = "whale"
    sources = frozenset({EventSource.TRANSACTION, EventSource.WHALE_TRANSFER})
    DEFAULTS: dict[str, Any] = {
        "min_transaction_usd": 100_000.0,
        "time_window_seconds": 3600.0,
        "min_wallet_age_seconds": 7_776_000.0,
        "min_confidence": 0.0,
        "weights": {"size": 50.0, "count": 25.0, "wallet_age": 25.0},
    }

    def params(self, overrides: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        params = super().params(overrides)
        threshold = params["min_transaction_usd"]
        try:
            positive = not isinstance(threshold, bool) and float(threshold) > 0
        except (TypeError, ValueError):
            positive = False
        if not positive:
            raise ConfigError(f"whale.min_transaction_usd must be a positive number, got {threshold!r}")
        return params

    def horizon_seconds(self, params: Mapping[str, Any]) -> float:
        return float(params["time_window_seconds"])

    def evaluate(self, window: PatternWindow, params: Mapping[str, Any]) -> Optional[PatternResult]:
        latest = window.latest()
        if latest is None or not self._qualifies(latest, params):
            return None

        qualifying = [e for e in window if self._qualifies(e, params)]
        threshold = float(params["min_transaction_usd"])
        largest = max(float(e.payload["amount_usd"]) for e in qualifying)
        min_age = params.get("min_wallet_age_seconds")
        age = latest.payload.get("wallet_age_seconds")

        factors = {
            # 1x threshold scores 0.5, 10x scores 1.0
            "size": 0.5 + 0.5 * math.log10(largest / threshold),
            "count": len(qualifying) / 3,
            "wallet_age": float(age) / (2 * float(min_age)) if age is not None and min_age else 0.0,
        }
        confidence = weighted_confidence(factors, params["weights"])
        return self._result(
            window,
            confidence,
            {
                "amount_usd": float(latest.payload["amount_usd"]),
                "largest_usd": largest,
                "whale_transactions": len(qualifying),
                "wallet_age_days": float(age) / 86400 if age is not None else -1.0,
            },
        )

    @staticmethod
    def _qualifies(event: StreamEvent, params: Mapping[str, Any]) -> bool:
        if float(event.payload["amount_usd"]) < float(params["min_transaction_usd"]):
            return False
        min_age = params.get("min_wallet_age_seconds")
        if not min_age:
            return True
        age = event.payload.get("wallet_age_seconds")
        return age is not None and float(age) >= float(min_age)
