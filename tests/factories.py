"""
Record factories and a fake clock shared by the unit tests.

All timestamps are epoch seconds around T0 so assertions stay readable.
"""

import asyncio
from types import MappingProxyType
from typing import Any, Optional

from treasurex.framework.errors import DeliveryError
from treasurex.framework.lineage import generate_correlation_id
from treasurex.framework.models import (
    Alert,
    AlertKind,
    AlertPriority,
    BytecodeMetrics,
    EventSource,
    HolderMetrics,
    LiquidityMetrics,
    PatternResult,
    RiskAnalysis,
    RiskBreakdown,
    SecurityFlags,
    StreamEvent,
    TokenMetrics,
    TradingMetrics,
)

T0 = 1_700_000_000.0
MINT = "So11111111111111111111111111111111111111112"
OTHER_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_event(
    source: EventSource = EventSource.PRICE,
    contract_id: str = MINT,
    received_at: float = T0,
    **payload: Any,
) -> StreamEvent:
    if source is EventSource.PRICE:
        payload.setdefault("price", 1.0)
        payload.setdefault("volume", 1000.0)
    else:
        payload.setdefault("amount_usd", 1000.0)
    if source is EventSource.WHALE_TRANSFER:
        payload.setdefault("wallet", "wallet-1")
    return StreamEvent(
        source=source,
        contract_id=contract_id,
        payload=MappingProxyType(payload),
        received_at=received_at,
        server_ts=received_at,
        correlation_id=generate_correlation_id(source.value, contract_id, received_at),
    )


def make_result(
    kind: AlertKind = AlertKind.BREAKOUT,
    contract_id: str = MINT,
    confidence: float = 80.0,
    detected_at: float = T0,
) -> PatternResult:
    return PatternResult(
        type=kind,
        contract_id=contract_id,
        confidence=confidence,
        contributing_signals={"price_change": 0.06},
        detected_at=detected_at,
        correlation_id="c0ffee0000000000",
    )


def make_alert(
    kind: AlertKind = AlertKind.BREAKOUT,
    contract_id: str = MINT,
    confidence: float = 80.0,
    timestamp: float = T0,
    alert_id: Optional[str] = None,
    priority: AlertPriority = AlertPriority.NORMAL,
) -> Alert:
    return Alert(
        id=alert_id or f"{kind.value}-{contract_id[:6]}-{timestamp}",
        type=kind,
        contract_id=contract_id,
        confidence=confidence,
        patterns=(make_result(kind, contract_id, confidence, timestamp),),
        risk=None,
        timestamp=timestamp,
        priority=priority,
    )


def make_analysis(
    contract_id: str = MINT,
    safety_score: float = 80.0,
    rug_pull_risk: float = 10.0,
    risk_level: str = "low",
    computed_at: float = T0,
) -> RiskAnalysis:
    return RiskAnalysis(
        contract_id=contract_id,
        safety_score=safety_score,
        token_metrics=TokenMetrics("Token", "TKN", 1_000_000.0, 6, "token", True),
        holder_metrics=HolderMetrics(100, 5.0, 30.0, 0.1, 80.0),
        liquidity_metrics=LiquidityMetrics(200_000.0, 1_000_000.0, 0.2, 2, False),
        security_flags=SecurityFlags(),
        trading_metrics=TradingMetrics(50_000.0, 3.0, 120, 100, 0.0, 0.0),
        bytecode_metrics=BytecodeMetrics("token", True),
        risk_breakdown=RiskBreakdown(rug_pull_risk, 0.0, 5.0, risk_level),
        computed_at=computed_at,
    )


class RecordingSink:
    """AlertSink that records deliveries; chosen subscribers fail, hang or crash."""

    def __init__(self, failing=(), slow=(), broken=()) -> None:
        self.failing = set(failing)
        self.slow = set(slow)
        self.broken = set(broken)
        self.deliveries: list[tuple[str, str]] = []

    async def deliver(self, subscriber_id: str, alert: Alert) -> None:
        if subscriber_id in self.slow:
            await asyncio.sleep(1)
        if subscriber_id in self.failing:
            raise DeliveryError(subscriber_id, "chat blocked the bot")
        if subscriber_id in self.broken:
            raise RuntimeError("sink bug")
        self.deliveries.append((subscriber_id, alert.id))

    def delivered_to(self) -> list[str]:
        return [subscriber for subscriber, _ in self.deliveries]
