"""
Shared records passed between engine components.

Everything that crosses a component boundary is immutable (frozen dataclasses);
the only mutable state (pattern windows, rate-limit logs) is owned by a single
component and never handed out.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import Any, Mapping, Optional

from treasurex.framework.lineage import LineageContext


class EventSource(str, Enum):
    PRICE = "price"
    TRANSACTION = "transaction"
    WHALE_TRANSFER = "whale_transfer"


class AlertKind(str, Enum):
    BREAKOUT = "breakout"
    ACCUMULATION = "accumulation"
    DISTRIBUTION = "distribution"
    WHALE = "whale"
    RISK = "risk"


class AlertPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class PriorityTier(IntEnum):
    """Subscriber tier; higher values are delivered first."""

    FREE = 1
    STANDARD = 2
    PREMIUM = 3


# ----------------------------------------------------------------------
# Stream / pattern records
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class StreamEvent:
    """
    One normalized feed message.

    payload keys depend on the source:
        price:          price, volume, optional open, baseline_volume
        transaction:    amount_usd, optional wallet, side, wallet_age_seconds
        whale_transfer: amount_usd, wallet, optional wallet_age_seconds
    """

    source: EventSource
    contract_id: str
    payload: Mapping[str, Any]
    received_at: float
    server_ts: float
    correlation_id: str = ""


@dataclass(frozen=True)
class PatternResult:
    type: AlertKind
    contract_id: str
    confidence: float
    contributing_signals: Mapping[str, float]
    detected_at: float
    correlation_id: str = ""


# ----------------------------------------------------------------------
# Risk analysis records
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class TokenMetrics:
    name: str
    symbol: str
    total_supply: float
    decimals: int
    owner_program: str
    metadata_complete: bool


@dataclass(frozen=True)
class HolderMetrics:
    total_holders: int
    top1_pct: float
    top10_pct: float
    fresh_wallet_ratio: float
    real_wallet_pct: float
    whale_wallets: tuple[str, ...] = ()
    suspicious_wallets: tuple[str, ...] = ()


@dataclass(frozen=True)
class LiquidityMetrics:
    total_liquidity_usd: float
    market_cap_usd: float
    liquidity_ratio: float
    pool_count: int
    lp_locked: bool


@dataclass(frozen=True)
class TradingMetrics:
    volume_24h_usd: float
    price_change_24h: float
    buys_24h: int
    sells_24h: int
    buy_tax_pct: float
    sell_tax_pct: float
    max_transaction: Optional[float] = None  # token units per transfer; None when uncapped
    cooldown_seconds: float = 0.0

    @property
    def restricted(self) -> bool:
        """True when transfers are capped or rate limited by the token itself."""
        return self.max_transaction is not None or self.cooldown_seconds > 0


@dataclass(frozen=True)
class BytecodeMetrics:
    owner_program: str
    standard_program: bool
    malicious_patterns: tuple[str, ...] = ()
    source_verified: bool = False


@dataclass(frozen=True)
class SecurityFlags:
    """The six gate flags; any set flag caps the safety score."""

    mint_authority_enabled: bool = False
    freeze_authority_enabled: bool = False
    ownership_not_renounced: bool = False
    blacklist_capability: bool = False
    abnormal_tax_rate: bool = False
    malicious_code: bool = False

    def active(self) -> list[str]:
        return [name for name, value in asdict(self).items() if value]


@dataclass(frozen=True)
class RiskBreakdown:
    rug_pull_risk: float
    honeypot_risk: float
    manipulation_risk: float
    risk_level: str


@dataclass(frozen=True)
class RiskAnalysis:
    contract_id: str
    safety_score: float
    token_metrics: TokenMetrics
    holder_metrics: HolderMetrics
    liquidity_metrics: LiquidityMetrics
    security_flags: SecurityFlags
    trading_metrics: TradingMetrics
    bytecode_metrics: BytecodeMetrics
    risk_breakdown: RiskBreakdown
    computed_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ----------------------------------------------------------------------
# Alerts and subscriptions
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Alert:
    id: str
    type: AlertKind
    contract_id: str
    confidence: float
    patterns: tuple[PatternResult, ...]
    risk: Optional[RiskAnalysis]
    timestamp: float
    priority: AlertPriority
    lineage: Optional[LineageContext] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["priority"] = self.priority.value
        data["patterns"] = [
            {**asdict(p), "type": p.type.value, "contributing_signals": dict(p.contributing_signals)}
            for p in self.patterns
        ]
        return data


@dataclass(frozen=True)
class Subscription:
    subscription_id: str
    subscriber_id: str
    contract_id: str
    alert_kinds: frozenset[AlertKind]
    min_confidence: float
    priority: PriorityTier
    created_at: float
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def matches(self, alert: Alert) -> bool:
        return (
            self.contract_id == alert.contract_id
            and alert.type in self.alert_kinds
            and alert.confidence >= self.min_confidence
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "subscriber_id": self.subscriber_id,
            "contract_id": self.contract_id,
            "alert_kinds": sorted(k.value for k in self.alert_kinds),
            "min_confidence": self.min_confidence,
            "priority": self.priority.name.lower(),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


@dataclass
class RateLimitState:
    """Sliding log of delivery times for one (subscriber, alert kind)."""

    sent_at: list[float] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.sent_at)

    @property
    def window_start(self) -> Optional[float]:
        return self.sent_at[0] if self.sent_at else None
