"""
Safety score and risk breakdown.

safety_score = weighted mean of five sub-scores (0-100 each), minus a penalty
per active security flag. Any active flag caps the score at
`high_risk_ceiling`, however healthy the other metrics are.

Rug-pull, honeypot and manipulation risks are computed separately and are
never folded into the safety score.
"""

import math
from typing import Any, Mapping, Optional

from treasurex.framework.base_detector import clamp
from treasurex.framework.models import (
    BytecodeMetrics,
    HolderMetrics,
    LiquidityMetrics,
    RiskBreakdown,
    SecurityFlags,
    TokenMetrics,
    TradingMetrics,
)
from treasurex.scanner.bytecode import NON_STANDARD_PROGRAM

SCORING_DEFAULTS: dict[str, Any] = {
    "weights": {
        "token": 10.0,
        "holders": 25.0,
        "liquidity": 25.0,
        "trading": 20.0,
        "bytecode": 20.0,
    },
    "flag_penalties": {
        "mint_authority_enabled": 25.0,
        "freeze_authority_enabled": 20.0,
        "ownership_not_renounced": 10.0,
        "blacklist_capability": 20.0,
        "abnormal_tax_rate": 15.0,
        "malicious_code": 30.0,
    },
    "high_risk_ceiling": 50.0,
    "medium_risk_ceiling": 75.0,
    "healthy_liquidity_ratio": 0.10,
    "healthy_liquidity_usd": 50_000.0,
    "max_tax_pct": 10.0,
    "trade_restriction_penalty": 15.0,
    "wash_turnover": 20.0,
}


def scoring_params(overrides: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
    """Defaults with per-deployment overrides; weight tables merge key by key."""
    params = {k: dict(v) if isinstance(v, dict) else v for k, v in SCORING_DEFAULTS.items()}
    for key, value in (overrides or {}).items():
        if key not in params:
            continue
        if isinstance(value, Mapping) and isinstance(params[key], dict):
            params[key].update(value)
        else:
            params[key] = value
    return params


# ----------------------------------------------------------------------
# Sub-scores (0 = worst, 100 = best)
# ----------------------------------------------------------------------


def token_score(token: TokenMetrics) -> float:
    score = 100.0
    if not token.metadata_complete:
        score -= 40.0
    if token.total_supply <= 0:
        score -= 30.0
    return clamp(score, 0.0, 100.0)


def holder_score(holders: HolderMetrics) -> float:
    if holders.total_holders == 0:
        return 0.0
    concentration = clamp((holders.top10_pct - 20.0) / 60.0) * 60.0
    fresh = clamp(holders.fresh_wallet_ratio) * 40.0
    return clamp(100.0 - concentration - fresh, 0.0, 100.0)


def liquidity_score(liquidity: LiquidityMetrics, params: Mapping[str, Any]) -> float:
    ratio = clamp(liquidity.liquidity_ratio / float(params["healthy_liquidity_ratio"])) * 60.0
    depth = clamp(liquidity.total_liquidity_usd / float(params["healthy_liquidity_usd"])) * 20.0
    locked = 20.0 if liquidity.lp_locked else 0.0
    return ratio + depth + locked


def _imbalance(trading: TradingMetrics) -> float:
    total = trading.buys_24h + trading.sells_24h
    if total == 0:
        return 0.0
    return abs(trading.buys_24h - trading.sells_24h) / total


def trading_score(trading: TradingMetrics, params: Mapping[str, Any]) -> float:
    tax = max(trading.buy_tax_pct, trading.sell_tax_pct)
    tax_penalty = clamp(tax / (2 * float(params["max_tax_pct"]))) * 50.0
    restrictions = (trading.max_transaction is not None) + (trading.cooldown_seconds > 0)
    restriction_penalty = restrictions * float(params["trade_restriction_penalty"])
    return clamp(100.0 - 50.0 * _imbalance(trading) - tax_penalty - restriction_penalty, 0.0, 100.0)


def bytecode_score(bytecode: BytecodeMetrics) -> float:
    if bytecode.standard_program:
        score = 100.0
    else:
        score = 85.0 if bytecode.source_verified else 70.0
    score -= 35.0 * len([p for p in bytecode.malicious_patterns if p != NON_STANDARD_PROGRAM])
    return clamp(score, 0.0, 100.0)


# ----------------------------------------------------------------------
# Safety score and risk breakdown
# ----------------------------------------------------------------------


def safety_score(sub_scores: Mapping[str, float], flags: SecurityFlags, params: Mapping[str, Any]) -> float:
    """
    Weighted mean of sub-scores, gated by security flags.

    Args:
        sub_scores: {"token", "holders", "liquidity", "trading", "bytecode"} -> 0..100
        flags: Security flags of the contract
        params: scoring_params() output

    Returns:
        Score in [0, 100], rounded to 2 decimals; at most high_risk_ceiling
        whenever any flag is set
    """
    weights = params["weights"]
    total_weight = sum(float(weights.get(name, 0.0)) for name in sub_scores)
    if total_weight <= 0:
        raise ValueError("scoring weights must sum to a positive value")
    score = sum(float(weights.get(name, 0.0)) * value for name, value in sub_scores.items()) / total_weight

    active = flags.active()
    penalties = params["flag_penalties"]
    score -= sum(float(penalties.get(flag, 0.0)) for flag in active)
    if active:
        score = min(score, float(params["high_risk_ceiling"]))
    return round(clamp(score, 0.0, 100.0), 2)


def rug_pull_risk(holders: HolderMetrics, liquidity: LiquidityMetrics, params: Mapping[str, Any]) -> float:
    concentration = clamp(holders.top10_pct / 60.0)
    fresh = clamp(holders.fresh_wallet_ratio)
    thin = 1.0 - clamp(liquidity.liquidity_ratio / float(params["healthy_liquidity_ratio"]))
    unlocked = 0.0 if liquidity.lp_locked else 1.0
    return round(100.0 * (0.35 * concentration + 0.25 * fresh + 0.25 * thin + 0.15 * unlocked), 2)


def honeypot_risk(bytecode: BytecodeMetrics, trading: TradingMetrics, params: Mapping[str, Any]) -> float:
    signatures = len([p for p in bytecode.malicious_patterns if p != NON_STANDARD_PROGRAM])
    risk = 35.0 * signatures
    risk += 40.0 * clamp(trading.sell_tax_pct / (2 * float(params["max_tax_pct"])))
    if trading.buys_24h > 0 and trading.sells_24h == 0:
        risk += 30.0
    # Transfer caps and cooldowns can trap sellers.
    if trading.restricted:
        risk += 15.0
    return round(clamp(risk, 0.0, 100.0), 2)


def manipulation_risk(trading: TradingMetrics, liquidity: LiquidityMetrics, params: Mapping[str, Any]) -> float:
    if liquidity.total_liquidity_usd > 0:
        turnover = trading.volume_24h_usd / liquidity.total_liquidity_usd
    else:
        turnover = math.inf if trading.volume_24h_usd > 0 else 0.0
    wash = clamp(turnover / float(params["wash_turnover"]))
    return round(100.0 * (0.5 * wash + 0.5 * _imbalance(trading)), 2)


def risk_level(score: float, params: Mapping[str, Any]) -> str:
    if score <= float(params["high_risk_ceiling"]):
        return "high"
    if score <= float(params["medium_risk_ceiling"]):
        return "medium"
    return "low"


def risk_breakdown(
    score: float,
    holders: HolderMetrics,
    liquidity: LiquidityMetrics,
    trading: TradingMetrics,
    bytecode: BytecodeMetrics,
    params: Mapping[str, Any],
) -> RiskBreakdown:
    return RiskBreakdown(
        rug_pull_risk=rug_pull_risk(holders, liquidity, params),
        honeypot_risk=honeypot_risk(bytecode, trading, params),
        manipulation_risk=manipulation_risk(trading, liquidity, params),
        risk_level=risk_level(score, params),
    )
