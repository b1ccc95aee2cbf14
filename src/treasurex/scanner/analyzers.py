"""
The six scan sub-analyses.

Each one fetches one record from the ChainDataSource and condenses it into a
metrics dataclass. They run concurrently under the scorer's timeout; none of
them catches errors.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from treasurex.framework.models import (
    BytecodeMetrics,
    HolderMetrics,
    LiquidityMetrics,
    SecurityFlags,
    TokenMetrics,
    TradingMetrics,
)
from treasurex.scanner.bytecode import HONEYPOT_SIGNATURES, BytecodeClassifier
from treasurex.scanner.chain_source import STANDARD_TOKEN_PROGRAMS, ChainDataSource


@dataclass(frozen=True)
class WalletThresholds:
    fresh_wallet_age_seconds: float = 7 * 86400
    real_wallet_min_tx: int = 5
    whale_pct: float = 5.0
    suspicious_pct: float = 1.0


async def analyze_token(source: ChainDataSource, contract_id: str) -> TokenMetrics:
    data = await source.token_metadata(contract_id)
    name = data.get("name") or ""
    symbol = data.get("symbol") or ""
    return TokenMetrics(
        name=name,
        symbol=symbol,
        total_supply=float(data.get("total_supply") or 0.0),
        decimals=int(data.get("decimals") or 0),
        owner_program=data.get("owner_program") or "",
        metadata_complete=bool(name and symbol),
    )


async def analyze_holders(
    source: ChainDataSource, contract_id: str, now: float, thresholds: WalletThresholds
) -> HolderMetrics:
    """
    Concentration plus wallet-activity breakdown over the largest holders.

    A wallet is fresh when first seen within `fresh_wallet_age_seconds`, real
    when it is not fresh and has at least `real_wallet_min_tx` transactions,
    a whale at `whale_pct` percent of supply, and suspicious when fresh and
    holding at least `suspicious_pct` percent.
    """
    data = await source.holders(contract_id)
    supply = float(data.get("total_supply") or 0.0)
    accounts: Sequence[Mapping[str, Any]] = sorted(
        data.get("accounts") or [], key=lambda a: float(a.get("amount") or 0.0), reverse=True
    )
    if not accounts or supply <= 0:
        return HolderMetrics(0, 0.0, 0.0, 0.0, 0.0)

    pcts = [float(a.get("amount") or 0.0) / supply * 100 for a in accounts]
    fresh, real, whales, suspicious = [], [], [], []
    for account, pct in zip(accounts, pcts):
        address = account.get("address", "")
        first_seen = account.get("first_seen_at")
        is_fresh = first_seen is not None and now - float(first_seen) < thresholds.fresh_wallet_age_seconds
        if is_fresh:
            fresh.append(address)
            if pct >= thresholds.suspicious_pct:
                suspicious.append(address)
        elif int(account.get("tx_count") or 0) >= thresholds.real_wallet_min_tx:
            real.append(address)
        if pct >= thresholds.whale_pct:
            whales.append(address)

    return HolderMetrics(
        total_holders=len(accounts),
        top1_pct=round(pcts[0], 2),
        top10_pct=round(sum(pcts[:10]), 2),
        fresh_wallet_ratio=round(len(fresh) / len(accounts), 4),
        real_wallet_pct=round(len(real) / len(accounts) * 100, 2),
        whale_wallets=tuple(whales),
        suspicious_wallets=tuple(suspicious),
    )


async def analyze_liquidity(source: ChainDataSource, contract_id: str) -> LiquidityMetrics:
    data = await source.liquidity(contract_id)
    liquidity = float(data.get("total_liquidity_usd") or 0.0)
    market_cap = float(data.get("market_cap_usd") or 0.0)
    return LiquidityMetrics(
        total_liquidity_usd=liquidity,
        market_cap_usd=market_cap,
        liquidity_ratio=round(liquidity / market_cap, 4) if market_cap > 0 else 0.0,
        pool_count=int(data.get("pool_count") or 0),
        lp_locked=bool(data.get("lp_locked")),
    )


async def analyze_security(source: ChainDataSource, contract_id: str, max_tax_pct: float) -> SecurityFlags:
    """Authority and extension flags. `malicious_code` is filled in from the bytecode scan."""
    data = await source.security(contract_id)
    return SecurityFlags(
        mint_authority_enabled=data.get("mint_authority") is not None,
        freeze_authority_enabled=data.get("freeze_authority") is not None,
        ownership_not_renounced=data.get("update_authority") is not None,
        blacklist_capability=data.get("permanent_delegate") is not None,
        abnormal_tax_rate=float(data.get("transfer_fee_bps") or 0.0) / 100 > max_tax_pct,
    )


async def analyze_trading(source: ChainDataSource, contract_id: str) -> TradingMetrics:
    data = await source.trading(contract_id)
    max_transaction = data.get("max_transaction")
    return TradingMetrics(
        volume_24h_usd=float(data.get("volume_24h_usd") or 0.0),
        price_change_24h=float(data.get("price_change_24h") or 0.0),
        buys_24h=int(data.get("buys_24h") or 0),
        sells_24h=int(data.get("sells_24h") or 0),
        buy_tax_pct=float(data.get("buy_tax_pct") or 0.0),
        sell_tax_pct=float(data.get("sell_tax_pct") or 0.0),
        max_transaction=float(max_transaction) if max_transaction is not None else None,
        cooldown_seconds=float(data.get("cooldown_seconds") or 0.0),
    )


async def analyze_bytecode(
    source: ChainDataSource, contract_id: str, classifiers: Sequence[BytecodeClassifier]
) -> BytecodeMetrics:
    program = await source.program(contract_id)
    patterns: set[str] = set()
    for classifier in classifiers:
        patterns.update(classifier.classify(program))
    owner = program.get("owner_program") or ""
    standard = owner in STANDARD_TOKEN_PROGRAMS
    return BytecodeMetrics(
        owner_program=owner,
        standard_program=standard,
        malicious_patterns=tuple(sorted(patterns)),
        # The SPL token programs are published with verifiable builds.
        source_verified=bool(program.get("source_verified", standard)),
    )


def has_malicious_code(bytecode: BytecodeMetrics) -> bool:
    return any(p in HONEYPOT_SIGNATURES for p in bytecode.malicious_patterns)
