"""
Data access contract for contract scans.

A ChainDataSource returns plain dicts; the analyzers turn them into metrics.
Every method may raise; the scorer converts failures into AnalysisError.

Shapes:
    token_metadata -> {"name", "symbol", "total_supply", "decimals", "owner_program"}
    holders        -> {"total_supply", "accounts": [{"address", "amount",
                        "first_seen_at" (epoch s or None), "tx_count"}]}
    liquidity      -> {"total_liquidity_usd", "market_cap_usd", "pool_count", "lp_locked"}
    security       -> {"mint_authority", "freeze_authority", "update_authority",
                        "permanent_delegate", "transfer_fee_bps"}
    trading        -> {"volume_24h_usd", "price_change_24h", "buys_24h", "sells_24h",
                        "buy_tax_pct", "sell_tax_pct", optional "max_transaction"
                        (token units, None when uncapped), optional "cooldown_seconds"}
    program        -> {"owner_program", "extensions": [str, ...], "transfer_fee_bps",
                        optional "source_verified" (defaults to a standard token program)}
"""

from typing import Any, Protocol

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
STANDARD_TOKEN_PROGRAMS = frozenset({TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID})


class ChainDataSource(Protocol):
    async def resolve(self, contract_id: str) -> bool:
        """True if the address is an existing token mint."""
        ...

    async def token_metadata(self, contract_id: str) -> dict[str, Any]:
        ...

    async def holders(self, contract_id: str) -> dict[str, Any]:
        ...

    async def liquidity(self, contract_id: str) -> dict[str, Any]:
        ...

    async def security(self, contract_id: str) -> dict[str, Any]:
        ...

    async def trading(self, contract_id: str) -> dict[str, Any]:
        ...

    async def program(self, contract_id: str) -> dict[str, Any]:
        ...
