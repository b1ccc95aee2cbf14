"""
ChainDataSource backed by Solana JSON-RPC and DexScreener.

RPC methods used:
- getAccountInfo (jsonParsed): mint info, authorities, Token-2022 extensions
- getTokenSupply: UI-adjusted total supply
- getTokenLargestAccounts: top holder accounts (at most 20)
- getSignaturesForAddress: holder account age and activity

DexScreener's token endpoint supplies liquidity, market cap, volume, price
change and buy/sell counts. Responses are memoized for a few seconds so one
scan's six sub-analyses share their requests.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

import httpx

from treasurex.framework.errors import TreasureXError

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_DEXSCREENER_URL = "https://api.dexscreener.com/latest/dex/tokens"


class RpcError(TreasureXError):
    """The RPC node or market data API returned an error."""


class SolanaRpcSource:
    """
    Async Solana data source.

    Usage:
        async with SolanaRpcSource(rpc_url) as source:
            await source.resolve(mint)
    """

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        dexscreener_url: str = DEFAULT_DEXSCREENER_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        holder_sample: int = 10,
        signature_limit: int = 100,
        memo_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            rpc_url: Solana JSON-RPC endpoint
            dexscreener_url: DexScreener token endpoint (mint appended)
            client: Shared httpx.AsyncClient (created and owned if omitted)
            timeout: Per-request timeout in seconds
            holder_sample: Top holder accounts inspected for wallet activity
            signature_limit: Signatures fetched per holder account
            memo_seconds: How long a response is shared between sub-analyses
            clock: Monotonic clock for memo expiry
        """
        self.rpc_url = rpc_url
        self.dexscreener_url = dexscreener_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.holder_sample = holder_sample
        self.signature_limit = signature_limit
        self.memo_seconds = memo_seconds
        self._clock = clock
        self._memo: dict[tuple[str, str], tuple[float, asyncio.Future]] = {}
        self._request_id = 0

    async def __aenter__(self) -> "SolanaRpcSource":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # ChainDataSource
    # ------------------------------------------------------------------

    async def resolve(self, contract_id: str) -> bool:
        account = await self._account(contract_id)
        if account is None:
            return False
        parsed = (account.get("data") or {}).get("parsed") or {}
        return parsed.get("type") == "mint"

    async def token_metadata(self, contract_id: str) -> dict[str, Any]:
        account, supply, pairs = await asyncio.gather(
            self._account(contract_id), self._supply(contract_id), self._pairs(contract_id)
        )
        info = _mint_info(account)
        metadata = _extension(info, "tokenMetadata")
        base_token = pairs[0].get("baseToken", {}) if pairs else {}
        return {
            "name": metadata.get("name") or base_token.get("name") or "",
            "symbol": metadata.get("symbol") or base_token.get("symbol") or "",
            "total_supply": float(supply.get("uiAmount") or 0.0),
            "decimals": int(info.get("decimals") or supply.get("decimals") or 0),
            "owner_program": (account or {}).get("owner", ""),
        }

    async def holders(self, contract_id: str) -> dict[str, Any]:
        largest, supply = await asyncio.gather(
            self._rpc("getTokenLargestAccounts", [contract_id]), self._supply(contract_id)
        )
        accounts = (largest or {}).get("value") or []
        sampled = accounts[: self.holder_sample]
        activity = await asyncio.gather(*(self._activity(acc["address"]) for acc in sampled))
        records = []
        for index, account in enumerate(accounts):
            first_seen, tx_count = activity[index] if index < len(sampled) else (None, 0)
            records.append(
                {
                    "address": account.get("address", ""),
                    "amount": float(account.get("uiAmount") or 0.0),
                    "first_seen_at": first_seen,
                    "tx_count": tx_count,
                }
            )
        return {"total_supply": float(supply.get("uiAmount") or 0.0), "accounts": records}

    async def liquidity(self, contract_id: str) -> dict[str, Any]:
        pairs = await self._pairs(contract_id)
        return {
            "total_liquidity_usd": sum(float((p.get("liquidity") or {}).get("usd") or 0.0) for p in pairs),
            "market_cap_usd": float(pairs[0].get("marketCap") or pairs[0].get("fdv") or 0.0) if pairs else 0.0,
            "pool_count": len(pairs),
            # DexScreener exposes no LP lock data.
            "lp_locked": False,
        }

    async def security(self, contract_id: str) -> dict[str, Any]:
        info = _mint_info(await self._account(contract_id))
        metadata = _extension(info, "tokenMetadata")
        delegate = _extension(info, "permanentDelegate")
        return {
            "mint_authority": info.get("mintAuthority"),
            "freeze_authority": info.get("freezeAuthority"),
            "update_authority": metadata.get("updateAuthority"),
            "permanent_delegate": delegate.get("delegate"),
            "transfer_fee_bps": _transfer_fee_bps(info),
        }

    async def trading(self, contract_id: str) -> dict[str, Any]:
        account, pairs = await asyncio.gather(self._account(contract_id), self._pairs(contract_id))
        fee_pct = _transfer_fee_bps(_mint_info(account)) / 100
        # SPL token programs enforce no per-transfer cap or cooldown.
        restrictions = {"max_transaction": None, "cooldown_seconds": 0.0}
        if not pairs:
            return {
                "volume_24h_usd": 0.0,
                "price_change_24h": 0.0,
                "buys_24h": 0,
                "sells_24h": 0,
                "buy_tax_pct": fee_pct,
                "sell_tax_pct": fee_pct,
                **restrictions,
            }
        top = pairs[0]
        txns = (top.get("txns") or {}).get("h24") or {}
        return {
            "volume_24h_usd": sum(float((p.get("volume") or {}).get("h24") or 0.0) for p in pairs),
            "price_change_24h": float((top.get("priceChange") or {}).get("h24") or 0.0),
            "buys_24h": int(txns.get("buys") or 0),
            "sells_24h": int(txns.get("sells") or 0),
            "buy_tax_pct": fee_pct,
            "sell_tax_pct": fee_pct,
            **restrictions,
        }

    async def program(self, contract_id: str) -> dict[str, Any]:
        account = await self._account(contract_id)
        info = _mint_info(account)
        return {
            "owner_program": (account or {}).get("owner", ""),
            "extensions": [ext.get("extension") for ext in info.get("extensions") or []],
            "transfer_fee_bps": _transfer_fee_bps(info),
        }

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _account(self, contract_id: str) -> Optional[dict[str, Any]]:
        result = await self._memoized(
            ("account", contract_id),
            lambda: self._rpc("getAccountInfo", [contract_id, {"encoding": "jsonParsed"}]),
        )
        return (result or {}).get("value")

    async def _supply(self, contract_id: str) -> dict[str, Any]:
        result = await self._memoized(("supply", contract_id), lambda: self._rpc("getTokenSupply", [contract_id]))
        return (result or {}).get("value") or {}

    async def _pairs(self, contract_id: str) -> list[dict[str, Any]]:
        async def fetch() -> list[dict[str, Any]]:
            resp = await self._client.get(f"{self.dexscreener_url}/{contract_id}")
            resp.raise_for_status()
            pairs = resp.json().get("pairs") or []
            solana = [p for p in pairs if p.get("chainId", "solana") == "solana"]
            return sorted(solana, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0.0), reverse=True)

        return await self._memoized(("pairs", contract_id), fetch)

    async def _activity(self, address: str) -> tuple[Optional[float], int]:
        """(oldest block time seen, signature count) for one holder account."""
        sigs = await self._rpc("getSignaturesForAddress", [address, {"limit": self.signature_limit}]) or []
        times = [s["blockTime"] for s in sigs if s.get("blockTime")]
        # A full page means the history goes back further than we looked.
        first_seen = min(times) if times and len(sigs) < self.signature_limit else None
        return first_seen, len(sigs)

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        resp = await self._client.post(
            self.rpc_url,
            json={"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params},
        )
        resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            raise RpcError(f"{method}: {body['error'].get('message', body['error'])}")
        return body.get("result")

    async def _memoized(self, key: tuple[str, str], fetch: Callable[[], Any]) -> Any:
        now = self._clock()
        for stale in [k for k, (expires, fut) in self._memo.items() if expires <= now and fut.done()]:
            del self._memo[stale]
        entry = self._memo.get(key)
        if entry is not None and entry[0] > now:
            return await asyncio.shield(entry[1])
        future = asyncio.ensure_future(fetch())
        self._memo[key] = (now + self.memo_seconds, future)
        future.add_done_callback(lambda done: self._forget_failed(key, done))
        return await asyncio.shield(future)

    def _forget_failed(self, key: tuple[str, str], future: asyncio.Future) -> None:
        """Evict a fetch that raised or was cancelled, so the next caller retries."""
        if not future.cancelled() and future.exception() is None:
            return
        entry = self._memo.get(key)
        if entry is not None and entry[1] is future:
            del self._memo[key]


def _mint_info(account: Optional[dict[str, Any]]) -> dict[str, Any]:
    return (((account or {}).get("data") or {}).get("parsed") or {}).get("info") or {}


def _extension(info: dict[str, Any], name: str) -> dict[str, Any]:
    for ext in info.get("extensions") or []:
        if ext.get("extension") == name:
            return ext.get("state") or {}
    return {}


def _transfer_fee_bps(info: dict[str, Any]) -> float:
    fee = _extension(info, "transferFeeConfig")
    current = fee.get("newerTransferFee") or fee.get("olderTransferFee") or {}
    return float(current.get("transferFeeBasisPoints") or 0.0)
