"""
Unit tests for ContractRiskScorer and the scan sub-analyses.

Tests cover:
- End-to-end scoring of a healthy and a flagged mint
- Known rugs forced to score 0
- Invalid / unresolvable addresses raise AnalysisError and are not cached
- Sub-analysis failures and timeouts fail the whole scan
- Concurrent callers share one in-flight computation
- A cancelled caller does not cancel the scan
- Cache TTL and invalidation
- Wallet activity classification in analyze_holders()
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from factories import MINT, OTHER_MINT, T0, FakeClock
from treasurex.framework.errors import AnalysisError
from treasurex.scanner import analyzers
from treasurex.scanner.bytecode import SELL_DISABLED_SIG
from treasurex.scanner.chain_source import TOKEN_PROGRAM_ID
from treasurex.scanner.risk_scorer import ContractRiskScorer, contracts_to_rescan, is_valid_address

DAY = 86400.0


class FakeChainSource:
    """In-memory ChainDataSource describing one healthy mint."""

    def __init__(self, delay: float = 0.0, slow: tuple = (), failing: tuple = (), exists: bool = True):
        self.delay = delay
        self.slow = set(slow)
        self.failing = set(failing)
        self.exists = exists
        self.calls: dict[str, int] = {}
        self.security_data = {
            "mint_authority": None,
            "freeze_authority": None,
            "update_authority": None,
            "permanent_delegate": None,
            "transfer_fee_bps": 0,
        }
        self.program_data = {"owner_program": TOKEN_PROGRAM_ID, "extensions": [], "transfer_fee_bps": 0}
        self.trading_data = {
            "volume_24h_usd": 100_000,
            "price_change_24h": 5.0,
            "buys_24h": 100,
            "sells_24h": 100,
            "buy_tax_pct": 0.0,
            "sell_tax_pct": 0.0,
        }

    async def _step(self, name: str, value):
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if name in self.slow:
            await asyncio.sleep(10)
        if name in self.failing:
            raise RuntimeError(f"{name} unavailable")
        return value

    async def resolve(self, contract_id):
        return await self._step("resolve", self.exists)

    async def token_metadata(self, contract_id):
        return await self._step(
            "token_metadata",
            {"name": "Token", "symbol": "TKN", "total_supply": 1_000_000, "decimals": 6, "owner_program": TOKEN_PROGRAM_ID},
        )

    async def holders(self, contract_id):
        accounts = [
            {"address": f"Holder{i}", "amount": 10_000, "first_seen_at": T0 - 30 * DAY, "tx_count": 10}
            for i in range(20)
        ]
        return await self._step("holders", {"total_supply": 1_000_000, "accounts": accounts})

    async def liquidity(self, contract_id):
        return await self._step(
            "liquidity",
            {"total_liquidity_usd": 200_000, "market_cap_usd": 1_000_000, "pool_count": 2, "lp_locked": False},
        )

    async def security(self, contract_id):
        return await self._step("security", self.security_data)

    async def trading(self, contract_id):
        return await self._step("trading", self.trading_data)

    async def program(self, contract_id):
        return await self._step("program", self.program_data)


def _scorer(source, clock=None, **config) -> ContractRiskScorer:
    return ContractRiskScorer(source, config=config, metrics=MagicMock(), clock=clock or FakeClock())


class TestAddressValidation:
    def test_valid_addresses(self) -> None:
        assert is_valid_address(MINT)
        assert is_valid_address(OTHER_MINT)

    def test_invalid_addresses(self) -> None:
        assert not is_valid_address("badAddr")
        assert not is_valid_address("0" * 44)  # 0 is not base58
        assert not is_valid_address("")


class TestScoring:
    def test_healthy_mint(self) -> None:
        analysis = asyncio.run(_scorer(FakeChainSource()).analyze(MINT))
        assert analysis.contract_id == MINT
        assert analysis.safety_score == pytest.approx(95.0)
        assert analysis.risk_breakdown.risk_level == "low"
        assert analysis.security_flags.active() == []
        assert analysis.holder_metrics.real_wallet_pct == 100.0
        assert analysis.computed_at == T0

    def test_mint_authority_caps_score(self) -> None:
        source = FakeChainSource()
        source.security_data = {**source.security_data, "mint_authority": "Authority111"}
        analysis = asyncio.run(_scorer(source).analyze(MINT))
        assert analysis.safety_score <= 50.0
        assert analysis.risk_breakdown.risk_level == "high"
        assert analysis.security_flags.mint_authority_enabled

    def test_trading_restrictions_reported(self) -> None:
        source = FakeChainSource()
        source.trading_data = {**source.trading_data, "max_transaction": 5_000, "cooldown_seconds": 30}
        analysis = asyncio.run(_scorer(source).analyze(MINT))
        assert analysis.trading_metrics.max_transaction == 5_000.0
        assert analysis.trading_metrics.cooldown_seconds == 30.0
        assert analysis.risk_breakdown.honeypot_risk == pytest.approx(15.0)
        assert analysis.bytecode_metrics.source_verified is True
        assert analysis.safety_score < 95.0

    def test_honeypot_extension_sets_malicious_code(self) -> None:
        source = FakeChainSource()
        source.program_data = {**source.program_data, "extensions": ["transferHook"]}
        analysis = asyncio.run(_scorer(source).analyze(MINT))
        assert analysis.bytecode_metrics.malicious_patterns == (SELL_DISABLED_SIG,)
        assert analysis.security_flags.malicious_code
        assert analysis.safety_score <= 50.0

    def test_transfer_fee_sets_abnormal_tax(self) -> None:
        source = FakeChainSource()
        source.security_data = {**source.security_data, "transfer_fee_bps": 1500}
        analysis = asyncio.run(_scorer(source).analyze(MINT))
        assert analysis.security_flags.abnormal_tax_rate

    def test_known_rug_scores_zero(self) -> None:
        analysis = asyncio.run(_scorer(FakeChainSource(), known_rugs=[MINT]).analyze(MINT))
        assert analysis.safety_score == 0.0
        assert analysis.risk_breakdown.risk_level == "high"

    def test_metrics_counted(self) -> None:
        scorer = _scorer(FakeChainSource())
        asyncio.run(scorer.analyze(MINT))
        scorer._metrics.increment.assert_called_once_with("ScansCompleted")


class TestScanFailures:
    def test_bad_address_raises_without_io(self) -> None:
        source = FakeChainSource()
        scorer = _scorer(source)
        with pytest.raises(AnalysisError, match="not a valid address"):
            asyncio.run(scorer.analyze("badAddr"))
        assert source.calls == {}
        assert scorer.cached("badAddr") is None

    def test_unknown_contract(self) -> None:
        scorer = _scorer(FakeChainSource(exists=False))
        with pytest.raises(AnalysisError, match="not found"):
            asyncio.run(scorer.analyze(MINT))
        assert scorer.cached(MINT) is None

    def test_sub_analysis_failure_fails_scan(self) -> None:
        scorer = _scorer(FakeChainSource(failing=("trading",)))
        with pytest.raises(AnalysisError, match="trading_pattern failed"):
            asyncio.run(scorer.analyze(MINT))
        assert scorer.cached(MINT) is None

    def test_sub_analysis_timeout(self) -> None:
        scorer = _scorer(FakeChainSource(slow=("holders",)), sub_analysis_timeout_seconds=0.05)
        with pytest.raises(AnalysisError, match="holder_distribution timed out"):
            asyncio.run(scorer.analyze(MINT))
        assert scorer.in_flight() == []

    def test_failures_are_not_cached(self) -> None:
        source = FakeChainSource(failing=("liquidity",))
        scorer = _scorer(source)

        async def run():
            with pytest.raises(AnalysisError):
                await scorer.analyze(MINT)
            source.failing.clear()
            return await scorer.analyze(MINT)

        assert asyncio.run(run()).contract_id == MINT
        assert source.calls["resolve"] == 2
        scorer._metrics.increment.assert_any_call("ScansFailed")


class TestConcurrency:
    def test_concurrent_callers_share_one_scan(self) -> None:
        source = FakeChainSource(delay=0.02)
        scorer = _scorer(source)

        async def run():
            return await asyncio.gather(*(scorer.analyze(MINT) for _ in range(5)))

        results = asyncio.run(run())
        assert source.calls == {
            "resolve": 1,
            "token_metadata": 1,
            "holders": 1,
            "liquidity": 1,
            "security": 1,
            "trading": 1,
            "program": 1,
        }
        assert all(r is results[0] for r in results)

    def test_concurrent_failure_reaches_every_caller(self) -> None:
        scorer = _scorer(FakeChainSource(delay=0.02, exists=False))

        async def run():
            return await asyncio.gather(*(scorer.analyze(MINT) for _ in range(3)), return_exceptions=True)

        results = asyncio.run(run())
        assert all(isinstance(r, AnalysisError) for r in results)

    def test_cancelled_caller_does_not_cancel_scan(self) -> None:
        source = FakeChainSource(delay=0.02)
        scorer = _scorer(source)

        async def run():
            caller = asyncio.create_task(scorer.request_scan(MINT))
            await asyncio.sleep(0.005)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller
            return await scorer.analyze(MINT)

        analysis = asyncio.run(run())
        assert analysis.contract_id == MINT
        assert source.calls["resolve"] == 1
        assert scorer.cached(MINT) is analysis


class TestCache:
    def test_fresh_analysis_served_from_cache(self) -> None:
        source = FakeChainSource()
        scorer = _scorer(source)

        async def run():
            first = await scorer.analyze(MINT)
            second = await scorer.analyze(MINT)
            return first, second

        first, second = asyncio.run(run())
        assert first is second
        assert source.calls["resolve"] == 1

    def test_stale_analysis_recomputed(self) -> None:
        source = FakeChainSource()
        clock = FakeClock()
        scorer = _scorer(source, clock=clock, cache_ttl_seconds=300)

        asyncio.run(scorer.analyze(MINT))
        clock.advance(299)
        assert scorer.cached(MINT) is not None
        clock.advance(1)
        assert scorer.cached(MINT) is None
        asyncio.run(scorer.analyze(MINT))
        assert source.calls["resolve"] == 2

    def test_invalidate(self) -> None:
        scorer = _scorer(FakeChainSource())
        asyncio.run(scorer.analyze(MINT))
        scorer.invalidate(MINT)
        assert scorer.cached(MINT) is None

    def test_contracts_to_rescan_skips_fresh(self) -> None:
        scorer = _scorer(FakeChainSource())
        asyncio.run(scorer.analyze(MINT))
        assert contracts_to_rescan(scorer, [MINT, OTHER_MINT]) == [OTHER_MINT]


class TestHolderAnalysis:
    def _source(self, accounts):
        source = MagicMock()

        async def holders(contract_id):
            return {"total_supply": 1_000, "accounts": accounts}

        source.holders = holders
        return source

    def test_wallet_classes(self) -> None:
        accounts = [
            {"address": "Whale", "amount": 300, "first_seen_at": T0 - 365 * DAY, "tx_count": 40},
            {"address": "FreshBig", "amount": 50, "first_seen_at": T0 - DAY, "tx_count": 2},
            {"address": "FreshSmall", "amount": 5, "first_seen_at": T0 - DAY, "tx_count": 1},
            {"address": "Quiet", "amount": 20, "first_seen_at": None, "tx_count": 1},
        ]
        metrics = asyncio.run(
            analyzers.analyze_holders(self._source(accounts), MINT, T0, analyzers.WalletThresholds())
        )
        assert metrics.total_holders == 4
        assert metrics.top1_pct == 30.0
        assert metrics.top10_pct == 37.5
        assert metrics.fresh_wallet_ratio == 0.5
        assert metrics.real_wallet_pct == 25.0
        assert metrics.whale_wallets == ("Whale", "FreshBig")
        assert metrics.suspicious_wallets == ("FreshBig",)

    def test_no_holders(self) -> None:
        metrics = asyncio.run(analyzers.analyze_holders(self._source([]), MINT, T0, analyzers.WalletThresholds()))
        assert metrics.total_holders == 0
