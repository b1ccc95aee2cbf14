"""
Contract risk scorer.

analyze(contract_id) runs the six sub-analyses concurrently, each under its
own timeout, and scores the result. Any failure fails the whole scan with
AnalysisError; there is no partial analysis.

Concurrency:
- One in-flight computation per contract; concurrent callers join it
- Callers await the computation through asyncio.shield, so a cancelled caller
  never cancels the scan that populates the cache
- Fresh analyses are cached for `cache_ttl_seconds`; failures are never cached
"""

import asyncio
import logging
import re
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence

from treasurex.framework.errors import AnalysisError
from treasurex.framework.lineage import hash_config
from treasurex.framework.models import RiskAnalysis
from treasurex.scanner import analyzers, scoring
from treasurex.scanner.bytecode import BytecodeClassifier, default_classifiers
from treasurex.scanner.chain_source import ChainDataSource

if TYPE_CHECKING:
    from treasurex.runtime.metrics_publisher import MetricsPublisher

logger = logging.getLogger(__name__)

# Solana addresses are base58-encoded 32-byte keys.
_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def is_valid_address(contract_id: str) -> bool:
    return isinstance(contract_id, str) and bool(_ADDRESS_RE.match(contract_id))


class ContractRiskScorer:
    """
    Scores contracts on demand with caching and request coalescing.

    Usage:
        scorer = ContractRiskScorer(SolanaRpcSource(rpc_url), config=risk_config)
        analysis = await scorer.analyze("So11111111111111111111111111111111111111112")
        scorer.cached(contract_id)   # fresh analysis or None
    """

    def __init__(
        self,
        source: ChainDataSource,
        config: Optional[Mapping[str, Any]] = None,
        classifiers: Optional[Sequence[BytecodeClassifier]] = None,
        metrics: Optional["MetricsPublisher"] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            source: Chain data access
            config: Risk config: scoring overrides plus cache_ttl_seconds,
                    sub_analysis_timeout_seconds, known_rugs, wallet thresholds
            classifiers: Bytecode classifiers (defaults to owner + signature)
            metrics: Optional MetricsPublisher
            clock: Epoch-seconds clock
        """
        config = dict(config or {})
        self.source = source
        self.params = scoring.scoring_params(config)
        self.cache_ttl_seconds = float(config.get("cache_ttl_seconds", 300.0))
        self.sub_analysis_timeout = float(config.get("sub_analysis_timeout_seconds", 10.0))
        self.known_rugs = frozenset(config.get("known_rugs") or ())
        self.thresholds = analyzers.WalletThresholds(
            **{
                key: config[key]
                for key in ("fresh_wallet_age_seconds", "real_wallet_min_tx", "whale_pct", "suspicious_pct")
                if key in config
            }
        )
        self.classifiers = list(classifiers) if classifiers is not None else default_classifiers()
        self.config_hash = hash_config(self.params)
        self._metrics = metrics
        self._clock = clock
        self._cache: dict[str, tuple[RiskAnalysis, float]] = {}
        self._in_flight: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def analyze(self, contract_id: str) -> RiskAnalysis:
        """
        Return a fresh analysis for ``contract_id``.

        Raises:
            AnalysisError: Unresolvable contract, or a sub-analysis failed or
                           timed out
        """
        cached = self.cached(contract_id)
        if cached is not None:
            return cached
        task = self._in_flight.get(contract_id)
        if task is None:
            task = asyncio.create_task(self._compute(contract_id), name=f"scan-{contract_id}")
            task.add_done_callback(lambda t, cid=contract_id: self._on_done(cid, t))
            self._in_flight[contract_id] = task
        else:
            logger.debug("Joining in-flight scan | contract=%s", contract_id)
        return await asyncio.shield(task)

    async def request_scan(self, contract_id: str) -> RiskAnalysis:
        """Scan-trigger entry point; a cancelled caller leaves the scan running."""
        try:
            return await self.analyze(contract_id)
        except asyncio.CancelledError:
            logger.info("Scan caller cancelled, scan continues | contract=%s", contract_id)
            raise

    def cached(self, contract_id: str) -> Optional[RiskAnalysis]:
        """The cached analysis if still fresh; stale entries are dropped."""
        entry = self._cache.get(contract_id)
        if entry is None:
            return None
        analysis, expires_at = entry
        if self._clock() >= expires_at:
            del self._cache[contract_id]
            return None
        return analysis

    def invalidate(self, contract_id: str) -> None:
        self._cache.pop(contract_id, None)

    def in_flight(self) -> list[str]:
        return list(self._in_flight)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _on_done(self, contract_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(contract_id) is task:
            del self._in_flight[contract_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._increment("ScansFailed")
            logger.warning("Scan failed | contract=%s | error=%s", contract_id, exc)

    async def _compute(self, contract_id: str) -> RiskAnalysis:
        if not is_valid_address(contract_id):
            raise AnalysisError(contract_id, "not a valid address")
        started = self._clock()
        if not await self._bounded("resolve", contract_id, self.source.resolve(contract_id)):
            raise AnalysisError(contract_id, "contract not found on-chain")

        now = self._clock()
        max_tax = float(self.params["max_tax_pct"])
        token, holders, liquidity, flags, trading, bytecode = await self._gather(
            contract_id,
            {
                "token_metadata": analyzers.analyze_token(self.source, contract_id),
                "holder_distribution": analyzers.analyze_holders(self.source, contract_id, now, self.thresholds),
                "liquidity": analyzers.analyze_liquidity(self.source, contract_id),
                "security_flags": analyzers.analyze_security(self.source, contract_id, max_tax),
                "trading_pattern": analyzers.analyze_trading(self.source, contract_id),
                "bytecode": analyzers.analyze_bytecode(self.source, contract_id, self.classifiers),
            },
        )
        flags = replace(
            flags,
            malicious_code=analyzers.has_malicious_code(bytecode),
            abnormal_tax_rate=flags.abnormal_tax_rate
            or max(trading.buy_tax_pct, trading.sell_tax_pct) > max_tax,
        )

        if contract_id in self.known_rugs:
            score = 0.0
            logger.warning("Known rug contract | contract=%s", contract_id)
        else:
            sub_scores = {
                "token": scoring.token_score(token),
                "holders": scoring.holder_score(holders),
                "liquidity": scoring.liquidity_score(liquidity, self.params),
                "trading": scoring.trading_score(trading, self.params),
                "bytecode": scoring.bytecode_score(bytecode),
            }
            score = scoring.safety_score(sub_scores, flags, self.params)

        analysis = RiskAnalysis(
            contract_id=contract_id,
            safety_score=score,
            token_metrics=token,
            holder_metrics=holders,
            liquidity_metrics=liquidity,
            security_flags=flags,
            trading_metrics=trading,
            bytecode_metrics=bytecode,
            risk_breakdown=scoring.risk_breakdown(score, holders, liquidity, trading, bytecode, self.params),
            computed_at=self._clock(),
        )
        self._cache[contract_id] = (analysis, analysis.computed_at + self.cache_ttl_seconds)
        self._increment("ScansCompleted")
        logger.info(
            "Scan completed | contract=%s | safety_score=%.2f | risk_level=%s | flags=%s | elapsed=%.2fs",
            contract_id,
            score,
            analysis.risk_breakdown.risk_level,
            flags.active(),
            analysis.computed_at - started,
        )
        return analysis

    async def _gather(self, contract_id: str, steps: Mapping[str, Awaitable[Any]]) -> list[Any]:
        """Run every step concurrently; the first failure cancels the rest."""
        tasks = [
            asyncio.ensure_future(self._bounded(name, contract_id, step)) for name, step in steps.items()
        ]
        try:
            return list(await asyncio.gather(*tasks))
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def _bounded(self, name: str, contract_id: str, step: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(step, timeout=self.sub_analysis_timeout)
        except asyncio.TimeoutError as exc:
            raise AnalysisError(
                contract_id, f"{name} timed out after {self.sub_analysis_timeout:.1f}s"
            ) from exc
        except AnalysisError:
            raise
        except Exception as exc:
            raise AnalysisError(contract_id, f"{name} failed: {exc}") from exc

    def _increment(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.increment(name)


def contracts_to_rescan(scorer: ContractRiskScorer, contracts: Iterable[str]) -> list[str]:
    """Contracts without a fresh cached analysis and no scan in flight."""
    in_flight = set(scorer.in_flight())
    return [c for c in contracts if c not in in_flight and scorer.cached(c) is None]
