"""
SignalService: the engine's outward-facing operations.

    request_scan(address)                       -> RiskAnalysis | AnalysisError
    subscribe(subscriber, contract, options)    -> subscription id
    unsubscribe(subscription_id)                -> bool
    expire_subscriber(subscriber)               -> removed count
"""

import asyncio
import logging
from typing import Any, Mapping, Optional, Sequence

from treasurex.connectors.feed_connector import FeedConnector
from treasurex.framework.models import RiskAnalysis
from treasurex.framework.pipeline_runner import PipelineRunner
from treasurex.framework.rate_limiter import RateLimiter
from treasurex.framework.subscription_registry import SubscriptionRegistry
from treasurex.scanner.risk_scorer import ContractRiskScorer

logger = logging.getLogger(__name__)


class SignalService:
    """
    Facade over the scorer, registry and feed connectors.

    Usage:
        service = manager.service
        analysis = await service.request_scan(mint)
        sub_id = await service.subscribe("user-1", mint, {"min_confidence": 80})
    """

    def __init__(
        self,
        scorer: ContractRiskScorer,
        registry: SubscriptionRegistry,
        runner: PipelineRunner,
        rate_limiter: RateLimiter,
        connectors: Sequence[FeedConnector] = (),
    ):
        self.scorer = scorer
        self.registry = registry
        self.runner = runner
        self.rate_limiter = rate_limiter
        self.connectors = list(connectors)

    async def request_scan(self, address: str) -> RiskAnalysis:
        """
        Scan a contract, serving a fresh cached analysis when one exists.

        A risky result is also fed to the AlertManager. Cancelling the caller
        does not cancel the underlying scan.

        Raises:
            AnalysisError: The contract could not be fully analyzed
        """
        analysis = await self.scorer.request_scan(address)
        await self.runner.handle_analysis(analysis)
        return analysis

    async def subscribe(
        self, subscriber_id: str, contract_id: str, options: Optional[Mapping[str, Any]] = None
    ) -> str:
        """
        Register (or update) a subscription and start watching the contract.

        Raises:
            ConfigError: Invalid options; nothing is registered
        """
        watched = self.registry.contracts()
        subscription_id = self.registry.subscribe(subscriber_id, contract_id, options)
        if contract_id not in watched and self.connectors:
            await asyncio.gather(*(c.watch([contract_id]) for c in self.connectors))
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.registry.unsubscribe(subscription_id)

    def expire_subscriber(self, subscriber_id: str) -> int:
        """Drop a subscriber's subscriptions and any alerts still queued for it."""
        removed = self.registry.expire_subscriber(subscriber_id)
        discarded = self.rate_limiter.discard_subscriber(subscriber_id)
        if discarded:
            logger.info("Deferred alerts discarded | subscriber=%s | count=%d", subscriber_id, discarded)
        return removed
