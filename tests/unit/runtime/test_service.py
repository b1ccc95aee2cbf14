"""
Unit tests for SignalService.

Tests cover:
- request_scan() returns the analysis and forwards it for alerting
- AnalysisError surfaces to the caller and nothing is alerted
- subscribe() starts watching new contracts only
- Invalid options raise ConfigError without watching anything
- expire_subscriber() drops subscriptions and deferred alerts
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from factories import MINT, OTHER_MINT, T0, FakeClock, make_alert, make_analysis
from treasurex.framework.errors import AnalysisError, ConfigError
from treasurex.framework.rate_limiter import RateLimiter
from treasurex.framework.subscription_registry import SubscriptionRegistry
from treasurex.runtime.service import SignalService


class TestSignalService:
    def setup_method(self) -> None:
        self.scorer = MagicMock()
        self.scorer.request_scan = AsyncMock(return_value=make_analysis())
        self.runner = MagicMock()
        self.runner.handle_analysis = AsyncMock()
        self.registry = SubscriptionRegistry(clock=FakeClock())
        self.limiter = RateLimiter(max_alerts=1, window_seconds=300)
        self.connector = MagicMock()
        self.connector.watch = AsyncMock()
        self.service = SignalService(self.scorer, self.registry, self.runner, self.limiter, [self.connector])

    def test_request_scan(self) -> None:
        analysis = asyncio.run(self.service.request_scan(MINT))
        assert analysis.contract_id == MINT
        self.scorer.request_scan.assert_awaited_once_with(MINT)
        self.runner.handle_analysis.assert_awaited_once_with(analysis)

    def test_request_scan_error_surfaces(self) -> None:
        self.scorer.request_scan.side_effect = AnalysisError("not-a-mint", "invalid address")
        with pytest.raises(AnalysisError):
            asyncio.run(self.service.request_scan("not-a-mint"))
        self.runner.handle_analysis.assert_not_awaited()

    def test_subscribe_watches_new_contract_once(self) -> None:
        async def run():
            first = await self.service.subscribe("user-1", MINT)
            await self.service.subscribe("user-2", MINT)
            await self.service.subscribe("user-1", OTHER_MINT)
            return first

        sub_id = asyncio.run(run())
        assert self.registry.get(sub_id).subscriber_id == "user-1"
        assert [c.args[0] for c in self.connector.watch.await_args_list] == [[MINT], [OTHER_MINT]]

    def test_invalid_options(self) -> None:
        with pytest.raises(ConfigError):
            asyncio.run(self.service.subscribe("user-1", MINT, {"min_confidence": 150}))
        self.connector.watch.assert_not_awaited()
        assert len(self.registry) == 0

    def test_unsubscribe(self) -> None:
        sub_id = asyncio.run(self.service.subscribe("user-1", MINT))
        assert self.service.unsubscribe(sub_id) is True
        assert self.service.unsubscribe(sub_id) is False

    def test_expire_subscriber_discards_deferred(self) -> None:
        sub_id = asyncio.run(self.service.subscribe("user-1", MINT))
        self.limiter.defer(self.registry.get(sub_id), make_alert(), T0)

        assert self.service.expire_subscriber("user-1") == 1
        assert self.limiter.pending_count() == 0
        assert self.registry.for_subscriber("user-1") == []
