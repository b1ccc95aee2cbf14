"""
Unit tests for AlertManager.

Tests cover:
- Pattern results become alerts with lineage and a bucketed id
- Duplicates inside one dedup bucket are suppressed and refresh the stored alert
- Risk analyses alert only past the safety / rug-pull thresholds
- Priority from confidence and risk level
- Bounded history by capacity and age
- Archive and router hand-off
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from factories import MINT, OTHER_MINT, T0, FakeClock, make_analysis, make_result
from treasurex.framework.alert_manager import AlertManager
from treasurex.framework.lineage import generate_alert_id
from treasurex.framework.models import AlertKind, AlertPriority


def _manager(clock=None, **kwargs) -> AlertManager:
    router = MagicMock()
    router.dispatch = AsyncMock()
    kwargs.setdefault("metrics", MagicMock())
    return AlertManager(router, clock=clock or FakeClock(), **kwargs)


def _process(manager, *sources, context=None):
    async def run():
        return [await manager.process(source, context) for source in sources]

    return asyncio.run(run())


class TestPatternAlerts:
    def test_alert_built_from_result(self) -> None:
        manager = _manager()
        context = {"detector_name": "breakout", "config_hash": "abc123", "source": "price"}
        (alert,) = _process(manager, make_result(confidence=80.0), context=context)

        assert alert.id == generate_alert_id("breakout", MINT, T0, 300)
        assert alert.type is AlertKind.BREAKOUT
        assert alert.timestamp == T0
        assert alert.patterns[0].confidence == 80.0
        assert alert.lineage.detector_name == "breakout"
        assert alert.lineage.config_hash == "abc123"
        assert alert.lineage.source == "price"
        assert alert.lineage.correlation_id == "c0ffee0000000000"
        manager.router.dispatch.assert_awaited_once_with(alert)

    def test_cached_risk_attached(self) -> None:
        analysis = make_analysis()
        manager = _manager(risk_lookup=lambda contract_id: analysis if contract_id == MINT else None)
        first, second = _process(manager, make_result(), make_result(contract_id=OTHER_MINT))
        assert first.risk is analysis
        assert second.risk is None

    def test_non_alert_source_rejected(self) -> None:
        with pytest.raises(TypeError):
            _process(_manager(), {"type": "breakout"})


class TestDeduplication:
    def test_same_bucket_suppressed(self) -> None:
        manager = _manager()
        first, second = _process(
            manager, make_result(confidence=75.0), make_result(confidence=88.0, detected_at=T0 + 50)
        )
        assert second.id == first.id
        assert second.confidence == 88.0
        assert second.timestamp == T0 + 50
        assert manager.router.dispatch.await_count == 1
        assert len(manager.history()) == 1
        manager._metrics.increment.assert_any_call("AlertsSuppressed")

    def test_lower_confidence_keeps_stored_max(self) -> None:
        manager = _manager()
        _, refreshed = _process(manager, make_result(confidence=90.0), make_result(confidence=70.0, detected_at=T0 + 10))
        assert refreshed.confidence == 90.0

    def test_next_bucket_is_new_alert(self) -> None:
        manager = _manager()
        first, second = _process(manager, make_result(), make_result(detected_at=T0 + 300))
        assert first.id != second.id
        assert manager.router.dispatch.await_count == 2

    def test_kinds_and_contracts_not_merged(self) -> None:
        manager = _manager()
        alerts = _process(
            manager,
            make_result(AlertKind.BREAKOUT),
            make_result(AlertKind.WHALE),
            make_result(AlertKind.BREAKOUT, contract_id=OTHER_MINT),
        )
        assert len({a.id for a in alerts}) == 3


class TestRiskAlerts:
    def test_safe_contract_no_alert(self) -> None:
        manager = _manager()
        assert _process(manager, make_analysis(safety_score=80.0, rug_pull_risk=10.0)) == [None]
        manager.router.dispatch.assert_not_awaited()

    def test_low_safety_score_alerts(self) -> None:
        (alert,) = _process(_manager(), make_analysis(safety_score=40.0, rug_pull_risk=30.0, risk_level="high"))
        assert alert.type is AlertKind.RISK
        assert alert.confidence == 60.0
        assert alert.priority is AlertPriority.HIGH
        assert alert.patterns == ()
        assert alert.lineage.detector_name == "risk-scorer"
        assert alert.lineage.source == "scan"

    def test_rug_pull_risk_alerts(self) -> None:
        (alert,) = _process(_manager(), make_analysis(safety_score=80.0, rug_pull_risk=75.0))
        assert alert.confidence == 75.0
        assert alert.priority is AlertPriority.NORMAL

    def test_threshold_boundaries(self) -> None:
        manager = _manager()
        at_score, at_rug = _process(
            manager,
            make_analysis(safety_score=50.0, rug_pull_risk=0.0),
            make_analysis(contract_id=OTHER_MINT, safety_score=90.0, rug_pull_risk=70.0),
        )
        assert at_score is not None
        assert at_rug is not None


class TestPriority:
    @pytest.mark.parametrize(
        "confidence, expected",
        [(90.0, AlertPriority.HIGH), (85.0, AlertPriority.HIGH), (70.0, AlertPriority.NORMAL), (59.9, AlertPriority.LOW)],
    )
    def test_by_confidence(self, confidence, expected) -> None:
        (alert,) = _process(_manager(), make_result(confidence=confidence))
        assert alert.priority is expected

    def test_high_risk_contract_raises_priority(self) -> None:
        risky = make_analysis(safety_score=30.0, risk_level="high")
        (alert,) = _process(_manager(risk_lookup=lambda _: risky), make_result(confidence=50.0))
        assert alert.priority is AlertPriority.HIGH


class TestHistory:
    def test_capacity_evicts_oldest(self) -> None:
        manager = _manager(history_capacity=2)
        alerts = _process(manager, *(make_result(detected_at=T0 + i * 300) for i in range(3)))
        assert [a.id for a in manager.history()] == [a.id for a in alerts[1:]]
        assert manager.get(alerts[0].id) is None

    def test_age_eviction(self) -> None:
        clock = FakeClock()
        manager = _manager(clock=clock, history_max_age_seconds=3600)
        _process(manager, make_result())
        clock.advance(3601)
        assert manager.history() == []

    def test_evicted_duplicate_alerts_again(self) -> None:
        clock = FakeClock()
        manager = _manager(clock=clock, history_max_age_seconds=60)
        _process(manager, make_result())
        clock.advance(61)
        _process(manager, make_result(detected_at=T0 + 50))
        assert manager.router.dispatch.await_count == 2

    def test_invalid_settings(self) -> None:
        with pytest.raises(ValueError):
            _manager(dedup_bucket_seconds=0)
        with pytest.raises(ValueError):
            _manager(history_capacity=0)


class TestArchive:
    def test_new_alert_archived(self) -> None:
        archive = MagicMock()
        manager = _manager(archive=archive)
        (alert,) = _process(manager, make_result())
        archive.put.assert_called_once_with(alert)

    def test_duplicate_not_archived_twice(self) -> None:
        archive = MagicMock()
        manager = _manager(archive=archive)
        _process(manager, make_result(), make_result(detected_at=T0 + 1))
        assert archive.put.call_count == 1
