"""
Unit tests for PatternEngine and ModuleRegistry.

Tests cover:
- Events routed only to detectors consuming their source
- min_confidence filtering
- Detector failures isolated and logged
- sweep() drops emptied windows
- ModuleRegistry loads active detectors in config order
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from factories import MINT, OTHER_MINT, T0, make_event
from treasurex.detectors.breakout import BreakoutDetector
from treasurex.detectors.whale import WhaleDetector
from treasurex.framework.base_detector import BaseDetector
from treasurex.framework.models import AlertKind, EventSource
from treasurex.framework.module_registry import ModuleRegistry
from treasurex.framework.pattern_engine import PatternEngine

BREAKOUT_EVENTS = [
    dict(received_at=T0, open=100.0, price=102.0, volume=3000.0, baseline_volume=1000.0),
    dict(received_at=T0 + 20, open=102.0, price=104.04, volume=3000.0, baseline_volume=1000.0),
    dict(received_at=T0 + 40, open=104.04, price=106.641, volume=3000.0, baseline_volume=1000.0),
]


class ExplodingDetector(BaseDetector):
    kind = AlertKind.WHALE
    detector_name = "exploding"
    sources = frozenset({EventSource.PRICE})

    def horizon_seconds(self, params):
        return 60.0

    def evaluate(self, window, params):
        raise RuntimeError("boom")


def _process_all(engine, events):
    async def run():
        results = []
        for event in events:
            results.append(await engine.process(event))
        return results

    return asyncio.run(run())


class TestPatternEngine:
    def setup_method(self) -> None:
        self.metrics = MagicMock()
        self.engine = PatternEngine(
            {"breakout": BreakoutDetector(), "whale": WhaleDetector()}, metrics=self.metrics
        )

    def test_breakout_scenario_emits_once(self) -> None:
        results = _process_all(self.engine, [make_event(**kw) for kw in BREAKOUT_EVENTS])
        assert results[0] == [] and results[1] == []
        assert len(results[2]) == 1
        assert results[2][0].type is AlertKind.BREAKOUT
        self.metrics.increment.assert_called_once_with("PatternsDetected")

    def test_price_events_do_not_reach_whale_windows(self) -> None:
        _process_all(self.engine, [make_event(**BREAKOUT_EVENTS[0])])
        assert self.engine.window(MINT, "breakout") is not None
        assert self.engine.window(MINT, "whale") is None

    def test_windows_per_contract(self) -> None:
        _process_all(self.engine, [make_event(contract_id=MINT), make_event(contract_id=OTHER_MINT)])
        assert len(self.engine.window(MINT, "breakout")) == 1
        assert len(self.engine.window(OTHER_MINT, "breakout")) == 1

    def test_min_confidence_filters_results(self) -> None:
        engine = PatternEngine({"breakout": BreakoutDetector()}, {"breakout": {"min_confidence": 80.0}})
        results = _process_all(engine, [make_event(**kw) for kw in BREAKOUT_EVENTS])
        assert results[2] == []

    def test_config_overrides_and_hashes(self) -> None:
        engine = PatternEngine({"breakout": BreakoutDetector()}, {"breakout": {"price_change": 0.07}})
        assert engine.params_for("breakout")["price_change"] == 0.07
        assert engine.config_hash_for("breakout") != self.engine.config_hash_for("breakout")

    def test_detector_for_kind(self) -> None:
        assert self.engine.detector_for_kind(AlertKind.WHALE) == "whale"
        assert self.engine.detector_for_kind(AlertKind.DISTRIBUTION) is None

    def test_failing_detector_isolated(self) -> None:
        engine = PatternEngine({"exploding": ExplodingDetector(), "breakout": BreakoutDetector()})
        results = _process_all(engine, [make_event(**kw) for kw in BREAKOUT_EVENTS])
        assert len(results[2]) == 1

    def test_sweep_removes_stale_windows(self) -> None:
        _process_all(self.engine, [make_event(received_at=T0)])
        assert self.engine.sweep(T0 + 60) == 0
        assert self.engine.sweep(T0 + 5 * 3600) == 1
        assert self.engine.window(MINT, "breakout") is None


class TestModuleRegistry:
    def setup_method(self) -> None:
        self.loader = MagicMock()
        self.loader.get_active_patterns.return_value = ["whale", "breakout"]
        self.loader.get_pattern_config.return_value = {}

    def test_loads_active_in_order(self) -> None:
        detectors = ModuleRegistry(self.loader).load_active_modules()
        assert list(detectors) == ["whale", "breakout"]
        assert isinstance(detectors["whale"], WhaleDetector)

    def test_instances_cached(self) -> None:
        registry = ModuleRegistry(self.loader)
        assert registry.get_detector("whale") is registry.get_detector("whale")

    def test_unknown_pattern_raises(self) -> None:
        self.loader.get_active_patterns.return_value = ["orderflow"]
        with pytest.raises(KeyError):
            ModuleRegistry(self.loader).load_active_modules()

    def test_class_override(self) -> None:
        self.loader.get_pattern_config.return_value = {"class": "treasurex.detectors.whale.WhaleDetector"}
        assert isinstance(ModuleRegistry(self.loader).get_detector("breakout"), WhaleDetector)

    def test_non_detector_class_rejected(self) -> None:
        self.loader.get_pattern_config.return_value = {"class": "collections.OrderedDict"}
        with pytest.raises(TypeError):
            ModuleRegistry(self.loader).get_detector("breakout")

    def test_missing_class_raises_import_error(self) -> None:
        self.loader.get_pattern_config.return_value = {"class": "treasurex.detectors.whale.NoSuchDetector"}
        with pytest.raises(ImportError):
            ModuleRegistry(self.loader).get_detector("whale")
