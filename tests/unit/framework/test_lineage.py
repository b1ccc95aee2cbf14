"""
Unit tests for data lineage context, correlation IDs and alert ids.

Verifies that:
1. Correlation IDs are generated deterministically
2. Configuration hashes are reproducible
3. Alert ids collapse detections inside one dedup bucket
4. LineageContext dataclass holds all required fields
"""

import json
import os
from unittest.mock import patch

import pytest

from treasurex.framework.lineage import (
    LineageContext,
    dedup_bucket,
    generate_alert_id,
    generate_correlation_id,
    get_pipeline_version,
    hash_config,
)

MINT = "So11111111111111111111111111111111111111112"


def _lineage(**overrides) -> LineageContext:
    fields = {
        "correlation_id": "a3f8c9e2b1d45f67",
        "source": "price",
        "detector_name": "breakout",
        "config_hash": "abc123def456",
        "processed_at": 1_700_000_000.0,
        "pipeline_version": "a3f8c9e2b",
    }
    fields.update(overrides)
    return LineageContext(**fields)


class TestCorrelationIdGeneration:
    """Test correlation ID generation."""

    def test_correlation_id_deterministic(self):
        """Same inputs always produce same correlation ID."""
        cid1 = generate_correlation_id("price", MINT, 1_700_000_000.0)
        cid2 = generate_correlation_id("price", MINT, 1_700_000_000.0)

        assert cid1 == cid2
        assert len(cid1) == 16  # First 16 chars of sha256

    def test_correlation_id_different_inputs(self):
        """Different inputs produce different correlation IDs."""
        cid_price = generate_correlation_id("price", MINT, 1_700_000_000.0)
        cid_whale = generate_correlation_id("whale_transfer", MINT, 1_700_000_000.0)
        cid_later = generate_correlation_id("price", MINT, 1_700_000_001.0)

        assert cid_price != cid_whale
        assert cid_price != cid_later

    def test_correlation_id_format(self):
        """Correlation ID is lowercase hex string."""
        cid = generate_correlation_id("price", MINT, 1_700_000_000.0)

        assert isinstance(cid, str)
        assert all(c in "0123456789abcdef" for c in cid)


class TestConfigHashing:
    """Test configuration hashing for reproducibility."""

    def test_config_hash_deterministic(self):
        config = {"price_change": 0.05, "confirmations": 3, "timeframes": ["1m", "5m"]}
        assert hash_config(config) == hash_config(config)

    def test_config_hash_key_order_independent(self):
        config_a = {"price_change": 0.05, "confirmations": 3}
        config_b = {"confirmations": 3, "price_change": 0.05}
        assert hash_config(config_a) == hash_config(config_b)

    def test_config_hash_different_values(self):
        assert hash_config({"price_change": 0.05}) != hash_config({"price_change": 0.07})

    def test_config_hash_format(self):
        """Config hash is full SHA256 (64 hex chars)."""
        hash_val = hash_config({"key": "value"})
        assert len(hash_val) == 64
        assert all(c in "0123456789abcdef" for c in hash_val)


class TestAlertIds:
    """Test dedup buckets and alert id generation."""

    def test_same_bucket_same_id(self):
        a = generate_alert_id("breakout", MINT, 1_700_000_100.0, 300)
        b = generate_alert_id("breakout", MINT, 1_700_000_199.0, 300)
        assert a == b

    def test_next_bucket_new_id(self):
        # 1_700_000_100 / 300 = 5_666_667.0 exactly, so 99.9 is one bucket earlier
        a = generate_alert_id("breakout", MINT, 1_700_000_099.9, 300)
        b = generate_alert_id("breakout", MINT, 1_700_000_100.0, 300)
        assert a != b

    def test_kind_and_contract_change_id(self):
        base = generate_alert_id("breakout", MINT, 1_700_000_100.0, 300)
        assert generate_alert_id("whale", MINT, 1_700_000_100.0, 300) != base
        assert generate_alert_id("breakout", "other", 1_700_000_100.0, 300) != base

    def test_dedup_bucket_index(self):
        assert dedup_bucket(600.0, 300) == 2
        assert dedup_bucket(599.9, 300) == 1

    def test_dedup_bucket_rejects_non_positive(self):
        with pytest.raises(ValueError):
            dedup_bucket(1.0, 0)


class TestLineageContext:
    """Test LineageContext dataclass."""

    def test_lineage_context_creation(self):
        lineage = _lineage()

        assert lineage.correlation_id == "a3f8c9e2b1d45f67"
        assert lineage.source == "price"
        assert lineage.detector_name == "breakout"
        assert lineage.config_hash == "abc123def456"
        assert lineage.processed_at == 1_700_000_000.0
        assert lineage.pipeline_version == "a3f8c9e2b"

    def test_lineage_context_json_serializable(self):
        parsed = json.loads(json.dumps(_lineage(detector_name="risk-scorer").to_dict()))

        assert parsed["correlation_id"] == "a3f8c9e2b1d45f67"
        assert parsed["detector_name"] == "risk-scorer"

    def test_lineage_fields_complete(self):
        assert set(_lineage().to_dict()) == {
            "correlation_id",
            "source",
            "detector_name",
            "config_hash",
            "processed_at",
            "pipeline_version",
        }


class TestPipelineVersion:
    """Test pipeline version retrieval."""

    def test_pipeline_version_from_env(self):
        with patch.dict(os.environ, {"PIPELINE_VERSION": "abc123def456"}):
            assert get_pipeline_version() == "abc123def456"

    def test_pipeline_version_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_pipeline_version() == "dev"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
