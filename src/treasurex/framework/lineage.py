"""
Data lineage tracking for the TreasureX signal engine.

Every alert is tagged with a LineageContext containing:
- correlation_id: Deterministic ID of the stream event that triggered the alert
- detector details: Which detector (or the risk scorer) produced it
- config hash: Reproducibility, same hash means identical detection parameters
- pipeline version: Git SHA for audit trail

The same hashing scheme produces alert ids: an alert id is the hash of
(alert kind, contract, dedup bucket), so repeated detections inside one bucket
collapse onto a single id.
"""

import hashlib
import json
import math
import os
from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class LineageContext:
    """
    Attached to every Alert as its lineage field.
    """

    correlation_id: str  # sha256(source+contract+server_ts)[:16] of the triggering event
    source: str  # "price" / "transaction" / "whale_transfer" / "scan"
    detector_name: str  # "breakout", "whale", ... or "risk-scorer"
    config_hash: str  # sha256(config) of the detector/scorer parameters
    processed_at: float  # epoch seconds of detection
    pipeline_version: str  # Git SHA or "dev", from env var PIPELINE_VERSION

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return asdict(self)


def generate_correlation_id(source: str, contract_id: str, server_ts: float) -> str:
    """
    Generate a deterministic correlation ID from stream event attributes.

    Same source + contract + server timestamp always produces the same ID,
    so any alert can be traced back to the event that triggered it.

    Args:
        source: Feed source name (e.g., "price", "whale_transfer")
        contract_id: Contract / mint address
        server_ts: Server timestamp of the event (epoch seconds)

    Returns:
        16-character hex string (sha256[:16])
    """
    combined = f"{source}:{contract_id}:{server_ts!r}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]


def dedup_bucket(timestamp: float, bucket_seconds: float) -> int:
    """Return the index of the fixed dedup bucket containing ``timestamp``."""
    if bucket_seconds <= 0:
        raise ValueError("bucket_seconds must be positive")
    return math.floor(timestamp / bucket_seconds)


def generate_alert_id(kind: str, contract_id: str, timestamp: float, bucket_seconds: float) -> str:
    """
    Generate the deterministic alert id for (kind, contract, dedup bucket).

    Two detections of the same kind for the same contract whose timestamps
    fall into the same bucket get the same id.

    Returns:
        16-character hex string (sha256[:16])
    """
    bucket = dedup_bucket(timestamp, bucket_seconds)
    combined = f"{kind}:{contract_id}:{bucket}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]


def hash_config(config: dict[str, Any]) -> str:
    """
    Hash a configuration dict for reproducibility tracking.

    Same config dict always produces same hash, regardless of key order.

    Args:
        config: Configuration dict (e.g., {"price_change": 0.05, "confirmations": 3})

    Returns:
        64-character hex string (full sha256)
    """
    json_str = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(json_str.encode("utf-8")).hexdigest()


def get_pipeline_version() -> str:
    """
    Get the pipeline version from environment or default to 'dev'.

    In CI/CD, set PIPELINE_VERSION to git commit SHA.
    """
    return os.getenv("PIPELINE_VERSION", "dev")
