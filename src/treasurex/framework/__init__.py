"""
Framework for modular pattern detection and alert dispatch.

TreasureX uses a plugin architecture where:
- BaseConnector: Standardizes feed integration (price, transaction, whale feeds)
- BaseDetector: Standardizes pattern detection (breakout, accumulation, ...)
- PatternEngine: Owns the sliding windows and evaluates detectors per event
- AlertManager: Deduplicates alerts and keeps bounded history
- AlertRouter: Fans alerts out by subscriber tier under per-subscriber rate limits
- SubscriptionRegistry: Who watches which contract
- ConfigLoader: Reads engine configuration from YAML + env + SSM
- ModuleRegistry: Dynamically loads active detectors
- PipelineRunner: Orchestrates the queue -> detector -> alert pipeline
  (import from treasurex.framework.pipeline_runner; it depends on the scanner)

Every alert carries a LineageContext to track:
- correlation_id: Deterministic ID of the stream event that triggered it
- detector_name: Which detector (or the risk scorer) produced it
- config_hash: Reproducibility, same hash means identical parameters
- pipeline_version: Git SHA for audit trail
"""

from treasurex.framework.alert_manager import AlertManager
from treasurex.framework.alert_router import AlertRouter
from treasurex.framework.alert_sink import AlertSink, LoggingSink
from treasurex.framework.base_connector import BaseConnector
from treasurex.framework.base_detector import BaseDetector
from treasurex.framework.config_loader import ConfigLoader
from treasurex.framework.lineage import LineageContext, generate_correlation_id, get_pipeline_version, hash_config
from treasurex.framework.module_registry import ModuleRegistry
from treasurex.framework.pattern_engine import PatternEngine
from treasurex.framework.rate_limiter import RateLimiter
from treasurex.framework.subscription_registry import SubscriptionRegistry

__all__ = [
    "AlertManager",
    "AlertRouter",
    "AlertSink",
    "BaseConnector",
    "BaseDetector",
    "ConfigLoader",
    "LineageContext",
    "LoggingSink",
    "ModuleRegistry",
    "PatternEngine",
    "RateLimiter",
    "SubscriptionRegistry",
    "generate_correlation_id",
    "get_pipeline_version",
    "hash_config",
]
