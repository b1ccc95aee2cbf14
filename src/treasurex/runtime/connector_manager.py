"""
ConnectorManager: builds the engine from configuration and runs the event loop.

This is the core orchestrator for the engine process:
1. Loads config/treasurex.yaml (plus env and SSM overrides) via ConfigLoader
2. Instantiates one FeedConnector per configured feed
3. Builds the pattern engine, risk scorer, subscription registry, alert router
   and alert manager, sharing one MetricsPublisher
4. Runs asyncio.gather(connector.stream(queue)..., runner.run(queue), metrics.run())

Connectors expose async stream() coroutines; PipelineRunner consumes the
shared queue. All run concurrently until shutdown().
"""

import asyncio
import logging
from typing import Any, Optional

from treasurex.connectors.feed_connector import FeedConnector
from treasurex.framework.alert_archive import AlertArchive
from treasurex.framework.alert_manager import AlertManager
from treasurex.framework.alert_router import AlertRouter
from treasurex.framework.alert_sink import AlertSink, LoggingSink
from treasurex.framework.config_loader import ConfigLoader
from treasurex.framework.models import EventSource, StreamEvent
from treasurex.framework.module_registry import ModuleRegistry
from treasurex.framework.pattern_engine import PatternEngine
from treasurex.framework.pipeline_runner import PipelineRunner
from treasurex.framework.rate_limiter import RateLimiter
from treasurex.framework.subscription_registry import SubscriptionRegistry
from treasurex.runtime.metrics_publisher import MetricsPublisher
from treasurex.runtime.service import SignalService
from treasurex.scanner.chain_source import ChainDataSource
from treasurex.scanner.risk_scorer import ContractRiskScorer
from treasurex.scanner.solana_source import DEFAULT_RPC_URL, SolanaRpcSource

logger = logging.getLogger(__name__)

# Registry maps config feed names -> event source
_FEED_REGISTRY: dict[str, EventSource] = {
    "price": EventSource.PRICE,
    "transaction": EventSource.TRANSACTION,
    "whale_transfer": EventSource.WHALE_TRANSFER,
}

_CONNECTOR_OPTIONS = ("base_delay", "max_delay", "jitter", "heartbeat_interval", "heartbeat_timeout")


class ConnectorManager:
    """
    Owns every long-lived component of the engine.

    Usage:
        manager = ConnectorManager()
        asyncio.run(manager.run())       # called from main.py
        manager.shutdown()               # called from signal handler
    """

    DEFAULT_QUEUE_MAXSIZE = 10_000

    def __init__(
        self,
        config_loader: Optional[ConfigLoader] = None,
        sink: Optional[AlertSink] = None,
        chain_source: Optional[ChainDataSource] = None,
    ) -> None:
        """
        Args:
            config_loader: ConfigLoader (defaults to $TREASUREX_CONFIG / config/treasurex.yaml)
            sink: Alert transport (defaults to LoggingSink)
            chain_source: Scanner data source (defaults to SolanaRpcSource)
        """
        self.config_loader = config_loader or ConfigLoader()
        self._sink = sink
        self._chain_source = chain_source
        self._stop = asyncio.Event()
        self._built = False
        self.metrics: Optional[MetricsPublisher] = None
        self.connectors: list[FeedConnector] = []

    def build(self) -> None:
        """Instantiate every component from configuration. Idempotent."""
        if self._built:
            return
        loader = self.config_loader
        metrics_cfg = loader.get_metrics_config()
        region = loader.get_region()
        self.metrics = MetricsPublisher(
            region=region,
            enabled=bool(metrics_cfg.get("enabled", False)),
            namespace=metrics_cfg.get("namespace", MetricsPublisher.CW_NAMESPACE),
            flush_interval=float(metrics_cfg.get("flush_interval_seconds", 60.0)),
        )

        self.connectors = self.build_connectors(loader.get_feeds(), loader.get_contracts())

        module_registry = ModuleRegistry(loader)
        detectors = module_registry.load_active_modules()
        self.engine = PatternEngine(
            detectors,
            {name: loader.get_pattern_config(name) for name in detectors},
            metrics=self.metrics,
        )

        risk_cfg = loader.get_risk_config()
        if self._chain_source is None:
            self._chain_source = SolanaRpcSource(
                rpc_url=risk_cfg.get("rpc_url", DEFAULT_RPC_URL),
                timeout=float(risk_cfg.get("request_timeout_seconds", 10.0)),
            )
        self.scorer = ContractRiskScorer(self._chain_source, config=risk_cfg, metrics=self.metrics)

        sub_cfg = loader.get_subscription_config()
        self.registry = SubscriptionRegistry(
            persist_path=sub_cfg.get("persist_path"),
            default_min_confidence=float(sub_cfg.get("default_min_confidence", 0.0)),
        )

        alert_cfg = loader.get_alert_config()
        rate_cfg = alert_cfg.get("rate_limit") or {}
        self.rate_limiter = RateLimiter(
            max_alerts=int(rate_cfg.get("max_alerts", 5)),
            window_seconds=float(rate_cfg.get("window_seconds", 300.0)),
            max_deferred=int(rate_cfg.get("max_deferred", 100)),
        )
        self.router = AlertRouter(
            self.registry,
            self._sink or LoggingSink(),
            self.rate_limiter,
            delivery_timeout=float(alert_cfg.get("delivery_timeout_seconds", 5.0)),
            outbox_size=int(alert_cfg.get("outbox_size", 100)),
            metrics=self.metrics,
        )
        archive = None
        archive_cfg = alert_cfg.get("archive") or {}
        if archive_cfg.get("table_name"):
            archive = AlertArchive(
                archive_cfg["table_name"],
                region=region,
                ttl_seconds=int(archive_cfg.get("ttl_seconds", 24 * 3600)),
            )
        self.alert_manager = AlertManager(
            self.router,
            risk_lookup=self.scorer.cached,
            dedup_bucket_seconds=float(alert_cfg.get("dedup_bucket_seconds", 300.0)),
            history_capacity=int(alert_cfg.get("history_capacity", 10_000)),
            history_max_age_seconds=float(alert_cfg.get("history_max_age_seconds", 86_400.0)),
            risk_alert_threshold=float(risk_cfg.get("risk_alert_threshold", 50.0)),
            rug_pull_alert_threshold=float(risk_cfg.get("rug_pull_alert_threshold", 70.0)),
            high_priority_confidence=float(alert_cfg.get("high_priority_confidence", 85.0)),
            low_priority_confidence=float(alert_cfg.get("low_priority_confidence", 60.0)),
            archive=archive,
            metrics=self.metrics,
        )

        rescan = risk_cfg.get("rescan_interval_seconds")
        self.runner = PipelineRunner(
            self.engine,
            self.alert_manager,
            self.registry,
            scorer=self.scorer,
            max_concurrency=int(alert_cfg.get("max_concurrency", 64)),
            flush_interval=float(rate_cfg.get("flush_interval_seconds", 1.0)),
            sweep_interval=float(alert_cfg.get("sweep_interval_seconds", 60.0)),
            rescan_interval=float(rescan) if rescan else None,
        )
        self.service = SignalService(
            self.scorer, self.registry, self.runner, self.rate_limiter, self.connectors
        )
        self._built = True

    def build_connectors(self, feeds: dict[str, str], contracts: list[str]) -> list[FeedConnector]:
        """
        Instantiate one connector per configured feed.

        Unknown feed names are logged as warnings and skipped.

        Args:
            feeds: Feed name -> websocket url
            contracts: Contracts every connector subscribes to on connect

        Returns:
            List of instantiated, not-yet-connected FeedConnectors
        """
        options: dict[str, Any] = {
            key: float(value)
            for key, value in self.config_loader.get_connector_config().items()
            if key in _CONNECTOR_OPTIONS
        }
        connectors: list[FeedConnector] = []
        for name, url in feeds.items():
            source = _FEED_REGISTRY.get(name)
            if source is None:
                logger.warning("Unknown feed '%s' in feeds, skipping", name)
                continue
            connectors.append(
                FeedConnector(source, url, contracts=contracts, metrics=self.metrics, **options)
            )
            logger.info("Registered connector | feed=%s | url=%s", name, url)
        return connectors

    async def run(self) -> None:
        """
        Main async entry point: builds components, starts connectors, runs the loop.

        Returns once shutdown() was called and the queue is drained.
        """
        self.build()
        if not self.connectors:
            logger.error("No feeds configured, exiting")
            return

        # Subscribed contracts restored from disk are watched from the start.
        for connector in self.connectors:
            connector.connect()
            await connector.watch(self.registry.contracts())

        queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=self.DEFAULT_QUEUE_MAXSIZE)
        logger.info(
            "ConnectorManager starting | connectors=%d | detectors=%s | subscriptions=%d",
            len(self.connectors),
            self.engine.detector_names,
            len(self.registry),
        )
        try:
            await asyncio.gather(
                *[c.stream(queue) for c in self.connectors],
                self.runner.run(queue, self._stop),
                self.metrics.run(self._stop),
            )
        finally:
            await self.close()

    def shutdown(self) -> None:
        """
        Signal all connectors and the pipeline to stop gracefully.

        Connectors set their stop event and stream() exits; the runner drains
        the queue, flushes deferred alerts and returns.
        """
        logger.info("ConnectorManager shutdown initiated")
        for connector in self.connectors:
            connector.shutdown()
        self._stop.set()

    async def close(self) -> None:
        """Close the chain source, flush metrics and persist subscriptions."""
        if not self._built:
            return
        close = getattr(self._chain_source, "aclose", None)
        if close is not None:
            await close()
        await self.metrics.flush_async()
        if self.registry.persist_path:
            self.registry.save(self.registry.persist_path)
        logger.info("ConnectorManager closed | metrics=%s", self.metrics.snapshot())
