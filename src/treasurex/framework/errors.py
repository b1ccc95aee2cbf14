"""
Error taxonomy for the signal engine.

Propagation policy:
- FeedConnectionError / MalformedEventError stay inside stream processing;
  connectors recover or drop and count, they never surface to callers.
- AnalysisError surfaces to the scan caller only.
- DetectorError is logged per event by the pipeline runner; later events
  are still evaluated.
- DeliveryError is logged per subscriber and never blocks other deliveries.
- ConfigError is raised synchronously (subscribe-time options, config file).
"""


class TreasureXError(Exception):
    """Base class for all engine errors."""


class FeedConnectionError(TreasureXError):
    """A feed is unreachable, dropped, or missed its heartbeat."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class MalformedEventError(TreasureXError):
    """An inbound payload could not be normalized into a StreamEvent."""


class DetectorError(TreasureXError):
    """A detector cannot build a result from the window it was given."""


class AnalysisError(TreasureXError):
    """A contract scan could not produce a complete RiskAnalysis."""

    def __init__(self, contract_id: str, message: str) -> None:
        super().__init__(f"analysis failed for {contract_id}: {message}")
        self.contract_id = contract_id


class DeliveryError(TreasureXError):
    """Delivering an alert to one subscriber failed."""

    def __init__(self, subscriber_id: str, message: str) -> None:
        super().__init__(f"delivery to {subscriber_id} failed: {message}")
        self.subscriber_id = subscriber_id


class ConfigError(TreasureXError):
    """Invalid subscription options or engine configuration."""
