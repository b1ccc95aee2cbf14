"""
Alert delivery sinks.

The engine knows nothing about transports (chat bots, push, UI badges). A sink
is any object with an async `deliver(subscriber_id, alert)` that raises
DeliveryError on failure.
"""

import json
import logging
from typing import Protocol

from treasurex.framework.models import Alert

logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    async def deliver(self, subscriber_id: str, alert: Alert) -> None:
        ...


class LoggingSink:
    """Default sink: writes each delivery as one JSON log line."""

    def __init__(self, logger_name: str = "treasurex.alerts") -> None:
        self._log = logging.getLogger(logger_name)

    async def deliver(self, subscriber_id: str, alert: Alert) -> None:
        self._log.info(
            "Alert delivered | subscriber=%s | alert=%s",
            subscriber_id,
            json.dumps(alert.to_dict(), default=str, separators=(",", ":")),
        )
