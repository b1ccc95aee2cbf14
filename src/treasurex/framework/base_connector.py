"""
Base connector abstraction for feed integration.

Every feed connector (price, transaction, whale-transfer websocket, replay
file, etc.) inherits from BaseConnector and implements the standard interface for:
1. Validating its configuration (setup-only connect())
2. Normalizing raw envelopes to the StreamEvent record
3. Injecting correlation IDs for lineage tracking
4. Health checks for operational monitoring
5. Graceful shutdown

The inbound envelope every feed must provide is
    {"type": <source>, "contractId": <str>, "data": {...}, "serverTimestamp": <epoch s or ms>}
Anything feed-specific beyond that belongs to the concrete connector.
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Any, Callable, Mapping

from treasurex.framework.errors import MalformedEventError
from treasurex.framework.lineage import generate_correlation_id
from treasurex.framework.models import EventSource, StreamEvent

# Per-source numeric fields the payload must carry
_REQUIRED_NUMERIC: dict[EventSource, tuple[str, ...]] = {
    EventSource.PRICE: ("price", "volume"),
    EventSource.TRANSACTION: ("amount_usd",),
    EventSource.WHALE_TRANSFER: ("amount_usd",),
}
_REQUIRED_TEXT: dict[EventSource, tuple[str, ...]] = {
    EventSource.PRICE: (),
    EventSource.TRANSACTION: (),
    EventSource.WHALE_TRANSFER: ("wallet",),
}

# serverTimestamp values above this are treated as milliseconds
_MS_THRESHOLD = 1e11


class BaseConnector(ABC):
    """
    Abstract base class for feed connectors.

    Subclasses implement specific transports (FeedConnector for websockets).
    """

    def __init__(self, source: EventSource, clock: Callable[[], float] = time.time):
        """
        Initialize the connector.

        Args:
            source: Which feed this connector serves
            clock: Wall-clock used for received_at stamps (injectable for tests)
        """
        self.source = source
        self._clock = clock
        self.malformed_count = 0

    @abstractmethod
    def connect(self) -> None:
        """
        Validate configuration. No network I/O.

        Raises:
            ConfigError: If the connector is misconfigured
        """

    @abstractmethod
    async def stream(self, queue: "asyncio.Queue[StreamEvent]") -> None:
        """
        Streaming coroutine, runs until shutdown() is called.

        Puts normalized StreamEvents onto the shared queue. Connection loss is
        recovered internally; this coroutine never raises for feed errors.
        """

    @abstractmethod
    def health_check(self) -> bool:
        """
        Check if the connector is healthy and able to receive data.

        Returns:
            True if healthy, False otherwise
        """

    @abstractmethod
    def shutdown(self) -> None:
        """
        Gracefully shutdown the connection.

        Used during teardown to close websocket sessions.
        """

    def normalize(self, raw: Mapping[str, Any]) -> StreamEvent:
        """
        Normalize an inbound envelope to a StreamEvent.

        Does NOT inject correlation_id; that's done in normalize_with_lineage().

        Args:
            raw: Decoded JSON envelope

        Returns:
            StreamEvent stamped with received_at from the connector clock

        Raises:
            MalformedEventError: If the envelope or its payload is unusable
        """
        if not isinstance(raw, Mapping):
            raise MalformedEventError(f"envelope is not an object: {type(raw).__name__}")

        try:
            source = EventSource(raw["type"])
            contract_id = raw["contractId"]
            data = raw["data"]
            server_ts = _finite(raw["serverTimestamp"], "serverTimestamp")
        except KeyError as exc:
            raise MalformedEventError(f"missing envelope field {exc}") from exc
        except (TypeError, ValueError, OverflowError) as exc:
            raise MalformedEventError(f"bad envelope value: {exc}") from exc

        if source is not self.source:
            raise MalformedEventError(f"{source.value} event on {self.source.value} feed")
        if not isinstance(contract_id, str) or not contract_id:
            raise MalformedEventError("contractId must be a non-empty string")
        if not isinstance(data, Mapping):
            raise MalformedEventError("data must be an object")

        payload = dict(data)
        for name in _REQUIRED_NUMERIC[source]:
            value = payload.get(name)
            if isinstance(value, bool) or not isinstance(value, (int, float, str)):
                raise MalformedEventError(f"{source.value} payload missing numeric {name!r}")
            try:
                payload[name] = _finite(value, name)
            except (ValueError, OverflowError) as exc:
                raise MalformedEventError(f"{source.value} payload {name!r} not numeric") from exc
        for name in _REQUIRED_TEXT[source]:
            if not isinstance(payload.get(name), str) or not payload[name]:
                raise MalformedEventError(f"{source.value} payload missing {name!r}")

        if server_ts > _MS_THRESHOLD:
            server_ts = server_ts / 1000.0

        return StreamEvent(
            source=source,
            contract_id=contract_id,
            payload=MappingProxyType(payload),
            received_at=self._clock(),
            server_ts=server_ts,
        )

    def normalize_with_lineage(self, raw: Mapping[str, Any]) -> StreamEvent:
        """
        Normalize an envelope and inject its correlation ID.

        This is the public method called from stream(). It:
        1. Calls normalize()
        2. Generates correlation_id from source+contract+server timestamp
        3. Returns the enriched event
        """
        event = self.normalize(raw)
        correlation_id = generate_correlation_id(
            event.source.value, event.contract_id, event.server_ts
        )
        return StreamEvent(
            source=event.source,
            contract_id=event.contract_id,
            payload=event.payload,
            received_at=event.received_at,
            server_ts=event.server_ts,
            correlation_id=correlation_id,
        )


def _finite(value: Any, name: str) -> float:
    """float(value), rejecting NaN and infinities."""
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{name} is not finite: {value!r}")
    return number
