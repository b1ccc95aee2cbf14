"""
Websocket feed connector for the price, transaction and whale-transfer streams.

Each FeedConnector owns one long-lived websocket session to one named source,
normalizes envelopes to StreamEvents, and puts lineage-enriched events onto the
shared asyncio.Queue consumed by the PipelineRunner.

Session lifecycle:
- reconnect with exponential backoff (base -> 2x -> ... -> max) plus jitter
- heartbeat: ping every heartbeat_interval, a missing pong within
  heartbeat_timeout closes the session and triggers reconnect
- malformed envelopes are dropped and counted, never raised
- the queue outlives sessions, so reconnects are invisible downstream
"""

import asyncio
import contextlib
import functools
import json
import logging
import random
import time
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

import websockets

from treasurex.framework.base_connector import BaseConnector
from treasurex.framework.errors import ConfigError, FeedConnectionError, MalformedEventError
from treasurex.framework.models import EventSource, StreamEvent

if TYPE_CHECKING:
    from treasurex.runtime.metrics_publisher import MetricsPublisher

logger = logging.getLogger(__name__)

# Envelope types that carry no event (server keepalives, subscription acks)
_CONTROL_TYPES = frozenset({"heartbeat", "subscribed", "ack", "pong"})


class FeedConnector(BaseConnector):
    """
    Streams one named feed over a websocket.

    Usage (ConnectorManager):
        connector = FeedConnector(EventSource.PRICE, "wss://price-feed.treasurex.io")
        connector.connect()
        await asyncio.gather(connector.stream(queue), ...)
    """

    _HEALTH_WINDOW_SECONDS = 30.0
    _FAILURE_ESCALATION = 5  # consecutive failed reconnects before logging at ERROR

    def __init__(
        self,
        source: EventSource,
        url: str,
        *,
        contracts: Iterable[str] = (),
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 0.2,
        heartbeat_interval: float = 30.0,
        heartbeat_timeout: float = 10.0,
        metrics: Optional["MetricsPublisher"] = None,
        connect_factory: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Initialize the connector.

        Args:
            source: Feed served by this connection
            url: ws:// or wss:// endpoint
            contracts: Contracts to subscribe to once a session opens
            base_delay: First reconnect delay in seconds
            max_delay: Reconnect delay cap in seconds
            jitter: Fraction of the delay added as uniform random jitter
            heartbeat_interval: Seconds between pings
            heartbeat_timeout: Seconds to wait for a pong before declaring the session dead
            metrics: Optional MetricsPublisher for reconnect / malformed counters
            connect_factory: Callable returning an async context manager yielding a
                             websocket; defaults to websockets.connect without its
                             built-in keepalive (the heartbeat here replaces it)
        """
        super().__init__(source=source, clock=clock)
        self.url = url
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.reconnect_count = 0
        self.reconnect_failures = 0

        self._contracts: set[str] = set(contracts)
        self._metrics = metrics
        self._connect_factory = connect_factory or functools.partial(
            websockets.connect, ping_interval=None
        )
        self._rng = rng or random.Random()
        self._ws: Any = None
        self._close_task: Optional[asyncio.Task] = None
        self._session_events = 0
        self._consecutive_failures = 0
        self._last_message_at: Optional[float] = None  # None until first message received
        self._stop: asyncio.Event = asyncio.Event()

    # ------------------------------------------------------------------
    # BaseConnector abstract method implementations
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """
        Setup-only: validates the endpoint and logs it.

        The actual websocket session is opened inside stream().
        """
        if not self.url.startswith(("ws://", "wss://")):
            raise ConfigError(f"{self.source.value} feed url must be ws:// or wss://, got {self.url!r}")
        logger.info(
            "FeedConnector configured | source=%s | url=%s | contracts=%d",
            self.source.value,
            self.url,
            len(self._contracts),
        )

    def health_check(self) -> bool:
        """
        Return True if a message was received within the last 30 seconds.

        Returns False until the first message arrives.
        """
        if self._last_message_at is None:
            return False
        return time.monotonic() - self._last_message_at < self._HEALTH_WINDOW_SECONDS

    def shutdown(self) -> None:
        """
        Stop stream() and close the live session, if any.

        Closing the socket ends the receive loop even when the feed is quiet.
        """
        self._stop.set()
        if self._ws is not None and self._close_task is None:
            self._close_task = asyncio.get_running_loop().create_task(self._ws.close())
        logger.info("FeedConnector shutdown requested | source=%s", self.source.value)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def watch(self, contracts: Iterable[str]) -> None:
        """Add contracts to the feed subscription, live if a session is open."""
        new = set(contracts) - self._contracts
        if not new:
            return
        self._contracts |= new
        if self._ws is not None:
            await self._send_subscribe(self._ws, sorted(new))

    # ------------------------------------------------------------------
    # Streaming coroutine (called by ConnectorManager via asyncio.gather)
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect number ``attempt`` (0-based), jitter included."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        return delay + self._rng.uniform(0, self.jitter * delay)

    async def stream(self, queue: "asyncio.Queue[StreamEvent]") -> None:
        """
        Streaming coroutine, runs until shutdown() is called.

        Any session failure (refused connection, dropped socket, missed
        heartbeat) is logged and retried with backoff. The attempt counter
        resets after a session that delivered at least one event.

        Args:
            queue: Shared asyncio.Queue; lineage-enriched StreamEvents are put here.
        """
        attempt = 0
        while not self._stop.is_set():
            self._session_events = 0
            try:
                await self._listen_once(queue)
                if self._stop.is_set():
                    return
                logger.info("FeedConnector session closed by server | source=%s", self.source.value)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._stop.is_set():
                    return
                self._record_failure(exc)

            if self._session_events:
                attempt = 0
            delay = self.backoff_delay(attempt)
            attempt += 1
            self.reconnect_count += 1
            self._count("FeedReconnects")
            logger.info(
                "FeedConnector reconnecting | source=%s | delay=%.2fs | attempt=%d",
                self.source.value,
                delay,
                attempt,
            )
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=delay)

    async def _listen_once(self, queue: "asyncio.Queue[StreamEvent]") -> None:
        """
        Open one websocket session and stream messages until disconnect or stop.

        Raises:
            FeedConnectionError: If the heartbeat declared the session dead
        """
        async with self._connect_factory(self.url) as ws:
            self._ws = ws
            self._close_task = None
            self._consecutive_failures = 0
            if self._stop.is_set():
                return
            logger.info("FeedConnector connected | source=%s | url=%s", self.source.value, self.url)
            if self._contracts:
                await self._send_subscribe(ws, sorted(self._contracts))

            heartbeat = asyncio.create_task(self._heartbeat(ws))
            try:
                async for message in ws:
                    if self._stop.is_set():
                        return
                    self._last_message_at = time.monotonic()
                    event = self._parse(message)
                    if event is not None:
                        await queue.put(event)
                        self._session_events += 1
                        self._count("EventsReceived")
            finally:
                self._ws = None
                if not heartbeat.done():
                    heartbeat.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await heartbeat

            if heartbeat.done() and not heartbeat.cancelled() and heartbeat.exception():
                raise heartbeat.exception()

    async def _heartbeat(self, ws: Any) -> None:
        """Ping on a fixed interval; close the session when a pong is late."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            pong_waiter = await ws.ping()
            try:
                await asyncio.wait_for(pong_waiter, timeout=self.heartbeat_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "FeedConnector heartbeat timeout | source=%s | timeout=%.1fs",
                    self.source.value,
                    self.heartbeat_timeout,
                )
                await ws.close()
                raise FeedConnectionError(self.source.value, "heartbeat timeout")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _parse(self, message: Any) -> Optional[StreamEvent]:
        """Decode one websocket message; malformed input is counted and dropped."""
        try:
            if isinstance(message, (bytes, bytearray)):
                message = message.decode("utf-8")
            envelope = json.loads(message)
            if isinstance(envelope, dict) and envelope.get("type") in _CONTROL_TYPES:
                return None
            return self.normalize_with_lineage(envelope)
        except (UnicodeDecodeError, json.JSONDecodeError, MalformedEventError) as exc:
            self.malformed_count += 1
            self._count("MalformedEvents")
            logger.debug("FeedConnector dropped malformed message | source=%s | error=%s", self.source.value, exc)
            return None

    async def _send_subscribe(self, ws: Any, contracts: list[str]) -> None:
        await ws.send(json.dumps({"op": "subscribe", "channel": self.source.value, "contracts": contracts}))

    def _record_failure(self, exc: Exception) -> None:
        if self._session_events:
            logger.warning("FeedConnector connection lost | source=%s | error=%s", self.source.value, exc)
            return
        self._consecutive_failures += 1
        self.reconnect_failures += 1
        self._count("FeedReconnectFailures")
        level = logging.ERROR if self._consecutive_failures >= self._FAILURE_ESCALATION else logging.WARNING
        logger.log(
            level,
            "FeedConnector connect failed | source=%s | consecutive=%d | error=%s",
            self.source.value,
            self._consecutive_failures,
            exc,
        )

    def _count(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.increment(name)
