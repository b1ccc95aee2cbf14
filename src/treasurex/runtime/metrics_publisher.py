"""
CloudWatch metrics for the signal engine.

Components call increment(name) on hot paths; counts accumulate in process
and flush() publishes the deltas since the last flush with put_metric_data.
CloudWatch failures are logged as warnings and never crash the engine.
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Optional

import boto3

logger = logging.getLogger(__name__)


class MetricsPublisher:
    """
    In-process counters with periodic CloudWatch publishing.

    A disabled publisher still counts, so totals stay available for logs and
    tests without AWS access.

    Usage:
        metrics = MetricsPublisher(region="us-west-2")
        metrics.increment("AlertsCreated")
        await metrics.run(stop_event)   # flushes every flush_interval seconds
    """

    CW_NAMESPACE = "TreasureX/Engine"
    MAX_DATUMS_PER_CALL = 1000  # put_metric_data hard limit

    def __init__(
        self,
        region: str = "us-west-2",
        enabled: bool = True,
        namespace: str = CW_NAMESPACE,
        flush_interval: float = 60.0,
        dimensions: Optional[dict[str, str]] = None,
        client: Any = None,
    ) -> None:
        self.enabled = enabled
        self.namespace = namespace
        self.flush_interval = flush_interval
        self._dimensions = [{"Name": k, "Value": v} for k, v in (dimensions or {}).items()]
        self._totals: Counter[str] = Counter()
        self._pending: Counter[str] = Counter()
        self._cw = client
        if enabled and client is None:
            self._cw = boto3.client("cloudwatch", region_name=region)

    def increment(self, name: str, value: int = 1) -> None:
        self._totals[name] += value
        self._pending[name] += value

    def get(self, name: str) -> int:
        """Total count since startup."""
        return self._totals[name]

    def snapshot(self) -> dict[str, int]:
        return dict(self._totals)

    def flush(self) -> int:
        """
        Publish pending counts to CloudWatch from the calling thread.

        Returns:
            Number of datums sent (0 when disabled or nothing is pending)
        """
        return self._publish(self._take_pending())

    async def flush_async(self) -> int:
        """
        Like flush(), with only the CloudWatch calls run in the default executor.

        Pending counts are swapped out on the event loop, so increments made
        while the upload runs land in the next flush.
        """
        pending = self._take_pending()
        if not pending or not self.enabled:
            return 0
        return await asyncio.get_running_loop().run_in_executor(None, self._publish, pending)

    async def run(self, stop: asyncio.Event) -> None:
        """Flush every flush_interval seconds until ``stop`` is set, then once more."""
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass
            else:
                break
            await self.flush_async()
        await self.flush_async()

    def _take_pending(self) -> dict[str, int]:
        pending, self._pending = self._pending, Counter()
        return {name: count for name, count in pending.items() if count}

    def _publish(self, pending: dict[str, int]) -> int:
        if not pending or not self.enabled:
            return 0

        datums = [
            {"MetricName": name, "Value": float(count), "Unit": "Count", "Dimensions": self._dimensions}
            for name, count in sorted(pending.items())
        ]
        try:
            for start in range(0, len(datums), self.MAX_DATUMS_PER_CALL):
                self._cw.put_metric_data(
                    Namespace=self.namespace,
                    MetricData=datums[start : start + self.MAX_DATUMS_PER_CALL],
                )
        except Exception as exc:
            logger.warning("CloudWatch put_metric_data failed (non-fatal): %s", exc)
            return 0
        return len(datums)
