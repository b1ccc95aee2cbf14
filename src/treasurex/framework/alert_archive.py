"""
Hot alert archive in DynamoDB.

Key structure:
  - PK: alert_id
  - SK: timestamp (epoch millis)
  - expires_at: TTL attribute, 24 hours after the alert
Lineage is stored as a JSON string in the `details` attribute so it stays
queryable without a fixed schema.
"""

import json
import logging
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from treasurex.framework.models import Alert

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600


class AlertArchive:
    """
    Writes alerts to a DynamoDB table with TTL expiry.

    Archive failures are logged and never fail alert processing.
    """

    def __init__(
        self,
        table_name: str,
        region: str = "us-west-2",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        client: Any = None,
    ):
        self.table_name = table_name
        self.ttl_seconds = ttl_seconds
        self._client = client or boto3.client("dynamodb", region_name=region)
        self.failures = 0

    def put(self, alert: Alert) -> bool:
        """
        Store one alert.

        Returns:
            True if DynamoDB accepted the item
        """
        try:
            self._client.put_item(TableName=self.table_name, Item=self._to_item(alert))
        except (BotoCoreError, ClientError) as exc:
            self.failures += 1
            logger.warning("Alert archive write failed (non-fatal) | alert_id=%s | error=%s", alert.id, exc)
            return False
        return True

    def _to_item(self, alert: Alert) -> dict[str, Any]:
        details: dict[str, Any] = {
            "patterns": [
                {
                    "type": p.type.value,
                    "confidence": p.confidence,
                    "contributing_signals": dict(p.contributing_signals),
                    "detected_at": p.detected_at,
                }
                for p in alert.patterns
            ],
        }
        if alert.lineage is not None:
            details["_lineage"] = alert.lineage.to_dict()
        item: dict[str, Any] = {
            "alert_id": {"S": alert.id},
            "timestamp": {"N": str(int(alert.timestamp * 1000))},
            "contract_id": {"S": alert.contract_id},
            "alert_type": {"S": alert.type.value},
            "confidence": {"N": str(alert.confidence)},
            "priority": {"S": alert.priority.value},
            "details": {"S": json.dumps(details, default=str)},
            "expires_at": {"N": str(int(alert.timestamp) + self.ttl_seconds)},
        }
        if alert.risk is not None:
            item["safety_score"] = {"N": str(alert.risk.safety_score)}
            item["risk_level"] = {"S": alert.risk.risk_breakdown.risk_level}
        return item
