"""
Subscription registry: who watches which contract, for which alert kinds.

Subscriptions are keyed by a deterministic id of (subscriber, contract), so a
second subscribe() for the same pair updates the existing entry. Options are
validated synchronously and rejected with ConfigError.

When `persist_path` is set, the registry is written to that JSON file after
every change and reloaded on startup.
"""

import hashlib
import json
import logging
import os
import time
from typing import Any, Callable, Iterable, Mapping, Optional

from treasurex.framework.errors import ConfigError
from treasurex.framework.models import Alert, AlertKind, PriorityTier, Subscription

logger = logging.getLogger(__name__)


def subscription_id_for(subscriber_id: str, contract_id: str) -> str:
    combined = f"{subscriber_id}:{contract_id}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]


def _parse_kinds(raw: Any) -> frozenset[AlertKind]:
    if raw is None:
        return frozenset(AlertKind)
    if isinstance(raw, (str, AlertKind)) or not isinstance(raw, Iterable):
        raise ConfigError("alert_kinds must be a collection of alert kinds")
    kinds = set()
    for item in raw:
        try:
            kinds.add(AlertKind(item))
        except ValueError as exc:
            raise ConfigError(f"unknown alert kind {item!r}") from exc
    if not kinds:
        raise ConfigError("alert_kinds must not be empty")
    return frozenset(kinds)


def _parse_priority(raw: Any) -> PriorityTier:
    if raw is None:
        return PriorityTier.STANDARD
    if isinstance(raw, PriorityTier):
        return raw
    if isinstance(raw, str):
        try:
            return PriorityTier[raw.upper()]
        except KeyError as exc:
            raise ConfigError(f"unknown priority tier {raw!r}") from exc
    if isinstance(raw, int) and not isinstance(raw, bool):
        try:
            return PriorityTier(raw)
        except ValueError as exc:
            raise ConfigError(f"unknown priority tier {raw!r}") from exc
    raise ConfigError(f"unknown priority tier {raw!r}")


class SubscriptionRegistry:
    """
    In-memory subscription store with optional JSON persistence.

    Usage:
        registry = SubscriptionRegistry()
        sub_id = registry.subscribe("user-1", "So11...", {"min_confidence": 80})
        registry.match(alert)   # -> [Subscription, ...]
        registry.unsubscribe(sub_id)
    """

    def __init__(
        self,
        persist_path: Optional[str] = None,
        default_min_confidence: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.persist_path = persist_path
        self._default_min_confidence = default_min_confidence
        self._clock = clock
        self._subscriptions: dict[str, Subscription] = {}
        if persist_path and os.path.exists(persist_path):
            self.load(persist_path)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self, subscriber_id: str, contract_id: str, options: Optional[Mapping[str, Any]] = None
    ) -> str:
        """
        Create or update the subscription of ``subscriber_id`` to ``contract_id``.

        Args:
            subscriber_id: Opaque subscriber identifier
            contract_id: Contract / mint address
            options: {"alert_kinds": [...], "min_confidence": 0-100,
                      "priority": "free"|"standard"|"premium", "ttl_seconds": float}

        Returns:
            Subscription id

        Raises:
            ConfigError: If any option is invalid
        """
        if not isinstance(subscriber_id, str) or not subscriber_id:
            raise ConfigError("subscriber_id must be a non-empty string")
        if not isinstance(contract_id, str) or not contract_id:
            raise ConfigError("contract_id must be a non-empty string")
        options = dict(options or {})
        unknown = set(options) - {"alert_kinds", "min_confidence", "priority", "ttl_seconds"}
        if unknown:
            raise ConfigError(f"unknown subscription options {sorted(unknown)}")

        kinds = _parse_kinds(options.get("alert_kinds"))
        min_confidence = options.get("min_confidence", self._default_min_confidence)
        if isinstance(min_confidence, bool) or not isinstance(min_confidence, (int, float)):
            raise ConfigError("min_confidence must be a number")
        if not 0 <= min_confidence <= 100:
            raise ConfigError("min_confidence must be within [0, 100]")
        priority = _parse_priority(options.get("priority"))
        ttl = options.get("ttl_seconds")
        if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0):
            raise ConfigError("ttl_seconds must be a positive number")

        now = self._clock()
        sub_id = subscription_id_for(subscriber_id, contract_id)
        existing = self._subscriptions.get(sub_id)
        self._subscriptions[sub_id] = Subscription(
            subscription_id=sub_id,
            subscriber_id=subscriber_id,
            contract_id=contract_id,
            alert_kinds=kinds,
            min_confidence=float(min_confidence),
            priority=priority,
            created_at=existing.created_at if existing else now,
            expires_at=now + ttl if ttl is not None else None,
        )
        logger.info(
            "Subscription %s | id=%s | subscriber=%s | contract=%s | kinds=%s | min_confidence=%.1f | tier=%s",
            "updated" if existing else "created",
            sub_id,
            subscriber_id,
            contract_id,
            sorted(k.value for k in kinds),
            float(min_confidence),
            priority.name.lower(),
        )
        self._persist()
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns False if it did not exist."""
        removed = self._subscriptions.pop(subscription_id, None)
        if removed is None:
            return False
        logger.info("Subscription removed | id=%s | subscriber=%s", subscription_id, removed.subscriber_id)
        self._persist()
        return True

    def expire_subscriber(self, subscriber_id: str) -> int:
        """Remove every subscription of a subscriber. Returns how many were removed."""
        ids = [sid for sid, sub in self._subscriptions.items() if sub.subscriber_id == subscriber_id]
        for sid in ids:
            del self._subscriptions[sid]
        if ids:
            logger.info("Subscriber expired | subscriber=%s | removed=%d", subscriber_id, len(ids))
            self._persist()
        return len(ids)

    def purge_expired(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        ids = [sid for sid, sub in self._subscriptions.items() if sub.is_expired(now)]
        for sid in ids:
            del self._subscriptions[sid]
        if ids:
            logger.info("Expired subscriptions purged | removed=%d", len(ids))
            self._persist()
        return len(ids)

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(subscription_id)

    def for_subscriber(self, subscriber_id: str) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if s.subscriber_id == subscriber_id]

    def contracts(self) -> set[str]:
        return {s.contract_id for s in self._subscriptions.values()}

    def match(self, alert: Alert, now: Optional[float] = None) -> list[Subscription]:
        """Live subscriptions whose contract, kinds and min_confidence accept ``alert``."""
        now = self._clock() if now is None else now
        return [
            sub for sub in self._subscriptions.values() if not sub.is_expired(now) and sub.matches(alert)
        ]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str) -> None:
        """Write all subscriptions to ``path`` atomically."""
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump([s.to_dict() for s in self._subscriptions.values()], f, indent=2)
        os.replace(tmp_path, path)

    def load(self, path: str) -> None:
        """Replace the registry contents with the subscriptions stored at ``path``."""
        with open(path) as f:
            records = json.load(f)
        loaded: dict[str, Subscription] = {}
        for record in records:
            sub = Subscription(
                subscription_id=record["subscription_id"],
                subscriber_id=record["subscriber_id"],
                contract_id=record["contract_id"],
                alert_kinds=_parse_kinds(record["alert_kinds"]),
                min_confidence=float(record["min_confidence"]),
                priority=_parse_priority(record["priority"]),
                created_at=float(record["created_at"]),
                expires_at=record.get("expires_at"),
            )
            loaded[sub.subscription_id] = sub
        self._subscriptions = loaded
        logger.info("Subscriptions loaded | path=%s | count=%d", path, len(loaded))

    def _persist(self) -> None:
        if not self.persist_path:
            return
        try:
            self.save(self.persist_path)
        except OSError as exc:
            logger.error("Subscription persist failed | path=%s | error=%s", self.persist_path, exc)
