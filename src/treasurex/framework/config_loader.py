"""
Configuration loading from YAML files and AWS SSM Parameter Store.

Reads:
1. config/treasurex.yaml (or $TREASUREX_CONFIG): feeds, patterns, risk, alerts
2. Environment overrides: FEEDS, CONTRACTS, SOLANA_RPC_URL
3. SSM parameters under `ssm_prefix`: runtime overrides for thresholds etc.

Exposes a ConfigLoader interface for the ConnectorManager and ModuleRegistry.
"""

import copy
import logging
import os
from typing import Any, Optional

import boto3
import yaml
from botocore.exceptions import BotoCoreError, ClientError

from treasurex.framework.errors import ConfigError

logger = logging.getLogger(__name__)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _split_env_list(name: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


class ConfigLoader:
    """
    Loads and merges configuration from multiple sources.

    Configuration hierarchy (highest to lowest priority):
    1. SSM Parameter Store (runtime overrides)
    2. Environment variables
    3. YAML configuration file
    """

    DEFAULT_CONFIG_PATH = "config/treasurex.yaml"
    ENV_CONFIG_PATH = "TREASUREX_CONFIG"
    DEFAULT_REGION = "us-west-2"

    def __init__(self, config_path: Optional[str] = None, ssm_client: Any = None):
        """
        Initialize the config loader.

        Args:
            config_path: Path to the YAML file; defaults to $TREASUREX_CONFIG
                         or config/treasurex.yaml (relative to project root)
            ssm_client: Injected boto3 SSM client (created lazily when
                        ssm_prefix is configured and none is given)
        """
        self.config_path = config_path or os.getenv(self.ENV_CONFIG_PATH, self.DEFAULT_CONFIG_PATH)
        self._ssm = ssm_client
        self._config: Optional[dict[str, Any]] = None

    def load(self) -> dict[str, Any]:
        """
        Load configuration from all sources.

        Returns:
            Merged configuration dict

        Raises:
            ConfigError: If the file is missing, unparsable, or not a mapping
        """
        try:
            with open(self.config_path) as f:
                config = yaml.safe_load(f) or {}
        except FileNotFoundError as exc:
            raise ConfigError(f"config file not found: {self.config_path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {self.config_path}: {exc}") from exc
        if not isinstance(config, dict):
            raise ConfigError(f"{self.config_path} must contain a mapping at top level")

        config = self._apply_env_overrides(config)
        prefix = config.get("ssm_prefix")
        if prefix:
            config = _deep_merge(config, self._load_ssm_overrides(prefix, config))

        self._config = config
        logger.info(
            "Configuration loaded | path=%s | patterns=%s | feeds=%s",
            self.config_path,
            config.get("patterns", {}).get("active", []),
            list(config.get("feeds", {})),
        )
        return config

    @property
    def config(self) -> dict[str, Any]:
        if self._config is None:
            return self.load()
        return self._config

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_feeds(self) -> dict[str, str]:
        """
        Get the active feeds.

        Returns:
            Feed name -> websocket url (e.g., {"price": "wss://price-feed..."})
        """
        feeds = self.config.get("feeds") or {}
        result: dict[str, str] = {}
        for name, entry in feeds.items():
            url = entry.get("url") if isinstance(entry, dict) else entry
            if not isinstance(url, str):
                raise ConfigError(f"feed {name!r} has no url")
            result[name] = url
        return result

    def get_connector_config(self) -> dict[str, Any]:
        return dict(self.config.get("connector") or {})

    def get_contracts(self) -> list[str]:
        """Contracts watched from startup, before any subscription arrives."""
        return list(self.config.get("contracts") or [])

    def get_active_patterns(self) -> list[str]:
        """
        Get list of active pattern names.

        Returns:
            List of pattern names (e.g., ["breakout", "whale"])
        """
        active = (self.config.get("patterns") or {}).get("active") or []
        if not isinstance(active, list):
            raise ConfigError("patterns.active must be a list")
        return list(active)

    def get_pattern_config(self, name: str) -> dict[str, Any]:
        """
        Get parameter overrides for one pattern detector.

        Returns:
            Pattern-specific config (e.g., {"price_change": 0.05, "confirmations": 3})
        """
        return dict((self.config.get("patterns") or {}).get(name) or {})

    def get_risk_config(self) -> dict[str, Any]:
        return dict(self.config.get("risk") or {})

    def get_alert_config(self) -> dict[str, Any]:
        return dict(self.config.get("alerts") or {})

    def get_subscription_config(self) -> dict[str, Any]:
        return dict(self.config.get("subscriptions") or {})

    def get_metrics_config(self) -> dict[str, Any]:
        return dict(self.config.get("metrics") or {})

    def get_region(self) -> str:
        return os.getenv("AWS_REGION", self.config.get("region") or self.DEFAULT_REGION)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _apply_env_overrides(self, config: dict[str, Any]) -> dict[str, Any]:
        """
        FEEDS restricts the feed set (horizontal partitioning across tasks),
        CONTRACTS replaces the startup contract list, SOLANA_RPC_URL points
        the scanner at another RPC node.
        """
        config = copy.deepcopy(config)
        feed_names = _split_env_list("FEEDS")
        if feed_names:
            feeds = config.get("feeds") or {}
            unknown = [name for name in feed_names if name not in feeds]
            if unknown:
                logger.warning("FEEDS names unknown feeds, skipping | feeds=%s", unknown)
            config["feeds"] = {name: feeds[name] for name in feed_names if name in feeds}

        contracts = _split_env_list("CONTRACTS")
        if contracts:
            config["contracts"] = contracts

        rpc_url = os.getenv("SOLANA_RPC_URL")
        if rpc_url:
            config.setdefault("risk", {})["rpc_url"] = rpc_url
        return config

    def _load_ssm_overrides(self, prefix: str, config: dict[str, Any]) -> dict[str, Any]:
        """
        Read every parameter under ``prefix`` into a nested override dict.

        /treasurex/prod/patterns/breakout/price_change = "0.07" becomes
        {"patterns": {"breakout": {"price_change": 0.07}}}. Values are parsed
        as YAML scalars. SSM failures are logged and ignored.
        """
        prefix = "/" + prefix.strip("/")
        overrides: dict[str, Any] = {}
        try:
            if self._ssm is None:
                region = os.getenv("AWS_REGION", config.get("region") or self.DEFAULT_REGION)
                self._ssm = boto3.client("ssm", region_name=region)
            paginator = self._ssm.get_paginator("get_parameters_by_path")
            for page in paginator.paginate(Path=prefix, Recursive=True, WithDecryption=True):
                for param in page.get("Parameters", []):
                    keys = param["Name"][len(prefix):].strip("/").split("/")
                    node = overrides
                    for key in keys[:-1]:
                        node = node.setdefault(key, {})
                    node[keys[-1]] = yaml.safe_load(param["Value"])
        except (BotoCoreError, ClientError) as exc:
            logger.warning("SSM override load failed (non-fatal) | prefix=%s | error=%s", prefix, exc)
            return {}
        if overrides:
            logger.info("SSM overrides applied | prefix=%s | keys=%s", prefix, sorted(overrides))
        return overrides
