"""
Module registry for dynamic detector discovery and instantiation.

Reads the list of active patterns from ConfigLoader and dynamically imports
and instantiates the corresponding detector classes. This enables:
- Config-driven feature toggles (no code changes to activate/deactivate patterns)
- Plugin architecture (add new detectors without touching the AlertManager)
"""

import importlib
import logging
from typing import TYPE_CHECKING

from treasurex.framework.base_detector import BaseDetector

if TYPE_CHECKING:
    from treasurex.framework.config_loader import ConfigLoader

logger = logging.getLogger(__name__)


class ModuleRegistry:
    """
    Registry for dynamically loading and instantiating detectors.

    Maps pattern names to detector classes and caches the instances.
    """

    # Mapping of pattern name to detector class path.
    # A pattern config may add or replace entries with a "class" key.
    MODULE_MAPPING = {
        "breakout": "treasurex.detectors.breakout.BreakoutDetector",
        "accumulation": "treasurex.detectors.accumulation.AccumulationDetector",
        "distribution": "treasurex.detectors.distribution.DistributionDetector",
        "whale": "treasurex.detectors.whale.WhaleDetector",
    }

    def __init__(self, config_loader: "ConfigLoader"):
        """
        Initialize the registry.

        Args:
            config_loader: ConfigLoader instance (provides active pattern list)
        """
        self.config_loader = config_loader
        self._detectors: dict[str, BaseDetector] = {}

    def load_active_modules(self) -> dict[str, BaseDetector]:
        """
        Load and instantiate all active detectors.

        Returns:
            Dict mapping pattern name to detector instance, in config order

        Raises:
            KeyError: If an active pattern has no class mapping
            ImportError: If detector class cannot be imported
            TypeError: If detector class doesn't inherit from BaseDetector
        """
        detectors = {name: self.get_detector(name) for name in self.list_active_modules()}
        logger.info("Loaded detectors | patterns=%s", list(detectors))
        return detectors

    def get_detector(self, name: str) -> BaseDetector:
        """
        Get a detector by pattern name.

        Detectors are lazily loaded on first access.
        """
        if name not in self._detectors:
            self._detectors[name] = self._load_single_module(name)
        return self._detectors[name]

    def _load_single_module(self, name: str) -> BaseDetector:
        """
        Dynamically load and instantiate a single detector.

        Raises:
            KeyError: If name has no class mapping
            ImportError: If class import fails
            TypeError: If the class is not a BaseDetector
        """
        class_path = self.config_loader.get_pattern_config(name).get("class") or self.MODULE_MAPPING[name]
        module_path, _, class_name = class_path.rpartition(".")
        module = importlib.import_module(module_path)
        try:
            detector_cls = getattr(module, class_name)
        except AttributeError as exc:
            raise ImportError(f"{class_path} not found") from exc
        if not (isinstance(detector_cls, type) and issubclass(detector_cls, BaseDetector)):
            raise TypeError(f"{class_path} is not a BaseDetector subclass")
        return detector_cls()

    def list_active_modules(self) -> list[str]:
        """
        List all active pattern names.

        Returns:
            List of pattern names (e.g., ["breakout", "whale"])
        """
        return self.config_loader.get_active_patterns()
