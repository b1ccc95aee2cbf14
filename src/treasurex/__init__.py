"""TreasureX signal-detection and alert-dispatch engine."""

__version__ = "0.1.0"
