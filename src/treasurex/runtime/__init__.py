"""Process wiring: metrics, service facade and entry point."""
