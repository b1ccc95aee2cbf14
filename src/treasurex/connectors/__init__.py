"""Feed connectors producing StreamEvents."""
