"""Rule lifecycle and reconciliation engine for app blocking on a UniFi controller."""

__version__ = "0.3.0"
