"""Monitoring helpers (Prometheus metrics)."""
