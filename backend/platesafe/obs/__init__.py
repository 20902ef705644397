"""Observability helpers: structured logging, Prometheus metrics and request context."""
