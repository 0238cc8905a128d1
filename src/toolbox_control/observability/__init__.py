"""Structured logging, Prometheus metrics and request middleware."""
