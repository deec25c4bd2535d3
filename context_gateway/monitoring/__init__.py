"""Monitoring — Prometheus metrics."""
