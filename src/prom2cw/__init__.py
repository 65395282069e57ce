"""Prometheus to CloudWatch bridge."""

__version__ = "0.1.0"
