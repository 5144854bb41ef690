"""Metrics module for Prometheus monitoring."""

from .metrics import (
    API_CALLS,
    API_LATENCY,
    FAILURES,
    OP_ITEMS,
    OP_LATENCY,
    SINK_WRITES,
)

__all__ = [
    "API_CALLS",
    "API_LATENCY",
    "FAILURES",
    "OP_ITEMS",
    "OP_LATENCY",
    "SINK_WRITES",
]
