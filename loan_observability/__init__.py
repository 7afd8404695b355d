"""Prometheus metrics for the autosell service."""

from .metrics import (autosell_cycle_latency_seconds, autosell_total,
                      pending_loans)

__all__ = [
    "autosell_total",
    "autosell_cycle_latency_seconds",
    "pending_loans",
]
