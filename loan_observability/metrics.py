# loan_observability/metrics.py
"""
Prometheus metrics for the autosell service.

❗️This module does NOT start a standalone HTTP server.
The FastAPI app exposes them by mounting the ASGI exporter:

    from prometheus_client import make_asgi_app
    app.mount("/metrics", make_asgi_app())
"""

from typing import Any, Dict, Tuple, Type

from prometheus_client import Counter, Gauge, Histogram

# ----------------------------
# Registration helper (avoid duplicate collectors)
# ----------------------------
_METRICS: Dict[Tuple[Type[Any], str], Any] = {}


def get_metric(cls: Type[Any], name: str, *args, **kwargs):
    key = (cls, name)
    if key in _METRICS:
        return _METRICS[key]
    metric = cls(name, *args, **kwargs)
    _METRICS[key] = metric
    return metric


# ----------------------------
# Reconciliation loop
# ----------------------------

autosell_cycle_latency_seconds = get_metric(
    Histogram,
    "autosell_cycle_latency_seconds",
    "Wall time of one full autosell reconciliation cycle",
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)

autosell_cycles_total = get_metric(
    Counter,
    "autosell_cycles_total",
    "Reconciliation cycles by result (ok, skipped_overlap, error)",
    ["result"],
)

pending_loans = get_metric(
    Gauge,
    "pending_loans",
    "Loans currently mirrored in the pending set (PENDING or PASTDUE)",
)

pending_resync_total = get_metric(
    Counter,
    "pending_resync_total",
    "Pending-set resyncs against storage by result",
    ["result"],
)

# ----------------------------
# Prices
# ----------------------------

price_lookups_total = get_metric(
    Counter,
    "price_lookups_total",
    "Per-token price lookups by result (ok, empty, error)",
    ["result"],
)

collateral_price_usd = get_metric(
    Gauge,
    "collateral_price_usd",
    "Latest cached USD price per collateral token",
    ["token"],
)

quote_http_latency_seconds = get_metric(
    Histogram,
    "quote_http_latency_seconds",
    "Latency of quote provider HTTP requests",
    ["status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

# ----------------------------
# Decisions
# ----------------------------

loan_status_transitions_total = get_metric(
    Counter,
    "loan_status_transitions_total",
    "Persisted repayment status transitions",
    ["to_status"],
)

autosell_total = get_metric(
    Counter,
    "autosell_total",
    "Liquidation attempts by outcome",
    ["outcome", "trigger"],
)

autosell_commit_retries_total = get_metric(
    Counter,
    "autosell_commit_retries_total",
    "Retried AUTOSOLD status writes after a completed swap",
)

swap_latency_seconds = get_metric(
    Histogram,
    "swap_latency_seconds",
    "Latency of swap executor calls",
    ["executor"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120),
)
