"""Mortgage autosell monitor: due-date tracking and collateral liquidation."""

from .classifier import StatusTransition, classify
from .engine import Decision, LiquidationDecisionEngine
from .models import Mortgage, RepaymentStatus
from .scheduler import ReconciliationScheduler

__all__ = [
    "Decision",
    "LiquidationDecisionEngine",
    "Mortgage",
    "ReconciliationScheduler",
    "RepaymentStatus",
    "StatusTransition",
    "classify",
]
