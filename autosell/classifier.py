"""Due-date classification.

All helpers are pure and deterministic so they can be unit-tested without
storage; the scheduler persists whatever transition they return.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .models import Mortgage, RepaymentStatus

__all__ = ["StatusTransition", "classify", "FAR_FUTURE"]

# A loan without a due date is never due.
FAR_FUTURE = datetime.max


@dataclass(frozen=True, slots=True)
class StatusTransition:
    loan_id: str
    from_status: RepaymentStatus
    to_status: RepaymentStatus


def is_due(loan: Mortgage, now: datetime) -> bool:
    return now >= (loan.loan_due_at or FAR_FUTURE)


def classify(loan: Mortgage, now: datetime) -> Optional[StatusTransition]:
    """Return the PENDING → PASTDUE transition for *loan*, if one is due.

    Only PENDING loans are considered; every other status (including an
    already PASTDUE loan) yields ``None``.
    """
    if loan.repayment_status != RepaymentStatus.PENDING.value:
        return None
    if not is_due(loan, now):
        return None
    return StatusTransition(
        loan_id=loan.id,
        from_status=RepaymentStatus.PENDING,
        to_status=RepaymentStatus.PASTDUE,
    )
