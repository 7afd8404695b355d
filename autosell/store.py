"""Storage access for mortgages, autosell intents and liquidation jobs.

Every public method opens its own short-lived session from the injected
``session_factory`` so the store can be shared by the scheduler, background
jobs and request handlers. Status writes are conditional updates: a row only
moves forward (PENDING → PASTDUE → AUTOSOLD) and the autosell fields are
written at most once.

Storage errors (``sqlalchemy.exc.SQLAlchemyError``) are not caught here;
callers decide whether a failure is fatal for their step.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, update
from sqlmodel import Session, col, select

from common.datetime import utcnow

from .models import (MONITORED_STATUSES, AuditAction, AutosellIntent,
                     IntentState, LiquidationJob, LoanAuditJournal, Mortgage,
                     RepaymentStatus)

__all__ = ["LoanStore", "log_audit"]

_LOG = logging.getLogger(__name__)


def log_audit(
    session: Session,
    *,
    action: AuditAction,
    entity_id: str,
    actor: str = "system",
    payload: dict | None = None,
) -> None:
    """Stage an immutable audit row.

    Does not commit; the caller's transaction keeps the audit row and the
    change it describes atomic.
    """
    session.add(
        LoanAuditJournal(
            action=action.value,
            entity_id=entity_id,
            actor=actor,
            payload=payload or {},
        )
    )


def _detach(session: Session, row):
    if row is not None:
        session.expunge(row)
    return row


class LoanStore:
    """Document-style CRUD over the ``mortgage`` table plus bookkeeping tables."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Mortgages
    # ------------------------------------------------------------------
    def create(self, mortgage: Mortgage) -> Mortgage:
        if mortgage.collateral_usd_price_at_loan <= 0:
            raise ValueError("collateral_usd_price_at_loan must be positive")
        with self._session_factory() as s:
            s.add(mortgage)
            s.commit()
            s.refresh(mortgage)
            return _detach(s, mortgage)

    def get(self, loan_id: str) -> Optional[Mortgage]:
        with self._session_factory() as s:
            return _detach(s, s.get(Mortgage, loan_id))

    def update(self, loan_id: str, **fields: Any) -> bool:
        """Partial update keyed by id. Returns False when no row matched."""
        if not fields:
            return False
        stmt = (
            update(Mortgage)
            .where(col(Mortgage.id) == loan_id)
            .values(**fields, updated_at=utcnow())
        )
        with self._session_factory() as s:
            result = s.connection().execute(stmt)
            s.commit()
            return result.rowcount > 0

    def query_pending(self) -> List[Mortgage]:
        """All loans the monitor is responsible for (PENDING or PASTDUE)."""
        with self._session_factory() as s:
            rows = s.exec(
                select(Mortgage)
                .where(col(Mortgage.repayment_status).in_(MONITORED_STATUSES))
                .order_by(col(Mortgage.created_at), col(Mortgage.id))
            ).all()
            for row in rows:
                s.expunge(row)
            return list(rows)

    def mark_past_due(self, loan_id: str, *, now: Optional[datetime] = None) -> bool:
        """PENDING → PASTDUE. No-op (False) if the loan already moved on."""
        stmt = (
            update(Mortgage)
            .where(
                col(Mortgage.id) == loan_id,
                col(Mortgage.repayment_status) == RepaymentStatus.PENDING.value,
            )
            .values(
                repayment_status=RepaymentStatus.PASTDUE.value,
                updated_at=now or utcnow(),
            )
        )
        with self._session_factory() as s:
            result = s.connection().execute(stmt)
            if result.rowcount == 0:
                s.rollback()
                return False
            log_audit(s, action=AuditAction.PASTDUE, entity_id=loan_id)
            s.commit()
            return True

    def commit_autosell(
        self,
        loan_id: str,
        *,
        sold_at: datetime,
        txn_ref: Optional[str],
        actor: str = "system",
    ) -> bool:
        """Record the liquidation in one transaction.

        Sets AUTOSOLD, ``auto_sold_at`` and (when present) ``auto_sold_txn``,
        finalises the intent and appends the audit row. The row must still be
        PENDING/PASTDUE with no ``auto_sold_at``; otherwise nothing is written
        and False is returned.
        """
        values: Dict[str, Any] = {
            "repayment_status": RepaymentStatus.AUTOSOLD.value,
            "auto_sold_at": sold_at,
            "updated_at": sold_at,
        }
        if txn_ref:
            values["auto_sold_txn"] = txn_ref
        stmt = (
            update(Mortgage)
            .where(
                col(Mortgage.id) == loan_id,
                col(Mortgage.repayment_status).in_(MONITORED_STATUSES),
                col(Mortgage.auto_sold_at).is_(None),
            )
            .values(**values)
        )
        with self._session_factory() as s:
            result = s.connection().execute(stmt)
            if result.rowcount == 0:
                s.rollback()
                return False
            intent = s.get(AutosellIntent, loan_id)
            if intent is not None:
                intent.state = IntentState.COMMITTED.value
                intent.txn_ref = txn_ref
                intent.updated_at = sold_at
                s.add(intent)
            log_audit(
                s,
                action=AuditAction.AUTOSOLD,
                entity_id=loan_id,
                actor=actor,
                payload={"txn": txn_ref, "sold_at": sold_at.isoformat()},
            )
            s.commit()
            return True

    def status_counts(self) -> Dict[str, int]:
        with self._session_factory() as s:
            rows = s.exec(
                select(Mortgage.repayment_status, func.count()).group_by(
                    col(Mortgage.repayment_status)
                )
            ).all()
        counts = {status.value: 0 for status in RepaymentStatus}
        for status, n in rows:
            counts[status] = n
        return counts

    # ------------------------------------------------------------------
    # Autosell intents
    # ------------------------------------------------------------------
    def open_intent(self, loan_id: str, *, manual: bool = False) -> AutosellIntent:
        """Return the loan's intent, opening (or re-opening) it if needed.

        The idempotency key is fixed per loan, so every attempt for the same
        loan presents the same key to the swap executor. A COMMITTED intent
        is returned untouched.
        """
        with self._session_factory() as s:
            intent = s.get(AutosellIntent, loan_id)
            if intent is None:
                intent = AutosellIntent(
                    loan_id=loan_id,
                    idempotency_key=f"autosell-{loan_id}",
                    manual=manual,
                )
                log_audit(
                    s,
                    action=AuditAction.INTENT_OPENED,
                    entity_id=loan_id,
                    payload={"manual": manual},
                )
            elif intent.state == IntentState.ABANDONED.value:
                intent.state = IntentState.OPEN.value
                intent.manual = manual
                intent.error = None
                intent.updated_at = utcnow()
            else:
                return _detach(s, intent)
            s.add(intent)
            s.commit()
            s.refresh(intent)
            return _detach(s, intent)

    def abandon_intent(self, loan_id: str, error: str) -> None:
        with self._session_factory() as s:
            intent = s.get(AutosellIntent, loan_id)
            if intent is None or intent.state != IntentState.OPEN.value:
                return
            intent.state = IntentState.ABANDONED.value
            intent.error = error[:500]
            intent.updated_at = utcnow()
            s.add(intent)
            log_audit(
                s,
                action=AuditAction.INTENT_ABANDONED,
                entity_id=loan_id,
                payload={"error": intent.error},
            )
            s.commit()

    def get_intent(self, loan_id: str) -> Optional[AutosellIntent]:
        with self._session_factory() as s:
            return _detach(s, s.get(AutosellIntent, loan_id))

    def open_intents(self) -> List[AutosellIntent]:
        with self._session_factory() as s:
            rows = s.exec(
                select(AutosellIntent)
                .where(col(AutosellIntent.state) == IntentState.OPEN.value)
                .order_by(col(AutosellIntent.created_at))
            ).all()
            for row in rows:
                s.expunge(row)
            return list(rows)

    # ------------------------------------------------------------------
    # Liquidation jobs
    # ------------------------------------------------------------------
    def create_job(self, loan_id: str, *, requested_by: Optional[str] = None) -> LiquidationJob:
        with self._session_factory() as s:
            job = LiquidationJob(loan_id=loan_id, requested_by=requested_by)
            s.add(job)
            s.commit()
            s.refresh(job)
            return _detach(s, job)

    def update_job(self, job_id: str, **fields: Any) -> Optional[LiquidationJob]:
        with self._session_factory() as s:
            job = s.get(LiquidationJob, job_id)
            if job is None:
                return None
            for key, value in fields.items():
                setattr(job, key, value)
            job.updated_at = utcnow()
            s.add(job)
            s.commit()
            s.refresh(job)
            return _detach(s, job)

    def get_job(self, job_id: str) -> Optional[LiquidationJob]:
        with self._session_factory() as s:
            return _detach(s, s.get(LiquidationJob, job_id))
