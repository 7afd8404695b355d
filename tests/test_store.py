from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import DateTime
from sqlmodel import Session, select

from autosell.models import (AuditAction, AutosellIntent, IntentState,
                             LiquidationJob, LoanAuditJournal, Mortgage,
                             RepaymentStatus)


def _audit_actions(db_engine, loan_id):
    with Session(db_engine) as s:
        rows = s.exec(
            select(LoanAuditJournal).where(LoanAuditJournal.entity_id == loan_id)
        ).all()
    return [r.action for r in rows]


def test_create_rejects_non_positive_reference_price(store):
    loan = Mortgage(
        collateral_token="0xabc",
        collateral_amount=1.0,
        collateral_usd_price_at_loan=0.0,
    )
    with pytest.raises(ValueError):
        store.create(loan)


def test_query_pending_only_returns_monitored_loans(store, make_loan):
    pending = make_loan()
    pastdue = make_loan(status=RepaymentStatus.PASTDUE)
    make_loan(status=RepaymentStatus.AUTOSOLD)
    make_loan(status=RepaymentStatus.REPAID)

    ids = {loan.id for loan in store.query_pending()}
    assert ids == {pending.id, pastdue.id}


def test_mark_past_due_is_write_once(store, make_loan, db_engine):
    loan = make_loan(due_in=timedelta(hours=-1))

    assert store.mark_past_due(loan.id) is True
    assert store.mark_past_due(loan.id) is False
    assert store.get(loan.id).repayment_status == RepaymentStatus.PASTDUE.value
    assert _audit_actions(db_engine, loan.id) == [AuditAction.PASTDUE.value]


def test_commit_autosell_writes_fields_once(store, make_loan, db_engine):
    loan = make_loan()
    sold_at = datetime(2025, 1, 1, 12, 0, 0)

    assert store.commit_autosell(loan.id, sold_at=sold_at, txn_ref="0xfirst") is True
    assert store.commit_autosell(loan.id, sold_at=sold_at + timedelta(minutes=1), txn_ref="0xsecond") is False

    row = store.get(loan.id)
    assert row.repayment_status == RepaymentStatus.AUTOSOLD.value
    assert row.auto_sold_at == sold_at
    assert row.auto_sold_txn == "0xfirst"
    assert _audit_actions(db_engine, loan.id) == [AuditAction.AUTOSOLD.value]


def test_commit_autosell_without_txn_leaves_hash_empty(store, make_loan):
    loan = make_loan(status=RepaymentStatus.PASTDUE)
    assert store.commit_autosell(loan.id, sold_at=datetime(2025, 1, 1), txn_ref=None) is True
    row = store.get(loan.id)
    assert row.auto_sold_at is not None
    assert row.auto_sold_txn is None


def test_status_never_moves_backwards(store, make_loan):
    loan = make_loan()
    store.commit_autosell(loan.id, sold_at=datetime(2025, 1, 1), txn_ref="0x1")
    # PASTDUE transition must not overwrite AUTOSOLD
    assert store.mark_past_due(loan.id) is False
    assert store.get(loan.id).repayment_status == RepaymentStatus.AUTOSOLD.value


def test_intent_lifecycle(store, make_loan):
    loan = make_loan()

    intent = store.open_intent(loan.id)
    assert intent.state == IntentState.OPEN.value
    assert intent.idempotency_key == f"autosell-{loan.id}"
    assert [i.loan_id for i in store.open_intents()] == [loan.id]

    store.abandon_intent(loan.id, "relay down")
    abandoned = store.get_intent(loan.id)
    assert abandoned.state == IntentState.ABANDONED.value
    assert abandoned.error == "relay down"
    assert store.open_intents() == []

    reopened = store.open_intent(loan.id, manual=True)
    assert reopened.state == IntentState.OPEN.value
    assert reopened.manual is True
    assert reopened.error is None
    assert reopened.idempotency_key == intent.idempotency_key

    store.commit_autosell(loan.id, sold_at=datetime(2025, 1, 1), txn_ref="0xabc")
    committed = store.open_intent(loan.id)
    assert committed.state == IntentState.COMMITTED.value
    assert committed.txn_ref == "0xabc"


def test_status_counts(store, make_loan):
    make_loan()
    make_loan()
    make_loan(status=RepaymentStatus.REPAID)

    counts = store.status_counts()
    assert counts == {"PENDING": 2, "PASTDUE": 0, "AUTOSOLD": 0, "REPAID": 1}


def test_update_reports_missing_rows(store, make_loan):
    loan = make_loan()
    assert store.update(loan.id, borrower="0xnew") is True
    assert store.get(loan.id).borrower == "0xnew"
    assert store.update("missing", borrower="0xnew") is False


def test_jobs_roundtrip(store, make_loan):
    loan = make_loan()
    job = store.create_job(loan.id, requested_by="tester")
    assert job.status == "QUEUED"

    updated = store.update_job(job.id, status="SUCCEEDED", txn_ref="0x1")
    assert updated.status == "SUCCEEDED"
    assert store.get_job(job.id).txn_ref == "0x1"
    assert store.update_job("nope", status="FAILED") is None


@pytest.mark.parametrize(
    "table, column",
    [
        (Mortgage, "loan_due_at"),
        (Mortgage, "auto_sold_at"),
        (Mortgage, "created_at"),
        (AutosellIntent, "updated_at"),
        (LiquidationJob, "created_at"),
        (LoanAuditJournal, "event_ts"),
    ],
)
def test_timestamp_columns_store_naive_utc(table, column):
    sa_type = table.__table__.c[column].type
    assert type(sa_type) is DateTime
    assert sa_type.timezone is False


def test_audit_rows_carry_naive_event_time(store, make_loan, db_engine):
    loan = make_loan()
    assert store.mark_past_due(loan.id)

    with Session(db_engine) as s:
        row = s.exec(
            select(LoanAuditJournal).where(LoanAuditJournal.entity_id == loan.id)
        ).one()
    assert row.action == AuditAction.PASTDUE.value
    assert row.event_ts.tzinfo is None
