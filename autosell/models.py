from __future__ import annotations

"""SQLModel ORM definitions for the autosell service.
Column names are explicit lowercase snake_case; the camelCase names of the
legacy document store survive only in the import and API models.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field as PydField
from sqlalchemy import JSON, Column, DateTime, Float, Index, String
from sqlmodel import Field, SQLModel

from common.datetime import from_epoch_seconds, to_naive_utc, utcnow


def _new_id() -> str:
    return uuid4().hex


class RepaymentStatus(str, Enum):
    PENDING = "PENDING"
    PASTDUE = "PASTDUE"
    AUTOSOLD = "AUTOSOLD"
    REPAID = "REPAID"


# Statuses mirrored by the pending set and eligible for liquidation.
MONITORED_STATUSES = (RepaymentStatus.PENDING.value, RepaymentStatus.PASTDUE.value)


class IntentState(str, Enum):
    OPEN = "OPEN"
    COMMITTED = "COMMITTED"
    ABANDONED = "ABANDONED"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


class Mortgage(SQLModel, table=True):
    """A collateralised loan monitored for due date and collateral price."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    borrower: Optional[str] = Field(default=None, sa_column=Column("borrower", String))
    collateral_token: str = Field(
        sa_column=Column("collateral_token", String, nullable=False)
    )
    collateral_amount: float = Field(
        sa_column=Column("collateral_amount", Float, nullable=False)
    )
    collateral_usd_price_at_loan: float = Field(
        sa_column=Column("collateral_usd_price_at_loan", Float, nullable=False)
    )
    loan_due_at: Optional[datetime] = Field(
        default=None, sa_column=Column("loan_due_at", DateTime)
    )
    repayment_status: str = Field(
        default=RepaymentStatus.PENDING.value,
        sa_column=Column(
            "repayment_status", String, nullable=False, default=RepaymentStatus.PENDING.value
        ),
    )

    # write-once, set by the autosell commit
    auto_sold_at: Optional[datetime] = Field(
        default=None, sa_column=Column("auto_sold_at", DateTime)
    )
    auto_sold_txn: Optional[str] = Field(
        default=None, sa_column=Column("auto_sold_txn", String)
    )

    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column("created_at", DateTime, nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column=Column("updated_at", DateTime, nullable=False)
    )

    __table_args__ = (
        Index("ix_mortgage_status", "repayment_status"),
        {"extend_existing": True},
    )


class AutosellIntent(SQLModel, table=True):
    """Persisted decision to sell, written before the swap is attempted.

    The idempotency key is handed to the swap executor so a re-driven intent
    cannot execute a second swap for the same loan.
    """

    __tablename__ = "autosell_intent"

    loan_id: str = Field(primary_key=True)
    idempotency_key: str = Field(sa_column=Column("idempotency_key", String, nullable=False))
    state: str = Field(
        default=IntentState.OPEN.value,
        sa_column=Column("state", String, nullable=False, default=IntentState.OPEN.value),
    )
    manual: bool = False
    txn_ref: Optional[str] = Field(default=None, sa_column=Column("txn_ref", String))
    error: Optional[str] = Field(default=None, sa_column=Column("error", String))
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column("created_at", DateTime, nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column=Column("updated_at", DateTime, nullable=False)
    )

    __table_args__ = (
        Index("ix_autosell_intent_state", "state"),
        {"extend_existing": True},
    )


class LiquidationJob(SQLModel, table=True):
    """Operator-triggered liquidation request."""

    __tablename__ = "liquidation_job"

    id: str = Field(default_factory=_new_id, primary_key=True)
    loan_id: str = Field(sa_column=Column("loan_id", String, nullable=False, index=True))
    status: str = Field(
        default=JobStatus.QUEUED.value,
        sa_column=Column("status", String, nullable=False, default=JobStatus.QUEUED.value),
    )
    requested_by: Optional[str] = Field(default=None, sa_column=Column("requested_by", String))
    detail: Optional[str] = Field(default=None, sa_column=Column("detail", String))
    txn_ref: Optional[str] = Field(default=None, sa_column=Column("txn_ref", String))
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column("created_at", DateTime, nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column=Column("updated_at", DateTime, nullable=False)
    )

    __table_args__ = {"extend_existing": True}


class AuditAction(str, Enum):
    PASTDUE = "loan_pastdue"
    AUTOSOLD = "loan_autosold"
    INTENT_OPENED = "autosell_intent_opened"
    INTENT_ABANDONED = "autosell_intent_abandoned"


class LoanAuditJournal(SQLModel, table=True):
    """Immutable audit rows, appended in the same transaction as the change."""

    __tablename__ = "loan_audit_journal"

    id: str = Field(default_factory=_new_id, primary_key=True)
    event_ts: datetime = Field(
        default_factory=utcnow,
        sa_column=Column("event_ts", DateTime, nullable=False, index=True),
    )
    actor: str = Field(default="system", index=True)
    action: str = Field(index=True)
    entity_id: str = Field(index=True)
    payload: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False, default={})
    )


# ---------------------------------------------------------------------------
# camelCase models (import documents, API responses)
# ---------------------------------------------------------------------------


class MortgageDocument(BaseModel):
    """Loan as exported from the legacy document store (import script input).

    ``loanDueAt`` is either epoch seconds or an ISO-8601 string.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    borrower: Optional[str] = None
    collateral_token: str = PydField(alias="collateralToken", min_length=1)
    collateral_amount: float = PydField(alias="collateralAmount", gt=0)
    collateral_usd_price_at_loan: float = PydField(alias="collateralUsdPriceAtLoan", gt=0)
    loan_due_at: Optional[Union[float, str]] = PydField(default=None, alias="loanDueAt")
    repayment_status: RepaymentStatus = PydField(
        default=RepaymentStatus.PENDING, alias="repaymentStatus"
    )

    def due_at(self) -> Optional[datetime]:
        if self.loan_due_at is None or self.loan_due_at == "":
            return None
        if isinstance(self.loan_due_at, (int, float)):
            return from_epoch_seconds(self.loan_due_at)
        return to_naive_utc(self.loan_due_at)

    def to_row(self) -> Mortgage:
        row = Mortgage(
            borrower=self.borrower,
            collateral_token=self.collateral_token,
            collateral_amount=self.collateral_amount,
            collateral_usd_price_at_loan=self.collateral_usd_price_at_loan,
            loan_due_at=self.due_at(),
            repayment_status=self.repayment_status.value,
        )
        if self.id:
            row.id = self.id
        return row


class JobRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str = PydField(alias="jobId")
    loan_id: str = PydField(alias="loanId")
    status: str
    detail: Optional[str] = None
    txn_ref: Optional[str] = PydField(default=None, alias="txnRef")
    created_at: datetime = PydField(alias="createdAt")
    updated_at: datetime = PydField(alias="updatedAt")
