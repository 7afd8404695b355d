"""Operator-triggered liquidations.

A request is validated, recorded as a QUEUED job and executed as a
background task through the same engine path as the periodic cycle, with the
price threshold bypassed. The token denylist and the per-loan claim still
apply, so a manual request can never race the scheduler into a second sale.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Set

from .engine import LiquidationDecisionEngine, LiquidationOutcome, Outcome
from .models import MONITORED_STATUSES, JobStatus, LiquidationJob
from .store import LoanStore

__all__ = ["LoanNotFound", "LoanNotLiquidatable", "LiquidationJobs"]

_LOG = logging.getLogger(__name__)


class LoanNotFound(LookupError):
    pass


class LoanNotLiquidatable(ValueError):
    pass


_OUTCOME_STATUS: Dict[Outcome, JobStatus] = {
    Outcome.SOLD: JobStatus.SUCCEEDED,
    Outcome.CLAIMED: JobStatus.REJECTED,
    Outcome.ALREADY_SETTLED: JobStatus.REJECTED,
    Outcome.NOT_FOUND: JobStatus.REJECTED,
    Outcome.DENYLISTED: JobStatus.REJECTED,
    Outcome.SWAP_FAILED: JobStatus.FAILED,
    Outcome.COMMIT_FAILED: JobStatus.FAILED,
}


class LiquidationJobs:
    def __init__(self, *, store: LoanStore, engine: LiquidationDecisionEngine):
        self._store = store
        self._engine = engine
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, loan_id: str, *, requested_by: Optional[str] = None) -> LiquidationJob:
        """Validate and enqueue. Must be called from the event loop."""
        loan = self._store.get(loan_id)
        if loan is None:
            raise LoanNotFound(loan_id)
        if loan.repayment_status not in MONITORED_STATUSES:
            raise LoanNotLiquidatable(f"loan {loan_id} is {loan.repayment_status}")

        job = self._store.create_job(loan_id, requested_by=requested_by)
        _LOG.info(
            "manual liquidation queued for loan %s by %s",
            loan_id,
            requested_by or "unknown",
            extra={"loan_id": loan_id, "job_id": job.id},
        )
        task = asyncio.get_running_loop().create_task(self.execute(job.id, loan_id, actor=requested_by or "operator"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def execute(self, job_id: str, loan_id: str, *, actor: str = "operator") -> Optional[LiquidationJob]:
        extra = {"loan_id": loan_id, "job_id": job_id}
        self._store.update_job(job_id, status=JobStatus.RUNNING.value)
        loan = self._store.get(loan_id)
        if loan is None:
            return self._store.update_job(job_id, status=JobStatus.REJECTED.value, detail=Outcome.NOT_FOUND.value)
        try:
            outcome: LiquidationOutcome = await self._engine.liquidate(loan, manual=True, actor=actor)
        except Exception as exc:
            _LOG.exception("manual liquidation crashed", extra=extra)
            return self._store.update_job(job_id, status=JobStatus.FAILED.value, detail=str(exc)[:500])
        status = _OUTCOME_STATUS[outcome.outcome]
        _LOG.info("manual liquidation finished: %s", outcome.outcome.value, extra=extra)
        return self._store.update_job(
            job_id,
            status=status.value,
            detail=outcome.error or outcome.outcome.value,
            txn_ref=outcome.txn_ref,
        )

    def status(self, job_id: str) -> Optional[LiquidationJob]:
        return self._store.get_job(job_id)

    async def drain(self) -> None:
        """Wait for in-flight jobs (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
