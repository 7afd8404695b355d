"""Periodic reconciliation driver.

Two APScheduler interval jobs run on the service's event loop:

* the autosell cycle (``CYCLE_INTERVAL_SECONDS``, first run immediately):
  re-drive open intents → refresh prices → per loan classify then evaluate
* a forced pending-set resync (``RESYNC_INTERVAL_SECONDS``) that self-heals
  from any missed event-driven resync

Cycles never overlap: a tick that finds the previous cycle still running is
skipped. Loans are processed one at a time.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from common.datetime import utcnow
from loan_observability.metrics import (autosell_cycle_latency_seconds,
                                        autosell_cycles_total,
                                        loan_status_transitions_total)

from .classifier import StatusTransition, classify
from .config import Settings
from .engine import LiquidationDecisionEngine
from .pending import PendingLoanSet
from .prices import PriceCache
from .store import LoanStore

__all__ = ["SchedulerState", "CycleReport", "ReconciliationScheduler"]

_LOG = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    INITIALIZING = "INITIALIZING"
    READY = "READY"
    STOPPED = "STOPPED"


@dataclass
class CycleReport:
    cycle_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    loans_seen: int = 0
    transitions: int = 0
    sold: int = 0
    redriven: int = 0
    errors: int = 0
    decisions: Dict[str, int] = field(default_factory=dict)
    prices: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class ReconciliationScheduler:
    def __init__(
        self,
        *,
        settings: Settings,
        store: LoanStore,
        pending: PendingLoanSet,
        prices: PriceCache,
        engine: LiquidationDecisionEngine,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings
        self._store = store
        self._pending = pending
        self._prices = prices
        self._engine = engine
        self._clock = clock
        self._cycle_lock = asyncio.Lock()
        self._aps: Optional[AsyncIOScheduler] = None
        self.state = SchedulerState.INITIALIZING
        self.last_report: Optional[CycleReport] = None
        self.cycles_run = 0

    @property
    def ready(self) -> bool:
        return self.state is SchedulerState.READY

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Initial resync, then (when enabled) schedule the periodic jobs."""
        self._try_ready()
        if not self._settings.scheduler_enabled:
            _LOG.info("periodic jobs disabled (SCHEDULER_ENABLED=0)")
            return
        scheduler = AsyncIOScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.run_cycle,
            "interval",
            seconds=self._settings.cycle_interval_seconds,
            id="autosell-cycle",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        scheduler.add_job(
            self.force_resync,
            "interval",
            seconds=self._settings.resync_interval_seconds,
            id="pending-resync",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._aps = scheduler
        _LOG.info(
            "scheduler started: cycle every %ss, resync every %ss",
            self._settings.cycle_interval_seconds,
            self._settings.resync_interval_seconds,
        )

    def stop(self) -> None:
        if self._aps is not None and self._aps.running:
            self._aps.shutdown(wait=False)
        self._aps = None
        self.state = SchedulerState.STOPPED

    def _try_ready(self) -> bool:
        if self._pending.resync():
            if self.state is SchedulerState.INITIALIZING:
                self.state = SchedulerState.READY
                _LOG.info("pending loan set loaded (%d loans); scheduler READY", len(self._pending))
            return True
        return False

    async def force_resync(self) -> bool:
        """Long-interval self-heal; also promotes INITIALIZING → READY."""
        return self._try_ready()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def run_cycle(self) -> Optional[CycleReport]:
        if self._cycle_lock.locked():
            _LOG.warning("previous autosell cycle still running; skipping tick")
            autosell_cycles_total.labels(result="skipped_overlap").inc()
            return None
        async with self._cycle_lock:
            if not self.ready and not self._try_ready():
                _LOG.warning("pending loan set unavailable; skipping cycle")
                autosell_cycles_total.labels(result="not_ready").inc()
                return None
            start = time.perf_counter()
            try:
                report = await self._cycle()
            except Exception:
                _LOG.exception("autosell cycle aborted")
                autosell_cycles_total.labels(result="error").inc()
                return None
            finally:
                autosell_cycle_latency_seconds.observe(time.perf_counter() - start)
            autosell_cycles_total.labels(result="ok").inc()
            self.last_report = report
            self.cycles_run += 1
            return report

    async def _cycle(self) -> CycleReport:
        report = CycleReport(cycle_id=uuid4().hex[:12], started_at=self._clock())
        extra = {"cycle_id": report.cycle_id}
        _LOG.info("Checking for autosell conditions", extra=extra)

        try:
            redriven = await self._engine.redrive_open_intents()
            report.redriven = len(redriven)
            report.sold += sum(1 for o in redriven if o.sold)
        except Exception as exc:
            report.errors += 1
            _LOG.error("could not re-drive open autosell intents: %s", exc, extra=extra)

        report.prices = await self._prices.refresh(self._pending.collateral_tokens())

        decisions: Counter = Counter()
        loans = self._pending.loans()
        report.loans_seen = len(loans)
        for loan in loans:
            try:
                transition = classify(loan, self._clock())
                if transition is not None and self._apply_transition(transition):
                    report.transitions += 1
                decision, outcome = await self._engine.run(loan, self._prices)
                decisions[decision.reason] += 1
                if outcome is not None and outcome.sold:
                    report.sold += 1
            except Exception:
                report.errors += 1
                _LOG.exception("autosell step failed for loan %s", loan.id, extra={**extra, "loan_id": loan.id})

        report.decisions = dict(decisions)
        report.finished_at = self._clock()
        _LOG.info(
            "autosell cycle done: %d loans, %d past due, %d sold, %d errors",
            report.loans_seen,
            report.transitions,
            report.sold,
            report.errors,
            extra=extra,
        )
        return report

    def _apply_transition(self, transition: StatusTransition) -> bool:
        try:
            changed = self._store.mark_past_due(transition.loan_id)
        except Exception as exc:
            _LOG.error(
                "could not mark loan %s %s: %s",
                transition.loan_id,
                transition.to_status.value,
                exc,
                extra={"loan_id": transition.loan_id},
            )
            return False
        if changed:
            loan_status_transitions_total.labels(to_status=transition.to_status.value).inc()
            _LOG.info(
                "loan %s is past due: %s -> %s",
                transition.loan_id,
                transition.from_status.value,
                transition.to_status.value,
                extra={"loan_id": transition.loan_id},
            )
            self._pending.resync()
        return changed

    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "cyclesRun": self.cycles_run,
            "cycleInFlight": self._cycle_lock.locked(),
            "pendingLoans": len(self._pending),
            "pendingSyncedAt": (
                self._pending.last_synced_at.isoformat() if self._pending.last_synced_at else None
            ),
            "pendingSyncError": self._pending.last_error,
            "lastCycle": self.last_report.as_dict() if self.last_report else None,
        }
