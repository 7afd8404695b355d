"""Liquidation decision and execution.

``evaluate`` is pure: given a loan, the price cache and the current time it
returns SELL or SKIP with a reason. ``liquidate`` performs the sale:

1. exclusive claim on the loan id (shared with operator jobs)
2. fresh read from storage; terminal loans are left alone
3. persist an autosell intent carrying a per-loan idempotency key
4. swap through the executor, bounded by a timeout
5. one atomic AUTOSOLD write, retried with back-off
6. pending-set resync

A failed swap abandons the intent and leaves the loan untouched so the next
cycle re-evaluates it. A swap whose AUTOSOLD write keeps failing leaves the
intent OPEN; the scheduler re-drives open intents with the same key.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from common.datetime import utcnow
from loan_observability.metrics import (autosell_commit_retries_total,
                                        autosell_total, swap_latency_seconds)

from .claims import ClaimRegistry, LoanClaimed
from .config import Settings
from .models import MONITORED_STATUSES, IntentState, Mortgage
from .pending import PendingLoanSet
from .prices import PriceCache
from .store import LoanStore
from .swap.base import SwapExecutor

__all__ = [
    "Action",
    "Decision",
    "Outcome",
    "LiquidationOutcome",
    "LiquidationDecisionEngine",
]

_LOG = logging.getLogger(__name__)


class Action(str, Enum):
    SKIP = "skip"
    SELL = "sell"


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str
    price_ratio: Optional[Decimal] = None

    @property
    def sell(self) -> bool:
        return self.action is Action.SELL


class Outcome(str, Enum):
    SOLD = "sold"
    CLAIMED = "claimed"
    ALREADY_SETTLED = "already_settled"
    NOT_FOUND = "not_found"
    DENYLISTED = "denylisted"
    SWAP_FAILED = "swap_failed"
    COMMIT_FAILED = "commit_failed"


@dataclass(frozen=True)
class LiquidationOutcome:
    loan_id: str
    outcome: Outcome
    txn_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def sold(self) -> bool:
        return self.outcome is Outcome.SOLD


class LiquidationDecisionEngine:
    def __init__(
        self,
        *,
        settings: Settings,
        store: LoanStore,
        swap: SwapExecutor,
        pending: PendingLoanSet,
        claims: ClaimRegistry,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._settings = settings
        self._store = store
        self._swap = swap
        self._pending = pending
        self._claims = claims
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------
    def evaluate(self, loan: Mortgage, prices: PriceCache, now: Optional[datetime] = None) -> Decision:
        now = now or self._clock()
        if loan.repayment_status not in MONITORED_STATUSES or loan.auto_sold_at is not None:
            return Decision(Action.SKIP, "not_monitored")

        point = prices.get(loan.collateral_token)
        if point is None:
            return Decision(Action.SKIP, "no_price")
        if point.age_seconds(now) > self._settings.price_max_age_seconds:
            return Decision(Action.SKIP, "stale_price")

        reference = Decimal(str(loan.collateral_usd_price_at_loan))
        if reference <= 0:
            return Decision(Action.SKIP, "invalid_reference_price")

        ratio = point.price / reference
        should_sell = ratio <= Decimal(str(self._settings.sell_threshold))
        if not should_sell:
            return Decision(Action.SKIP, "above_threshold", ratio)
        if self._settings.is_denylisted(loan.collateral_token):
            return Decision(Action.SKIP, "denylisted", ratio)
        return Decision(Action.SELL, "threshold_breached", ratio)

    async def run(
        self, loan: Mortgage, prices: PriceCache
    ) -> Tuple[Decision, Optional[LiquidationOutcome]]:
        """Evaluate *loan* and liquidate it when the decision is SELL."""
        decision = self.evaluate(loan, prices)
        if not decision.sell:
            return decision, None
        _LOG.info(
            "autosell triggered for loan %s (ratio %s <= %s)",
            loan.id,
            decision.price_ratio,
            self._settings.sell_threshold,
            extra={"loan_id": loan.id, "token": loan.collateral_token},
        )
        return decision, await self.liquidate(loan)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def liquidate(
        self, loan: Mortgage, *, manual: bool = False, actor: str = "system"
    ) -> LiquidationOutcome:
        trigger = "manual" if manual else "auto"
        try:
            with self._claims.hold(loan.id):
                result = await self._liquidate_claimed(loan.id, manual=manual, actor=actor)
        except LoanClaimed:
            _LOG.info("loan %s already claimed; skipping", loan.id, extra={"loan_id": loan.id})
            result = LiquidationOutcome(loan.id, Outcome.CLAIMED)
        autosell_total.labels(outcome=result.outcome.value, trigger=trigger).inc()
        return result

    async def redrive_open_intents(self) -> List[LiquidationOutcome]:
        """Finish sales whose intent is still OPEN (crash or failed write).

        The decision was already taken, so the threshold is not re-checked;
        the executor sees the same idempotency key as the first attempt.
        """
        outcomes: List[LiquidationOutcome] = []
        for intent in self._store.open_intents():
            if self._claims.is_claimed(intent.loan_id):
                continue
            loan = self._store.get(intent.loan_id)
            if loan is None or loan.repayment_status not in MONITORED_STATUSES:
                self._store.abandon_intent(intent.loan_id, "loan no longer liquidatable")
                continue
            if self._settings.is_denylisted(loan.collateral_token):
                self._store.abandon_intent(intent.loan_id, "token excluded from liquidation")
                continue
            _LOG.warning("re-driving open autosell intent for loan %s", loan.id, extra={"loan_id": loan.id})
            outcomes.append(await self.liquidate(loan, manual=intent.manual))
        return outcomes

    async def _liquidate_claimed(self, loan_id: str, *, manual: bool, actor: str) -> LiquidationOutcome:
        fresh = self._store.get(loan_id)
        if fresh is None:
            return LiquidationOutcome(loan_id, Outcome.NOT_FOUND)
        if fresh.repayment_status not in MONITORED_STATUSES or fresh.auto_sold_at is not None:
            return LiquidationOutcome(loan_id, Outcome.ALREADY_SETTLED)
        if self._settings.is_denylisted(fresh.collateral_token):
            return LiquidationOutcome(loan_id, Outcome.DENYLISTED)

        intent = self._store.open_intent(loan_id, manual=manual)
        if intent.state == IntentState.COMMITTED.value:
            # swap and commit already happened; only the pending set is behind
            self._pending.resync()
            return LiquidationOutcome(loan_id, Outcome.ALREADY_SETTLED, txn_ref=intent.txn_ref)

        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self._swap.swap(fresh.collateral_token, fresh.collateral_amount, intent.idempotency_key),
                timeout=self._settings.swap_timeout_seconds,
            )
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            _LOG.error(
                "swap failed for loan %s: %s",
                loan_id,
                error,
                extra={"loan_id": loan_id, "token": fresh.collateral_token},
            )
            try:
                self._store.abandon_intent(loan_id, error)
            except Exception as store_exc:
                # an OPEN intent is re-driven with the same key; tolerable
                _LOG.error("could not abandon intent for loan %s: %s", loan_id, store_exc, extra={"loan_id": loan_id})
            return LiquidationOutcome(loan_id, Outcome.SWAP_FAILED, error=error)
        finally:
            swap_latency_seconds.labels(executor=self._swap.__class__.__name__).observe(
                time.perf_counter() - start
            )

        txn_ref = result.get("txn_ref")
        committed = await self._commit_with_retry(loan_id, txn_ref, actor=actor)
        if committed is None:
            return LiquidationOutcome(loan_id, Outcome.COMMIT_FAILED, txn_ref=txn_ref)
        if not committed:
            # the row moved on between the fresh read and the write
            self._pending.resync()
            return LiquidationOutcome(loan_id, Outcome.ALREADY_SETTLED, txn_ref=txn_ref)

        self._pending.resync()
        _LOG.info("Loan ID %s was autosold", loan_id, extra={"loan_id": loan_id})
        return LiquidationOutcome(loan_id, Outcome.SOLD, txn_ref=txn_ref)

    async def _commit_with_retry(self, loan_id: str, txn_ref: Optional[str], *, actor: str) -> Optional[bool]:
        """Write AUTOSOLD; ``None`` means every attempt failed."""
        attempts = self._settings.autosell_commit_retries
        for attempt in range(1, attempts + 1):
            try:
                return self._store.commit_autosell(loan_id, sold_at=self._clock(), txn_ref=txn_ref, actor=actor)
            except Exception as exc:
                if attempt >= attempts:
                    _LOG.critical(
                        "swap executed but AUTOSOLD write failed %d times for loan %s (txn %s): %s",
                        attempts,
                        loan_id,
                        txn_ref,
                        exc,
                        extra={"loan_id": loan_id},
                    )
                    return None
                autosell_commit_retries_total.inc()
                _LOG.warning("AUTOSOLD write failed for loan %s (attempt %d): %s", loan_id, attempt, exc, extra={"loan_id": loan_id})
                await self._sleep(min(5.0, 0.1 * (2 ** attempt)))
        return None
