from __future__ import annotations

"""Decision and execution tests for the liquidation engine."""
import asyncio
import logging
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from autosell.claims import ClaimRegistry
from autosell.engine import Action, LiquidationDecisionEngine, Outcome
from autosell.models import IntentState, RepaymentStatus
from autosell.pending import PendingLoanSet
from autosell.prices import PriceCache
from autosell.swap import MockSwapExecutor, SwapError
from conftest import FakeQuotes


async def _no_sleep(_seconds: float) -> None:
    return None


class FlakySwap:
    """Fails the first *failures* calls, then succeeds."""

    def __init__(self, failures: int = 1):
        self.failures = failures
        self.keys = []

    async def swap(self, token, amount, idem):
        self.keys.append(idem)
        if len(self.keys) <= self.failures:
            raise SwapError("relay timeout")
        return {"txn_ref": "0xfeed"}


@pytest.fixture()
def build(store, clock, settings):
    def _build(swap=None, **overrides):
        cfg = replace(settings, **overrides) if overrides else settings
        swap = swap or MockSwapExecutor(latency=0, fail=False)
        pending = PendingLoanSet(store)
        engine = LiquidationDecisionEngine(
            settings=cfg,
            store=store,
            swap=swap,
            pending=pending,
            claims=ClaimRegistry(),
            clock=clock,
            sleep=_no_sleep,
        )
        prices = PriceCache(FakeQuotes(), clock=clock)
        return engine, prices, swap, pending

    return _build


# ---------------------------------------------------------------------------
# evaluate
# ---------------------------------------------------------------------------


def test_price_drop_below_threshold_sells(build, make_loan):
    engine, prices, _, _ = build()
    loan = make_loan(reference_price=100.0)
    prices.set("0xabc", Decimal("75"))

    decision = engine.evaluate(loan, prices)

    assert decision.action is Action.SELL
    assert decision.price_ratio == Decimal("0.75")


def test_ratio_equal_to_threshold_sells(build, make_loan):
    engine, prices, _, _ = build()
    loan = make_loan(reference_price=100.0)
    prices.set("0xabc", Decimal("80"))
    assert engine.evaluate(loan, prices).sell


def test_price_above_threshold_skips(build, make_loan):
    engine, prices, _, _ = build()
    loan = make_loan(reference_price=100.0)
    prices.set("0xabc", Decimal("81"))

    decision = engine.evaluate(loan, prices)

    assert decision.action is Action.SKIP
    assert decision.reason == "above_threshold"


def test_missing_price_skips(build, make_loan):
    engine, prices, _, _ = build()
    assert engine.evaluate(make_loan(), prices).reason == "no_price"


def test_stale_price_skips(build, make_loan, clock):
    engine, prices, _, _ = build()
    loan = make_loan()
    prices.set("0xabc", Decimal("10"), observed_at=clock.now - timedelta(seconds=301))
    assert engine.evaluate(loan, prices).reason == "stale_price"


def test_denylisted_token_is_never_sold(build, make_loan):
    engine, prices, swap, _ = build()
    loan = make_loan(token="0xDENY")
    prices.set("0xDENY", Decimal("1"))

    decision = engine.evaluate(loan, prices)

    assert decision.reason == "denylisted"
    assert swap.calls == 0


def test_settled_loans_are_not_monitored(build, make_loan):
    engine, prices, _, _ = build()
    prices.set("0xabc", Decimal("1"))
    for status in (RepaymentStatus.AUTOSOLD, RepaymentStatus.REPAID):
        assert engine.evaluate(make_loan(status=status), prices).reason == "not_monitored"


# ---------------------------------------------------------------------------
# liquidate
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_run_autosells_and_records_txn(build, make_loan, store, clock):
    engine, prices, swap, pending = build()
    loan = make_loan(reference_price=100.0)
    prices.set("0xabc", Decimal("75"))
    pending.resync()
    assert loan.id in pending

    decision, outcome = await engine.run(loan, prices)

    assert decision.sell
    assert outcome.outcome is Outcome.SOLD
    row = store.get(loan.id)
    assert row.repayment_status == RepaymentStatus.AUTOSOLD.value
    assert row.auto_sold_at == clock.now
    assert row.auto_sold_txn == outcome.txn_ref
    assert row.auto_sold_txn.startswith("0xmock")
    assert store.get_intent(loan.id).state == IntentState.COMMITTED.value
    assert loan.id not in pending
    assert swap.calls == 1


@pytest.mark.anyio
async def test_second_evaluation_does_not_sell_again(build, make_loan, store):
    engine, prices, swap, _ = build()
    loan = make_loan(reference_price=100.0)
    prices.set("0xabc", Decimal("50"))

    _, first = await engine.run(loan, prices)
    # stale in-memory copy still claims PENDING
    _, second = await engine.run(loan, prices)

    assert first.sold
    assert second.outcome is Outcome.ALREADY_SETTLED
    assert swap.calls == 1

    fresh = store.get(loan.id)
    decision, outcome = await engine.run(fresh, prices)
    assert decision.reason == "not_monitored"
    assert outcome is None


@pytest.mark.anyio
async def test_claimed_loan_is_skipped(build, make_loan):
    engine, _, swap, _ = build()
    loan = make_loan()

    engine._claims.claim(loan.id)
    outcome = await engine.liquidate(loan)

    assert outcome.outcome is Outcome.CLAIMED
    assert swap.calls == 0


@pytest.mark.anyio
async def test_concurrent_liquidations_sell_once(build, make_loan, store):
    engine, _, swap, _ = build(swap=MockSwapExecutor(latency=0.01, fail=False))
    loan = make_loan()

    results = await asyncio.gather(engine.liquidate(loan), engine.liquidate(loan, manual=True))

    assert sorted(r.outcome.value for r in results) == ["claimed", "sold"]
    assert swap.calls == 1
    assert store.get(loan.id).repayment_status == RepaymentStatus.AUTOSOLD.value


@pytest.mark.anyio
async def test_swap_failure_leaves_loan_pending(build, make_loan, store, caplog):
    engine, prices, _, pending = build(swap=MockSwapExecutor(latency=0, fail=True))
    loan = make_loan(reference_price=100.0)
    prices.set("0xabc", Decimal("60"))
    pending.resync()

    with caplog.at_level(logging.ERROR, logger="autosell.engine"):
        _, outcome = await engine.run(loan, prices)

    assert outcome.outcome is Outcome.SWAP_FAILED
    assert "mock swap forced failure" in outcome.error
    assert any("swap failed for loan" in r.getMessage() for r in caplog.records)

    row = store.get(loan.id)
    assert row.repayment_status == RepaymentStatus.PENDING.value
    assert row.auto_sold_at is None
    assert row.auto_sold_txn is None
    assert loan.id in pending
    assert store.get_intent(loan.id).state == IntentState.ABANDONED.value


@pytest.mark.anyio
async def test_failed_swap_is_retried_with_same_key(build, make_loan, store):
    flaky = FlakySwap(failures=1)
    engine, prices, _, _ = build(swap=flaky)
    loan = make_loan(reference_price=100.0)
    prices.set("0xabc", Decimal("60"))

    _, first = await engine.run(loan, prices)
    _, second = await engine.run(loan, prices)

    assert first.outcome is Outcome.SWAP_FAILED
    assert second.outcome is Outcome.SOLD
    assert flaky.keys == [f"autosell-{loan.id}"] * 2
    assert store.get(loan.id).auto_sold_txn == "0xfeed"


@pytest.mark.anyio
async def test_swap_timeout_counts_as_failure(build, make_loan, store):
    engine, _, _, _ = build(
        swap=MockSwapExecutor(latency=0.5, fail=False), swap_timeout_seconds=0.01
    )
    loan = make_loan()

    outcome = await engine.liquidate(loan)

    assert outcome.outcome is Outcome.SWAP_FAILED
    assert store.get(loan.id).repayment_status == RepaymentStatus.PENDING.value


@pytest.mark.anyio
async def test_denylisted_loan_rejected_even_when_manual(build, make_loan):
    engine, _, swap, _ = build()
    loan = make_loan(token="0xdeny")

    outcome = await engine.liquidate(loan, manual=True)

    assert outcome.outcome is Outcome.DENYLISTED
    assert swap.calls == 0


@pytest.mark.anyio
async def test_commit_is_retried(build, make_loan, store, monkeypatch):
    engine, _, swap, _ = build(autosell_commit_retries=3)
    loan = make_loan()
    real_commit = store.commit_autosell
    attempts = {"n": 0}

    def flaky_commit(*args, **kwargs):
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise RuntimeError("database is locked")
        return real_commit(*args, **kwargs)

    monkeypatch.setattr(store, "commit_autosell", flaky_commit)
    outcome = await engine.liquidate(loan)

    assert outcome.outcome is Outcome.SOLD
    assert attempts["n"] == 3
    assert swap.calls == 1


@pytest.mark.anyio
async def test_open_intent_is_redriven_without_second_swap(build, make_loan, store, monkeypatch, caplog):
    engine, _, swap, _ = build(autosell_commit_retries=2)
    loan = make_loan()
    real_commit = store.commit_autosell

    def broken_commit(*args, **kwargs):
        raise RuntimeError("storage unavailable")

    monkeypatch.setattr(store, "commit_autosell", broken_commit)
    with caplog.at_level(logging.CRITICAL, logger="autosell.engine"):
        outcome = await engine.liquidate(loan)

    assert outcome.outcome is Outcome.COMMIT_FAILED
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)
    assert store.get_intent(loan.id).state == IntentState.OPEN.value
    assert store.get(loan.id).repayment_status == RepaymentStatus.PENDING.value

    monkeypatch.setattr(store, "commit_autosell", real_commit)
    outcomes = await engine.redrive_open_intents()

    assert [o.outcome for o in outcomes] == [Outcome.SOLD]
    # the executor saw the same key and returned the cached result
    assert swap.calls == 1
    assert store.get(loan.id).auto_sold_txn == outcome.txn_ref


@pytest.mark.anyio
async def test_redrive_abandons_intents_for_settled_loans(build, make_loan, store):
    engine, _, swap, _ = build()
    loan = make_loan()
    store.open_intent(loan.id)
    store.update(loan.id, repayment_status=RepaymentStatus.REPAID.value)

    outcomes = await engine.redrive_open_intents()

    assert outcomes == []
    assert swap.calls == 0
    assert store.get_intent(loan.id).state == IntentState.ABANDONED.value
