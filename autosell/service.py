"""Wiring of the autosell components into one process-wide service."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlmodel import Session

from common.datetime import utcnow

from .claims import ClaimRegistry
from .config import Settings
from .db import init_db, make_engine
from .engine import LiquidationDecisionEngine
from .jobs import LiquidationJobs
from .pending import PendingLoanSet
from .prices import PriceCache
from .quotes import DexScreenerClient, QuoteProvider
from .scheduler import ReconciliationScheduler
from .store import LoanStore
from .swap import SwapExecutor, executor_from_settings


@dataclass
class AutosellService:
    settings: Settings
    store: LoanStore
    quotes: QuoteProvider
    prices: PriceCache
    pending: PendingLoanSet
    claims: ClaimRegistry
    swap: SwapExecutor
    engine: LiquidationDecisionEngine
    scheduler: ReconciliationScheduler
    jobs: LiquidationJobs

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        self.scheduler.stop()
        await self.jobs.drain()
        for client in (self.quotes, self.swap):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()

    def stats(self) -> Dict[str, Any]:
        now = utcnow()
        return {
            "loans": self.store.status_counts(),
            "pendingLoans": len(self.pending),
            "collateralTokens": self.pending.collateral_tokens(),
            "prices": self.prices.snapshot(now),
            "claimsHeld": len(self.claims),
            "sellThreshold": self.settings.sell_threshold,
            "tokensToNotLiquidate": sorted(self.settings.tokens_to_not_liquidate),
            "scheduler": self.scheduler.status(),
            "generatedAt": now.isoformat(),
        }


def build_service(
    settings: Settings,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    quotes: Optional[QuoteProvider] = None,
    swap: Optional[SwapExecutor] = None,
    clock: Callable[[], datetime] = utcnow,
) -> AutosellService:
    if session_factory is None:
        engine = make_engine(settings.database_url)
        init_db(engine)
        session_factory = lambda: Session(engine)  # noqa: E731

    store = LoanStore(session_factory)
    quotes = quotes or DexScreenerClient(
        base_url=settings.price_api_url, timeout=settings.http_timeout_seconds
    )
    swap = swap or executor_from_settings(settings)
    # quote client retries up to three times, each bounded by the HTTP timeout
    prices = PriceCache(quotes, clock=clock, lookup_timeout=settings.http_timeout_seconds * 3)
    pending = PendingLoanSet(store)
    claims = ClaimRegistry()
    engine_ = LiquidationDecisionEngine(
        settings=settings, store=store, swap=swap, pending=pending, claims=claims, clock=clock
    )
    scheduler = ReconciliationScheduler(
        settings=settings, store=store, pending=pending, prices=prices, engine=engine_, clock=clock
    )
    jobs = LiquidationJobs(store=store, engine=engine_)
    return AutosellService(
        settings=settings,
        store=store,
        quotes=quotes,
        prices=prices,
        pending=pending,
        claims=claims,
        swap=swap,
        engine=engine_,
        scheduler=scheduler,
        jobs=jobs,
    )
