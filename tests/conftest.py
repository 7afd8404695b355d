from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Union

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import autosell.db  # noqa: F401  (register tables)
from autosell.config import Settings
from autosell.models import Mortgage, RepaymentStatus
from autosell.quotes import Pair
from autosell.service import build_service
from autosell.store import LoanStore
from autosell.swap import MockSwapExecutor
from common import secrets as secrets_module

@pytest.fixture()
def anyio_backend() -> str:
    """The code under test is asyncio-based; run async tests on asyncio only."""

    return "asyncio"


# ---------------------------------------------------------------------------
# Default auth token for API tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _secrets() -> None:
    """Provide default secrets for tests via the secrets manager."""

    secrets_module.secrets.set_override(
        {"API_TOKENS": {"tester": "testtoken"}, "JWT_SECRET": "testsecret"}
    )
    yield
    secrets_module.secrets.set_override({})


# ---------------------------------------------------------------------------
# Deterministic clock and fake quote provider
# ---------------------------------------------------------------------------


class Clock:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeQuotes:
    """In-memory quote provider; a token maps to its pairs or an exception."""

    def __init__(self) -> None:
        self.pairs: Dict[str, Union[List[Pair], Exception]] = {}
        self.calls: List[str] = []

    def set_price(self, token: str, price: Union[str, float, Decimal]) -> None:
        self.pairs[token] = [Pair(pairAddress=f"pair-{token}", dexId="uniswap", priceUsd=str(price))]

    async def get_pairs(self, token: str) -> List[Pair]:
        self.calls.append(token)
        value = self.pairs.get(token, [])
        if isinstance(value, Exception):
            raise value
        return list(value)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return lambda: Session(db_engine)


@pytest.fixture()
def store(session_factory) -> LoanStore:
    return LoanStore(session_factory)


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def make_loan(store, clock):
    """Insert a mortgage; due in 30 days unless told otherwise."""

    def _make(
        *,
        token: str = "0xabc",
        amount: float = 10.0,
        reference_price: float = 100.0,
        due_in: Optional[timedelta] = timedelta(days=30),
        status: RepaymentStatus = RepaymentStatus.PENDING,
    ) -> Mortgage:
        loan = Mortgage(
            borrower="0xborrower",
            collateral_token=token,
            collateral_amount=amount,
            collateral_usd_price_at_loan=reference_price,
            loan_due_at=clock.now + due_in if due_in is not None else None,
            repayment_status=status.value,
        )
        return store.create(loan)

    return _make


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        scheduler_enabled=False,
        tokens_to_not_liquidate=frozenset({"0xdeny"}),
    )


@pytest.fixture()
def quotes() -> FakeQuotes:
    return FakeQuotes()


@pytest.fixture()
def swap() -> MockSwapExecutor:
    return MockSwapExecutor(latency=0, fail=False)


@pytest.fixture()
def service(settings, session_factory, quotes, swap, clock):
    return build_service(
        settings,
        session_factory=session_factory,
        quotes=quotes,
        swap=swap,
        clock=clock,
    )
