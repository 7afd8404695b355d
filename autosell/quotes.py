"""Quote provider client (DexScreener-compatible pair API).

Uses `httpx.AsyncClient` with:
* Base URL from ``PRICE_API_URL`` (see `autosell.config`)
* Simple exponential back-off retry on 429 / 5xx and transport errors (max 3 attempts)
* Prometheus latency histogram labelled by HTTP status

Network access is *never* used in CI; tests inject `httpx.MockTransport`.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, List, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field

from loan_observability.metrics import quote_http_latency_seconds

from .config import DEFAULT_PRICE_API_URL

__all__ = ["Pair", "QuoteProvider", "DexScreenerClient"]

_LOG = logging.getLogger(__name__)

_RETRY_STATUSES = {429, 502, 503, 504}
_MAX_ATTEMPTS = 3
# upper bound for a single back-off, whatever Retry-After asks for
_MAX_RETRY_DELAY = 5.0


class Pair(BaseModel):
    """One trading pair as returned by the provider (extra fields ignored)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pair_address: Optional[str] = Field(default=None, alias="pairAddress")
    dex_id: Optional[str] = Field(default=None, alias="dexId")
    price_usd: Optional[str] = Field(default=None, alias="priceUsd")


class _PairsPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pairs: Optional[List[Pair]] = None


class QuoteProvider(Protocol):
    """Anything able to list the trading pairs of a token, best pair first."""

    async def get_pairs(self, token: str) -> List[Pair]:
        ...


class DexScreenerClient:
    """Typed async client for ``GET {base}/{token}``."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_PRICE_API_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._base_url = base_url.rstrip("/")
        self._sleep = sleep
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _get(self, url: str) -> httpx.Response:
        attempt = 0
        while True:
            attempt += 1
            start = time.perf_counter()
            try:
                resp = await self._client.get(url)
            except httpx.RequestError as exc:
                if attempt >= _MAX_ATTEMPTS:
                    raise
                _LOG.debug("quote request error (attempt %d): %s", attempt, exc)
                await self._sleep(2 ** attempt * 0.1)
                continue
            quote_http_latency_seconds.labels(str(resp.status_code)).observe(
                time.perf_counter() - start
            )
            if resp.status_code in _RETRY_STATUSES and attempt < _MAX_ATTEMPTS:
                retry_after = resp.headers.get("Retry-After")
                delay = float(retry_after) if retry_after and retry_after.isdigit() else 2 ** attempt * 0.1
                delay = min(delay, _MAX_RETRY_DELAY) * (1 + random.random() * 0.2)  # jitter
                await self._sleep(delay)
                continue
            resp.raise_for_status()
            return resp

    async def get_pairs(self, token: str) -> List[Pair]:
        resp = await self._get(f"{self._base_url}/{token}")
        page = _PairsPage.model_validate(resp.json())
        return list(page.pairs or [])

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
