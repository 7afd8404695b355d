"""Latest known USD price per collateral token."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, Optional

from common.datetime import utcnow
from loan_observability.metrics import collateral_price_usd, price_lookups_total

from .quotes import QuoteProvider

__all__ = ["PricePoint", "PriceCache", "PriceLookupError"]

_LOG = logging.getLogger(__name__)


class PriceLookupError(Exception):
    """The provider answered but the price could not be used."""


@dataclass(frozen=True)
class PricePoint:
    price: Decimal
    observed_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.observed_at).total_seconds()


def parse_price(raw: Optional[str]) -> Decimal:
    if raw is None:
        raise PriceLookupError("pair has no priceUsd")
    try:
        price = Decimal(str(raw))
    except InvalidOperation as exc:
        raise PriceLookupError(f"unparsable priceUsd {raw!r}") from exc
    if not price.is_finite() or price <= 0:
        raise PriceLookupError(f"non-positive priceUsd {raw!r}")
    return price


class PriceCache:
    """Token → :class:`PricePoint`, refreshed from a :class:`QuoteProvider`.

    A token without data in a refresh keeps its previous entry; consumers
    gate on :meth:`PricePoint.age_seconds` to avoid acting on stale prices.
    Each provider lookup is bounded by *lookup_timeout* seconds; a lookup
    that runs past it counts as an error for that token.
    """

    def __init__(
        self,
        provider: QuoteProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
        lookup_timeout: float = 30.0,
    ):
        self._provider = provider
        self._lookup_timeout = lookup_timeout
        self._clock = clock
        self._prices: Dict[str, PricePoint] = {}

    async def refresh(self, tokens: Iterable[str]) -> Dict[str, str]:
        """Refresh every token; failures are isolated per token.

        Returns a per-token result map (``ok`` / ``empty`` / ``error``).
        """
        results: Dict[str, str] = {}
        for token in tokens:
            try:
                pairs = await asyncio.wait_for(
                    self._provider.get_pairs(token), timeout=self._lookup_timeout
                )
                first = pairs[0] if pairs else None
                if first is None:
                    _LOG.info("no trading pair for %s; keeping cached price", token, extra={"token": token})
                    results[token] = "empty"
                    continue
                price = parse_price(first.price_usd)
            except Exception as exc:
                _LOG.warning("price lookup failed for %s: %s", token, exc, extra={"token": token})
                results[token] = "error"
                continue
            self._prices[token] = PricePoint(price=price, observed_at=self._clock())
            collateral_price_usd.labels(token=token).set(float(price))
            results[token] = "ok"

        for result in results.values():
            price_lookups_total.labels(result=result).inc()
        return results

    def get(self, token: str) -> Optional[PricePoint]:
        return self._prices.get(token)

    def set(self, token: str, price: Decimal, observed_at: Optional[datetime] = None) -> None:
        """Seed a price directly (warm start, tests)."""
        self._prices[token] = PricePoint(price=Decimal(price), observed_at=observed_at or self._clock())

    def __contains__(self, token: object) -> bool:
        return token in self._prices

    def __len__(self) -> int:
        return len(self._prices)

    def snapshot(self, now: Optional[datetime] = None) -> Dict[str, dict]:
        now = now or self._clock()
        return {
            token: {
                "priceUsd": str(point.price),
                "observedAt": point.observed_at.isoformat(),
                "ageSeconds": round(point.age_seconds(now), 1),
            }
            for token, point in self._prices.items()
        }
