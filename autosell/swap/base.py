"""Swap executor interface.

All adapters implement the `SwapExecutor` protocol so the engine can be
wired with the dry-run mock, the HTTP relay or a test stub.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, TypedDict

__all__ = ["SwapResult", "SwapExecutor", "SwapError"]


class SwapError(RuntimeError):
    """The swap was rejected or failed on-chain."""


class SwapResult(TypedDict, total=False):
    """Return payload from swap adapters.

    ``txn_ref`` is absent when the swap succeeded without a trackable hash.
    """

    txn_ref: Optional[str]
    raw: Dict[str, Any]


class SwapExecutor(Protocol):
    """Sell *amount* of *token* for the chain's native asset.

    *idem* is stable per loan; executors must return the original result
    instead of swapping again when they see a key twice. Failures raise.
    """

    async def swap(self, token: str, amount: float, idem: str) -> SwapResult:
        ...
