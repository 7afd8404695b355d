"""Dry-run swap executor.

Simulates asynchronous swaps without network access. Results are cached per
idempotency key. Failures can be injected with ``MOCK_SWAP_FAIL=1``.
"""

from __future__ import annotations

import asyncio
import os
from typing import Dict
from uuid import uuid4

from .base import SwapError, SwapExecutor, SwapResult


class MockSwapExecutor(SwapExecutor):
    """Simple in-memory mock implementing ``SwapExecutor``."""

    def __init__(self, *, latency: float | None = None, fail: bool | None = None):
        self._latency = float(os.getenv("MOCK_SWAP_LATENCY", "0.05")) if latency is None else latency
        self._fail = os.getenv("MOCK_SWAP_FAIL", "") == "1" if fail is None else fail
        self._results: Dict[str, SwapResult] = {}
        self.calls = 0

    async def swap(self, token: str, amount: float, idem: str) -> SwapResult:
        await asyncio.sleep(self._latency)
        if idem in self._results:
            return self._results[idem]
        self.calls += 1
        if self._fail:
            raise SwapError(f"mock swap forced failure for {token}")
        result: SwapResult = {
            "txn_ref": f"0xmock{uuid4().hex}",
            "raw": {"token": token, "amount": amount, "idempotency": idem},
        }
        self._results[idem] = result
        return result
