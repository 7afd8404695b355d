from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Set

_LOG = logging.getLogger(__name__)


class LoanClaimed(Exception):
    """Another actor is already liquidating this loan."""


class ClaimRegistry:
    """Exclusive in-process claims on loan ids.

    The periodic engine and operator-triggered jobs share one registry; a
    loan is liquidated only by the holder of its claim. Claiming never
    awaits, so on a single event loop check-and-set is atomic.
    """

    def __init__(self) -> None:
        self._held: Set[str] = set()

    def claim(self, loan_id: str) -> bool:
        if loan_id in self._held:
            return False
        self._held.add(loan_id)
        return True

    def release(self, loan_id: str) -> None:
        self._held.discard(loan_id)

    def is_claimed(self, loan_id: str) -> bool:
        return loan_id in self._held

    @contextmanager
    def hold(self, loan_id: str) -> Iterator[None]:
        if not self.claim(loan_id):
            raise LoanClaimed(loan_id)
        try:
            yield
        finally:
            self.release(loan_id)

    def __len__(self) -> int:
        return len(self._held)
