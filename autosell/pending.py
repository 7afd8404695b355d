from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import List, Optional, Set

from common.datetime import utcnow
from loan_observability.metrics import pending_loans, pending_resync_total

from .models import Mortgage
from .store import LoanStore

_LOG = logging.getLogger(__name__)


class PendingLoanSet:
    """In-memory mirror of every PENDING / PASTDUE loan.

    Never patched in place: :meth:`resync` replaces the whole snapshot after
    a storage round-trip. When storage is unreachable the last good snapshot
    is kept so monitoring continues.
    """

    def __init__(self, store: LoanStore):
        self._store = store
        self._loans: List[Mortgage] = []
        self._ids: Set[str] = set()
        self._lock = threading.Lock()
        self.last_synced_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    def resync(self) -> bool:
        with self._lock:
            try:
                loans = self._store.query_pending()
            except Exception as exc:
                self.last_error = str(exc)
                pending_resync_total.labels(result="error").inc()
                _LOG.error("pending loan resync failed; keeping %d cached loans: %s", len(self._loans), exc)
                return False
            self._loans = loans
            self._ids = {loan.id for loan in loans}
            self.last_synced_at = utcnow()
            self.last_error = None
        pending_loans.set(len(loans))
        pending_resync_total.labels(result="ok").inc()
        _LOG.debug("pending loan set resynced: %d loans", len(loans))
        return True

    def loans(self) -> List[Mortgage]:
        """Snapshot of the current set (safe to iterate while resyncs happen)."""
        return list(self._loans)

    def collateral_tokens(self) -> List[str]:
        """Distinct collateral tokens, in first-seen order."""
        return list(dict.fromkeys(loan.collateral_token for loan in self._loans))

    def __contains__(self, loan_id: object) -> bool:
        return loan_id in self._ids

    def __len__(self) -> int:
        return len(self._loans)
