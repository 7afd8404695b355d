"""Quick smoke test for a running autosell service.

Usage:

```bash
export AUTOSELL_URL="http://127.0.0.1:8000"
export AUTOSELL_TOKEN="<operator token from API_TOKENS>"
python scripts/smoke_autosell.py
```
"""
from __future__ import annotations

import os
import sys
import time
from typing import Final

import requests

BASE: Final[str] = os.getenv("AUTOSELL_URL", "http://127.0.0.1:8000")
TOKEN: Final[str] = os.getenv("AUTOSELL_TOKEN", "")
TIMEOUT: Final[int] = 5


def _wait_for_service(url: str, tries: int = 90, delay: float = 1.0) -> None:
    for _ in range(tries):
        try:
            if requests.get(f"{url}/healthz", timeout=TIMEOUT).ok:
                return
        except requests.RequestException:
            pass
        time.sleep(delay)
    print("timeout waiting for autosell", file=sys.stderr)
    sys.exit(1)


def main() -> None:
    _wait_for_service(BASE)
    auth = {"Authorization": f"Bearer {TOKEN}"}

    ping = requests.get(f"{BASE}/ping", timeout=TIMEOUT).json()
    assert ping.get("message") == "Server is up", ping

    stats = requests.get(f"{BASE}/stats", headers=auth, timeout=TIMEOUT)
    stats.raise_for_status()
    body = stats.json()
    assert "loans" in body and "scheduler" in body, "Stats response missing keys"

    missing = requests.post(
        f"{BASE}/liquidate", json={"loanId": "smoke-does-not-exist"}, headers=auth, timeout=TIMEOUT
    )
    if missing.status_code != 404:
        print(f"Unexpected status for unknown loan: {missing.status_code}", file=sys.stderr)
        sys.exit(1)

    metrics_text = requests.get(f"{BASE}/metrics", timeout=TIMEOUT).text
    if "autosell_cycles_total" not in metrics_text or "pending_loans" not in metrics_text:
        print("Expected metrics not found", file=sys.stderr)
        sys.exit(1)

    print(f"AUTOSELL SMOKE: OK ({body['pendingLoans']} pending loans, state {body['scheduler']['state']})")


if __name__ == "__main__":
    main()
