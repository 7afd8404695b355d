"""Swap executor backed by an HTTP signing relay.

The relay owns the vault key and submits the on-chain swap; this adapter only
forwards the request with an ``Idempotency-Key`` header so retried attempts
for the same loan resolve to the original transaction.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from common.secrets import get_secret

from .base import SwapError, SwapExecutor, SwapResult

_LOG = logging.getLogger(__name__)


class RelaySwapExecutor(SwapExecutor):
    def __init__(
        self,
        base_url: str,
        *,
        vault_address: str = "",
        rpc_url: str = "",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._vault_address = vault_address
        self._rpc_url = rpc_url
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    def _headers(self, idem: str) -> dict:
        headers = {"Idempotency-Key": idem, "Content-Type": "application/json"}
        token = get_secret("SWAP_RELAY_TOKEN")
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def swap(self, token: str, amount: float, idem: str) -> SwapResult:
        body = {
            "token": token,
            "amount": amount,
            "vault": self._vault_address,
            "rpcUrl": self._rpc_url,
        }
        try:
            resp = await self._client.post("/swap", json=body, headers=self._headers(idem))
        except httpx.RequestError as exc:
            raise SwapError(f"relay unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise SwapError(f"relay rejected swap ({resp.status_code}): {resp.text[:200]}")
        try:
            payload = resp.json() if resp.content else {}
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        txn = payload.get("txnHash") or payload.get("txn_hash")
        _LOG.debug("relay swap accepted token=%s idem=%s txn=%s", token, idem, txn)
        return {"txn_ref": txn, "raw": payload}

    async def aclose(self) -> None:
        await self._client.aclose()
