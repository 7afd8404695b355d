"""Swap executor adapters."""
from __future__ import annotations

from ..config import Settings
from .base import SwapError, SwapExecutor, SwapResult
from .mock import MockSwapExecutor
from .relay import RelaySwapExecutor

__all__ = [
    "SwapError",
    "SwapExecutor",
    "SwapResult",
    "MockSwapExecutor",
    "RelaySwapExecutor",
    "executor_from_settings",
]


def executor_from_settings(settings: Settings) -> SwapExecutor:
    """Relay when ``SWAP_RELAY_URL`` is configured, dry-run mock otherwise."""
    if settings.swap_relay_url:
        return RelaySwapExecutor(
            settings.swap_relay_url,
            vault_address=settings.vault_address,
            rpc_url=settings.rpc_url,
            timeout=settings.swap_timeout_seconds,
        )
    return MockSwapExecutor()
