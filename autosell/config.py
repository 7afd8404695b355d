"""Environment-driven configuration for the autosell service.

``.env`` files are loaded once with python-dotenv: ``APP_ENV=development``
reads ``.env``, anything else reads ``.env.production``. Variables already
present in the process environment always win.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Mapping, Optional

from dotenv import load_dotenv

_LOG = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[1]

DEFAULT_PRICE_API_URL = "https://api.dexscreener.com/latest/dex/tokens"

_env_loaded = False


def load_env_file(app_env: Optional[str] = None) -> Optional[Path]:
    """Load the env file matching *app_env* (idempotent). Returns the path used."""
    global _env_loaded
    if _env_loaded:
        return None
    app_env = app_env or os.getenv("APP_ENV", "production")
    name = ".env" if app_env == "development" else ".env.production"
    path = REPO_ROOT / name
    _env_loaded = True
    if path.exists():
        load_dotenv(dotenv_path=path, override=False)
        _LOG.info("loaded env file %s", path)
        return path
    return None


def _env_bool(env: Mapping[str, str], name: str, default: str = "0") -> bool:
    return env.get(name, default).lower() in {"1", "true", "yes", "on", "y"}


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _token_set(raw: str) -> FrozenSet[str]:
    return frozenset(t.strip().lower() for t in raw.split(",") if t.strip())


@dataclass(frozen=True)
class Settings:
    port: int = 8000
    rpc_url: str = ""
    vault_address: str = ""
    database_url: str = "sqlite:///./mortgages.db"
    price_api_url: str = DEFAULT_PRICE_API_URL
    swap_relay_url: str = ""

    sell_threshold: float = 0.8
    tokens_to_not_liquidate: FrozenSet[str] = field(default_factory=frozenset)

    cycle_interval_seconds: float = 60.0
    resync_interval_seconds: float = 3600.0
    price_max_age_seconds: float = 300.0
    http_timeout_seconds: float = 10.0
    swap_timeout_seconds: float = 120.0
    autosell_commit_retries: int = 5

    scheduler_enabled: bool = True
    log_format: str = "json"

    def __post_init__(self) -> None:
        if not 0 < self.sell_threshold <= 1:
            raise ValueError(f"SELL_THRESHOLD must be in (0, 1], got {self.sell_threshold}")
        if self.cycle_interval_seconds <= 0 or self.resync_interval_seconds <= 0:
            raise ValueError("scheduler intervals must be positive")
        if self.autosell_commit_retries < 1:
            raise ValueError("AUTOSELL_COMMIT_RETRIES must be >= 1")

    def is_denylisted(self, token: str) -> bool:
        return token.lower() in self.tokens_to_not_liquidate

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            load_env_file()
            env = os.environ
        return cls(
            port=_env_int(env, "PORT", 8000),
            rpc_url=env.get("RPC_URL", ""),
            vault_address=env.get("VAULT_ADDRESS", ""),
            database_url=env.get("MORTGAGE_DB_URL", "sqlite:///./mortgages.db"),
            price_api_url=env.get("PRICE_API_URL", DEFAULT_PRICE_API_URL).rstrip("/"),
            swap_relay_url=env.get("SWAP_RELAY_URL", "").rstrip("/"),
            sell_threshold=_env_float(env, "SELL_THRESHOLD", 0.8),
            tokens_to_not_liquidate=_token_set(env.get("TOKENS_TO_NOT_LIQUIDATE", "")),
            cycle_interval_seconds=_env_float(env, "CYCLE_INTERVAL_SECONDS", 60.0),
            resync_interval_seconds=_env_float(env, "RESYNC_INTERVAL_SECONDS", 3600.0),
            price_max_age_seconds=_env_float(env, "PRICE_MAX_AGE_SECONDS", 300.0),
            http_timeout_seconds=_env_float(env, "HTTP_TIMEOUT_SECONDS", 10.0),
            swap_timeout_seconds=_env_float(env, "SWAP_TIMEOUT_SECONDS", 120.0),
            autosell_commit_retries=_env_int(env, "AUTOSELL_COMMIT_RETRIES", 5),
            scheduler_enabled=_env_bool(env, "SCHEDULER_ENABLED", "1"),
            log_format=env.get("LOG_FORMAT", "json"),
        )
