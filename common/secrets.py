import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

_LOG = logging.getLogger(__name__)

# Secrets whose environment form is a JSON document rather than a plain string.
_JSON_VALUED: FrozenSet[str] = frozenset({"API_TOKENS"})


class SecretError(RuntimeError):
    """The secrets file exists but cannot be used."""


class SecretsManager:
    """Operator tokens, the JWT secret and the swap relay token.

    Values come from the JSON file at ``SECRETS_PATH`` (mounted by the
    deployment) and, for keys the file does not define, from the process
    environment. ``API_TOKENS`` may be given in the environment as a JSON
    object ``{"operator": "token"}``.

    Tests pin the whole set with :meth:`set_override`, which also disables
    the environment fallback; ``set_override({})`` restores normal loading.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(
            path or os.getenv("SECRETS_PATH", "/var/run/secrets/autosell.json")
        )
        self._values: Optional[Dict[str, Any]] = None
        self._pinned = False

    @property
    def path(self) -> Path:
        return self._path

    def _file_values(self) -> Dict[str, Any]:
        if self._values is not None:
            return self._values
        if not self._path.exists():
            self._values = {}
            return self._values
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise SecretError(f"{self._path} is not valid JSON") from exc
        if not isinstance(data, dict):
            raise SecretError(f"{self._path} must hold a JSON object")
        _LOG.info("loaded %d secrets from %s", len(data), self._path)
        self._values = data
        return self._values

    def _from_env(self, key: str) -> Any:
        raw = os.environ.get(key)
        if raw is None or key not in _JSON_VALUED:
            return raw
        try:
            return json.loads(raw)
        except ValueError:
            _LOG.warning("ignoring %s from environment: not valid JSON", key)
            return None

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        values = self._file_values()
        if key in values:
            return values[key]
        if not self._pinned:
            value = self._from_env(key)
            if value is not None:
                return value
        return default

    def set_override(self, data: Dict[str, Any]) -> None:
        """Pin the secret set (tests). An empty dict un-pins and reloads."""
        if data:
            self._values = dict(data)
            self._pinned = True
        else:
            self._values = None
            self._pinned = False

    def update(self, data: Dict[str, Any]) -> None:
        """Merge *data* over the current values (tests)."""
        merged = dict(self._file_values())
        merged.update(data)
        self._values = merged


secrets = SecretsManager()


def get_secret(key: str, default: Optional[Any] = None) -> Any:
    return secrets.get(key, default)
