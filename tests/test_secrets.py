import json

import pytest

from common.secrets import SecretError, SecretsManager


def test_file_values_win_over_environment(tmp_path, monkeypatch):
    path = tmp_path / "secrets.json"
    path.write_text(json.dumps({"JWT_SECRET": "from-file"}))
    monkeypatch.setenv("JWT_SECRET", "from-env")
    monkeypatch.setenv("SWAP_RELAY_TOKEN", "relay-env")

    mgr = SecretsManager(path)

    assert mgr.get("JWT_SECRET") == "from-file"
    assert mgr.get("SWAP_RELAY_TOKEN") == "relay-env"
    assert mgr.get("MISSING", "dflt") == "dflt"


def test_api_tokens_from_environment_json(tmp_path, monkeypatch):
    monkeypatch.setenv("API_TOKENS", '{"ops": "tok-1"}')
    mgr = SecretsManager(tmp_path / "absent.json")
    assert mgr.get("API_TOKENS") == {"ops": "tok-1"}

    monkeypatch.setenv("API_TOKENS", "not json")
    assert mgr.get("API_TOKENS", {}) == {}


def test_override_disables_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("SWAP_RELAY_TOKEN", "relay-env")
    mgr = SecretsManager(tmp_path / "absent.json")

    mgr.set_override({"JWT_SECRET": "pinned"})
    assert mgr.get("SWAP_RELAY_TOKEN") is None

    mgr.set_override({})
    assert mgr.get("SWAP_RELAY_TOKEN") == "relay-env"


def test_invalid_file_is_an_error(tmp_path):
    path = tmp_path / "secrets.json"
    path.write_text("[1, 2]")
    with pytest.raises(SecretError):
        SecretsManager(path).get("JWT_SECRET")
