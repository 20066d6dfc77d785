"""Unit tests for ConnectConfig."""

from __future__ import annotations

import pytest

from connect_fakes import make_config
from sapo_connect.config import ConnectConfig
from sapo_connect.core.errors import ConfigurationError

_ENV = {
    "SAPO_CONNECT_CONSUMER_KEY": "ck",
    "SAPO_CONNECT_CONSUMER_SECRET": "cs",
    "SAPO_CONNECT_CALLBACK_URL": "http://127.0.0.1:8765/callback",
    "SAPO_CONNECT_HOST": "id.example.pt",
    "SAPO_CONNECT_REQUEST_TOKEN_PATH": "/oauth/request",
    "SAPO_CONNECT_ACCESS_TOKEN_PATH": "/oauth/access",
    "SAPO_CONNECT_AUTHORIZE_PATH": "/oauth/authorize",
    "SAPO_CONNECT_DENIED_PATH": "/oauth/denied",
}


@pytest.fixture()
def full_env(monkeypatch):
    for key, value in _ENV.items():
        monkeypatch.setenv(key, value)
    for key in ("TIMEOUT", "SERVICES_HOST", "CLIENT_ID", "REACHABLE_STATUSES", "STORAGE_DIR"):
        monkeypatch.delenv(f"SAPO_CONNECT_{key}", raising=False)
    return monkeypatch


def test_derived_urls_use_https() -> None:
    config = make_config()
    assert config.request_token_url == "https://id.example.pt/request"
    assert config.access_token_url == "https://id.example.pt/access"
    assert config.authorize_url == "https://id.example.pt/authorize"
    assert config.denied_url == "https://id.example.pt/denied"


def test_missing_fields_are_all_reported() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        make_config(consumer_key="", denied_path="")
    assert excinfo.value.missing == ["consumer_key", "denied_path"]
    assert excinfo.value.to_payload()["missing"] == ["consumer_key", "denied_path"]


def test_config_is_immutable() -> None:
    config = make_config()
    with pytest.raises(AttributeError):
        config.host = "elsewhere"  # type: ignore[misc]


def test_from_env_defaults(full_env) -> None:
    config = ConnectConfig.from_env()

    assert config.callback_url == "http://127.0.0.1:8765/callback"
    assert config.timeout == 10.0
    assert config.services_host == "services.sapo.pt"
    assert config.client_id is None
    assert config.reachable_statuses is None


def test_from_env_optional_values(full_env) -> None:
    full_env.setenv("SAPO_CONNECT_TIMEOUT", "3.5")
    full_env.setenv("SAPO_CONNECT_CLIENT_ID", "client-42")
    full_env.setenv("SAPO_CONNECT_REACHABLE_STATUSES", "500, 503,x")

    config = ConnectConfig.from_env()
    assert config.timeout == 3.5
    assert config.client_id == "client-42"
    assert config.reachable_statuses == frozenset({500, 503})


def test_from_env_reports_missing_variables(full_env) -> None:
    full_env.delenv("SAPO_CONNECT_HOST")
    full_env.setenv("SAPO_CONNECT_CONSUMER_SECRET", "   ")

    with pytest.raises(ConfigurationError) as excinfo:
        ConnectConfig.from_env()
    assert excinfo.value.missing == ["SAPO_CONNECT_CONSUMER_SECRET", "SAPO_CONNECT_HOST"]
