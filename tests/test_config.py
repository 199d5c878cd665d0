"""Tests for settings loading and validation."""

import pytest

from cfproxy.core.config import ProxySettings, load_settings
from cfproxy.core.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "PORT",
        "REQ_LIMIT_PER_SEC",
        "RATE_LIMIT_ENABLED",
        "UPSTREAM_URL",
        "CREDENTIAL_HEADER",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CF_API_KEY", "env-secret-key")


def test_defaults(monkeypatch):
    settings = load_settings()

    assert settings.proxy.port == 3000
    assert settings.proxy.req_limit_per_sec == 6
    assert settings.proxy.upstream_url == "https://api.curseforge.com"
    assert settings.proxy.credential_header == "x-api-key"
    assert settings.proxy.cf_api_key.get_secret_value() == "env-secret-key"
    assert settings.proxy.rate_limit_active is True


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("REQ_LIMIT_PER_SEC", "20")
    monkeypatch.setenv("CREDENTIAL_HEADER", " X-Api-Token ")
    monkeypatch.setenv("UPSTREAM_URL", "http://localhost:9000/")

    settings = load_settings()

    assert settings.proxy.port == 8080
    assert settings.proxy.req_limit_per_sec == 20
    assert settings.proxy.credential_header == "x-api-token"
    assert settings.proxy.upstream_url == "http://localhost:9000"


def test_zero_limit_disables_limiting(monkeypatch):
    monkeypatch.setenv("REQ_LIMIT_PER_SEC", "0")

    assert load_settings().proxy.rate_limit_active is False


def test_disable_flag_turns_limiting_off(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")

    assert load_settings().proxy.rate_limit_active is False


def test_missing_credential_raises_config_error(monkeypatch):
    monkeypatch.delenv("CF_API_KEY")

    with pytest.raises(ConfigError) as exc_info:
        load_settings()

    assert "cf_api_key" in exc_info.value.message


@pytest.mark.parametrize(
    ("name", "value"),
    [("PORT", "not-a-number"), ("PORT", "70000"), ("REQ_LIMIT_PER_SEC", "-1")],
)
def test_invalid_values_raise_config_error_without_echoing_value(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigError) as exc_info:
        load_settings()

    assert name.lower() in exc_info.value.message
    assert value not in exc_info.value.message


def test_blank_credential_rejected():
    with pytest.raises(ValueError):
        ProxySettings(cf_api_key="   ")


def test_credential_hidden_from_repr():
    settings = ProxySettings(cf_api_key="super-secret")

    assert "super-secret" not in repr(settings)
