"""Tests for configuration loading."""

import pytest
import yaml
from pydantic import ValidationError

from trust_registry.config import Settings, load_settings


def test_load_settings_from_yaml(tmp_path):
    config_data = {
        "gateway_backend": "sqlite",
        "sqlite_path": str(tmp_path / "trust.db"),
        "token_allowed_scopes": ["read", "write"],
        "invitation_default_ttl_hours": 24,
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(config_data))

    settings = load_settings(path)
    assert settings.gateway_backend == "sqlite"
    assert settings.token_allowed_scopes == ["read", "write"]
    assert settings.invitation_default_ttl_hours == 24
    assert settings.cas_max_attempts == 8


def test_empty_yaml_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_settings(path).gateway_backend == "memory"


def test_settings_defaults():
    settings = Settings(_env_file=None)
    assert settings.token_prefix == "tr_at_"
    assert settings.token_secret_bytes == 32
    assert settings.token_default_ttl_seconds is None
    assert settings.cert_renewal_margin_days == 30
    assert settings.log_format == "json"


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("TRUST_GATEWAY_BACKEND", "redis")
    monkeypatch.setenv("TRUST_CAS_MAX_ATTEMPTS", "3")
    settings = Settings(_env_file=None)
    assert settings.gateway_backend == "redis"
    assert settings.cas_max_attempts == 3


def test_load_settings_file_not_found():
    with pytest.raises(FileNotFoundError):
        load_settings("/nonexistent/path.yaml")


@pytest.mark.parametrize("prefix", ["", "tr at", "tr/at_"])
def test_token_prefix_must_be_url_safe(prefix):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, token_prefix=prefix)


def test_unknown_backend_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, gateway_backend="postgres")


def test_log_level_is_case_insensitive():
    assert Settings(_env_file=None, log_level="WARNING").log_level == "warning"
    with pytest.raises(ValidationError):
        Settings(_env_file=None, log_level="verbose")
