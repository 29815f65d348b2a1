"""Settings validation: validate_config and validate_env."""
import logging
from types import SimpleNamespace

import pytest

from eclipse_backend.core.config import Settings, cors_origins, validate_config
from eclipse_backend.core.validation import EnvValidationError, validate_env


def _cfg(**overrides):
    base = dict(
        ENV="development",
        STORE_BACKEND="sql",
        DATABASE_URL=None,
        TEST_DATABASE_URL=None,
        STRIPE_SECRET_KEY="sk_live_x",
        STRIPE_WEBHOOK_SECRET="whsec_x",
        STRIPE_PRICE_ID="price_x",
    )
    base.update(overrides)
    return SimpleNamespace(**base)


@pytest.fixture(autouse=True)
def no_skip(monkeypatch):
    monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)


def test_validate_config_strict_raises_on_missing_keys():
    with pytest.raises(RuntimeError) as exc:
        validate_config(strict=True, settings_obj=_cfg(STRIPE_PRICE_ID=None))
    assert "STRIPE_PRICE_ID" in str(exc.value)


def test_validate_config_lenient_warns_without_secrets(caplog):
    cfg = _cfg(STRIPE_WEBHOOK_SECRET=None)
    with caplog.at_level(logging.WARNING, logger="eclipse"):
        assert validate_config(strict=False, settings_obj=cfg) is True
    assert "STRIPE_WEBHOOK_SECRET" in caplog.text
    assert "sk_live_x" not in caplog.text


def test_validate_env_development_defaults_pass():
    assert validate_env(settings_obj=_cfg()) is True


def test_validate_env_production_requires_stripe():
    with pytest.raises(EnvValidationError):
        validate_env("production", _cfg(STRIPE_SECRET_KEY=None, DATABASE_URL="postgresql://u:p@db:5432/eclipse"))


def test_validate_env_production_sql_requires_database_url():
    with pytest.raises(EnvValidationError):
        validate_env("production", _cfg())
    assert validate_env("production", _cfg(STORE_BACKEND="file")) is True


def test_validate_env_rejects_bad_database_url():
    with pytest.raises(EnvValidationError):
        validate_env(settings_obj=_cfg(DATABASE_URL="not-a-url"))
    assert validate_env(settings_obj=_cfg(DATABASE_URL="sqlite:///./eclipse.db")) is True


def test_validate_env_test_database_only_in_test_mode():
    cfg = _cfg(TEST_DATABASE_URL="sqlite:///:memory:")
    with pytest.raises(EnvValidationError):
        validate_env("development", cfg)
    assert validate_env("test", cfg) is True


def test_validate_env_unknown_backend():
    with pytest.raises(EnvValidationError):
        validate_env(settings_obj=_cfg(STORE_BACKEND="redis"))


def test_validate_env_can_be_skipped(monkeypatch):
    monkeypatch.setenv("SKIP_ENV_VALIDATION", "1")
    assert validate_env("production", _cfg(STRIPE_SECRET_KEY=None)) is True


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "file")
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("PROCESSED_EVENT_RETENTION_DAYS", "7")
    cfg = Settings(_env_file=None)
    assert cfg.STORE_BACKEND == "file"
    assert cfg.PORT == 8080
    assert cfg.PROCESSED_EVENT_RETENTION_DAYS == 7


def test_default_port_matches_original_server(monkeypatch):
    monkeypatch.delenv("PORT", raising=False)
    assert Settings(_env_file=None).PORT == 4242


def test_cors_origins_parsing():
    assert cors_origins(SimpleNamespace(CORS_ORIGINS="https://a.test, https://b.test ,")) == [
        "https://a.test",
        "https://b.test",
    ]
    assert cors_origins(SimpleNamespace(CORS_ORIGINS="")) == []
