import pytest

from specifys_billing.config import load_config, resolve_runtime_env


def test_load_config_requires_secret_key_in_non_dev(monkeypatch):
    monkeypatch.setenv("RENDER", "true")
    monkeypatch.delenv("FLASK_ENV", raising=False)
    monkeypatch.delenv("SENTRY_ENVIRONMENT", raising=False)
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.delenv("FLASK_SECRET_KEY", raising=False)

    with pytest.raises(RuntimeError):
        load_config()


def test_load_config_allows_missing_secret_in_dev(monkeypatch):
    monkeypatch.delenv("RENDER", raising=False)
    monkeypatch.setenv("FLASK_ENV", "development")
    monkeypatch.delenv("FLASK_SECRET_KEY", raising=False)

    cfg = load_config()
    assert cfg.flask_secret_key == ""


def test_billing_mode_is_explicit_and_validated():
    assert load_config({"FLASK_ENV": "development"}).is_test_mode is True
    assert load_config({"FLASK_ENV": "development", "LEMON_MODE": "LIVE"}).lemon_mode == "live"

    with pytest.raises(RuntimeError):
        load_config({"FLASK_ENV": "development", "LEMON_MODE": "sandbox"})


def test_admin_lists_and_numeric_settings_are_parsed():
    cfg = load_config({
        "FLASK_ENV": "development",
        "ADMIN_EMAILS": "Boss@Example.com, ops@example.com,",
        "ADMIN_UIDS": "uid-1,uid-2",
        "LEMON_API_TIMEOUT_SECONDS": "not-a-number",
        "FRONTEND_URL": "https://example.com/",
    })

    assert cfg.admin_emails == frozenset({"boss@example.com", "ops@example.com"})
    assert cfg.admin_uids == frozenset({"uid-1", "uid-2"})
    assert cfg.lemon_api_timeout == 15.0
    assert cfg.frontend_url == "https://example.com"


def test_runtime_env_precedence():
    assert resolve_runtime_env({"SENTRY_ENVIRONMENT": "Staging", "FLASK_ENV": "development"}) == "staging"
    assert resolve_runtime_env({"RENDER": "true"}) == "production"
    assert resolve_runtime_env({}) == "development"
