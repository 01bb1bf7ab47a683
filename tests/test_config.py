from ticket_automation.core.config import Settings


def test_defaults_without_environment(monkeypatch):
    for name in ("ENVIRONMENT", "NODE_ENV", "SERVICENOW_TIMEOUT", "DEFAULT_MAX_RETRIES"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.environment == "development"
    assert settings.servicenow_base_url is None
    assert settings.servicenow_timeout == 30.0
    assert settings.default_max_retries == 3
    assert settings.sync_stale_minutes == 5
    assert settings.sync_concurrency == 5


def test_environment_variables_are_read(monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.setenv("NODE_ENV", "production")
    monkeypatch.setenv("SERVICENOW_BASE_URL", "https://example.service-now.com")
    monkeypatch.setenv("SERVICENOW_TIMEOUT", "12.5")
    monkeypatch.setenv("DEFAULT_MAX_RETRIES", "5")
    monkeypatch.setenv("LOG_FILE_PATH", "")

    settings = Settings(_env_file=None)

    assert settings.environment == "production"
    assert str(settings.servicenow_base_url).startswith("https://example.service-now.com")
    assert settings.servicenow_timeout == 12.5
    assert settings.default_max_retries == 5
    assert settings.log_file_path is None


def test_blank_servicenow_url_is_treated_as_unset(monkeypatch):
    monkeypatch.setenv("SERVICENOW_BASE_URL", "  ")

    assert Settings(_env_file=None).servicenow_base_url is None
