"""Tests for settings handling."""

import logging

from glucose_sync.utils.config import (
    DEXCOM_PRODUCTION_URL,
    DEXCOM_SANDBOX_URL,
    Settings,
    report_missing_settings,
)


def make_settings(**kwargs):
    return Settings(_env_file=None, **kwargs)


def test_dexcom_base_url_follows_environment():
    assert make_settings(dexcom_environment="sandbox").dexcom_base_url == DEXCOM_SANDBOX_URL
    assert make_settings(dexcom_environment="production").dexcom_base_url == DEXCOM_PRODUCTION_URL
    override = make_settings(dexcom_api_base_url="http://localhost:9000/")
    assert override.dexcom_base_url == "http://localhost:9000"


def test_async_database_url_uses_asyncpg():
    settings = make_settings(database_url="postgres://u:p@db:5432/glucose")
    assert settings.async_database_url == "postgresql+asyncpg://u:p@db:5432/glucose"
    settings = make_settings(database_url="postgresql://u:p@db/glucose")
    assert settings.async_database_url == "postgresql+asyncpg://u:p@db/glucose"
    assert make_settings(database_url=None).async_database_url is None


def test_openai_key_is_stripped_of_quotes():
    settings = make_settings(openai_api_key='  "sk-abcdefghijkl"  ')
    assert settings.openai_api_key.get_secret_value() == "sk-abcdefghijkl"
    assert settings.ai_enabled


def test_short_or_empty_openai_key_disables_insights():
    assert not make_settings(openai_api_key='""').ai_enabled
    assert not make_settings(openai_api_key="short").ai_enabled


def test_cors_origins_split_and_prefixed():
    settings = make_settings(cors_origins=["app.example.com,http://localhost:3001"])
    assert settings.cors_origins == ["https://app.example.com", "http://localhost:3001"]


def test_missing_settings_are_reported_without_raising(caplog):
    settings = make_settings(database_url=None, dexcom_client_id=None, openai_api_key=None)
    with caplog.at_level(logging.ERROR):
        missing = report_missing_settings(settings)
    assert missing == ["DATABASE_URL", "DEXCOM_CLIENT_ID", "OPENAI_API_KEY"]
    assert "Missing environment variable: DATABASE_URL" in caplog.text


def test_no_missing_settings():
    settings = make_settings(
        database_url="postgres://localhost/db",
        dexcom_client_id="id",
        openai_api_key="sk-abcdefghijkl",
    )
    assert settings.missing_settings() == []
