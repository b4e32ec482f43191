from __future__ import annotations

import os

from chat_relay.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults() -> None:
    names = [
        "CHANNEL_PROVIDER",
        "DEDUP_TTL_SECONDS",
        "DELIVERY_MAX_ATTEMPTS",
        "WEBHOOK_SIGNATURE_MODE",
        "JOB_QUEUE_BACKEND",
        "RELAY_STORE_BACKEND",
    ]
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.channel_provider == "cloud"
        assert settings.dedup_ttl_seconds == 600
        assert settings.delivery_max_attempts == 5
        assert settings.delivery_base_retry_seconds == 15
        assert settings.webhook_signature_mode == "log_only"
        assert settings.job_queue_backend == "threads"
        assert settings.relay_store_backend == "inmemory"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_normalizes_unknown_modes_and_bad_numbers() -> None:
    previous = {
        "CHANNEL_PROVIDER": _set_env("CHANNEL_PROVIDER", " WAHA "),
        "WEBHOOK_SIGNATURE_MODE": _set_env("WEBHOOK_SIGNATURE_MODE", "strict"),
        "DEDUP_TTL_SECONDS": _set_env("DEDUP_TTL_SECONDS", "ten minutes"),
    }
    try:
        settings = get_settings()
        assert settings.channel_provider == "waha"
        assert settings.webhook_signature_mode == "log_only"
        assert settings.dedup_ttl_seconds == 600
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_complete_waha_configuration_has_no_issues() -> None:
    settings = Settings(
        channel_provider="waha",
        waha_base_url="http://waha:3000",
        team_bot_token="123:abc",
        team_group_id="-100",
        admin_api_key="admin",
    )

    assert runtime_secret_issues(settings) == ()


def test_missing_credentials_are_reported_per_provider() -> None:
    cloud_issues = runtime_secret_issues(Settings(channel_provider="cloud", team_bot_token="t", team_group_id="-1"))
    stub_issues = runtime_secret_issues(Settings(channel_provider="stub", team_bot_token="t", team_group_id="-1"))

    assert any("CLOUD_API_TOKEN is required" in issue for issue in cloud_issues)
    assert any("CLOUD_PHONE_NUMBER_ID is required" in issue for issue in cloud_issues)
    assert not any("CLOUD_" in issue for issue in stub_issues)
    assert any("ADMIN_API_KEY" in issue for issue in stub_issues)


def test_enforced_signatures_require_the_matching_secrets() -> None:
    issues = runtime_secret_issues(
        Settings(
            channel_provider="waha",
            team_bot_token="t",
            team_group_id="-1",
            admin_api_key="admin",
            webhook_signature_mode="enforce",
        )
    )

    assert any("WAHA_WEBHOOK_SECRET is required" in issue for issue in issues)
    assert any("TEAM_WEBHOOK_SECRET is required" in issue for issue in issues)
    assert not any("CLOUD_APP_SECRET" in issue for issue in issues)


def test_postgres_store_requires_database_url() -> None:
    issues = runtime_secret_issues(
        Settings(
            channel_provider="stub",
            team_bot_token="t",
            team_group_id="-1",
            admin_api_key="admin",
            relay_store_backend="postgres",
        )
    )

    assert issues == ("DATABASE_URL is required when RELAY_STORE_BACKEND=postgres",)
