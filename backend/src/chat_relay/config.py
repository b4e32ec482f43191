from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Chat Relay Bridge"
    api_prefix: str = "/api/v1"
    channel_provider: str = "cloud"
    # Cloud messaging API.
    cloud_api_token: str = ""
    cloud_phone_number_id: str = ""
    cloud_api_version: str = "v21.0"
    cloud_api_base_url: str = "https://graph.facebook.com"
    cloud_verify_token: str = ""
    cloud_app_secret: str = ""
    # Self-hosted gateway.
    waha_base_url: str = "http://localhost:3000"
    waha_api_key: str = ""
    waha_basic_auth: str = ""
    waha_session: str = "default"
    waha_webhook_secret: str = ""
    # Team-chat side.
    team_bot_token: str = ""
    team_group_id: str = ""
    team_api_base_url: str = "https://api.telegram.org"
    team_webhook_secret: str = ""
    team_icon_incoming: str = ""
    team_icon_outgoing: str = ""
    relay_store_backend: str = "inmemory"
    database_url: str = ""
    dedup_ttl_seconds: int = 600
    delivery_max_attempts: int = 5
    delivery_timeout_seconds: int = 20
    delivery_base_retry_seconds: int = 15
    job_queue_backend: str = "threads"
    worker_pool_size: int = 4
    webhook_signature_mode: str = "log_only"
    ban_notice_text: str = "You have been blocked from this support channel."
    admin_api_key: str = ""
    runtime_secret_guard_mode: str = "warn"
    log_level: str = "INFO"

    def provider_credentials_missing(self, provider: str) -> tuple[str, ...]:
        normalized = provider.strip().lower()
        missing: list[str] = []
        if normalized == "cloud":
            if not self.cloud_api_token.strip():
                missing.append("CLOUD_API_TOKEN")
            if not self.cloud_phone_number_id.strip():
                missing.append("CLOUD_PHONE_NUMBER_ID")
        elif normalized == "waha":
            if not self.waha_base_url.strip():
                missing.append("WAHA_BASE_URL")
        return tuple(missing)

    def webhook_secret_for_channel(self, channel: str) -> str:
        normalized = channel.strip().lower()
        if normalized == "cloud":
            return self.cloud_app_secret.strip()
        if normalized == "waha":
            return self.waha_webhook_secret.strip()
        if normalized == "team":
            return self.team_webhook_secret.strip()
        return ""


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("RELAY_APP_NAME", "Chat Relay Bridge"),
        api_prefix=os.getenv("RELAY_API_PREFIX", "/api/v1"),
        channel_provider=_normalize_mode(
            os.getenv("CHANNEL_PROVIDER"),
            default="cloud",
            allowed={"cloud", "waha", "stub"},
        ),
        cloud_api_token=os.getenv("CLOUD_API_TOKEN", ""),
        cloud_phone_number_id=os.getenv("CLOUD_PHONE_NUMBER_ID", ""),
        cloud_api_version=os.getenv("CLOUD_API_VERSION", "v21.0"),
        cloud_api_base_url=os.getenv("CLOUD_API_BASE_URL", "https://graph.facebook.com"),
        cloud_verify_token=os.getenv("CLOUD_VERIFY_TOKEN", ""),
        cloud_app_secret=os.getenv("CLOUD_APP_SECRET", ""),
        waha_base_url=os.getenv("WAHA_BASE_URL", "http://localhost:3000"),
        waha_api_key=os.getenv("WAHA_API_KEY", ""),
        waha_basic_auth=os.getenv("WAHA_BASIC_AUTH", ""),
        waha_session=os.getenv("WAHA_SESSION", "default"),
        waha_webhook_secret=os.getenv("WAHA_WEBHOOK_SECRET", ""),
        team_bot_token=os.getenv("TEAM_BOT_TOKEN", ""),
        team_group_id=os.getenv("TEAM_GROUP_ID", ""),
        team_api_base_url=os.getenv("TEAM_API_BASE_URL", "https://api.telegram.org"),
        team_webhook_secret=os.getenv("TEAM_WEBHOOK_SECRET", ""),
        team_icon_incoming=os.getenv("TEAM_ICON_INCOMING", ""),
        team_icon_outgoing=os.getenv("TEAM_ICON_OUTGOING", ""),
        relay_store_backend=os.getenv("RELAY_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        dedup_ttl_seconds=_as_int(os.getenv("DEDUP_TTL_SECONDS"), 600),
        delivery_max_attempts=_as_int(os.getenv("DELIVERY_MAX_ATTEMPTS"), 5),
        delivery_timeout_seconds=_as_int(os.getenv("DELIVERY_TIMEOUT_SECONDS"), 20),
        delivery_base_retry_seconds=_as_int(os.getenv("DELIVERY_BASE_RETRY_SECONDS"), 15),
        job_queue_backend=_normalize_mode(
            os.getenv("JOB_QUEUE_BACKEND"),
            default="threads",
            allowed={"threads", "inline"},
        ),
        worker_pool_size=_as_int(os.getenv("WORKER_POOL_SIZE"), 4),
        webhook_signature_mode=_normalize_mode(
            os.getenv("WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        ban_notice_text=os.getenv("BAN_NOTICE_TEXT", "You have been blocked from this support channel."),
        admin_api_key=os.getenv("ADMIN_API_KEY", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    for name in settings.provider_credentials_missing(settings.channel_provider):
        issues.append(f"{name} is required when CHANNEL_PROVIDER={settings.channel_provider}")
    if not settings.team_bot_token.strip():
        issues.append("TEAM_BOT_TOKEN is empty; replies cannot reach the team chat")
    if not settings.team_group_id.strip():
        issues.append("TEAM_GROUP_ID is empty; customer threads cannot be created")
    if settings.relay_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when RELAY_STORE_BACKEND=postgres")
    if settings.webhook_signature_mode == "enforce":
        if settings.channel_provider == "cloud" and not settings.cloud_app_secret.strip():
            issues.append("CLOUD_APP_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce and CHANNEL_PROVIDER=cloud")
        if settings.channel_provider == "waha" and not settings.waha_webhook_secret.strip():
            issues.append("WAHA_WEBHOOK_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce and CHANNEL_PROVIDER=waha")
        if not settings.team_webhook_secret.strip():
            issues.append("TEAM_WEBHOOK_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce")
    if not settings.admin_api_key.strip():
        issues.append("ADMIN_API_KEY is empty; admin endpoints will reject every request")
    return tuple(issues)
