from __future__ import annotations

import hashlib
import hmac
from typing import Mapping

from .config import Settings


class WebhookVerification:
    def __init__(self, *, verified: bool, reason: str | None = None) -> None:
        self.verified = verified
        self.reason = reason


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _verify_hmac(
    *,
    secret: str,
    body: bytes,
    provided: str,
    digestmod,
    prefix: str | None = None,
) -> bool:
    expected = hmac.new(secret.encode("utf-8"), body, digestmod).hexdigest()
    normalized = provided.strip()
    if prefix and normalized.startswith(prefix):
        normalized = normalized[len(prefix):]
    return hmac.compare_digest(expected, normalized.lower())


def verify_cloud_signature(*, settings: Settings, body: bytes, headers: Mapping[str, str]) -> WebhookVerification:
    if settings.webhook_signature_mode == "off":
        return WebhookVerification(verified=True)

    secret = settings.cloud_app_secret.strip()
    if not secret:
        return WebhookVerification(verified=False, reason="cloud_app_secret_missing")

    provided = _normalize_header_value(headers, "X-Hub-Signature-256")
    if provided is None:
        return WebhookVerification(verified=False, reason="signature_missing")

    if not _verify_hmac(secret=secret, body=body, provided=provided, digestmod=hashlib.sha256, prefix="sha256="):
        return WebhookVerification(verified=False, reason="signature_mismatch")
    return WebhookVerification(verified=True)


def verify_waha_signature(*, settings: Settings, body: bytes, headers: Mapping[str, str]) -> WebhookVerification:
    if settings.webhook_signature_mode == "off":
        return WebhookVerification(verified=True)

    secret = settings.waha_webhook_secret.strip()
    if not secret:
        return WebhookVerification(verified=False, reason="waha_webhook_secret_missing")

    provided = _normalize_header_value(headers, "X-Webhook-Hmac")
    if provided is None:
        return WebhookVerification(verified=False, reason="signature_missing")

    algorithm = (_normalize_header_value(headers, "X-Webhook-Hmac-Algorithm") or "sha512").lower()
    digestmod = hashlib.sha256 if algorithm == "sha256" else hashlib.sha512
    if not _verify_hmac(secret=secret, body=body, provided=provided, digestmod=digestmod):
        return WebhookVerification(verified=False, reason="signature_mismatch")
    return WebhookVerification(verified=True)


def verify_team_secret(*, settings: Settings, headers: Mapping[str, str]) -> WebhookVerification:
    if settings.webhook_signature_mode == "off":
        return WebhookVerification(verified=True)

    configured = settings.team_webhook_secret.strip()
    if not configured:
        return WebhookVerification(verified=False, reason="team_webhook_secret_missing")

    provided = _normalize_header_value(headers, "X-Telegram-Bot-Api-Secret-Token")
    if provided is None:
        return WebhookVerification(verified=False, reason="signature_missing")
    if not hmac.compare_digest(configured, provided):
        return WebhookVerification(verified=False, reason="signature_mismatch")
    return WebhookVerification(verified=True)


def verify_subscription_challenge(
    *,
    settings: Settings,
    mode: str | None,
    verify_token: str | None,
    challenge: str | None,
) -> str | None:
    """Return the challenge to echo for a valid cloud subscribe handshake, else None."""
    configured = settings.cloud_verify_token.strip()
    if mode != "subscribe" or not configured or verify_token is None or challenge is None:
        return None
    if not hmac.compare_digest(configured, verify_token):
        return None
    return challenge
