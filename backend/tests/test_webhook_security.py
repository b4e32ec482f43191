from __future__ import annotations

import hashlib
import hmac

from chat_relay.config import Settings
from chat_relay.webhook_security import (
    verify_cloud_signature,
    verify_subscription_challenge,
    verify_team_secret,
    verify_waha_signature,
)

BODY = b'{"object":"whatsapp_business_account","entry":[]}'


def _sign(secret: str, body: bytes, digestmod) -> str:
    return hmac.new(secret.encode("utf-8"), body, digestmod).hexdigest()


def test_cloud_signature_accepts_prefixed_sha256() -> None:
    settings = Settings(webhook_signature_mode="enforce", cloud_app_secret="app-secret")
    header = "sha256=" + _sign("app-secret", BODY, hashlib.sha256)

    result = verify_cloud_signature(settings=settings, body=BODY, headers={"x-hub-signature-256": header})

    assert result.verified is True
    assert result.reason is None


def test_cloud_signature_rejects_mismatch_and_missing_header() -> None:
    settings = Settings(webhook_signature_mode="enforce", cloud_app_secret="app-secret")
    wrong = "sha256=" + _sign("other-secret", BODY, hashlib.sha256)

    mismatch = verify_cloud_signature(settings=settings, body=BODY, headers={"X-Hub-Signature-256": wrong})
    missing = verify_cloud_signature(settings=settings, body=BODY, headers={})

    assert (mismatch.verified, mismatch.reason) == (False, "signature_mismatch")
    assert (missing.verified, missing.reason) == (False, "signature_missing")


def test_cloud_signature_requires_a_configured_secret() -> None:
    result = verify_cloud_signature(settings=Settings(webhook_signature_mode="log_only"), body=BODY, headers={})

    assert (result.verified, result.reason) == (False, "cloud_app_secret_missing")


def test_waha_signature_defaults_to_sha512() -> None:
    settings = Settings(webhook_signature_mode="enforce", waha_webhook_secret="gateway-secret")

    sha512 = verify_waha_signature(
        settings=settings,
        body=BODY,
        headers={"X-Webhook-Hmac": _sign("gateway-secret", BODY, hashlib.sha512)},
    )
    sha256 = verify_waha_signature(
        settings=settings,
        body=BODY,
        headers={
            "X-Webhook-Hmac": _sign("gateway-secret", BODY, hashlib.sha256),
            "X-Webhook-Hmac-Algorithm": "sha256",
        },
    )
    wrong_algorithm = verify_waha_signature(
        settings=settings,
        body=BODY,
        headers={"X-Webhook-Hmac": _sign("gateway-secret", BODY, hashlib.sha256)},
    )

    assert sha512.verified is True
    assert sha256.verified is True
    assert (wrong_algorithm.verified, wrong_algorithm.reason) == (False, "signature_mismatch")


def test_team_secret_token_comparison() -> None:
    settings = Settings(webhook_signature_mode="enforce", team_webhook_secret="team-secret")

    ok = verify_team_secret(settings=settings, headers={"X-Telegram-Bot-Api-Secret-Token": "team-secret"})
    wrong = verify_team_secret(settings=settings, headers={"X-Telegram-Bot-Api-Secret-Token": "guess"})
    missing = verify_team_secret(settings=settings, headers={})
    unconfigured = verify_team_secret(settings=Settings(webhook_signature_mode="enforce"), headers={})

    assert ok.verified is True
    assert wrong.reason == "signature_mismatch"
    assert missing.reason == "signature_missing"
    assert unconfigured.reason == "team_webhook_secret_missing"


def test_off_mode_skips_every_check() -> None:
    settings = Settings(webhook_signature_mode="off")

    assert verify_cloud_signature(settings=settings, body=BODY, headers={}).verified is True
    assert verify_waha_signature(settings=settings, body=BODY, headers={}).verified is True
    assert verify_team_secret(settings=settings, headers={}).verified is True


def test_subscription_challenge_echo() -> None:
    settings = Settings(cloud_verify_token="verify-me")

    assert (
        verify_subscription_challenge(settings=settings, mode="subscribe", verify_token="verify-me", challenge="12345")
        == "12345"
    )
    assert (
        verify_subscription_challenge(settings=settings, mode="subscribe", verify_token="wrong", challenge="12345")
        is None
    )
    assert verify_subscription_challenge(settings=settings, mode="unsubscribe", verify_token="verify-me", challenge="1") is None
    assert (
        verify_subscription_challenge(settings=Settings(), mode="subscribe", verify_token="", challenge="1") is None
    )
