#!/usr/bin/env python3
"""Point the team-chat bot webhook at a running relay and check its forum group."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from chat_relay.config import get_settings
from chat_relay.transport import TransportError, send_request

WEBHOOK_PATH = "/relay/webhooks/team"


def call_bot(base_url: str, token: str, method: str, params: dict, timeout_seconds: int) -> dict:
    reply = send_request(
        "POST",
        f"{base_url.rstrip('/')}/bot{token}/{method}",
        json_body={key: value for key, value in params.items() if value is not None},
        timeout_seconds=timeout_seconds,
    )
    data = reply.json()
    if not reply.ok or not data.get("ok"):
        raise SystemExit(f"{method} failed (HTTP {reply.status}): {data.get('description') or reply.body[:200]!r}")
    return data


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("public_url", help="Public base URL of the relay, e.g. https://relay.example.com")
    parser.add_argument("--api-prefix", default=settings.api_prefix)
    parser.add_argument("--drop-pending", action="store_true", help="Discard updates queued while no webhook was set")
    parser.add_argument("--dry-run", action="store_true", help="Print the request instead of sending it")
    args = parser.parse_args()

    token = settings.team_bot_token.strip()
    if not token:
        raise SystemExit("TEAM_BOT_TOKEN is not set")

    webhook_url = f"{args.public_url.rstrip('/')}{args.api_prefix}{WEBHOOK_PATH}"
    params = {
        "url": webhook_url,
        "secret_token": settings.team_webhook_secret.strip() or None,
        "allowed_updates": ["message", "edited_message"],
        "drop_pending_updates": args.drop_pending,
    }
    if args.dry_run:
        shown = dict(params, secret_token="***" if params["secret_token"] else None)
        print(json.dumps(shown, indent=2))
        return

    try:
        call_bot(settings.team_api_base_url, token, "setWebhook", params, settings.delivery_timeout_seconds)
        print(f"Webhook set: {webhook_url}")

        if settings.team_group_id.strip():
            chat = call_bot(
                settings.team_api_base_url,
                token,
                "getChat",
                {"chat_id": settings.team_group_id.strip()},
                settings.delivery_timeout_seconds,
            )
            result = chat.get("result") or {}
            if not result.get("is_forum"):
                print("Warning: TEAM_GROUP_ID is not a forum group; customer threads cannot be created.")
            else:
                print(f"Forum group OK: {result.get('title', settings.team_group_id)}")
        else:
            print("Warning: TEAM_GROUP_ID is not set.")
    except TransportError as exc:
        raise SystemExit(f"Could not reach the team-chat API: {exc.message}") from exc


if __name__ == "__main__":
    main()
