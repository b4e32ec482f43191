#!/usr/bin/env python3
"""Check that the self-hosted messaging gateway is reachable and its session is signed in."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from chat_relay.config import get_settings
from chat_relay.gateway_check import check_gateway
from chat_relay.providers import ConfigurationMissingError, WahaProvider


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--base-url", default=settings.waha_base_url)
    parser.add_argument("--session", default=settings.waha_session)
    parser.add_argument("--api-key", default=settings.waha_api_key)
    parser.add_argument("--basic-auth", default=settings.waha_basic_auth, help="user:pass")
    parser.add_argument("--test-phone", default=None, help="Send a test message to this number")
    args = parser.parse_args()

    try:
        provider = WahaProvider(
            base_url=args.base_url,
            session=args.session,
            api_key=args.api_key,
            basic_auth=args.basic_auth,
            timeout_seconds=settings.delivery_timeout_seconds,
        )
    except ConfigurationMissingError as exc:
        raise SystemExit(str(exc)) from exc

    report = check_gateway(provider, test_phone=args.test_phone)
    for check in report.checks:
        mark = "OK  " if check.passed else "FAIL"
        status = f" (HTTP {check.http_status})" if check.http_status is not None else ""
        print(f"[{mark}] {check.name}{status}: {check.detail or ''}")

    if report.session_status == "SCAN_QR":
        print(f"Session needs a QR scan: {report.base_url}/api/{report.session}/auth/qr")

    print()
    print(f"Gateway:    {report.base_url}")
    print(f"Session:    {report.session} ({report.session_status})")
    if report.phone:
        print(f"Phone:      {report.phone}")
    print(f"API key:    {'configured' if report.api_key_configured else 'not configured'}")
    print(f"Basic auth: {'configured' if report.basic_auth_configured else 'not configured'}")

    if not report.ready:
        print("Gateway is not ready; authenticate the session first.")
        return 1
    print("Gateway is ready. Relay settings:")
    for key, value in report.env_config().items():
        print(f"{key}={value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
