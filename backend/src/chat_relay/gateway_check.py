from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

from .identities import normalize_address
from .providers import OutboundPayload, Sent, WahaProvider
from .transport import TransportError

logger = logging.getLogger(__name__)

READY_SESSION_STATUSES = frozenset({"AUTHENTICATED", "WORKING"})


@dataclass(frozen=True)
class GatewayCheck:
    name: str
    passed: bool
    http_status: int | None = None
    detail: str | None = None


@dataclass(frozen=True)
class GatewayCheckReport:
    base_url: str
    session: str
    api_key_configured: bool
    basic_auth_configured: bool
    checks: tuple[GatewayCheck, ...]
    session_status: str = "unknown"
    phone: str | None = None
    server: dict[str, Any] = field(default_factory=dict)

    @property
    def all_passed(self) -> bool:
        return bool(self.checks) and all(check.passed for check in self.checks)

    @property
    def ready(self) -> bool:
        return self.session_status in READY_SESSION_STATUSES

    @property
    def overall_status(self) -> str:
        return "success" if self.all_passed else "partial"

    def env_config(self) -> dict[str, str]:
        """Settings to copy into the relay's environment once the session is usable."""
        if not self.ready:
            return {}
        config = {
            "CHANNEL_PROVIDER": "waha",
            "WAHA_BASE_URL": self.base_url,
            "WAHA_SESSION": self.session,
        }
        if not self.api_key_configured:
            config["WAHA_API_KEY"] = "your_api_key"
        return config


def check_gateway(provider: WahaProvider, *, test_phone: str | None = None) -> GatewayCheckReport:
    """Check server reachability, then the session, then optionally a test send.

    A gateway that cannot be reached stops the run after the first check.
    """
    api_key_configured, basic_auth_configured = provider.auth_configured
    report = {
        "base_url": provider.base_url,
        "session": provider.session,
        "api_key_configured": api_key_configured,
        "basic_auth_configured": basic_auth_configured,
    }
    checks: list[GatewayCheck] = []

    try:
        reply = provider.fetch("/api/server/status")
    except TransportError as exc:
        logger.warning("gateway %s unreachable: %s", provider.base_url, exc.message)
        checks.append(GatewayCheck("connectivity", False, detail=exc.message))
        return GatewayCheckReport(checks=tuple(checks), **report)
    server = reply.json()
    checks.append(
        GatewayCheck(
            "connectivity",
            reply.ok,
            http_status=reply.status,
            detail=f"version {server.get('version', 'unknown')}, engine {server.get('engine', 'unknown')}",
        )
    )

    session_status = "unknown"
    phone = None
    try:
        reply = provider.fetch(f"/api/sessions/{quote(provider.session, safe='')}")
    except TransportError as exc:
        checks.append(GatewayCheck("session", False, detail=exc.message))
    else:
        data = reply.json()
        if data.get("status"):
            session_status = str(data["status"])
        me = data.get("me")
        if isinstance(me, dict) and me.get("id"):
            phone = str(me["id"])
        checks.append(
            GatewayCheck("session", reply.ok and "status" in data, http_status=reply.status, detail=session_status)
        )

    if test_phone:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        result = provider.send_message(
            OutboundPayload(
                kind="text",
                to=normalize_address(test_phone),
                text=f"Gateway validation test\nTime: {stamp}",
            )
        )
        if isinstance(result, Sent):
            checks.append(GatewayCheck("send_message", True, detail=result.native_message_id))
        else:
            checks.append(GatewayCheck("send_message", False, detail=result.message))

    return GatewayCheckReport(
        checks=tuple(checks),
        session_status=session_status,
        phone=phone,
        server=server,
        **report,
    )
