from __future__ import annotations

import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, Response

from .config import Settings, get_settings
from .gateway_check import check_gateway
from .identities import CustomerIdentity, CustomerNotFoundError
from .models import (
    CustomerIdentityResponse,
    GatewayCheckItem,
    GatewayCheckResponse,
    HealthResponse,
    LedgerEntryItem,
    LedgerEntryListResponse,
    WebhookAckResponse,
)
from .providers import ConfigurationMissingError, WahaProvider, mask_contact_target
from .relay import RelayService, build_relay_service
from .updates import parse_cloud_webhook, parse_team_update, parse_waha_webhook
from .webhook_security import (
    WebhookVerification,
    verify_cloud_signature,
    verify_subscription_challenge,
    verify_team_secret,
    verify_waha_signature,
)

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/relay", tags=["relay"])
relay_service: RelayService = build_relay_service(_settings)


def _check_verification(source: str, verification: WebhookVerification) -> None:
    if verification.verified:
        return
    if _settings.webhook_signature_mode == "enforce":
        raise HTTPException(401, f"{source} webhook signature rejected: {verification.reason}")
    logger.warning("%s webhook signature not verified (%s), accepting in log_only mode", source, verification.reason)


def _require_admin(request: Request) -> None:
    configured = _settings.admin_api_key.strip()
    if not configured:
        raise HTTPException(503, "admin api key not configured")
    provided = request.headers.get("X-Admin-Key", "")
    if not provided or not hmac.compare_digest(configured, provided):
        raise HTTPException(401, "admin key required")


def _decode_json(body: bytes) -> dict[str, Any] | None:
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _identity_response(identity: CustomerIdentity) -> CustomerIdentityResponse:
    state = relay_service.threads.state_of(identity.customer_id)
    return CustomerIdentityResponse(
        customer_id=identity.customer_id,
        channel=identity.channel,
        native_address_masked=mask_contact_target(identity.native_address),
        thread_ref=identity.thread_ref,
        thread_state=state.value,
        banned=identity.banned,
        banned_at=identity.banned_at,
        created_at=identity.created_at,
        updated_at=identity.updated_at,
    )


def _get_identity_or_404(customer_id: int) -> CustomerIdentity:
    identity = relay_service.identities.get(customer_id)
    if identity is None:
        raise HTTPException(status_code=404, detail=f"customer not found: {customer_id}")
    return identity


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(channel_provider=relay_service.registry.active_name())


@router.get("/webhooks/cloud")
def verify_cloud_subscription(request: Request) -> Response:
    challenge = verify_subscription_challenge(
        settings=_settings,
        mode=request.query_params.get("hub.mode"),
        verify_token=request.query_params.get("hub.verify_token"),
        challenge=request.query_params.get("hub.challenge"),
    )
    if challenge is None:
        raise HTTPException(403, "verification failed")
    return Response(content=challenge, media_type="text/plain")


@router.post("/webhooks/cloud", response_model=WebhookAckResponse)
async def ingest_cloud_webhook(request: Request, background_tasks: BackgroundTasks) -> WebhookAckResponse:
    body = await request.body()
    _check_verification("cloud", verify_cloud_signature(settings=_settings, body=body, headers=request.headers))
    data = _decode_json(body)
    update = parse_cloud_webhook(data) if data is not None else None
    if update is None:
        return WebhookAckResponse(accepted=False, reason="unrecognized_payload")
    background_tasks.add_task(relay_service.handle_inbound_update, update)
    return WebhookAckResponse(accepted=True)


@router.post("/webhooks/waha", response_model=WebhookAckResponse)
async def ingest_waha_webhook(request: Request, background_tasks: BackgroundTasks) -> WebhookAckResponse:
    body = await request.body()
    _check_verification("waha", verify_waha_signature(settings=_settings, body=body, headers=request.headers))
    data = _decode_json(body)
    update = parse_waha_webhook(data) if data is not None else None
    if update is None:
        return WebhookAckResponse(accepted=False, reason="unrecognized_payload")
    background_tasks.add_task(relay_service.handle_inbound_update, update)
    return WebhookAckResponse(accepted=True)


@router.post("/webhooks/team", response_model=WebhookAckResponse)
async def ingest_team_webhook(request: Request, background_tasks: BackgroundTasks) -> WebhookAckResponse:
    body = await request.body()
    _check_verification("team", verify_team_secret(settings=_settings, headers=request.headers))
    data = _decode_json(body)
    post = parse_team_update(data) if data is not None else None
    if post is None:
        return WebhookAckResponse(accepted=False, reason="unrecognized_payload")
    background_tasks.add_task(relay_service.handle_outbound_reply, post)
    return WebhookAckResponse(accepted=True)


@router.get("/admin/customers/{customer_id}", response_model=CustomerIdentityResponse)
def get_customer(customer_id: int, request: Request) -> CustomerIdentityResponse:
    _require_admin(request)
    return _identity_response(_get_identity_or_404(customer_id))


@router.post("/admin/customers/{customer_id}/ban", response_model=CustomerIdentityResponse)
def ban_customer(customer_id: int, request: Request) -> CustomerIdentityResponse:
    _require_admin(request)
    _get_identity_or_404(customer_id)
    try:
        identity = relay_service.identities.set_banned(customer_id, True)
    except CustomerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"customer not found: {customer_id}") from exc
    logger.info("customer %s banned", customer_id)
    return _identity_response(identity)


@router.post("/admin/customers/{customer_id}/unban", response_model=CustomerIdentityResponse)
def unban_customer(customer_id: int, request: Request) -> CustomerIdentityResponse:
    _require_admin(request)
    _get_identity_or_404(customer_id)
    try:
        identity = relay_service.identities.set_banned(customer_id, False)
    except CustomerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"customer not found: {customer_id}") from exc
    logger.info("customer %s unbanned", customer_id)
    return _identity_response(identity)


@router.get("/admin/customers/{customer_id}/ledger", response_model=LedgerEntryListResponse)
def list_customer_ledger(customer_id: int, request: Request, limit: int = 100) -> LedgerEntryListResponse:
    _require_admin(request)
    _get_identity_or_404(customer_id)
    entries = relay_service.ledger.list_entries(customer_id, limit=max(1, min(limit, 500)))
    return LedgerEntryListResponse(
        customer_id=customer_id,
        items=[
            LedgerEntryItem(
                entry_id=entry.entry_id,
                direction=entry.direction,
                channel=entry.channel,
                origin_native_id=entry.origin_native_id,
                destination_native_id=entry.destination_native_id,
                pending=entry.pending,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
    )


@router.get("/admin/gateway-check", response_model=GatewayCheckResponse)
def check_gateway_connection(request: Request, test_phone: str | None = None) -> GatewayCheckResponse:
    _require_admin(request)
    try:
        provider = relay_service.registry.resolve("waha")
    except ConfigurationMissingError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if not isinstance(provider, WahaProvider):
        raise HTTPException(status_code=409, detail="gateway checks need the waha provider")

    report = check_gateway(provider, test_phone=test_phone)
    logger.info("gateway check against %s: %s", report.base_url, report.overall_status)
    return GatewayCheckResponse(
        base_url=report.base_url,
        session=report.session,
        api_key_configured=report.api_key_configured,
        basic_auth_configured=report.basic_auth_configured,
        session_status=report.session_status,
        phone=report.phone,
        overall_status=report.overall_status,
        ready_to_use=report.ready,
        checks=[
            GatewayCheckItem(name=check.name, passed=check.passed, http_status=check.http_status, detail=check.detail)
            for check in report.checks
        ],
        env_config=report.env_config(),
    )

def configure(settings: Settings, service: RelayService) -> None:
    """Swap the module-level settings and relay service, used by tests and embedding hosts."""
    global _settings, relay_service
    _settings = settings
    relay_service = service
