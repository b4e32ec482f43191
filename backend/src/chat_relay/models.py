from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ChannelTag = Literal["cloud", "waha", "stub"]
Direction = Literal["inbound", "outbound"]
DeliveryTarget = Literal["team", "channel"]
MessageKind = Literal[
    "text",
    "image",
    "document",
    "audio",
    "video",
    "sticker",
    "location",
    "contacts",
    "reaction",
    "status",
]
Severity = Literal["warning", "error"]

TEAM_CHANNEL = "team"


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    channel_provider: str


class WebhookAckResponse(BaseModel):
    accepted: bool
    reason: str | None = None


class CustomerIdentityResponse(BaseModel):
    customer_id: int
    channel: str
    native_address_masked: str
    thread_ref: str | None
    thread_state: Literal["no_thread", "thread_pending", "thread_active"]
    banned: bool
    banned_at: datetime | None
    created_at: datetime
    updated_at: datetime


class LedgerEntryItem(BaseModel):
    entry_id: int
    direction: Direction
    channel: str
    origin_native_id: str
    destination_native_id: str | None
    pending: bool
    created_at: datetime


class LedgerEntryListResponse(BaseModel):
    customer_id: int
    items: list[LedgerEntryItem] = Field(default_factory=list)


class GatewayCheckItem(BaseModel):
    name: str
    passed: bool
    http_status: int | None = None
    detail: str | None = None


class GatewayCheckResponse(BaseModel):
    base_url: str
    session: str
    api_key_configured: bool
    basic_auth_configured: bool
    session_status: str
    phone: str | None = None
    overall_status: Literal["success", "partial"]
    ready_to_use: bool
    checks: list[GatewayCheckItem] = Field(default_factory=list)
    env_config: dict[str, str] = Field(default_factory=dict)
