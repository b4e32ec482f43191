from __future__ import annotations

import base64
import logging
import tempfile
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, ClassVar, Mapping, Protocol, Union

from .config import Settings, get_settings
from .models import MessageKind, Severity
from .transport import HttpReply, TransportError, send_request

logger = logging.getLogger(__name__)

MediaRef = str

# Rejections that no retry can fix; everything else is retried up to the bound.
PERMANENT_ERROR_KINDS = frozenset(
    {
        "invalid_payload",
        "invalid_recipient",
        "recipient_blocked",
        "media_rejected",
        "reengagement_required",
        # accepted upstream without an id; a retry would send it twice
        "missing_message_id",
    }
)


@dataclass(frozen=True)
class Sent:
    native_message_id: str


@dataclass(frozen=True)
class Rejected:
    error_kind: str
    message: str

    @property
    def permanent(self) -> bool:
        return self.error_kind in PERMANENT_ERROR_KINDS

    @property
    def severity(self) -> Severity:
        return "warning" if self.permanent else "error"


@dataclass(frozen=True)
class TransportFailure:
    message: str
    severity: ClassVar[Severity] = "error"


DeliveryResult = Union[Sent, Rejected, TransportFailure]


@dataclass(frozen=True)
class OutboundPayload:
    """One message ready to leave the system, tagged by ``kind``.

    ``to`` is the native chat address on the channel side; team-side posts leave
    it empty and are addressed by thread reference instead.
    """

    kind: MessageKind | str
    to: str = ""
    text: str | None = None
    media_url: str | None = None
    media_id: MediaRef | None = None
    local_path: str | None = None
    mime_type: str | None = None
    caption: str | None = None
    filename: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    reply_to: str | None = None

    def with_reply_to(self, reply_to: str | None) -> OutboundPayload:
        return replace(self, reply_to=reply_to)


@dataclass(frozen=True)
class LocalFile:
    path: Path
    mime_type: str | None = None


class ConfigurationMissingError(RuntimeError):
    """Raised when the active provider has no usable credentials."""


class MediaTransferError(RuntimeError):
    """Raised when a channel with a separate upload step fails to accept media."""


class ChannelProvider(Protocol):
    name: str

    def send_message(self, payload: OutboundPayload) -> DeliveryResult: ...

    def upload_media(self, content: bytes, mime_type: str) -> MediaRef | None: ...

    def download_media(self, media_ref: MediaRef, filename: str | None = None) -> LocalFile | None: ...

    def mark_read(self, native_message_id: str) -> None: ...

    def resolve_media_url(self, media_ref: MediaRef) -> str | None: ...


_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/aac": "aac",
    "audio/wav": "wav",
    "audio/opus": "opus",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "video/webm": "webm",
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
}


def extension_for(content_type: str | None) -> str:
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    return _EXTENSIONS.get(mime, "bin")


def _header(headers: Mapping[str, str], key: str) -> str | None:
    lowered = key.lower()
    for header_key, value in headers.items():
        if header_key.lower() == lowered:
            return value
    return None


def store_download(reply: HttpReply, *, prefix: str, filename: str | None) -> LocalFile:
    content_type = _header(reply.headers, "Content-Type")
    if filename:
        target = Path(tempfile.mkdtemp(prefix=prefix)) / Path(filename).name
    else:
        target = Path(tempfile.gettempdir()) / f"{prefix}media_{uuid.uuid4().hex}.{extension_for(content_type)}"
    target.write_bytes(reply.body)
    return LocalFile(path=target, mime_type=content_type.split(";", 1)[0].strip() if content_type else None)


def mask_contact_target(contact_target: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"
    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


_CLOUD_RATE_LIMIT_CODES = {4, 80007, 130429, 131048, 131056}
_CLOUD_ERROR_KINDS = {
    100: "invalid_payload",
    131008: "invalid_payload",
    131009: "invalid_payload",
    131051: "invalid_payload",
    131026: "recipient_blocked",
    131030: "invalid_recipient",
    131047: "reengagement_required",
    131052: "media_rejected",
    131053: "media_rejected",
}


def _cloud_media(payload: OutboundPayload, *, with_caption: bool = False, with_filename: bool = False) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if payload.media_id:
        body["id"] = payload.media_id
    elif payload.media_url:
        body["link"] = payload.media_url
    if with_caption and payload.caption:
        body["caption"] = payload.caption
    if with_filename and payload.filename:
        body["filename"] = payload.filename
    return body


_CLOUD_BODY_BUILDERS: dict[str, Callable[[OutboundPayload], dict[str, Any]]] = {
    "text": lambda p: {"text": {"body": p.text or ""}},
    "image": lambda p: {"image": _cloud_media(p, with_caption=True)},
    "document": lambda p: {"document": _cloud_media(p, with_caption=True, with_filename=True)},
    "audio": lambda p: {"audio": _cloud_media(p)},
    "video": lambda p: {"video": _cloud_media(p, with_caption=True)},
    "sticker": lambda p: {"sticker": _cloud_media(p)},
    "location": lambda p: {"location": {"latitude": p.latitude, "longitude": p.longitude}},
}


class CloudApiProvider:
    """Cloud messaging API provider (Graph-style REST endpoints)."""

    name = "cloud"

    def __init__(
        self,
        *,
        token: str,
        phone_number_id: str,
        api_version: str = "v21.0",
        base_url: str = "https://graph.facebook.com",
        timeout_seconds: int = 20,
    ) -> None:
        if not token.strip():
            raise ConfigurationMissingError("CLOUD_API_TOKEN must not be empty")
        if not phone_number_id.strip():
            raise ConfigurationMissingError("CLOUD_PHONE_NUMBER_ID must not be empty")
        self._token = token.strip()
        self._phone_number_id = phone_number_id.strip()
        self._api_root = f"{base_url.strip().rstrip('/')}/{api_version.strip()}"
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> CloudApiProvider:
        return cls(
            token=settings.cloud_api_token,
            phone_number_id=settings.cloud_phone_number_id,
            api_version=settings.cloud_api_version,
            base_url=settings.cloud_api_base_url,
            timeout_seconds=settings.delivery_timeout_seconds,
        )

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    def build_body(self, payload: OutboundPayload) -> dict[str, Any]:
        body: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": payload.to,
            "type": payload.kind,
        }
        builder = _CLOUD_BODY_BUILDERS.get(payload.kind)
        if builder is not None:
            body.update(builder(payload))
        if payload.reply_to:
            body["context"] = {"message_id": payload.reply_to}
        return body

    def send_message(self, payload: OutboundPayload) -> DeliveryResult:
        try:
            reply = send_request(
                "POST",
                f"{self._api_root}/{self._phone_number_id}/messages",
                headers=self._headers(),
                json_body=self.build_body(payload),
                timeout_seconds=self._timeout_seconds,
            )
        except TransportError as exc:
            return TransportFailure(exc.message)
        return self._classify(reply)

    @staticmethod
    def _classify(reply: HttpReply) -> DeliveryResult:
        data = reply.json()
        if reply.ok:
            messages = data.get("messages")
            if isinstance(messages, list) and messages and isinstance(messages[0], dict) and messages[0].get("id"):
                return Sent(str(messages[0]["id"]))
            return Rejected("missing_message_id", "Cloud API accepted the request without a message id")

        error = data.get("error") if isinstance(data.get("error"), dict) else {}
        code = error.get("code")
        message = str(error.get("message") or f"HTTP {reply.status}")
        if reply.status == 429 or code in _CLOUD_RATE_LIMIT_CODES:
            return TransportFailure(f"rate limited: {message}")
        if reply.status >= 500:
            return TransportFailure(f"HTTP {reply.status}: {message}")
        kind = _CLOUD_ERROR_KINDS.get(code) if isinstance(code, int) else None
        return Rejected(kind or f"http_{reply.status}", message)

    def upload_media(self, content: bytes, mime_type: str) -> MediaRef | None:
        try:
            reply = send_request(
                "POST",
                f"{self._api_root}/{self._phone_number_id}/media",
                headers=self._headers(),
                form_fields={"messaging_product": "whatsapp", "type": mime_type},
                files={"file": (f"upload.{extension_for(mime_type)}", content, mime_type)},
                timeout_seconds=self._timeout_seconds,
            )
        except TransportError as exc:
            raise MediaTransferError(f"media upload failed: {exc.message}") from exc
        media_id = reply.json().get("id") if reply.ok else None
        if not media_id:
            raise MediaTransferError(f"media upload rejected with HTTP {reply.status}")
        return str(media_id)

    def resolve_media_url(self, media_ref: MediaRef) -> str | None:
        try:
            reply = send_request(
                "GET",
                f"{self._api_root}/{media_ref}",
                headers=self._headers(),
                timeout_seconds=self._timeout_seconds,
            )
        except TransportError as exc:
            logger.warning("cloud media url lookup failed for %s: %s", media_ref, exc.message)
            return None
        url = reply.json().get("url") if reply.ok else None
        return str(url) if url else None

    def download_media(self, media_ref: MediaRef, filename: str | None = None) -> LocalFile | None:
        url = self.resolve_media_url(media_ref)
        if not url:
            return None
        try:
            reply = send_request("GET", url, headers=self._headers(), timeout_seconds=self._timeout_seconds)
        except TransportError as exc:
            logger.warning("cloud media download failed for %s: %s", media_ref, exc.message)
            return None
        if not reply.ok:
            logger.warning("cloud media download for %s returned HTTP %s", media_ref, reply.status)
            return None
        return store_download(reply, prefix="wa_", filename=filename)

    def mark_read(self, native_message_id: str) -> None:
        try:
            reply = send_request(
                "POST",
                f"{self._api_root}/{self._phone_number_id}/messages",
                headers=self._headers(),
                json_body={"messaging_product": "whatsapp", "status": "read", "message_id": native_message_id},
                timeout_seconds=self._timeout_seconds,
            )
        except TransportError as exc:
            logger.warning("cloud mark-read failed for %s: %s", native_message_id, exc.message)
            return
        if not reply.ok:
            logger.warning("cloud mark-read for %s returned HTTP %s", native_message_id, reply.status)


_WAHA_ENDPOINTS = {
    "text": "/api/sendText",
    "image": "/api/sendImage",
    "document": "/api/sendFile",
    "audio": "/api/sendVoice",
    "video": "/api/sendVideo",
    "location": "/api/sendLocation",
}


def _waha_file(payload: OutboundPayload) -> dict[str, Any]:
    file: dict[str, Any] = {"url": payload.media_url or payload.media_id}
    if payload.mime_type:
        file["mimetype"] = payload.mime_type
    if payload.filename:
        file["filename"] = payload.filename
    return file


_WAHA_BODY_BUILDERS: dict[str, Callable[[OutboundPayload], dict[str, Any]]] = {
    "text": lambda p: {"text": p.text or ""},
    "image": lambda p: {"file": _waha_file(p), "caption": p.caption},
    "document": lambda p: {"file": _waha_file(p), "caption": p.caption},
    "audio": lambda p: {"file": _waha_file(p)},
    "video": lambda p: {"file": _waha_file(p), "caption": p.caption},
    "location": lambda p: {"latitude": p.latitude, "longitude": p.longitude},
}


def extract_waha_chat_id(message_id: str) -> str:
    # Gateway message ids look like ``false_12345678901@c.us_ABCDEF``.
    parts = message_id.split("_")
    if len(parts) >= 2:
        return parts[1]
    return message_id


def _waha_message_id(data: dict[str, Any]) -> str | None:
    messages = data.get("messages")
    if isinstance(messages, list) and messages and isinstance(messages[0], dict) and messages[0].get("id"):
        return str(messages[0]["id"])
    raw_id = data.get("id")
    if isinstance(raw_id, str) and raw_id:
        return raw_id
    if isinstance(raw_id, dict) and raw_id.get("_serialized"):
        return str(raw_id["_serialized"])
    key = data.get("key")
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    return None


class WahaProvider:
    """Self-hosted gateway provider.

    The gateway fetches media by URL itself, so there is no separate upload step
    and ``upload_media`` always answers ``None``.
    """

    name = "waha"

    def __init__(
        self,
        *,
        base_url: str,
        session: str = "default",
        api_key: str = "",
        basic_auth: str = "",
        timeout_seconds: int = 20,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ConfigurationMissingError("WAHA_BASE_URL must not be empty")
        self._base_url = stripped_url
        self._session = session.strip() or "default"
        self._api_key = api_key.strip()
        self._basic_auth = basic_auth.strip()
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> WahaProvider:
        return cls(
            base_url=settings.waha_base_url,
            session=settings.waha_session,
            api_key=settings.waha_api_key,
            basic_auth=settings.waha_basic_auth,
            timeout_seconds=settings.delivery_timeout_seconds,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def session(self) -> str:
        return self._session

    @property
    def auth_configured(self) -> tuple[bool, bool]:
        """Whether an API key and basic auth credentials are set, in that order."""
        return bool(self._api_key), bool(self._basic_auth)

    def fetch(self, path: str) -> HttpReply:
        """GET a gateway endpoint with the configured credentials."""
        return send_request(
            "GET",
            f"{self._base_url}{path}",
            headers=self._headers(),
            timeout_seconds=self._timeout_seconds,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["X-Api-Key"] = self._api_key
        if self._basic_auth:
            encoded = base64.b64encode(self._basic_auth.encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Basic {encoded}"
        return headers

    def build_request(self, payload: OutboundPayload) -> tuple[str, dict[str, Any]]:
        kind = payload.kind if payload.kind in _WAHA_ENDPOINTS else "text"
        body: dict[str, Any] = {"session": self._session, "chatId": f"{payload.to}@c.us"}
        body.update(_WAHA_BODY_BUILDERS[kind](payload))
        if payload.reply_to:
            body["reply_to"] = payload.reply_to
        return _WAHA_ENDPOINTS[kind], {key: value for key, value in body.items() if value is not None}

    def send_message(self, payload: OutboundPayload) -> DeliveryResult:
        endpoint, body = self.build_request(payload)
        try:
            reply = send_request(
                "POST",
                f"{self._base_url}{endpoint}",
                headers=self._headers(),
                json_body=body,
                timeout_seconds=self._timeout_seconds,
            )
        except TransportError as exc:
            return TransportFailure(exc.message)

        data = reply.json()
        if reply.ok:
            message_id = _waha_message_id(data)
            if message_id:
                return Sent(message_id)
            return Rejected("missing_message_id", "gateway accepted the request without a message id")
        message = str(data.get("message") or data.get("error") or f"HTTP {reply.status}")
        if reply.status == 429 or reply.status >= 500:
            return TransportFailure(f"HTTP {reply.status}: {message}")
        if reply.status in {400, 422}:
            return Rejected("invalid_payload", message)
        return Rejected(f"http_{reply.status}", message)

    def upload_media(self, content: bytes, mime_type: str) -> MediaRef | None:
        return None

    def resolve_media_url(self, media_ref: MediaRef) -> str | None:
        if media_ref.startswith(("http://", "https://")):
            return media_ref
        return f"{self._base_url}/api/files/{media_ref}"

    def download_media(self, media_ref: MediaRef, filename: str | None = None) -> LocalFile | None:
        url = self.resolve_media_url(media_ref)
        if not url:
            return None
        try:
            reply = send_request("GET", url, headers=self._headers(), timeout_seconds=self._timeout_seconds)
        except TransportError as exc:
            logger.warning("gateway media download failed for %s: %s", media_ref, exc.message)
            return None
        if not reply.ok:
            logger.warning("gateway media download for %s returned HTTP %s", media_ref, reply.status)
            return None
        return store_download(reply, prefix="waha_", filename=filename)

    def mark_read(self, native_message_id: str) -> None:
        try:
            reply = send_request(
                "POST",
                f"{self._base_url}/api/sendSeen",
                headers=self._headers(),
                json_body={"session": self._session, "chatId": extract_waha_chat_id(native_message_id)},
                timeout_seconds=self._timeout_seconds,
            )
        except TransportError as exc:
            logger.warning("gateway mark-read failed for %s: %s", native_message_id, exc.message)
            return
        if not reply.ok:
            logger.warning("gateway mark-read for %s returned HTTP %s", native_message_id, reply.status)


@dataclass
class StubChannelProvider:
    """In-process provider that records calls; queued results are replayed in order."""

    name: str = "stub"
    results: list[DeliveryResult] = field(default_factory=list)
    media_files: dict[str, LocalFile] = field(default_factory=dict)
    upload_ref: MediaRef | None = None
    sent: list[OutboundPayload] = field(default_factory=list)
    uploads: list[tuple[bytes, str]] = field(default_factory=list)
    read_receipts: list[str] = field(default_factory=list)

    def send_message(self, payload: OutboundPayload) -> DeliveryResult:
        self.sent.append(payload)
        if self.results:
            return self.results.pop(0)
        return Sent(f"{self.name}-msg-{len(self.sent)}")

    def upload_media(self, content: bytes, mime_type: str) -> MediaRef | None:
        self.uploads.append((content, mime_type))
        return self.upload_ref

    def download_media(self, media_ref: MediaRef, filename: str | None = None) -> LocalFile | None:
        return self.media_files.get(media_ref)

    def mark_read(self, native_message_id: str) -> None:
        self.read_receipts.append(native_message_id)

    def resolve_media_url(self, media_ref: MediaRef) -> str | None:
        return f"stub://media/{media_ref}"


ProviderFactory = Callable[[Settings], ChannelProvider]

DEFAULT_PROVIDER_FACTORIES: dict[str, ProviderFactory] = {
    "cloud": CloudApiProvider.from_settings,
    "waha": WahaProvider.from_settings,
    "stub": lambda settings: StubChannelProvider(),
}


class ProviderRegistry:
    """Picks the channel provider from configuration on every call.

    Nothing is cached, so a configuration change applies to the next job that
    resolves a provider; a job keeps the instance it resolved at creation.
    Intake always passes the channel tag of the update, which wins over
    ``CHANNEL_PROVIDER``; the configured name is only the default.
    """

    def __init__(
        self,
        *,
        settings_loader: Callable[[], Settings] = get_settings,
        factories: Mapping[str, ProviderFactory] | None = None,
    ) -> None:
        self._settings_loader = settings_loader
        self._factories = dict(DEFAULT_PROVIDER_FACTORIES if factories is None else factories)

    def active_name(self) -> str:
        return self._settings_loader().channel_provider.strip().lower()

    def resolve(self, channel: str | None = None) -> ChannelProvider:
        settings = self._settings_loader()
        name = (channel or settings.channel_provider).strip().lower()
        factory = self._factories.get(name)
        if factory is None:
            raise ConfigurationMissingError(f"no provider registered for channel '{name}'")
        missing = settings.provider_credentials_missing(name)
        if missing:
            raise ConfigurationMissingError(f"{', '.join(missing)} required for channel '{name}'")
        return factory(settings)
