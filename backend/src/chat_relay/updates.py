"""Normalized update values and the webhook payload parsers that produce them.

Parsers never raise on malformed input: anything that does not look like a
relayable event yields ``None`` and the webhook is acknowledged without work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .models import MessageKind

_CLOUD_MEDIA_KINDS = {"image", "document", "audio", "video", "sticker"}
_CLOUD_CAPTION_KINDS = {"image", "document", "video"}


@dataclass(frozen=True)
class InboundUpdate:
    channel: str
    event_id: str
    address: str
    kind: MessageKind | str
    text: str | None = None
    media_ref: str | None = None
    mime_type: str | None = None
    filename: str | None = None
    caption: str | None = None
    location: dict[str, Any] | None = None
    contacts: list[dict[str, Any]] | None = None
    reply_to: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ThreadPost:
    message_id: str
    thread_ref: str | None
    kind: MessageKind | str
    text: str | None = None
    caption: str | None = None
    file_ref: str | None = None
    file_name: str | None = None
    mime_type: str | None = None
    location: dict[str, Any] | None = None
    contact: dict[str, Any] | None = None
    sticker_emoji: str | None = None
    reply_to_message_id: str | None = None
    edited: bool = False
    edit_date: int | None = None
    from_bot: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


def extract_phone_number(chat_id: str) -> str:
    return chat_id.split("@", 1)[0].strip()


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(value: Any) -> dict[str, Any]:
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return {}


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def parse_cloud_webhook(data: dict[str, Any]) -> InboundUpdate | None:
    entry = _first(data.get("entry"))
    change = _first(entry.get("changes"))
    if not change or change.get("field") != "messages":
        return None
    value = _as_dict(change.get("value"))

    status = _first(value.get("statuses"))
    if status:
        event_id = _optional_str(status.get("id"))
        recipient = _optional_str(status.get("recipient_id"))
        if event_id is None or recipient is None:
            return None
        return InboundUpdate(channel="cloud", event_id=event_id, address=recipient, kind="status", raw=data)

    message = _first(value.get("messages"))
    event_id = _optional_str(message.get("id"))
    sender = _optional_str(message.get("from"))
    if event_id is None or sender is None:
        return None

    kind = str(message.get("type") or "text")
    body = _as_dict(message.get(kind))
    text: str | None = None
    if kind == "text":
        text = _optional_str(body.get("body"))
    elif kind == "interactive":
        interactive = _as_dict(message.get("interactive"))
        text = _optional_str(
            _as_dict(interactive.get("button_reply")).get("title")
            or _as_dict(interactive.get("list_reply")).get("title")
        )
        kind = "text"
    elif kind == "button":
        text = _optional_str(body.get("text"))
        kind = "text"

    return InboundUpdate(
        channel="cloud",
        event_id=event_id,
        address=sender,
        kind=kind,
        text=text,
        media_ref=_optional_str(body.get("id")) if kind in _CLOUD_MEDIA_KINDS else None,
        mime_type=_optional_str(body.get("mime_type")) if kind in _CLOUD_MEDIA_KINDS else None,
        filename=_optional_str(body.get("filename")) if kind == "document" else None,
        caption=_optional_str(body.get("caption")) if kind in _CLOUD_CAPTION_KINDS else None,
        location=_as_dict(message.get("location")) or None,
        contacts=message.get("contacts") if isinstance(message.get("contacts"), list) else None,
        reply_to=_optional_str(_as_dict(message.get("context")).get("id")),
        raw=data,
    )


def _waha_kind(payload: dict[str, Any]) -> str:
    if payload.get("location"):
        return "location"
    if payload.get("vCards"):
        return "contacts"
    if payload.get("hasMedia"):
        mime = str(_as_dict(payload.get("media")).get("mimetype") or "")
        if mime.startswith("image/"):
            return "image"
        if mime.startswith("video/"):
            return "video"
        if mime.startswith("audio/"):
            return "audio"
        return "document"
    if payload.get("reaction"):
        return "reaction"
    return "text"


def _waha_contacts(vcards: Any) -> list[dict[str, Any]] | None:
    if not isinstance(vcards, list) or not vcards:
        return None
    contacts: list[dict[str, Any]] = []
    for card in vcards:
        if not isinstance(card, str):
            continue
        name = None
        phone = None
        for line in card.splitlines():
            key, _, value = line.partition(":")
            key = key.upper()
            if key == "FN":
                name = value.strip()
            elif key.startswith("TEL") and phone is None:
                phone = value.strip()
        contacts.append(
            {
                "name": {"formatted_name": name or ""},
                "phones": [{"phone": phone}] if phone else [],
            }
        )
    return contacts or None


def _waha_message(payload: dict[str, Any], raw: dict[str, Any]) -> InboundUpdate | None:
    event_id = _optional_str(payload.get("id"))
    sender = _optional_str(payload.get("from"))
    if event_id is None or sender is None:
        return None
    if payload.get("fromMe"):
        return None
    kind = _waha_kind(payload)
    media = _as_dict(payload.get("media")) if payload.get("hasMedia") else {}
    body = _optional_str(payload.get("body"))
    location = _as_dict(payload.get("location"))
    if location:
        location = {"latitude": location.get("latitude"), "longitude": location.get("longitude")}
    reply = _as_dict(payload.get("replyTo"))
    return InboundUpdate(
        channel="waha",
        event_id=event_id,
        address=extract_phone_number(sender),
        kind=kind,
        text=body if not media else None,
        media_ref=_optional_str(media.get("url") or media.get("id")),
        mime_type=_optional_str(media.get("mimetype")),
        filename=_optional_str(media.get("filename")),
        caption=body if media else None,
        location=location or None,
        contacts=_waha_contacts(payload.get("vCards")),
        reply_to=_optional_str(reply.get("id")),
        raw=raw,
    )


def parse_waha_webhook(data: dict[str, Any]) -> InboundUpdate | None:
    event = data.get("event")
    payload = _as_dict(data.get("payload"))
    if event == "message":
        return _waha_message(payload, data)
    if event == "message.ack":
        event_id = _optional_str(payload.get("id"))
        recipient = _optional_str(payload.get("to"))
        if event_id is None or recipient is None:
            return None
        return InboundUpdate(
            channel="waha",
            event_id=event_id,
            address=extract_phone_number(recipient),
            kind="status",
            raw=data,
        )
    if "id" in data and "from" in data and "body" in data:
        return _waha_message(data, data)
    return None


_TEAM_MEDIA_KEYS = (
    ("photo", "image"),
    ("document", "document"),
    ("voice", "audio"),
    ("sticker", "sticker"),
    ("location", "location"),
    ("contact", "contacts"),
)


def parse_team_update(data: dict[str, Any]) -> ThreadPost | None:
    edited = "edited_message" in data
    message = _as_dict(data.get("edited_message") if edited else data.get("message"))
    message_id = _optional_str(message.get("message_id"))
    if message_id is None:
        return None

    kind = "text"
    for key, mapped in _TEAM_MEDIA_KEYS:
        if message.get(key):
            kind = mapped
            break
    if kind == "text" and not _optional_str(message.get("text")):
        return None

    file_ref = None
    file_name = None
    mime_type = None
    if kind == "image":
        photos = message.get("photo")
        largest = photos[-1] if isinstance(photos, list) and photos else {}
        file_ref = _optional_str(_as_dict(largest).get("file_id"))
    elif kind in {"document", "audio", "sticker"}:
        media = _as_dict(message.get({"document": "document", "audio": "voice", "sticker": "sticker"}[kind]))
        file_ref = _optional_str(media.get("file_id"))
        file_name = _optional_str(media.get("file_name"))
        mime_type = _optional_str(media.get("mime_type"))

    thread_ref = _optional_str(message.get("message_thread_id")) if message.get("is_topic_message", True) else None
    reply = _as_dict(message.get("reply_to_message"))
    reply_to = _optional_str(reply.get("message_id"))
    if reply_to is not None and reply_to == thread_ref:
        # The thread's root service message is not a relayed post.
        reply_to = None

    return ThreadPost(
        message_id=message_id,
        thread_ref=thread_ref,
        kind=kind,
        text=_optional_str(message.get("text")),
        caption=_optional_str(message.get("caption")),
        file_ref=file_ref,
        file_name=file_name,
        mime_type=mime_type,
        location=_as_dict(message.get("location")) or None,
        contact=_as_dict(message.get("contact")) or None,
        sticker_emoji=_optional_str(_as_dict(message.get("sticker")).get("emoji")),
        reply_to_message_id=reply_to,
        edited=edited,
        edit_date=message.get("edit_date") if isinstance(message.get("edit_date"), int) else None,
        from_bot=bool(_as_dict(message.get("from")).get("is_bot")),
        raw=data,
    )
