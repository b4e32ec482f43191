from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import count
from pathlib import Path
from typing import Any, Protocol

from .config import Settings
from .providers import DeliveryResult, OutboundPayload, Rejected, Sent, TransportFailure
from .transport import HttpReply, TransportError, send_request

logger = logging.getLogger(__name__)

THREAD_NOT_FOUND = "thread_not_found"
THREAD_NOT_MODIFIED = "thread_not_modified"
THREAD_STALE_KINDS = frozenset({THREAD_NOT_FOUND, THREAD_NOT_MODIFIED})

_THREAD_NOT_FOUND_MARKERS = (
    "thread not found",
    "topic_deleted",
    "topic deleted",
    "topic_id_invalid",
    "topic id invalid",
)


def is_thread_stale(result: DeliveryResult) -> bool:
    return isinstance(result, Rejected) and result.error_kind in THREAD_STALE_KINDS


class TeamChatClient(Protocol):
    def create_thread(self, title: str) -> DeliveryResult: ...

    def decorate_thread(self, thread_ref: str, icon: str) -> DeliveryResult: ...

    def post(self, thread_ref: str, payload: OutboundPayload) -> DeliveryResult: ...

    def file_url(self, file_ref: str) -> str | None: ...

    def download_file(self, file_ref: str) -> bytes | None: ...


def classify_team_reply(reply: HttpReply) -> DeliveryResult:
    data = reply.json()
    if reply.ok and data.get("ok", True):
        result = data.get("result")
        if isinstance(result, dict):
            native_id = result.get("message_id") or result.get("message_thread_id")
            return Sent(str(native_id) if native_id is not None else "")
        return Sent("")

    description = str(data.get("description") or f"HTTP {reply.status}")
    lowered = description.lower()
    status_code = int(data.get("error_code") or reply.status)
    if "topic_not_modified" in lowered:
        return Rejected(THREAD_NOT_MODIFIED, description)
    if any(marker in lowered for marker in _THREAD_NOT_FOUND_MARKERS):
        return Rejected(THREAD_NOT_FOUND, description)
    if status_code == 429 or status_code >= 500:
        return TransportFailure(f"HTTP {status_code}: {description}")
    if status_code == 403 or "bot was blocked" in lowered:
        return Rejected("recipient_blocked", description)
    if status_code == 400:
        return Rejected("invalid_payload", description)
    return Rejected(f"http_{status_code}", description)


_POST_METHODS = {
    "text": ("sendMessage", None),
    "image": ("sendPhoto", "photo"),
    "document": ("sendDocument", "document"),
    "video": ("sendDocument", "document"),
    "audio": ("sendVoice", "voice"),
    "sticker": ("sendSticker", "sticker"),
    "location": ("sendLocation", None),
}


class HttpTeamChatClient:
    """Bot API client for a forum-style group where each customer owns one topic."""

    def __init__(
        self,
        *,
        bot_token: str,
        group_id: str,
        base_url: str = "https://api.telegram.org",
        timeout_seconds: int = 20,
    ) -> None:
        self._token = bot_token.strip()
        self._group_id = group_id.strip()
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpTeamChatClient:
        return cls(
            bot_token=settings.team_bot_token,
            group_id=settings.team_group_id,
            base_url=settings.team_api_base_url,
            timeout_seconds=settings.delivery_timeout_seconds,
        )

    def _call(
        self,
        method: str,
        params: dict[str, Any],
        *,
        files: dict[str, tuple[str, bytes, str]] | None = None,
    ) -> DeliveryResult:
        url = f"{self._base_url}/bot{self._token}/{method}"
        body = {key: value for key, value in params.items() if value is not None}
        try:
            if files:
                reply = send_request(
                    "POST",
                    url,
                    form_fields=body,
                    files=files,
                    timeout_seconds=self._timeout_seconds,
                )
            else:
                reply = send_request("POST", url, json_body=body, timeout_seconds=self._timeout_seconds)
        except TransportError as exc:
            return TransportFailure(exc.message)
        return classify_team_reply(reply)

    def create_thread(self, title: str) -> DeliveryResult:
        return self._call("createForumTopic", {"chat_id": self._group_id, "name": title[:128]})

    def decorate_thread(self, thread_ref: str, icon: str) -> DeliveryResult:
        return self._call(
            "editForumTopic",
            {
                "chat_id": self._group_id,
                "message_thread_id": thread_ref,
                "icon_custom_emoji_id": icon,
            },
        )

    def post(self, thread_ref: str, payload: OutboundPayload) -> DeliveryResult:
        method, file_field = _POST_METHODS.get(payload.kind, _POST_METHODS["text"])
        params: dict[str, Any] = {
            "chat_id": self._group_id,
            "message_thread_id": thread_ref,
            "reply_to_message_id": payload.reply_to,
        }
        if method == "sendMessage":
            params["text"] = payload.text or ""
        elif method == "sendLocation":
            params["latitude"] = payload.latitude
            params["longitude"] = payload.longitude
        else:
            params["caption"] = payload.caption

        files = None
        if file_field is not None:
            if payload.local_path:
                path = Path(payload.local_path)
                try:
                    content = path.read_bytes()
                except OSError as exc:
                    return Rejected("media_rejected", f"cannot read {path}: {exc}")
                files = {
                    file_field: (
                        payload.filename or path.name,
                        content,
                        payload.mime_type or "application/octet-stream",
                    )
                }
            else:
                params[file_field] = payload.media_url or payload.media_id
        return self._call(method, params, files=files)

    def _file_path(self, file_ref: str) -> str | None:
        try:
            reply = send_request(
                "POST",
                f"{self._base_url}/bot{self._token}/getFile",
                json_body={"file_id": file_ref},
                timeout_seconds=self._timeout_seconds,
            )
        except TransportError as exc:
            logger.warning("team file lookup failed for %s: %s", file_ref, exc.message)
            return None
        result = reply.json().get("result")
        if not reply.ok or not isinstance(result, dict) or not result.get("file_path"):
            logger.warning("team file lookup for %s returned HTTP %s", file_ref, reply.status)
            return None
        return str(result["file_path"])

    def file_url(self, file_ref: str) -> str | None:
        file_path = self._file_path(file_ref)
        if file_path is None:
            return None
        return f"{self._base_url}/file/bot{self._token}/{file_path}"

    def download_file(self, file_ref: str) -> bytes | None:
        url = self.file_url(file_ref)
        if url is None:
            return None
        try:
            reply = send_request("GET", url, timeout_seconds=self._timeout_seconds)
        except TransportError as exc:
            logger.warning("team file download failed for %s: %s", file_ref, exc.message)
            return None
        if not reply.ok:
            logger.warning("team file download for %s returned HTTP %s", file_ref, reply.status)
            return None
        return reply.body


@dataclass
class StubTeamChatClient:
    """Records every call; threads live in memory and can be deleted to simulate upstream removal.

    Like the real API, re-applying the icon a thread already shows is answered
    with "not modified".
    """

    files: dict[str, bytes] = field(default_factory=dict)
    post_results: list[DeliveryResult] = field(default_factory=list)
    create_results: list[DeliveryResult] = field(default_factory=list)
    threads: dict[str, str] = field(default_factory=dict)
    icons: dict[str, str] = field(default_factory=dict)
    created: list[str] = field(default_factory=list)
    decorations: list[tuple[str, str]] = field(default_factory=list)
    posts: list[tuple[str, OutboundPayload]] = field(default_factory=list)
    _thread_ids: Any = field(default_factory=lambda: count(100))
    _message_ids: Any = field(default_factory=lambda: count(1000))

    def delete_thread(self, thread_ref: str) -> None:
        self.threads.pop(thread_ref, None)

    def create_thread(self, title: str) -> DeliveryResult:
        self.created.append(title)
        if self.create_results:
            result = self.create_results.pop(0)
            if isinstance(result, Sent):
                self.threads[result.native_message_id] = title
            return result
        thread_ref = str(next(self._thread_ids))
        self.threads[thread_ref] = title
        return Sent(thread_ref)

    def decorate_thread(self, thread_ref: str, icon: str) -> DeliveryResult:
        self.decorations.append((thread_ref, icon))
        if thread_ref not in self.threads:
            return Rejected(THREAD_NOT_FOUND, "Bad Request: message thread not found")
        if self.icons.get(thread_ref, "") == icon:
            return Rejected(THREAD_NOT_MODIFIED, "Bad Request: TOPIC_NOT_MODIFIED")
        self.icons[thread_ref] = icon
        return Sent(thread_ref)

    def post(self, thread_ref: str, payload: OutboundPayload) -> DeliveryResult:
        self.posts.append((thread_ref, payload))
        if thread_ref not in self.threads:
            return Rejected(THREAD_NOT_FOUND, "Bad Request: message thread not found")
        if self.post_results:
            return self.post_results.pop(0)
        return Sent(f"team-{next(self._message_ids)}")

    def file_url(self, file_ref: str) -> str | None:
        if file_ref not in self.files:
            return None
        return f"stub://team-files/{file_ref}"

    def download_file(self, file_ref: str) -> bytes | None:
        return self.files.get(file_ref)
