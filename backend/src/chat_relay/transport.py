from __future__ import annotations

import http.client
import json
import socket
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping


class TransportError(Exception):
    """Raised when a request never produced an HTTP response."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


@dataclass(frozen=True)
class HttpReply:
    status: int
    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> dict[str, Any]:
        if not self.body:
            return {}
        try:
            parsed = json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {}
        return parsed if isinstance(parsed, dict) else {"result": parsed}


def _encode_multipart(fields: Mapping[str, Any], files: Mapping[str, tuple[str, bytes, str]]) -> tuple[bytes, str]:
    boundary = f"----relay{uuid.uuid4().hex}"
    chunks: list[bytes] = []
    for name, value in fields.items():
        if value is None:
            continue
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            ).encode("utf-8")
        )
    for name, (filename, content, mime_type) in files.items():
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
                f"Content-Type: {mime_type}\r\n\r\n"
            ).encode("utf-8")
        )
        chunks.append(content)
        chunks.append(b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"


def send_request(
    method: str,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    json_body: Mapping[str, Any] | None = None,
    form_fields: Mapping[str, Any] | None = None,
    files: Mapping[str, tuple[str, bytes, str]] | None = None,
    raw_body: bytes | None = None,
    timeout_seconds: float,
) -> HttpReply:
    """Perform one blocking HTTP call.

    HTTP error statuses come back as an ``HttpReply``; only failures that never
    produced a complete response (timeouts, refused or dropped connections)
    raise ``TransportError``.
    """
    request_headers = dict(headers or {})
    data: bytes | None = raw_body
    if files:
        data, content_type = _encode_multipart(form_fields or {}, files)
        request_headers["Content-Type"] = content_type
    elif json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        request_headers.setdefault("Content-Type", "application/json")

    request = urllib.request.Request(url, data=data, headers=request_headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            return HttpReply(
                status=response.status,
                body=response.read(),
                headers=dict(response.headers.items()) if response.headers is not None else {},
            )
    except urllib.error.HTTPError as exc:
        body = exc.read() if exc.fp is not None else b""
        return HttpReply(status=exc.code, body=body or b"", headers=dict(exc.headers.items()) if exc.headers else {})
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            raise TransportError("timeout", f"Request timed out: {exc.reason}") from exc
        raise TransportError("connection_error", f"Connection error: {exc.reason}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise TransportError("timeout", f"Request timed out: {exc}") from exc
    except (OSError, http.client.HTTPException) as exc:
        raise TransportError("connection_error", f"Connection error: {exc!r}") from exc
