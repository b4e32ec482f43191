from __future__ import annotations

import json
import urllib.error
from unittest.mock import MagicMock, patch

from chat_relay.gateway_check import check_gateway
from chat_relay.providers import WahaProvider

URLOPEN = "chat_relay.transport.urllib.request.urlopen"


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.headers = {}
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _waha(**overrides) -> WahaProvider:
    values = {"base_url": "http://waha.test:3000", "session": "main", "api_key": "waha-key", "basic_auth": ""}
    values.update(overrides)
    return WahaProvider(**values)


@patch(URLOPEN)
def test_ready_gateway_passes_every_check(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = [
        _mock_response({"version": "2024.10.1", "engine": "WEBJS"}),
        _mock_response({"name": "main", "status": "WORKING", "me": {"id": "15550001111@c.us"}}),
    ]

    report = check_gateway(_waha())

    assert [(check.name, check.passed) for check in report.checks] == [("connectivity", True), ("session", True)]
    assert report.checks[0].detail == "version 2024.10.1, engine WEBJS"
    assert report.ready is True
    assert report.overall_status == "success"
    assert report.phone == "15550001111@c.us"
    assert report.api_key_configured is True
    assert report.basic_auth_configured is False
    assert report.env_config() == {
        "CHANNEL_PROVIDER": "waha",
        "WAHA_BASE_URL": "http://waha.test:3000",
        "WAHA_SESSION": "main",
    }
    urls = [call.args[0].full_url for call in mock_urlopen.call_args_list]
    assert urls == ["http://waha.test:3000/api/server/status", "http://waha.test:3000/api/sessions/main"]
    assert mock_urlopen.call_args_list[0].args[0].get_header("X-api-key") == "waha-key"


@patch(URLOPEN)
def test_unreachable_gateway_stops_after_connectivity(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")

    report = check_gateway(_waha(api_key=""))

    assert [(check.name, check.passed) for check in report.checks] == [("connectivity", False)]
    assert "Connection refused" in report.checks[0].detail
    assert report.ready is False
    assert report.overall_status == "partial"
    assert report.env_config() == {}
    assert mock_urlopen.call_count == 1


@patch(URLOPEN)
def test_session_waiting_for_qr_is_not_ready(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = [
        _mock_response({"version": "2024.10.1"}),
        _mock_response({"name": "main", "status": "SCAN_QR"}),
    ]

    report = check_gateway(_waha(api_key="", basic_auth="user:pass"))

    assert report.session_status == "SCAN_QR"
    assert report.ready is False
    assert report.basic_auth_configured is True
    assert report.checks[1].passed is True
    assert report.checks[0].detail == "version 2024.10.1, engine unknown"


@patch(URLOPEN)
def test_test_phone_sends_a_message(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = [
        _mock_response({"version": "2024.10.1", "engine": "NOWEB"}),
        _mock_response({"status": "AUTHENTICATED"}),
        _mock_response({"id": {"_serialized": "true_15551234567@c.us_TEST"}}),
    ]

    report = check_gateway(_waha(api_key=""), test_phone="+1 555 123 4567")

    assert report.checks[-1].name == "send_message"
    assert report.checks[-1].passed is True
    assert report.checks[-1].detail == "true_15551234567@c.us_TEST"
    assert report.env_config()["WAHA_API_KEY"] == "your_api_key"
    send_request = mock_urlopen.call_args_list[2].args[0]
    assert send_request.full_url == "http://waha.test:3000/api/sendText"
    assert json.loads(send_request.data.decode("utf-8"))["chatId"] == "15551234567@c.us"
