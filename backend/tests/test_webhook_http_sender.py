from __future__ import annotations

import http.client
import json
import socket
import urllib.error
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from message_analyzer_web.models import AnalysisMessagePayload, AnalysisThreadPayload
from message_analyzer_web.webhook_sender import HttpAnalysisWebhookSender, StubAnalysisWebhookSender

WEBHOOK_URL = "https://hooks.analyzer.test/webhook/score"


def _make_payload(thread_id: str = "t1") -> AnalysisThreadPayload:
    return AnalysisThreadPayload(
        thread_id=thread_id,
        operator="op-a",
        model="model-x",
        messages=[
            AnalysisMessagePayload(
                type="incoming",
                message="hey",
                date=datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc),
            ),
            AnalysisMessagePayload(
                type="outgoing",
                message="hello",
                date=datetime(2026, 10, 17, 12, 1, tzinfo=timezone.utc),
            ),
        ],
        converted=None,
        last_message=datetime(2026, 10, 17, 12, 1, tzinfo=timezone.utc),
        avg_response_time=60,
        responded="No",
    )


def _mock_response(body: str, status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = body.encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("message_analyzer_web.webhook_sender.urllib.request.urlopen")
def test_http_sender_posts_json_array(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response('{"received": 2}')
    sender = HttpAnalysisWebhookSender(webhook_url=WEBHOOK_URL, timeout_seconds=5.0)

    result = sender.send_threads([_make_payload("t1"), _make_payload("t2")])

    assert result.ok
    assert result.status == "sent"
    assert result.http_status == 200
    assert result.thread_count == 2
    assert result.response_text == '{"received": 2}'
    assert result.attempted_at.tzinfo == timezone.utc

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == WEBHOOK_URL
    assert request_arg.get_method() == "POST"
    assert request_arg.get_header("Content-type") == "application/json"
    assert mock_urlopen.call_args.kwargs["timeout"] == 5.0

    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert [value["thread_id"] for value in sent_body] == ["t1", "t2"]
    assert sent_body[0]["messages"][0] == {
        "type": "incoming",
        "message": "hey",
        "date": "2026-10-17T12:00:00Z",
    }
    assert sent_body[0]["avg_response_time"] == 60
    assert sent_body[0]["responded"] == "No"


@patch("message_analyzer_web.webhook_sender.urllib.request.urlopen")
def test_http_sender_http_500(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url=WEBHOOK_URL,
        code=500,
        msg="Internal Server Error",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )
    sender = HttpAnalysisWebhookSender(webhook_url=WEBHOOK_URL)

    result = sender.send_threads([_make_payload()])

    assert not result.ok
    assert result.error_code == "http_500"
    assert result.http_status == 500
    assert "500" in (result.error_message or "")


@patch("message_analyzer_web.webhook_sender.urllib.request.urlopen")
def test_http_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")
    sender = HttpAnalysisWebhookSender(webhook_url=WEBHOOK_URL)

    result = sender.send_threads([_make_payload()])

    assert result.status == "failed"
    assert result.error_code == "connection_error"
    assert "Connection" in (result.error_message or "")


@patch("message_analyzer_web.webhook_sender.urllib.request.urlopen")
def test_http_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")
    sender = HttpAnalysisWebhookSender(webhook_url=WEBHOOK_URL)

    result = sender.send_threads([_make_payload()])

    assert result.status == "failed"
    assert result.error_code == "timeout"
    assert "timed out" in (result.error_message or "")


@patch("message_analyzer_web.webhook_sender.urllib.request.urlopen")
def test_http_sender_truncates_long_response(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response("x" * 10000)
    sender = HttpAnalysisWebhookSender(webhook_url=WEBHOOK_URL)

    result = sender.send_threads([_make_payload()])

    assert result.ok
    assert len(result.response_text or "") == 4000


def test_http_sender_empty_webhook_url() -> None:
    with pytest.raises(ValueError, match="webhook_url must not be empty"):
        HttpAnalysisWebhookSender(webhook_url="   ")


def test_stub_sender_records_or_fails() -> None:
    sender = StubAnalysisWebhookSender()
    result = sender.send_threads([_make_payload()])

    assert result.ok
    assert sender.deliveries[0][0]["thread_id"] == "t1"

    failing = StubAnalysisWebhookSender(fail=True)
    failed = failing.send_threads([_make_payload()])
    assert not failed.ok
    assert failed.error_code == "stub_delivery_failed"
    assert failing.deliveries == []


@patch("message_analyzer_web.webhook_sender.urllib.request.urlopen")
def test_http_sender_remote_disconnect(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = http.client.RemoteDisconnected("Remote end closed connection without response")
    sender = HttpAnalysisWebhookSender(webhook_url=WEBHOOK_URL)

    result = sender.send_threads([_make_payload()])

    assert result.status == "failed"
    assert result.error_code == "connection_error"
    assert "Remote end closed connection" in (result.error_message or "")


@patch("message_analyzer_web.webhook_sender.urllib.request.urlopen")
def test_http_sender_incomplete_body(mock_urlopen: MagicMock) -> None:
    response = _mock_response("")
    response.read.side_effect = http.client.IncompleteRead(b"partial", 100)
    mock_urlopen.return_value = response
    sender = HttpAnalysisWebhookSender(webhook_url=WEBHOOK_URL)

    result = sender.send_threads([_make_payload()])

    assert result.status == "failed"
    assert result.error_code == "connection_error"


@patch("message_analyzer_web.webhook_sender.urllib.request.urlopen")
def test_http_sender_connection_reset(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = ConnectionResetError(104, "Connection reset by peer")
    sender = HttpAnalysisWebhookSender(webhook_url=WEBHOOK_URL)

    result = sender.send_threads([_make_payload()])

    assert result.error_code == "connection_error"
    assert "reset" in (result.error_message or "")
