from __future__ import annotations

import http.client
import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

from .models import AnalysisThreadPayload

DeliveryStatus = Literal["sent", "failed"]

_MAX_RESPONSE_CHARS = 4000


@dataclass(frozen=True)
class WebhookDeliveryResult:
    status: DeliveryStatus
    attempted_at: datetime
    thread_count: int
    http_status: int | None = None
    response_text: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


class AnalysisWebhookSender(Protocol):
    def send_threads(self, threads: list[AnalysisThreadPayload]) -> WebhookDeliveryResult: ...


def serialize_threads(threads: list[AnalysisThreadPayload]) -> list[dict[str, Any]]:
    return [value.model_dump(mode="json") for value in threads]


class StubAnalysisWebhookSender:
    """Keeps delivered payloads in memory instead of calling the scoring webhook."""

    def __init__(self, *, fail: bool = False) -> None:
        self._fail = fail
        self.deliveries: list[list[dict[str, Any]]] = []

    def send_threads(self, threads: list[AnalysisThreadPayload]) -> WebhookDeliveryResult:
        attempted_at = datetime.now(timezone.utc)
        if self._fail:
            return WebhookDeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                thread_count=len(threads),
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure",
            )
        self.deliveries.append(serialize_threads(threads))
        return WebhookDeliveryResult(
            status="sent",
            attempted_at=attempted_at,
            thread_count=len(threads),
            http_status=200,
            response_text="stub-accepted",
        )


class _WebhookSendError(Exception):
    """Internal error raised when a webhook HTTP request fails."""

    def __init__(self, error_code: str, message: str, *, http_status: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.http_status = http_status


class HttpAnalysisWebhookSender:
    """Posts thread payloads as a JSON array to the scoring webhook."""

    def __init__(self, *, webhook_url: str, timeout_seconds: float = 30.0) -> None:
        stripped_url = webhook_url.strip()
        if not stripped_url:
            raise ValueError("webhook_url must not be empty")
        self._webhook_url = stripped_url
        self._timeout_seconds = timeout_seconds

    @property
    def webhook_url(self) -> str:
        return self._webhook_url

    def send_threads(self, threads: list[AnalysisThreadPayload]) -> WebhookDeliveryResult:
        attempted_at = datetime.now(timezone.utc)
        try:
            http_status, response_text = self._post(serialize_threads(threads))
        except _WebhookSendError as exc:
            return WebhookDeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                thread_count=len(threads),
                http_status=exc.http_status,
                error_code=exc.error_code,
                error_message=exc.message,
            )
        return WebhookDeliveryResult(
            status="sent",
            attempted_at=attempted_at,
            thread_count=len(threads),
            http_status=http_status,
            response_text=response_text,
        )

    def _post(self, body: list[dict[str, Any]]) -> tuple[int, str]:
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            self._webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                status = int(getattr(response, "status", 200))
                text = response.read().decode("utf-8", errors="replace")[:_MAX_RESPONSE_CHARS]
        except urllib.error.HTTPError as exc:
            raise _WebhookSendError(
                error_code=f"http_{exc.code}",
                message=f"Webhook responded with status: {exc.code}",
                http_status=exc.code,
            ) from exc
        except urllib.error.URLError as exc:
            raise _WebhookSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _WebhookSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except (http.client.HTTPException, OSError) as exc:
            # Dropped connections and truncated bodies are not wrapped in URLError.
            raise _WebhookSendError(
                error_code="connection_error",
                message=f"Connection error: {exc or type(exc).__name__}",
            ) from exc
        if not 200 <= status < 300:
            raise _WebhookSendError(
                error_code=f"http_{status}",
                message=f"Webhook responded with status: {status}",
                http_status=status,
            )
        return status, text
