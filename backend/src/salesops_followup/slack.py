from __future__ import annotations

import http.client
import json
import socket
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from .config import Settings


@dataclass(frozen=True)
class SlackMessage:
    text: str

    def as_payload(self) -> dict[str, object]:
        return {"text": self.text, "mrkdwn": True, "link_names": 1}


@dataclass(frozen=True)
class ChannelSendResult:
    ok: bool
    status_code: int
    body: str
    attempted_at: datetime


class ChannelTransportError(Exception):
    """Raised when the webhook could not be reached at all."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class SlackSender(Protocol):
    def send(self, message: SlackMessage) -> ChannelSendResult: ...


class StubSlackSender:
    def __init__(self, *, status_codes: list[int] | None = None) -> None:
        self._lock = threading.Lock()
        self._status_codes = list(status_codes or [])
        self.sent: list[SlackMessage] = []

    def queue_status(self, *status_codes: int) -> None:
        with self._lock:
            self._status_codes.extend(status_codes)

    def send(self, message: SlackMessage) -> ChannelSendResult:
        with self._lock:
            self.sent.append(message)
            status_code = self._status_codes.pop(0) if self._status_codes else 200
        ok = 200 <= status_code < 300
        return ChannelSendResult(
            ok=ok,
            status_code=status_code,
            body="ok" if ok else "stub_failure",
            attempted_at=datetime.now(timezone.utc),
        )


class HttpSlackSender:
    """Posts messages to a Slack incoming webhook."""

    def __init__(self, *, webhook_url: str, timeout_seconds: float = 10.0) -> None:
        stripped_url = webhook_url.strip()
        if not stripped_url:
            raise ValueError("webhook_url must not be empty")
        self._webhook_url = stripped_url
        self._timeout_seconds = timeout_seconds

    def send(self, message: SlackMessage) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)
        data = json.dumps(message.as_payload()).encode("utf-8")
        request = urllib.request.Request(
            self._webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                status_code = int(getattr(response, "status", 200))
                body = response.read().decode("utf-8", errors="replace")
            return ChannelSendResult(
                ok=200 <= status_code < 300,
                status_code=status_code,
                body=body,
                attempted_at=attempted_at,
            )
        except urllib.error.HTTPError as exc:
            try:
                body = exc.read().decode("utf-8", errors="replace")
            except (OSError, AttributeError):
                body = str(exc.reason)
            return ChannelSendResult(ok=False, status_code=exc.code, body=body, attempted_at=attempted_at)
        except urllib.error.URLError as exc:
            raise ChannelTransportError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ChannelTransportError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except (http.client.HTTPException, OSError) as exc:
            raise ChannelTransportError(
                error_code="connection_error",
                message=f"Connection error: {exc.__class__.__name__}: {exc}",
            ) from exc


def create_slack_sender(settings: Settings) -> SlackSender:
    if settings.notifier_sender_type == "http":
        return HttpSlackSender(
            webhook_url=settings.slack_webhook_url,
            timeout_seconds=settings.slack_timeout_seconds,
        )
    return StubSlackSender()


def create_alert_sender(settings: Settings) -> SlackSender:
    url = settings.slack_alert_webhook_url or settings.slack_webhook_url
    if settings.notifier_sender_type == "http" and url.strip():
        return HttpSlackSender(webhook_url=url, timeout_seconds=settings.slack_timeout_seconds)
    return StubSlackSender()
