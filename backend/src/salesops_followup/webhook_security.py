from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Mapping

from .config import Settings

TELEGRAM_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
TASK_USER_AGENT_MARKER = "Google-Cloud-Tasks"
TASK_TOKEN_HEADER = "X-Task-Token"


@dataclass(frozen=True)
class WebhookVerification:
    verified: bool
    reason: str | None = None


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return (value or "").strip()


def verify_telegram_secret_token(
    *,
    settings: Settings,
    headers: Mapping[str, str],
) -> WebhookVerification:
    if settings.telegram_webhook_secret_mode == "off":
        return WebhookVerification(verified=True)

    expected = settings.telegram_webhook_secret.strip()
    if not expected:
        return WebhookVerification(verified=False, reason="webhook_secret_missing")

    provided = _header(headers, TELEGRAM_SECRET_HEADER)
    if not provided:
        return WebhookVerification(verified=False, reason="secret_token_missing")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        return WebhookVerification(verified=False, reason="secret_token_mismatch")
    return WebhookVerification(verified=True)


def verify_task_caller(
    *,
    settings: Settings,
    headers: Mapping[str, str],
) -> WebhookVerification:
    if settings.task_caller_mode == "off":
        return WebhookVerification(verified=True)

    user_agent = _header(headers, "User-Agent")
    if TASK_USER_AGENT_MARKER not in user_agent:
        return WebhookVerification(verified=False, reason="untrusted_user_agent")

    expected = settings.task_callback_token.strip()
    if expected:
        provided = _header(headers, TASK_TOKEN_HEADER)
        if not provided:
            return WebhookVerification(verified=False, reason="task_token_missing")
        if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            return WebhookVerification(verified=False, reason="task_token_mismatch")
    return WebhookVerification(verified=True)
