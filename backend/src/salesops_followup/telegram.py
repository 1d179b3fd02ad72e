from __future__ import annotations

import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from collections import deque
from datetime import datetime, timezone

from .models import MessageKind, TelegramMessage, TelegramUser
from .triggers import InboundEvent

logger = logging.getLogger(__name__)

MAX_LOGGED_BODY = 300


class UpdateDedupCache:
    """Remembers the most recent Telegram update ids, evicting oldest first."""

    def __init__(self, max_size: int = 1000) -> None:
        self._max_size = max(1, max_size)
        self._lock = threading.Lock()
        self._seen: set[int] = set()
        self._order: deque[int] = deque()

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()
            self._order.clear()

    def is_duplicate(self, update_id: int) -> bool:
        with self._lock:
            if update_id in self._seen:
                return True
            self._seen.add(update_id)
            self._order.append(update_id)
            if len(self._order) > self._max_size:
                self._seen.discard(self._order.popleft())
            return False


def detect_message_kind(message: TelegramMessage) -> MessageKind:
    if message.new_chat_members:
        return "member_join"
    if message.left_chat_member is not None:
        return "member_leave"
    if message.text:
        return "text"
    if message.photo:
        return "photo"
    if message.video:
        return "video"
    if message.document is not None:
        return "document"
    if message.sticker:
        return "sticker"
    return "other"


def describe_user(user: TelegramUser | None) -> str:
    if user is None:
        return "Unknown user"
    if user.username:
        label = f"@{user.username}"
    else:
        label = " ".join(part for part in (user.first_name, user.last_name) if part) or "Unknown user"
    return f"{label} (ID: {user.id})"


def event_from_message(message: TelegramMessage, *, update_id: int | None = None) -> InboundEvent:
    sender = message.from_user
    document = message.document
    new_members = message.new_chat_members or []
    return InboundEvent(
        chat_id=str(message.chat.id),
        message_id=str(message.message_id),
        occurred_at=datetime.fromtimestamp(message.date, tz=timezone.utc),
        kind=detect_message_kind(message),
        sender_id=str(sender.id) if sender is not None else None,
        sender_username=sender.username if sender is not None else None,
        chat_title=message.chat.title,
        chat_type=message.chat.type,
        update_id=update_id,
        text=message.text,
        caption=message.caption,
        file_name=document.file_name if document is not None else None,
        file_id=document.file_id if document is not None else None,
        mime_type=document.mime_type if document is not None else None,
        new_member_ids=tuple(str(member.id) for member in new_members),
        new_member_usernames=tuple(member.username for member in new_members if member.username),
    )


class TelegramBotClient:
    def __init__(
        self,
        *,
        bot_token: str,
        api_base_url: str = "https://api.telegram.org",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._bot_token = bot_token.strip()
        self._api_base_url = api_base_url.strip().rstrip("/")
        self._timeout_seconds = timeout_seconds

    def leave_chat(self, chat_id: str) -> bool:
        """Best-effort leaveChat call; never raises and never logs the token."""
        if not self._bot_token:
            logger.warning("telegram leaveChat skipped: TELEGRAM_BOT_TOKEN is not set")
            return False
        request = urllib.request.Request(
            f"{self._api_base_url}/bot{self._bot_token}/leaveChat",
            data=json.dumps({"chat_id": chat_id}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                status_code = int(getattr(response, "status", 200))
            return 200 <= status_code < 300
        except urllib.error.HTTPError as exc:
            try:
                body = exc.read().decode("utf-8", errors="replace")
            except (OSError, AttributeError):
                body = ""
            logger.warning("telegram leaveChat failed: %s %s", exc.code, body[:MAX_LOGGED_BODY])
            return False
        except (urllib.error.URLError, socket.timeout, TimeoutError) as exc:
            logger.warning("telegram leaveChat error chat_id=%s: %s", chat_id, type(exc).__name__)
            return False
