from __future__ import annotations

import io
import json
import urllib.error
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from salesops_followup.config import Settings
from salesops_followup.models import TelegramMessage, TelegramUser
from salesops_followup.telegram import (
    TelegramBotClient,
    UpdateDedupCache,
    describe_user,
    detect_message_kind,
    event_from_message,
)
from salesops_followup.webhook_security import verify_task_caller, verify_telegram_secret_token


def _message(**overrides) -> TelegramMessage:
    values = {
        "message_id": 42,
        "date": 1736416800,
        "chat": {"id": -1001, "type": "supergroup", "title": "Acme Deal"},
        "from": {"id": 111, "username": "alice"},
    }
    values.update(overrides)
    return TelegramMessage.model_validate(values)


def test_dedup_cache_evicts_oldest_first() -> None:
    cache = UpdateDedupCache(max_size=2)
    assert cache.is_duplicate(1) is False
    assert cache.is_duplicate(2) is False
    assert cache.is_duplicate(1) is True
    assert cache.is_duplicate(3) is False
    # 1 was evicted when 3 arrived
    assert cache.is_duplicate(1) is False
    cache.reset()
    assert cache.is_duplicate(3) is False


def test_message_kind_detection() -> None:
    assert detect_message_kind(_message(new_chat_members=[{"id": 5}])) == "member_join"
    assert detect_message_kind(_message(left_chat_member={"id": 5})) == "member_leave"
    assert detect_message_kind(_message(text="hi")) == "text"
    assert detect_message_kind(_message(photo=[{"file_id": "p"}])) == "photo"
    assert detect_message_kind(_message(document={"file_id": "d"}, caption="c")) == "document"
    assert detect_message_kind(_message(sticker={"file_id": "s"})) == "sticker"
    assert detect_message_kind(_message()) == "other"


def test_event_from_document_message() -> None:
    event = event_from_message(
        _message(
            caption="proposal https://docs.google.com/x",
            document={"file_id": "F1", "file_name": "proposal.pdf", "mime_type": "application/pdf"},
        ),
        update_id=9,
    )
    assert event.chat_id == "-1001"
    assert event.message_id == "42"
    assert event.occurred_at == datetime(2025, 1, 9, 10, 0, tzinfo=timezone.utc)
    assert event.kind == "document"
    assert event.sender_id == "111"
    assert event.chat_title == "Acme Deal"
    assert event.update_id == 9
    assert (event.file_name, event.file_id, event.mime_type) == ("proposal.pdf", "F1", "application/pdf")
    assert event.combined_text() == "proposal https://docs.google.com/x proposal.pdf"


def test_event_from_member_join() -> None:
    event = event_from_message(
        _message(new_chat_members=[{"id": 555, "is_bot": True, "username": "Sales_Ops_Assistant_Bot"}, {"id": 6}])
    )
    assert event.kind == "member_join"
    assert event.new_member_ids == ("555", "6")
    assert event.new_member_usernames == ("Sales_Ops_Assistant_Bot",)


def test_describe_user() -> None:
    assert describe_user(TelegramUser(id=1, username="alice")) == "@alice (ID: 1)"
    assert describe_user(TelegramUser(id=2, first_name="Bob", last_name="Stone")) == "Bob Stone (ID: 2)"
    assert describe_user(None) == "Unknown user"


def test_leave_chat_posts_to_bot_api() -> None:
    response = MagicMock()
    response.status = 200
    response.__enter__.return_value = response
    client = TelegramBotClient(bot_token="123:abc", api_base_url="https://tg.example.test/")
    with patch("salesops_followup.telegram.urllib.request.urlopen", return_value=response) as mock_urlopen:
        assert client.leave_chat("-2002") is True
    request = mock_urlopen.call_args.args[0]
    assert request.full_url == "https://tg.example.test/bot123:abc/leaveChat"
    assert json.loads(request.data.decode("utf-8")) == {"chat_id": "-2002"}


def test_leave_chat_failures_return_false() -> None:
    client = TelegramBotClient(bot_token="123:abc")
    error = urllib.error.HTTPError("https://x", 403, "Forbidden", {}, io.BytesIO(b"{\"ok\":false}"))
    with patch("salesops_followup.telegram.urllib.request.urlopen", side_effect=error):
        assert client.leave_chat("-2002") is False
    with patch(
        "salesops_followup.telegram.urllib.request.urlopen",
        side_effect=urllib.error.URLError("unreachable"),
    ):
        assert client.leave_chat("-2002") is False
    assert TelegramBotClient(bot_token="").leave_chat("-2002") is False


def test_telegram_secret_verification() -> None:
    settings = Settings(telegram_webhook_secret="s3cret", telegram_webhook_secret_mode="enforce")
    header = "X-Telegram-Bot-Api-Secret-Token"
    assert verify_telegram_secret_token(settings=settings, headers={header: "s3cret"}).verified
    assert verify_telegram_secret_token(settings=settings, headers={}).reason == "secret_token_missing"
    assert verify_telegram_secret_token(settings=settings, headers={header: "x"}).reason == "secret_token_mismatch"
    missing = Settings(telegram_webhook_secret_mode="enforce")
    assert verify_telegram_secret_token(settings=missing, headers={header: "x"}).reason == "webhook_secret_missing"
    assert verify_telegram_secret_token(settings=Settings(telegram_webhook_secret_mode="off"), headers={}).verified


def test_task_caller_verification() -> None:
    settings = Settings(task_callback_token="tok")
    assert verify_task_caller(settings=settings, headers={"User-Agent": "curl/8"}).reason == "untrusted_user_agent"
    assert verify_task_caller(
        settings=settings, headers={"User-Agent": "Google-Cloud-Tasks"}
    ).reason == "task_token_missing"
    assert verify_task_caller(
        settings=settings, headers={"User-Agent": "Google-Cloud-Tasks", "X-Task-Token": "bad"}
    ).reason == "task_token_mismatch"
    assert verify_task_caller(
        settings=settings, headers={"User-Agent": "Google-Cloud-Tasks", "X-Task-Token": "tok"}
    ).verified
    assert verify_task_caller(settings=Settings(task_caller_mode="off"), headers={}).verified
