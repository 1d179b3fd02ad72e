from __future__ import annotations

from datetime import datetime, timezone

import pytest

from salesops_followup.delivery import DeliveryExecutor, is_retryable_status
from salesops_followup.notification_store import InMemoryNotificationJobRepository, NotificationDeliveryRecord
from salesops_followup.slack import ChannelSendResult, ChannelTransportError, SlackMessage, StubSlackSender

NOW = datetime(2025, 1, 14, 6, 0, tzinfo=timezone.utc)
PAYLOAD = {
    "chat_title": "Acme Deal",
    "file_name": "proposal.pdf",
    "caption": "Please review proposal.pdf",
    "sent_at": "2025-01-09T10:00:00+00:00",
}


def _seed(repo, *, targets=None, channel: str = "slack", notification_type: str = "proposal_1st") -> str:
    return repo.create_if_absent(
        notification_type=notification_type,
        chat_id="-1001",
        message_id="42",
        scheduled_at=NOW,
        targets=[{"team_id": "T1", "user_id": "U1"}] if targets is None else targets,
        payload=PAYLOAD,
        source={"kind": "telegram_message", "id": "-1001:42"},
        channel=channel,
    ).job_id


def _executor(repo, sender, **kwargs) -> DeliveryExecutor:
    return DeliveryExecutor(repository=repo, sender=sender, clock=lambda: NOW, **kwargs)


class _RaisingSender:
    def __init__(self) -> None:
        self.calls = 0

    def send(self, message: SlackMessage) -> ChannelSendResult:
        self.calls += 1
        raise ChannelTransportError("connection_error", "Connection error: refused")


class _CrashingSender:
    def send(self, message: SlackMessage) -> ChannelSendResult:
        raise RuntimeError("template exploded")


class _BrokenLogRepository(InMemoryNotificationJobRepository):
    def append_delivery(self, record: NotificationDeliveryRecord) -> NotificationDeliveryRecord:
        raise RuntimeError("delivery log unavailable")


def test_successful_delivery_marks_job_and_logs() -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender()
    job_id = _seed(repo)

    outcome = _executor(repo, sender).execute(job_id, attempt=1)

    assert (outcome.http_status, outcome.reason, outcome.response_code) == (200, "delivered", 200)
    assert not outcome.retry_requested
    job = repo.get_job(job_id)
    assert job is not None
    assert job.status == "delivered"
    assert job.resend_guard is True
    assert job.last_sent_at is not None
    [delivery] = repo.list_deliveries(job_id)
    assert (delivery.status, delivery.attempt, delivery.response_code) == ("success", 1, 200)
    assert delivery.error_message is None

    [message] = sender.sent
    assert message.text.startswith("<@U1>\nIt's been 3 days since you sent the proposal document in *\"Acme Deal\"*.")
    assert "• Document: *proposal.pdf*" in message.text
    assert "• Caption: *Please review proposal.pdf*" in message.text
    assert "• Sent at: *2025/01/09 19:00 JST*" in message.text
    assert message.as_payload()["link_names"] == 1


def test_unknown_job_is_acknowledged() -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender()
    outcome = _executor(repo, sender).execute("missing", attempt=1)
    assert (outcome.http_status, outcome.reason) == (200, "job_not_found")
    assert sender.sent == []


def test_terminal_job_is_not_sent_again() -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender()
    job_id = _seed(repo)
    executor = _executor(repo, sender)
    executor.execute(job_id, attempt=1)

    outcome = executor.execute(job_id, attempt=2)
    assert (outcome.http_status, outcome.reason, outcome.job_status) == (200, "job_not_pending", "delivered")
    assert len(sender.sent) == 1


def test_attempt_beyond_ceiling_expires_job_without_sending() -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender()
    job_id = _seed(repo)

    outcome = _executor(repo, sender).execute(job_id, attempt=6)

    assert (outcome.http_status, outcome.reason, outcome.job_status) == (200, "max_attempts_reached", "expired")
    assert sender.sent == []
    assert repo.get_job(job_id).status == "expired"  # type: ignore[union-attr]
    [delivery] = repo.list_deliveries(job_id)
    assert delivery.status == "failure"
    assert delivery.error_message == "max_attempts_reached(5)"


def test_fifth_attempt_is_still_sent() -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender()
    job_id = _seed(repo)
    assert _executor(repo, sender).execute(job_id, attempt=5).reason == "delivered"


@pytest.mark.parametrize(
    ("targets", "channel"),
    [
        ([], "slack"),
        ([{"team_id": "T1"}], "slack"),
        ([{"team_id": "T1", "user_id": "U1"}], "email"),
    ],
)
def test_invalid_targets_or_channel_fail_permanently(targets, channel: str) -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender()
    job_id = _seed(repo, targets=targets, channel=channel)

    outcome = _executor(repo, sender).execute(job_id, attempt=1)

    assert (outcome.http_status, outcome.reason, outcome.job_status) == (200, "invalid_channel_or_targets", "failed")
    assert sender.sent == []
    [delivery] = repo.list_deliveries(job_id)
    assert delivery.error_message is not None
    assert delivery.error_message.startswith("invalid_channel_or_targets")


@pytest.mark.parametrize("status_code", [429, 500, 503])
def test_retryable_status_keeps_job_pending(status_code: int) -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender(status_codes=[status_code])
    job_id = _seed(repo)

    outcome = _executor(repo, sender).execute(job_id, attempt=1)

    assert (outcome.http_status, outcome.reason, outcome.response_code) == (500, "retryable_channel_error", status_code)
    assert outcome.retry_requested
    job = repo.get_job(job_id)
    assert job is not None
    assert job.status == "pending"
    assert job.resend_guard is False
    [delivery] = repo.list_deliveries(job_id)
    assert (delivery.status, delivery.response_code) == ("failure", status_code)


def test_transport_error_is_retryable() -> None:
    repo = InMemoryNotificationJobRepository()
    sender = _RaisingSender()
    job_id = _seed(repo)

    outcome = _executor(repo, sender).execute(job_id, attempt=1)

    assert (outcome.http_status, outcome.reason, outcome.response_code) == (500, "channel_exception", None)
    assert repo.get_job(job_id).status == "pending"  # type: ignore[union-attr]
    [delivery] = repo.list_deliveries(job_id)
    assert "Connection error" in (delivery.error_message or "")


@pytest.mark.parametrize("resend_guard_mode", ["on_success", "on_attempt"])
def test_unexpected_sender_error_is_logged_and_retried(resend_guard_mode: str) -> None:
    repo = InMemoryNotificationJobRepository()
    job_id = _seed(repo)

    outcome = _executor(repo, _CrashingSender(), resend_guard_mode=resend_guard_mode).execute(job_id, attempt=2)

    assert (outcome.http_status, outcome.reason, outcome.job_status) == (500, "unexpected_error", "pending")
    assert outcome.retry_requested
    assert repo.get_job(job_id).status == "pending"  # type: ignore[union-attr]
    [delivery] = repo.list_deliveries(job_id)
    assert (delivery.status, delivery.attempt) == ("failure", 2)
    assert delivery.error_message == "unexpected_error: RuntimeError: template exploded"


@pytest.mark.parametrize("status_code", [400, 403, 404])
def test_client_error_fails_job(status_code: int) -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender(status_codes=[status_code])
    job_id = _seed(repo)

    outcome = _executor(repo, sender).execute(job_id, attempt=1)

    assert (outcome.http_status, outcome.reason, outcome.job_status) == (200, "non_retryable_channel_error", "failed")
    assert repo.get_job(job_id).status == "failed"  # type: ignore[union-attr]


def test_retry_after_transient_failure_sends_again_with_on_success_guard() -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender(status_codes=[503])
    job_id = _seed(repo)
    executor = _executor(repo, sender)

    first = executor.execute(job_id, attempt=1)
    second = executor.execute(job_id, attempt=2)

    assert first.reason == "retryable_channel_error"
    assert second.reason == "delivered"
    assert len(sender.sent) == 2
    assert [item.attempt for item in repo.list_deliveries(job_id)] == [1, 2]


def test_on_attempt_guard_swallows_retry_after_transient_failure() -> None:
    # on_attempt sets the guard before the outcome is known, so a retry after
    # a 503 is logged as already_sent and the reminder is never delivered.
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender(status_codes=[503])
    job_id = _seed(repo)
    executor = _executor(repo, sender, resend_guard_mode="on_attempt")

    first = executor.execute(job_id, attempt=1)
    assert first.reason == "retryable_channel_error"
    assert repo.get_job(job_id).resend_guard is True  # type: ignore[union-attr]

    second = executor.execute(job_id, attempt=2)
    assert (second.http_status, second.reason, second.job_status) == (200, "already_sent", "delivered")
    assert len(sender.sent) == 1
    deliveries = repo.list_deliveries(job_id)
    assert [(item.status, item.error_message) for item in deliveries][-1] == ("success", None)


def test_delete_retention_removes_job_after_delivery() -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender()
    job_id = _seed(repo)
    executor = _executor(repo, sender, retention="delete")

    assert executor.execute(job_id, attempt=1).reason == "delivered"
    assert repo.get_job(job_id) is None
    assert len(repo.list_deliveries(job_id)) == 1
    assert executor.execute(job_id, attempt=2).reason == "job_not_found"


def test_delivery_log_failure_does_not_change_outcome() -> None:
    repo = _BrokenLogRepository()
    sender = StubSlackSender()
    job_id = _seed(repo)

    outcome = _executor(repo, sender).execute(job_id, attempt=1)

    assert outcome.reason == "delivered"
    assert repo.get_job(job_id).status == "delivered"  # type: ignore[union-attr]


def test_long_error_body_is_truncated_in_log() -> None:
    class _LongBodySender:
        def send(self, message: SlackMessage) -> ChannelSendResult:
            return ChannelSendResult(ok=False, status_code=400, body="e" * 2000, attempted_at=NOW)

    repo = InMemoryNotificationJobRepository()
    job_id = _seed(repo)
    _executor(repo, _LongBodySender()).execute(job_id, attempt=1)
    [delivery] = repo.list_deliveries(job_id)
    assert len(delivery.error_message or "") == 500


def test_bot_join_message_text() -> None:
    repo = InMemoryNotificationJobRepository()
    sender = StubSlackSender()
    job_id = _seed(
        repo,
        notification_type="bot_join_call_check",
        targets=[{"team_id": "T1", "user_id": "U10"}, {"team_id": "T1", "user_id": "U20"}],
    )
    _executor(repo, sender).execute(job_id, attempt=1)
    assert sender.sent[0].text == (
        "<@U10> <@U20>\n"
        'Reminder: A new bot was added to *"Acme Deal"* on *2025/01/09 19:00 JST*.\n'
        "Please check whether the call link has been sent to the group."
    )


def test_executor_rejects_unknown_modes() -> None:
    repo = InMemoryNotificationJobRepository()
    with pytest.raises(ValueError):
        DeliveryExecutor(repository=repo, sender=StubSlackSender(), resend_guard_mode="never")
    with pytest.raises(ValueError):
        DeliveryExecutor(repository=repo, sender=StubSlackSender(), retention="archive")


def test_retryable_status_classification() -> None:
    assert is_retryable_status(429)
    assert is_retryable_status(500)
    assert is_retryable_status(599)
    assert not is_retryable_status(404)
    assert not is_retryable_status(200)
