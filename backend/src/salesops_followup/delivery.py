from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .models import DeliveryStatus, JobStatus
from .notification_store import (
    NotificationDeliveryRecord,
    NotificationJobRecord,
    NotificationJobRepository,
    new_delivery_id,
)
from .slack import ChannelSendResult, ChannelTransportError, SlackMessage, SlackSender
from .targets import SlackTarget, TargetValidationError, parse_targets
from .templates import build_notification_text

logger = logging.getLogger(__name__)

MAX_DELIVERY_ATTEMPTS = 5
SUPPORTED_CHANNELS = frozenset({"slack"})


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class RetryableDeliveryError(Exception):
    """Channel answered 429/5xx or could not be reached; the queue should retry."""

    def __init__(self, message: str, *, response_code: int | None = None, transport: bool = False) -> None:
        super().__init__(message)
        self.response_code = response_code
        self.transport = transport


class NonRetryableDeliveryError(Exception):
    """Channel rejected the message with a status that a retry will not fix."""

    def __init__(self, message: str, *, response_code: int | None = None) -> None:
        super().__init__(message)
        self.response_code = response_code


class RetriesExhaustedError(Exception):
    """The queue invoked the job more times than the attempt ceiling allows."""


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def raise_for_send_result(result: ChannelSendResult) -> None:
    if result.ok:
        return
    message = f"slack webhook responded {result.status_code}: {result.body}"
    if is_retryable_status(result.status_code):
        raise RetryableDeliveryError(message, response_code=result.status_code)
    raise NonRetryableDeliveryError(message, response_code=result.status_code)


@dataclass(frozen=True)
class DeliveryOutcome:
    http_status: int
    reason: str
    job_id: str
    attempt: int
    response_code: int | None = None
    job_status: JobStatus | None = None

    @property
    def retry_requested(self) -> bool:
        return self.http_status >= 500


class DeliveryExecutor:
    def __init__(
        self,
        *,
        repository: NotificationJobRepository,
        sender: SlackSender,
        timezone_name: str = "Asia/Tokyo",
        max_attempts: int = MAX_DELIVERY_ATTEMPTS,
        resend_guard_mode: str = "on_success",
        retention: str = "retain",
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if resend_guard_mode not in {"on_success", "on_attempt"}:
            raise ValueError(f"unsupported resend_guard_mode: {resend_guard_mode}")
        if retention not in {"retain", "delete"}:
            raise ValueError(f"unsupported retention: {retention}")
        self._repository = repository
        self._sender = sender
        self._timezone_name = timezone_name
        self._max_attempts = max_attempts
        self._resend_guard_mode = resend_guard_mode
        self._retention = retention
        self._clock = clock

    def _check_attempt(self, attempt: int) -> None:
        if attempt > self._max_attempts:
            raise RetriesExhaustedError(f"max_attempts_reached({self._max_attempts})")

    def _record_delivery(
        self,
        job: NotificationJobRecord,
        *,
        status: DeliveryStatus,
        attempt: int,
        started_at: datetime,
        started_monotonic: float,
        error_message: str | None = None,
        response_code: int | None = None,
    ) -> None:
        finished_at = self._clock()
        record = NotificationDeliveryRecord(
            delivery_id=new_delivery_id(),
            job_id=job.job_id,
            type=job.type,
            channel=job.channel,
            targets=[dict(item) for item in job.targets if isinstance(item, dict)],
            status=status,
            attempt=attempt,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((time.monotonic() - started_monotonic) * 1000),
            source=dict(job.source),
            error_message=error_message,
            response_code=response_code,
            created_at=finished_at,
        )
        try:
            self._repository.append_delivery(record)
        except Exception:  # noqa: BLE001
            logger.exception("failed to write delivery log job_id=%s attempt=%s", job.job_id, attempt)

    def _mark_sent(self, job_id: str, sent_at: datetime) -> None:
        try:
            self._repository.mark_resend_guard(job_id, sent_at=sent_at)
        except Exception:  # noqa: BLE001
            logger.exception("failed to set resend guard job_id=%s", job_id)

    def _terminate(self, job_id: str, status: JobStatus) -> None:
        try:
            if self._retention == "delete":
                self._repository.delete_job(job_id)
            else:
                self._repository.finalize_job(job_id, status=status)
        except Exception:  # noqa: BLE001
            logger.exception("failed to finalize job job_id=%s status=%s", job_id, status)

    def _send(self, job: NotificationJobRecord, targets: list[SlackTarget]) -> ChannelSendResult:
        text = build_notification_text(
            job.type,
            targets=targets,
            payload=job.payload,
            tz=self._timezone_name,
        )
        try:
            result = self._sender.send(SlackMessage(text=text))
        except ChannelTransportError as exc:
            raise RetryableDeliveryError(exc.message, transport=True) from exc
        finally:
            if self._resend_guard_mode == "on_attempt":
                self._mark_sent(job.job_id, self._clock())
        raise_for_send_result(result)
        return result

    def execute(self, job_id: str, *, attempt: int) -> DeliveryOutcome:
        started_at = self._clock()
        started_monotonic = time.monotonic()

        job = self._repository.get_job(job_id)
        if job is None:
            logger.info("delivery skipped, job not found job_id=%s attempt=%s", job_id, attempt)
            return DeliveryOutcome(http_status=200, reason="job_not_found", job_id=job_id, attempt=attempt)
        if not job.is_pending:
            logger.info("delivery skipped, job already %s job_id=%s", job.status, job_id)
            return DeliveryOutcome(
                http_status=200,
                reason="job_not_pending",
                job_id=job_id,
                attempt=attempt,
                job_status=job.status,
            )

        try:
            self._check_attempt(attempt)
        except RetriesExhaustedError as exc:
            logger.warning("delivery attempts exhausted job_id=%s attempt=%s", job_id, attempt)
            self._record_delivery(
                job,
                status="failure",
                attempt=attempt,
                started_at=started_at,
                started_monotonic=started_monotonic,
                error_message=str(exc),
            )
            self._terminate(job_id, "expired")
            return DeliveryOutcome(
                http_status=200,
                reason="max_attempts_reached",
                job_id=job_id,
                attempt=attempt,
                job_status="expired",
            )

        try:
            if job.channel not in SUPPORTED_CHANNELS:
                raise TargetValidationError(f"unsupported channel: {job.channel}")
            targets = parse_targets(job.targets)
        except TargetValidationError as exc:
            logger.warning("delivery rejected job_id=%s: %s", job_id, exc)
            self._record_delivery(
                job,
                status="failure",
                attempt=attempt,
                started_at=started_at,
                started_monotonic=started_monotonic,
                error_message=f"invalid_channel_or_targets: {exc}",
            )
            self._terminate(job_id, "failed")
            return DeliveryOutcome(
                http_status=200,
                reason="invalid_channel_or_targets",
                job_id=job_id,
                attempt=attempt,
                job_status="failed",
            )

        if job.resend_guard:
            logger.info("delivery short-circuited by resend guard job_id=%s attempt=%s", job_id, attempt)
            self._record_delivery(
                job,
                status="success",
                attempt=attempt,
                started_at=started_at,
                started_monotonic=started_monotonic,
            )
            self._terminate(job_id, "delivered")
            return DeliveryOutcome(
                http_status=200,
                reason="already_sent",
                job_id=job_id,
                attempt=attempt,
                job_status="delivered",
            )

        try:
            result = self._send(job, targets)
        except RetryableDeliveryError as exc:
            logger.warning("retryable delivery failure job_id=%s attempt=%s: %s", job_id, attempt, exc)
            self._record_delivery(
                job,
                status="failure",
                attempt=attempt,
                started_at=started_at,
                started_monotonic=started_monotonic,
                error_message=str(exc),
                response_code=exc.response_code,
            )
            return DeliveryOutcome(
                http_status=500,
                reason="channel_exception" if exc.transport else "retryable_channel_error",
                job_id=job_id,
                attempt=attempt,
                response_code=exc.response_code,
                job_status="pending",
            )
        except NonRetryableDeliveryError as exc:
            logger.warning("non-retryable delivery failure job_id=%s attempt=%s: %s", job_id, attempt, exc)
            self._record_delivery(
                job,
                status="failure",
                attempt=attempt,
                started_at=started_at,
                started_monotonic=started_monotonic,
                error_message=str(exc),
                response_code=exc.response_code,
            )
            self._terminate(job_id, "failed")
            return DeliveryOutcome(
                http_status=200,
                reason="non_retryable_channel_error",
                job_id=job_id,
                attempt=attempt,
                response_code=exc.response_code,
                job_status="failed",
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("unexpected delivery failure job_id=%s attempt=%s", job_id, attempt)
            self._record_delivery(
                job,
                status="failure",
                attempt=attempt,
                started_at=started_at,
                started_monotonic=started_monotonic,
                error_message=f"unexpected_error: {exc.__class__.__name__}: {exc}",
            )
            return DeliveryOutcome(
                http_status=500,
                reason="unexpected_error",
                job_id=job_id,
                attempt=attempt,
                job_status="pending",
            )

        if self._resend_guard_mode == "on_success":
            self._mark_sent(job_id, result.attempted_at)
        self._record_delivery(
            job,
            status="success",
            attempt=attempt,
            started_at=started_at,
            started_monotonic=started_monotonic,
            response_code=result.status_code,
        )
        self._terminate(job_id, "delivered")
        logger.info("notification delivered job_id=%s type=%s attempt=%s", job_id, job.type, attempt)
        return DeliveryOutcome(
            http_status=200,
            reason="delivered",
            job_id=job_id,
            attempt=attempt,
            response_code=result.status_code,
            job_status="delivered",
        )
