from __future__ import annotations

import hashlib
import json
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import DeliveryStatus, JobStatus, NotificationType

logger = logging.getLogger(__name__)

JOB_ID_LENGTH = 24
MAX_ERROR_MESSAGE_LENGTH = 500
TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"delivered", "failed", "expired"})


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dump(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_job_id(notification_type: str, chat_id: str | int, message_id: str | int) -> str:
    raw = f"job:{notification_type}:{chat_id}:{message_id}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:JOB_ID_LENGTH]


def truncate_error_message(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:MAX_ERROR_MESSAGE_LENGTH]


@dataclass(frozen=True)
class JobCreateResult:
    created: bool
    job_id: str


@dataclass(frozen=True)
class NotificationJobRecord:
    job_id: str
    type: NotificationType
    channel: str
    scheduled_at: datetime
    status: JobStatus
    targets: list[dict[str, str]]
    payload: dict[str, object]
    source: dict[str, str]
    created_at: datetime
    updated_at: datetime
    resend_guard: bool = False
    last_sent_at: datetime | None = None
    task_name: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


@dataclass(frozen=True)
class NotificationDeliveryRecord:
    delivery_id: str
    job_id: str
    type: NotificationType
    channel: str
    targets: list[dict[str, str]]
    status: DeliveryStatus
    attempt: int
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    source: dict[str, str] = field(default_factory=dict)
    error_message: str | None = None
    response_code: int | None = None
    created_at: datetime = field(default_factory=_now_utc)


class JobNotFoundError(KeyError):
    """Raised when a notification job id is not present in the store."""


class NotificationJobRepository(Protocol):
    def reset(self) -> None: ...

    def create_if_absent(
        self,
        *,
        notification_type: NotificationType,
        chat_id: str,
        message_id: str,
        scheduled_at: datetime,
        targets: list[dict[str, str]],
        payload: dict[str, object],
        source: dict[str, str],
        channel: str = "slack",
    ) -> JobCreateResult: ...

    def get_job(self, job_id: str) -> NotificationJobRecord | None: ...

    def mark_resend_guard(self, job_id: str, *, sent_at: datetime) -> None: ...

    def mark_dispatched(self, job_id: str, *, task_name: str) -> None: ...

    def finalize_job(self, job_id: str, *, status: JobStatus) -> None: ...

    def delete_job(self, job_id: str) -> bool: ...

    def append_delivery(self, record: NotificationDeliveryRecord) -> NotificationDeliveryRecord: ...

    def list_deliveries(self, job_id: str) -> list[NotificationDeliveryRecord]: ...


def new_delivery_id() -> str:
    return f"dlv_{secrets.token_hex(10)}"


class InMemoryNotificationJobRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, NotificationJobRecord] = {}
        self._deliveries: list[NotificationDeliveryRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._deliveries.clear()

    def create_if_absent(
        self,
        *,
        notification_type: NotificationType,
        chat_id: str,
        message_id: str,
        scheduled_at: datetime,
        targets: list[dict[str, str]],
        payload: dict[str, object],
        source: dict[str, str],
        channel: str = "slack",
    ) -> JobCreateResult:
        job_id = compute_job_id(notification_type, chat_id, message_id)
        with self._lock:
            if job_id in self._jobs:
                logger.info("notification job already exists job_id=%s type=%s", job_id, notification_type)
                return JobCreateResult(created=False, job_id=job_id)
            now = _now_utc()
            self._jobs[job_id] = NotificationJobRecord(
                job_id=job_id,
                type=notification_type,
                channel=channel,
                scheduled_at=_coerce_utc(scheduled_at),
                status="pending",
                targets=[dict(item) for item in targets],
                payload=dict(payload),
                source=dict(source),
                created_at=now,
                updated_at=now,
            )
        return JobCreateResult(created=True, job_id=job_id)

    def get_job(self, job_id: str) -> NotificationJobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def _update(self, job_id: str, **changes: object) -> None:
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            self._jobs[job_id] = NotificationJobRecord(
                **{**row.__dict__, **changes, "updated_at": _now_utc()}
            )

    def mark_resend_guard(self, job_id: str, *, sent_at: datetime) -> None:
        self._update(job_id, resend_guard=True, last_sent_at=_coerce_utc(sent_at))

    def mark_dispatched(self, job_id: str, *, task_name: str) -> None:
        self._update(job_id, task_name=task_name)

    def finalize_job(self, job_id: str, *, status: JobStatus) -> None:
        if status not in TERMINAL_JOB_STATUSES:
            raise ValueError(f"not a terminal job status: {status}")
        self._update(job_id, status=status)

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def append_delivery(self, record: NotificationDeliveryRecord) -> NotificationDeliveryRecord:
        stored = NotificationDeliveryRecord(
            **{**record.__dict__, "error_message": truncate_error_message(record.error_message)}
        )
        with self._lock:
            self._deliveries.append(stored)
        return stored

    def list_deliveries(self, job_id: str) -> list[NotificationDeliveryRecord]:
        with self._lock:
            return [item for item in self._deliveries if item.job_id == job_id]


class NotificationsBase(DeclarativeBase):
    pass


class _NotificationJobRow(NotificationsBase):
    __tablename__ = "notification_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    targets_json: Mapped[str] = mapped_column(Text, nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    source_json: Mapped[str] = mapped_column(Text, nullable=False)
    resend_guard: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    task_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _NotificationDeliveryRow(NotificationsBase):
    __tablename__ = "notification_deliveries"

    delivery_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    targets_json: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    source_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyNotificationJobRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            NotificationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    @staticmethod
    def _job_record(row: _NotificationJobRow) -> NotificationJobRecord:
        return NotificationJobRecord(
            job_id=row.job_id,
            type=row.type,  # type: ignore[arg-type]
            channel=row.channel,
            scheduled_at=_coerce_utc(row.scheduled_at),
            status=row.status,  # type: ignore[arg-type]
            targets=json.loads(row.targets_json),
            payload=json.loads(row.payload_json),
            source=json.loads(row.source_json),
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
            resend_guard=bool(row.resend_guard),
            last_sent_at=_coerce_utc(row.last_sent_at) if row.last_sent_at else None,
            task_name=row.task_name,
        )

    @staticmethod
    def _delivery_record(row: _NotificationDeliveryRow) -> NotificationDeliveryRecord:
        return NotificationDeliveryRecord(
            delivery_id=row.delivery_id,
            job_id=row.job_id,
            type=row.type,  # type: ignore[arg-type]
            channel=row.channel,
            targets=json.loads(row.targets_json),
            status=row.status,  # type: ignore[arg-type]
            attempt=row.attempt,
            started_at=_coerce_utc(row.started_at),
            finished_at=_coerce_utc(row.finished_at),
            duration_ms=row.duration_ms,
            source=json.loads(row.source_json),
            error_message=row.error_message,
            response_code=row.response_code,
            created_at=_coerce_utc(row.created_at),
        )

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_NotificationDeliveryRow).delete()
                session.query(_NotificationJobRow).delete()

    def create_if_absent(
        self,
        *,
        notification_type: NotificationType,
        chat_id: str,
        message_id: str,
        scheduled_at: datetime,
        targets: list[dict[str, str]],
        payload: dict[str, object],
        source: dict[str, str],
        channel: str = "slack",
    ) -> JobCreateResult:
        job_id = compute_job_id(notification_type, chat_id, message_id)
        now = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    if session.get(_NotificationJobRow, job_id) is not None:
                        logger.info("notification job already exists job_id=%s type=%s", job_id, notification_type)
                        return JobCreateResult(created=False, job_id=job_id)
                    session.add(
                        _NotificationJobRow(
                            job_id=job_id,
                            type=notification_type,
                            channel=channel,
                            scheduled_at=_coerce_utc(scheduled_at),
                            status="pending",
                            targets_json=_dump(targets),
                            payload_json=_dump(payload),
                            source_json=_dump(source),
                            resend_guard=False,
                            last_sent_at=None,
                            task_name=None,
                            created_at=now,
                            updated_at=now,
                        )
                    )
        except IntegrityError:
            # Concurrent creator won the insert.
            logger.info("notification job insert raced job_id=%s type=%s", job_id, notification_type)
            return JobCreateResult(created=False, job_id=job_id)
        return JobCreateResult(created=True, job_id=job_id)

    def get_job(self, job_id: str) -> NotificationJobRecord | None:
        with self._session() as session:
            row = session.get(_NotificationJobRow, job_id)
            if row is None:
                return None
            return self._job_record(row)

    def _update(self, job_id: str, **changes: object) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_NotificationJobRow, job_id)
                if row is None:
                    raise JobNotFoundError(job_id)
                for key, value in changes.items():
                    setattr(row, key, value)
                row.updated_at = _now_utc()

    def mark_resend_guard(self, job_id: str, *, sent_at: datetime) -> None:
        self._update(job_id, resend_guard=True, last_sent_at=_coerce_utc(sent_at))

    def mark_dispatched(self, job_id: str, *, task_name: str) -> None:
        self._update(job_id, task_name=task_name)

    def finalize_job(self, job_id: str, *, status: JobStatus) -> None:
        if status not in TERMINAL_JOB_STATUSES:
            raise ValueError(f"not a terminal job status: {status}")
        self._update(job_id, status=status)

    def delete_job(self, job_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_NotificationJobRow, job_id)
                if row is None:
                    return False
                session.delete(row)
        return True

    def append_delivery(self, record: NotificationDeliveryRecord) -> NotificationDeliveryRecord:
        stored = NotificationDeliveryRecord(
            **{**record.__dict__, "error_message": truncate_error_message(record.error_message)}
        )
        with self._session() as session:
            with session.begin():
                session.add(
                    _NotificationDeliveryRow(
                        delivery_id=stored.delivery_id,
                        job_id=stored.job_id,
                        type=stored.type,
                        channel=stored.channel,
                        targets_json=_dump(stored.targets),
                        status=stored.status,
                        attempt=stored.attempt,
                        error_message=stored.error_message,
                        response_code=stored.response_code,
                        started_at=stored.started_at,
                        finished_at=stored.finished_at,
                        duration_ms=stored.duration_ms,
                        source_json=_dump(stored.source),
                        created_at=stored.created_at,
                    )
                )
        return stored

    def list_deliveries(self, job_id: str) -> list[NotificationDeliveryRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_NotificationDeliveryRow)
                .where(_NotificationDeliveryRow.job_id == job_id)
                .order_by(_NotificationDeliveryRow.created_at, _NotificationDeliveryRow.attempt)
            ).all()
            return [self._delivery_record(row) for row in rows]


def create_notification_job_repository(*, backend: str, database_url: str) -> NotificationJobRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyNotificationJobRepository(database_url)
    if normalized == "inmemory":
        return InMemoryNotificationJobRepository()
    raise RuntimeError(f"unsupported STORE_BACKEND: {backend}")
