from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from .chat_phase import ChatPhaseRepository, advance_for_base_type
from .models import BaseNotificationType, NotificationType
from .notification_store import NotificationJobRepository
from .planner import SchedulePlanner
from .targets import TargetResolver
from .task_dispatch import TaskDispatcher, TaskDispatchError
from .triggers import InboundEvent, TriggerClassifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledJob:
    job_id: str
    type: NotificationType
    scheduled_at: datetime
    created: bool
    task_name: str | None = None


@dataclass(frozen=True)
class FollowupOutcome:
    base_type: BaseNotificationType | None
    jobs: list[ScheduledJob] = field(default_factory=list)
    phase_applied: bool = False

    @property
    def created_job_ids(self) -> list[str]:
        return [job.job_id for job in self.jobs if job.created]


def job_payload(event: InboundEvent) -> dict[str, object]:
    return {
        "chat_id": event.chat_id,
        "chat_title": event.chat_title,
        "message_id": event.message_id,
        "caption": event.caption,
        "text": event.text,
        "file_name": event.file_name,
        "file_id": event.file_id,
        "mime_type": event.mime_type,
        "sender_user_id": event.sender_id,
        "sender_username": event.sender_username,
        "sent_at": event.occurred_at.isoformat(),
    }


def job_source(event: InboundEvent) -> dict[str, str]:
    return {"kind": "telegram_message", "id": f"{event.chat_id}:{event.message_id}"}


class FollowupService:
    def __init__(
        self,
        *,
        classifier: TriggerClassifier,
        planner: SchedulePlanner,
        resolver: TargetResolver,
        jobs: NotificationJobRepository,
        dispatcher: TaskDispatcher,
        phases: ChatPhaseRepository,
        callback_url: str,
    ) -> None:
        self._classifier = classifier
        self._planner = planner
        self._resolver = resolver
        self._jobs = jobs
        self._dispatcher = dispatcher
        self._phases = phases
        self._callback_url = callback_url

    def _dispatch(self, job_id: str, scheduled_at: datetime) -> str | None:
        try:
            task_name = self._dispatcher.enqueue(self._callback_url, {"jobId": job_id}, scheduled_at)
        except TaskDispatchError:
            # Job stays pending with task_name unset.
            logger.exception("failed to register delivery task job_id=%s", job_id)
            return None
        try:
            self._jobs.mark_dispatched(job_id, task_name=task_name)
        except Exception:  # noqa: BLE001
            logger.exception("failed to record task name job_id=%s task_name=%s", job_id, task_name)
        return task_name

    def handle_event(self, event: InboundEvent) -> FollowupOutcome:
        base_type = self._classifier.classify(event)
        if base_type is None:
            return FollowupOutcome(base_type=None)

        entries = self._planner.plan(base_type, event.occurred_at)
        targets = [target.as_dict() for target in self._resolver.resolve(base_type, event.sender_id)]
        if not targets:
            logger.warning(
                "no delivery targets for %s chat_id=%s sender_id=%s",
                base_type,
                event.chat_id,
                event.sender_id,
            )

        payload = job_payload(event)
        source = job_source(event)
        scheduled: list[ScheduledJob] = []
        for entry in entries:
            result = self._jobs.create_if_absent(
                notification_type=entry.type,
                chat_id=event.chat_id,
                message_id=event.message_id,
                scheduled_at=entry.scheduled_at,
                targets=targets,
                payload=payload,
                source=source,
            )
            task_name = None
            if result.created:
                task_name = self._dispatch(result.job_id, entry.scheduled_at)
                logger.info(
                    "follow-up scheduled job_id=%s type=%s scheduled_at=%s",
                    result.job_id,
                    entry.type,
                    entry.scheduled_at.isoformat(),
                )
            scheduled.append(
                ScheduledJob(
                    job_id=result.job_id,
                    type=entry.type,
                    scheduled_at=entry.scheduled_at,
                    created=result.created,
                    task_name=task_name,
                )
            )

        phase_applied = advance_for_base_type(
            self._phases,
            chat_id=event.chat_id,
            notification_type=base_type,
            ts=event.occurred_at,
            message_id=event.message_id,
        )
        return FollowupOutcome(base_type=base_type, jobs=scheduled, phase_applied=phase_applied)
