from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .chat_phase import ChatPhaseRepository, create_chat_phase_repository
from .config import Settings, get_settings
from .delivery import DeliveryExecutor
from .directory import DirectoryRepository, PersonRecord, SlackLink, create_directory_repository
from .followups import FollowupService
from .identities import IdentityTable
from .models import (
    ChatPhaseResponse,
    NotificationDeliveryItem,
    NotificationJobDetail,
    NotificationTaskRequest,
    NotificationTaskResponse,
    PersonResponse,
    PersonUpsertRequest,
    SlackLinkItem,
    TelegramMessage,
    TelegramUpdate,
    TelegramWebhookResponse,
)
from .notification_store import NotificationJobRepository, create_notification_job_repository
from .planner import SchedulePlanner, SchedulePolicy
from .slack import SlackMessage, SlackSender, create_alert_sender, create_slack_sender
from .targets import TargetResolver
from .task_dispatch import TaskDispatcher, create_task_dispatcher
from .telegram import TelegramBotClient, UpdateDedupCache, describe_user, event_from_message
from .templates import build_external_join_alert
from .triggers import TriggerClassifier
from .webhook_security import verify_task_caller, verify_telegram_secret_token

logger = logging.getLogger(__name__)

RETRY_COUNT_HEADER = "X-CloudTasks-TaskRetryCount"

_settings = get_settings()
router = APIRouter(tags=["followups"])
admin_router = APIRouter(prefix=_settings.api_prefix, tags=["followups-admin"])

identities: IdentityTable
directory_repo: DirectoryRepository
job_repo: NotificationJobRepository
phase_repo: ChatPhaseRepository
slack_sender: SlackSender
alert_sender: SlackSender
task_dispatcher: TaskDispatcher
telegram_client: TelegramBotClient
update_cache: UpdateDedupCache


def configure_runtime(settings: Settings) -> None:
    global _settings, identities, directory_repo, job_repo, phase_repo
    global slack_sender, alert_sender, task_dispatcher, telegram_client, update_cache
    _settings = settings
    identities = IdentityTable.from_settings(settings)
    directory_repo = create_directory_repository(backend=settings.store_backend, database_url=settings.database_url)
    job_repo = create_notification_job_repository(backend=settings.store_backend, database_url=settings.database_url)
    phase_repo = create_chat_phase_repository(backend=settings.store_backend, database_url=settings.database_url)
    slack_sender = create_slack_sender(settings)
    alert_sender = create_alert_sender(settings)
    task_dispatcher = create_task_dispatcher(settings)
    telegram_client = TelegramBotClient(
        bot_token=settings.telegram_bot_token,
        api_base_url=settings.telegram_api_base_url,
    )
    update_cache = UpdateDedupCache(settings.update_dedup_cache_size)


configure_runtime(_settings)


def reset_runtime_state_for_tests() -> None:
    directory_repo.reset()
    job_repo.reset()
    phase_repo.reset()
    update_cache.reset()


def _classifier() -> TriggerClassifier:
    return TriggerClassifier(
        identities=identities,
        bot_username=_settings.bot_username,
        bot_user_id=_settings.bot_user_id,
        document_host_domains=_settings.document_host_domains,
    )


def _followup_service() -> FollowupService:
    return FollowupService(
        classifier=_classifier(),
        planner=SchedulePlanner(SchedulePolicy.from_settings(_settings)),
        resolver=TargetResolver(
            directory=directory_repo,
            identities=identities,
            slack_team_id=_settings.slack_team_id,
        ),
        jobs=job_repo,
        dispatcher=task_dispatcher,
        phases=phase_repo,
        callback_url=_settings.task_callback_url(),
    )


def _delivery_executor() -> DeliveryExecutor:
    return DeliveryExecutor(
        repository=job_repo,
        sender=slack_sender,
        timezone_name=_settings.local_timezone,
        max_attempts=_settings.max_delivery_attempts,
        resend_guard_mode=_settings.resend_guard_mode,
        retention=_settings.notification_job_retention,
    )


def _require_json(request: Request) -> None:
    content_type = request.headers.get("Content-Type", "")
    if "application/json" not in content_type.lower():
        raise HTTPException(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, "content type must be application/json")


def _require_telegram_secret(request: Request) -> None:
    verification = verify_telegram_secret_token(settings=_settings, headers=request.headers)
    if verification.verified:
        return
    if _settings.telegram_webhook_secret_mode == "enforce":
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "invalid telegram secret token")
    logger.warning("telegram secret token check failed (log_only): %s", verification.reason)


def _require_task_caller(request: Request) -> None:
    verification = verify_task_caller(settings=_settings, headers=request.headers)
    if verification.verified:
        return
    if _settings.task_caller_mode == "enforce":
        raise HTTPException(status.HTTP_403_FORBIDDEN, "untrusted task caller")
    logger.warning("task caller check failed (log_only): %s", verification.reason)


def _require_task_json(request: Request) -> None:
    content_type = request.headers.get("Content-Type", "")
    if "application/json" not in content_type.lower():
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "content type must be application/json")


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "request body is not valid JSON") from exc


def _require_admin(request: Request) -> None:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    expected = _settings.admin_api_token.strip()
    if not token or not expected:
        raise HTTPException(401, "admin token required")
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "invalid admin token")


def _attempt_from_headers(request: Request) -> int:
    raw = request.headers.get(RETRY_COUNT_HEADER)
    if raw is None or not raw.strip():
        return 1
    try:
        retry_count = int(raw.strip())
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, f"invalid {RETRY_COUNT_HEADER} header") from exc
    if retry_count < 0:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, f"invalid {RETRY_COUNT_HEADER} header")
    return retry_count + 1


def _leave_external_chat(message: TelegramMessage) -> None:
    chat_id = str(message.chat.id)
    alert = build_external_join_alert(
        chat_title=message.chat.title,
        chat_id=chat_id,
        added_by=describe_user(message.from_user),
        at=datetime.now(timezone.utc),
        tz=_settings.local_timezone,
    )
    try:
        result = alert_sender.send(SlackMessage(text=alert))
        if not result.ok:
            logger.warning("external join alert rejected: %s %s", result.status_code, result.body[:300])
    except Exception:  # noqa: BLE001
        logger.exception("external join alert failed chat_id=%s", chat_id)
    if not telegram_client.leave_chat(chat_id):
        logger.warning("leaving chat added by external user failed chat_id=%s", chat_id)


@router.get("/healthz")
def healthz() -> dict:
    return {"ok": True}


@router.post(
    "/webhook/telegram",
    response_model=TelegramWebhookResponse,
    dependencies=[Depends(_require_telegram_secret), Depends(_require_json)],
)
def telegram_webhook(payload: Any = Depends(_json_body)) -> TelegramWebhookResponse:
    try:
        update = TelegramUpdate.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "malformed telegram update") from exc

    if update_cache.is_duplicate(update.update_id):
        logger.info("duplicate telegram update skipped update_id=%s", update.update_id)
        return TelegramWebhookResponse(status="duplicate")
    if update.message is None:
        return TelegramWebhookResponse(status="ignored")

    event = event_from_message(update.message, update_id=update.update_id)
    classifier = _classifier()
    if classifier.is_bot_among_new_members(event) and not identities.is_internal(event.sender_id):
        logger.warning(
            "bot added by external user chat_id=%s sender_id=%s, leaving",
            event.chat_id,
            event.sender_id,
        )
        _leave_external_chat(update.message)
        return TelegramWebhookResponse(status="left_chat")

    try:
        outcome = _followup_service().handle_event(event)
    except Exception:  # noqa: BLE001
        logger.exception(
            "follow-up processing failed chat_id=%s message_id=%s",
            event.chat_id,
            event.message_id,
        )
        return TelegramWebhookResponse(status="processed")

    return TelegramWebhookResponse(
        status="processed",
        base_type=outcome.base_type,
        job_ids=[job.job_id for job in outcome.jobs],
        created_job_ids=outcome.created_job_ids,
        phase_applied=outcome.phase_applied,
    )


@router.post(
    "/tasks/notifications",
    response_model=NotificationTaskResponse,
    dependencies=[Depends(_require_task_caller), Depends(_require_task_json)],
)
def run_notification_task(request: Request, payload: Any = Depends(_json_body)):
    attempt = _attempt_from_headers(request)
    try:
        task = NotificationTaskRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "jobId is required") from exc

    outcome = _delivery_executor().execute(task.job_id, attempt=attempt)
    body = NotificationTaskResponse(
        ok=not outcome.retry_requested,
        reason=outcome.reason,
        job_id=outcome.job_id,
        attempt=outcome.attempt,
        response_code=outcome.response_code,
    )
    if outcome.retry_requested:
        return JSONResponse(status_code=outcome.http_status, content=body.model_dump(mode="json"))
    return body


def _job_detail(job_id: str) -> NotificationJobDetail:
    job = job_repo.get_job(job_id)
    if job is None:
        raise HTTPException(404, "job not found")
    deliveries = job_repo.list_deliveries(job_id)
    return NotificationJobDetail(
        job_id=job.job_id,
        type=job.type,
        channel=job.channel,
        scheduled_at=job.scheduled_at,
        status=job.status,
        targets=job.targets,
        payload=job.payload,
        source=job.source,
        created_at=job.created_at,
        updated_at=job.updated_at,
        resend_guard=job.resend_guard,
        last_sent_at=job.last_sent_at,
        task_name=job.task_name,
        deliveries=[NotificationDeliveryItem(**item.__dict__) for item in deliveries],
    )


def _person_response(person: PersonRecord) -> PersonResponse:
    return PersonResponse(
        person_id=person.person_id,
        display_name=person.display_name,
        telegram_user_id=person.telegram_user_id,
        telegram_username=person.telegram_username,
        slack=[
            SlackLinkItem(team_id=link.team_id, user_id=link.user_id, enabled=link.enabled)
            for link in person.slack
        ],
    )


@admin_router.get("/jobs/{job_id}", response_model=NotificationJobDetail)
def get_job(job_id: str, request: Request) -> NotificationJobDetail:
    _require_admin(request)
    return _job_detail(job_id)


@admin_router.get("/chats/{chat_id}/phase", response_model=ChatPhaseResponse)
def get_chat_phase(chat_id: str, request: Request) -> ChatPhaseResponse:
    _require_admin(request)
    phase = phase_repo.get_phase(chat_id)
    if phase is None:
        raise HTTPException(404, "chat phase not found")
    return ChatPhaseResponse(chat_id=chat_id, value=phase.value, ts=phase.ts, message_id=phase.message_id)


@admin_router.put("/directory/people/{person_id}", response_model=PersonResponse)
def upsert_person(person_id: str, payload: PersonUpsertRequest, request: Request) -> PersonResponse:
    _require_admin(request)
    normalized_id = person_id.strip()
    if not normalized_id:
        raise HTTPException(400, "person_id is required")
    stored = directory_repo.upsert_person(
        PersonRecord(
            person_id=normalized_id,
            display_name=payload.display_name.strip(),
            telegram_user_id=payload.telegram_user_id,
            telegram_username=payload.telegram_username,
            slack=tuple(
                SlackLink(team_id=link.team_id, user_id=link.user_id, enabled=link.enabled)
                for link in payload.slack
            ),
        )
    )
    return _person_response(stored)


@admin_router.get("/directory/people/{person_id}", response_model=PersonResponse)
def get_person(person_id: str, request: Request) -> PersonResponse:
    _require_admin(request)
    person = directory_repo.get_person(person_id)
    if person is None:
        raise HTTPException(404, "person not found")
    return _person_response(person)
