from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from .config import Settings

logger = logging.getLogger(__name__)

CLOUD_TASKS_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
TASK_TOKEN_HEADER = "X-Task-Token"


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _rfc3339(value: datetime) -> str:
    return _coerce_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class TaskDispatchError(RuntimeError):
    """Raised when a delayed task cannot be registered with the queue."""


@dataclass(frozen=True)
class DispatchedTask:
    task_name: str
    url: str
    payload: dict[str, object]
    scheduled_at: datetime


class TaskDispatcher(Protocol):
    def enqueue(self, url: str, payload: dict[str, object], scheduled_at: datetime) -> str: ...


class StubTaskDispatcher:
    """Records tasks in process; nothing is ever invoked."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: list[DispatchedTask] = []

    @property
    def tasks(self) -> list[DispatchedTask]:
        with self._lock:
            return list(self._tasks)

    def reset(self) -> None:
        with self._lock:
            self._tasks.clear()

    def enqueue(self, url: str, payload: dict[str, object], scheduled_at: datetime) -> str:
        with self._lock:
            task_name = f"stub-task-{len(self._tasks) + 1:06d}"
            self._tasks.append(
                DispatchedTask(
                    task_name=task_name,
                    url=url,
                    payload=dict(payload),
                    scheduled_at=_coerce_utc(scheduled_at),
                )
            )
        return task_name


class CloudTasksDispatcher:
    """Registers HTTP callback tasks through the Cloud Tasks v2 REST API."""

    def __init__(
        self,
        *,
        queue_path: str,
        service_account_email: str = "",
        callback_token: str = "",
        service: Any | None = None,
    ) -> None:
        if not queue_path.strip() or "//" in queue_path or queue_path.endswith("/"):
            raise ValueError("queue_path must be projects/<p>/locations/<l>/queues/<q>")
        self._queue_path = queue_path.strip()
        self._service_account_email = service_account_email.strip()
        self._callback_token = callback_token.strip()
        self._service = service

    def _build_service(self) -> Any:
        if self._service is None:
            import google.auth
            from googleapiclient.discovery import build

            credentials, _ = google.auth.default(scopes=CLOUD_TASKS_SCOPES)
            self._service = build("cloudtasks", "v2", credentials=credentials, cache_discovery=False)
        return self._service

    def _task_body(self, url: str, payload: dict[str, object], scheduled_at: datetime) -> dict[str, object]:
        headers = {"Content-Type": "application/json"}
        if self._callback_token:
            headers[TASK_TOKEN_HEADER] = self._callback_token
        http_request: dict[str, object] = {
            "httpMethod": "POST",
            "url": url,
            "headers": headers,
            "body": base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii"),
        }
        if self._service_account_email:
            http_request["oidcToken"] = {
                "serviceAccountEmail": self._service_account_email,
                "audience": url,
            }
        return {"task": {"httpRequest": http_request, "scheduleTime": _rfc3339(scheduled_at)}}

    def enqueue(self, url: str, payload: dict[str, object], scheduled_at: datetime) -> str:
        body = self._task_body(url, payload, scheduled_at)
        try:
            created = (
                self._build_service()
                .projects()
                .locations()
                .queues()
                .tasks()
                .create(parent=self._queue_path, body=body)
                .execute()
            )
        except Exception as exc:
            raise TaskDispatchError(f"cloud tasks enqueue failed: {exc}") from exc
        task_name = str(created.get("name") or "")
        if not task_name:
            raise TaskDispatchError("cloud tasks response did not include a task name")
        logger.info("cloud task registered name=%s schedule_time=%s", task_name, body["task"]["scheduleTime"])  # type: ignore[index]
        return task_name


def create_task_dispatcher(settings: Settings) -> TaskDispatcher:
    if settings.task_dispatcher_type == "cloud_tasks":
        if not settings.gcp_project_id.strip() or not settings.gcp_tasks_queue.strip():
            raise RuntimeError("GCP_PROJECT_ID and GCP_TASKS_QUEUE are required for TASK_DISPATCHER_TYPE=cloud_tasks")
        return CloudTasksDispatcher(
            queue_path=settings.cloud_tasks_queue_path(),
            service_account_email=settings.tasks_service_account_email,
            callback_token=settings.task_callback_token,
        )
    return StubTaskDispatcher()
