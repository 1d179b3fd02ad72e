from __future__ import annotations

import os
from dataclasses import dataclass


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Sales Ops Follow-up"
    api_prefix: str = "/api/v1/followups"
    log_level: str = "INFO"
    # Scheduling policy.
    local_timezone: str = "Asia/Tokyo"
    followup_hour: int = 15
    followup_minute: int = 0
    call_check_delay_hours: int = 3
    call_check_quiet_start_hour: int = 3
    call_check_quiet_end_hour: int = 11
    call_check_snap_hour: int = 11
    # Delivery policy.
    max_delivery_attempts: int = 5
    resend_guard_mode: str = "on_success"
    notification_job_retention: str = "retain"
    # Storage.
    store_backend: str = "inmemory"
    database_url: str = ""
    # Identity table and trigger inputs.
    internal_telegram_user_ids: tuple[str, ...] = ()
    ops_broadcast_person_ids: tuple[str, ...] = ()
    bot_username: str = "sales_ops_assistant_bot"
    bot_user_id: str = ""
    document_host_domains: tuple[str, ...] = ("docs.google.com", "drive.google.com")
    # Slack delivery channel.
    slack_team_id: str = ""
    notifier_sender_type: str = "stub"
    slack_webhook_url: str = ""
    slack_alert_webhook_url: str = ""
    slack_timeout_seconds: float = 10.0
    # Telegram.
    telegram_bot_token: str = ""
    telegram_api_base_url: str = "https://api.telegram.org"
    telegram_webhook_secret: str = ""
    telegram_webhook_secret_mode: str = "log_only"
    update_dedup_cache_size: int = 1000
    # Delayed-execution queue.
    task_dispatcher_type: str = "stub"
    public_base_url: str = ""
    gcp_project_id: str = ""
    gcp_location_id: str = "asia-northeast1"
    gcp_tasks_queue: str = ""
    tasks_service_account_email: str = ""
    task_caller_mode: str = "enforce"
    task_callback_token: str = ""
    # Admin surface and startup guard.
    admin_api_token: str = ""
    runtime_secret_guard_mode: str = "warn"

    def task_callback_url(self) -> str:
        return f"{self.public_base_url.strip().rstrip('/')}/tasks/notifications"

    def cloud_tasks_queue_path(self) -> str:
        return (
            f"projects/{self.gcp_project_id}/locations/{self.gcp_location_id}"
            f"/queues/{self.gcp_tasks_queue}"
        )


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("FOLLOWUP_APP_NAME", "Sales Ops Follow-up"),
        api_prefix=os.getenv("FOLLOWUP_API_PREFIX", "/api/v1/followups"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        local_timezone=os.getenv("LOCAL_TIMEZONE", "Asia/Tokyo"),
        followup_hour=_as_int(os.getenv("FOLLOWUP_HOUR"), 15),
        followup_minute=_as_int(os.getenv("FOLLOWUP_MINUTE"), 0),
        call_check_delay_hours=_as_int(os.getenv("CALL_CHECK_DELAY_HOURS"), 3),
        call_check_quiet_start_hour=_as_int(os.getenv("CALL_CHECK_QUIET_START_HOUR"), 3),
        call_check_quiet_end_hour=_as_int(os.getenv("CALL_CHECK_QUIET_END_HOUR"), 11),
        call_check_snap_hour=_as_int(os.getenv("CALL_CHECK_SNAP_HOUR"), 11),
        max_delivery_attempts=_as_int(os.getenv("MAX_DELIVERY_ATTEMPTS"), 5),
        resend_guard_mode=_normalize_mode(
            os.getenv("RESEND_GUARD_MODE"),
            default="on_success",
            allowed={"on_success", "on_attempt"},
        ),
        notification_job_retention=_normalize_mode(
            os.getenv("NOTIFICATION_JOB_RETENTION"),
            default="retain",
            allowed={"retain", "delete"},
        ),
        store_backend=os.getenv("STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        internal_telegram_user_ids=_as_csv_tuple(os.getenv("INTERNAL_TELEGRAM_USER_IDS")),
        ops_broadcast_person_ids=_as_csv_tuple(os.getenv("OPS_BROADCAST_PERSON_IDS")),
        bot_username=os.getenv("BOT_USERNAME", "sales_ops_assistant_bot"),
        bot_user_id=os.getenv("BOT_USER_ID", ""),
        document_host_domains=(
            _as_csv_tuple(os.getenv("DOCUMENT_HOST_DOMAINS"))
            or ("docs.google.com", "drive.google.com")
        ),
        slack_team_id=os.getenv("SLACK_TEAM_ID", ""),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        slack_webhook_url=os.getenv("SLACK_WEBHOOK_URL", ""),
        slack_alert_webhook_url=os.getenv("SLACK_ALERT_WEBHOOK_URL", ""),
        slack_timeout_seconds=_as_float(os.getenv("SLACK_TIMEOUT_SECONDS"), 10.0),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        telegram_api_base_url=os.getenv("TELEGRAM_API_BASE_URL", "https://api.telegram.org"),
        telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET", ""),
        telegram_webhook_secret_mode=_normalize_mode(
            os.getenv("TELEGRAM_WEBHOOK_SECRET_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        update_dedup_cache_size=_as_int(os.getenv("UPDATE_DEDUP_CACHE_SIZE"), 1000),
        task_dispatcher_type=_normalize_mode(
            os.getenv("TASK_DISPATCHER_TYPE"),
            default="stub",
            allowed={"stub", "cloud_tasks"},
        ),
        public_base_url=os.getenv("PUBLIC_BASE_URL", ""),
        gcp_project_id=os.getenv("GCP_PROJECT_ID", ""),
        gcp_location_id=os.getenv("GCP_LOCATION_ID", "asia-northeast1"),
        gcp_tasks_queue=os.getenv("GCP_TASKS_QUEUE", ""),
        tasks_service_account_email=os.getenv("TASKS_SERVICE_ACCOUNT_EMAIL", ""),
        task_caller_mode=_normalize_mode(
            os.getenv("TASK_CALLER_MODE"),
            default="enforce",
            allowed={"off", "log_only", "enforce"},
        ),
        task_callback_token=os.getenv("TASK_CALLBACK_TOKEN", ""),
        admin_api_token=os.getenv("ADMIN_API_TOKEN", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.admin_api_token,
        defaults={"dev-admin-token", "change-me-in-production"},
    ):
        issues.append("ADMIN_API_TOKEN is empty or uses a development placeholder")
    if settings.telegram_webhook_secret_mode == "enforce" and not settings.telegram_webhook_secret.strip():
        issues.append("TELEGRAM_WEBHOOK_SECRET is required when TELEGRAM_WEBHOOK_SECRET_MODE=enforce")
    if settings.notifier_sender_type == "http" and not settings.slack_webhook_url.strip():
        issues.append("SLACK_WEBHOOK_URL is required when NOTIFIER_SENDER_TYPE=http")
    if settings.task_dispatcher_type == "cloud_tasks":
        if not settings.public_base_url.strip():
            issues.append("PUBLIC_BASE_URL is required when TASK_DISPATCHER_TYPE=cloud_tasks")
        if not settings.gcp_project_id.strip() or not settings.gcp_tasks_queue.strip():
            issues.append(
                "GCP_PROJECT_ID and GCP_TASKS_QUEUE are required when TASK_DISPATCHER_TYPE=cloud_tasks"
            )
    if settings.store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when STORE_BACKEND=postgres")
    if not settings.internal_telegram_user_ids:
        issues.append("INTERNAL_TELEGRAM_USER_IDS is empty; no sender will trigger follow-ups")
    return tuple(issues)
