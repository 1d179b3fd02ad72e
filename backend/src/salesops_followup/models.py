from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

NotificationType = Literal[
    "bot_join_call_check",
    "proposal_1st",
    "proposal_2nd",
    "invoice_1st",
    "invoice_2nd",
    "calendly",
    "agreement_1st",
    "agreement_2nd",
]
BaseNotificationType = Literal[
    "bot_join_call_check",
    "proposal_1st",
    "invoice_1st",
    "calendly",
    "agreement_1st",
]
ChatPhaseValue = Literal[
    "BotAdded",
    "CalendlyLinkShared",
    "ProposalSent",
    "AgreementSent",
    "InvoiceSent",
]
JobStatus = Literal["pending", "delivered", "failed", "expired"]
DeliveryStatus = Literal["success", "failure"]
MessageKind = Literal[
    "member_join",
    "member_leave",
    "text",
    "photo",
    "video",
    "document",
    "sticker",
    "other",
]
WebhookStatus = Literal["processed", "duplicate", "ignored", "left_chat"]


class TelegramUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    is_bot: bool = False
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None


class TelegramChat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    type: str = "group"
    title: str | None = None
    username: str | None = None


class TelegramDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_id: str
    file_unique_id: str | None = None
    file_name: str | None = None
    mime_type: str | None = None


class TelegramMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_id: int
    date: int
    chat: TelegramChat
    from_user: TelegramUser | None = Field(default=None, alias="from")
    text: str | None = None
    caption: str | None = None
    document: TelegramDocument | None = None
    photo: list[dict[str, object]] | None = None
    video: dict[str, object] | None = None
    sticker: dict[str, object] | None = None
    new_chat_members: list[TelegramUser] | None = None
    left_chat_member: TelegramUser | None = None


class TelegramUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    update_id: int
    message: TelegramMessage | None = None


class TelegramWebhookResponse(BaseModel):
    ok: bool = True
    status: WebhookStatus
    base_type: BaseNotificationType | None = None
    job_ids: list[str] = Field(default_factory=list)
    created_job_ids: list[str] = Field(default_factory=list)
    phase_applied: bool = False


class NotificationTaskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1, max_length=128)

    @field_validator("job_id")
    @classmethod
    def _normalize_job_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("jobId cannot be blank")
        return normalized


class NotificationTaskResponse(BaseModel):
    ok: bool
    reason: str
    job_id: str | None = None
    attempt: int | None = None
    response_code: int | None = None


class NotificationDeliveryItem(BaseModel):
    delivery_id: str
    job_id: str
    type: NotificationType
    channel: str
    targets: list[dict[str, str]]
    status: DeliveryStatus
    attempt: int
    error_message: str | None = None
    response_code: int | None = None
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    source: dict[str, str]
    created_at: datetime


class NotificationJobDetail(BaseModel):
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
    resend_guard: bool
    last_sent_at: datetime | None = None
    task_name: str | None = None
    deliveries: list[NotificationDeliveryItem] = Field(default_factory=list)


class ChatPhaseResponse(BaseModel):
    chat_id: str
    value: ChatPhaseValue
    ts: datetime
    message_id: str


class SlackLinkInput(BaseModel):
    team_id: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)
    enabled: bool | None = None

    @field_validator("team_id", "user_id")
    @classmethod
    def _strip_ids(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("slack identifiers cannot be blank")
        return normalized


class SlackLinkItem(BaseModel):
    team_id: str | None = None
    user_id: str | None = None
    enabled: bool | None = None


class PersonUpsertRequest(BaseModel):
    display_name: str = Field(min_length=1, max_length=256)
    telegram_user_id: str | None = Field(default=None, max_length=64)
    telegram_username: str | None = Field(default=None, max_length=64)
    slack: list[SlackLinkInput] = Field(default_factory=list, max_length=16)

    @field_validator("telegram_user_id", "telegram_username")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class PersonResponse(BaseModel):
    person_id: str
    display_name: str
    telegram_user_id: str | None = None
    telegram_username: str | None = None
    slack: list[SlackLinkItem] = Field(default_factory=list)
