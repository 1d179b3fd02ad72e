from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import DateTime, String, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import BaseNotificationType, ChatPhaseValue

logger = logging.getLogger(__name__)

PHASE_RANKS: dict[str, int] = {
    "BotAdded": 1,
    "CalendlyLinkShared": 2,
    "ProposalSent": 3,
    "AgreementSent": 4,
    "InvoiceSent": 5,
}

PHASE_FOR_BASE_TYPE: dict[str, ChatPhaseValue] = {
    "bot_join_call_check": "BotAdded",
    "calendly": "CalendlyLinkShared",
    "proposal_1st": "ProposalSent",
    "agreement_1st": "AgreementSent",
    "invoice_1st": "InvoiceSent",
}


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def phase_rank(value: str | None) -> int:
    if value is None:
        return 0
    return PHASE_RANKS.get(value, 0)


def phase_for_base_type(notification_type: str) -> ChatPhaseValue | None:
    return PHASE_FOR_BASE_TYPE.get(notification_type)


@dataclass(frozen=True)
class ChatPhase:
    value: ChatPhaseValue
    ts: datetime
    message_id: str


def should_apply(current: ChatPhase | None, candidate: ChatPhase) -> bool:
    if candidate.value not in PHASE_RANKS:
        raise ValueError(f"unknown chat phase: {candidate.value}")
    if current is None:
        return True
    if current.value == candidate.value and current.message_id == candidate.message_id:
        return False
    return phase_rank(candidate.value) > phase_rank(current.value)


class ChatPhaseRepository(Protocol):
    def reset(self) -> None: ...

    def get_phase(self, chat_id: str) -> ChatPhase | None: ...

    def advance_if_higher(self, chat_id: str, candidate: ChatPhase) -> bool: ...


class InMemoryChatPhaseRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._phases: dict[str, ChatPhase] = {}

    def reset(self) -> None:
        with self._lock:
            self._phases.clear()

    def get_phase(self, chat_id: str) -> ChatPhase | None:
        with self._lock:
            return self._phases.get(chat_id)

    def advance_if_higher(self, chat_id: str, candidate: ChatPhase) -> bool:
        with self._lock:
            if not should_apply(self._phases.get(chat_id), candidate):
                return False
            self._phases[chat_id] = ChatPhase(
                value=candidate.value,
                ts=_coerce_utc(candidate.ts),
                message_id=candidate.message_id,
            )
            return True


class ChatPhaseBase(DeclarativeBase):
    pass


class _ChatRow(ChatPhaseBase):
    __tablename__ = "tg_chats"

    chat_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phase_value: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    phase_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    phase_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyChatPhaseRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ChatPhaseBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    @staticmethod
    def _phase(row: _ChatRow | None) -> ChatPhase | None:
        if row is None or row.phase_value is None or row.phase_ts is None:
            return None
        return ChatPhase(
            value=row.phase_value,  # type: ignore[arg-type]
            ts=_coerce_utc(row.phase_ts),
            message_id=row.phase_message_id or "",
        )

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ChatRow).delete()

    def get_phase(self, chat_id: str) -> ChatPhase | None:
        with self._session() as session:
            return self._phase(session.get(_ChatRow, chat_id))

    def _advance_once(self, chat_id: str, candidate: ChatPhase) -> bool:
        now = datetime.now(timezone.utc)
        with self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_ChatRow).where(_ChatRow.chat_id == chat_id).with_for_update()
                )
                if not should_apply(self._phase(row), candidate):
                    return False
                if row is None:
                    row = _ChatRow(chat_id=chat_id, created_at=now, updated_at=now)
                    session.add(row)
                row.phase_value = candidate.value
                row.phase_ts = _coerce_utc(candidate.ts)
                row.phase_message_id = candidate.message_id
                row.updated_at = now
        return True

    def advance_if_higher(self, chat_id: str, candidate: ChatPhase) -> bool:
        try:
            applied = self._advance_once(chat_id, candidate)
        except IntegrityError:
            # FOR UPDATE locks nothing while the row is missing; the rival insert won.
            logger.info("chat phase insert raced chat_id=%s value=%s", chat_id, candidate.value)
            applied = self._advance_once(chat_id, candidate)
        if not applied:
            return False
        logger.info(
            "chat phase advanced chat_id=%s value=%s message_id=%s",
            chat_id,
            candidate.value,
            candidate.message_id,
        )
        return True


def create_chat_phase_repository(*, backend: str, database_url: str) -> ChatPhaseRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyChatPhaseRepository(database_url)
    if normalized == "inmemory":
        return InMemoryChatPhaseRepository()
    raise RuntimeError(f"unsupported STORE_BACKEND: {backend}")


def advance_for_base_type(
    repository: ChatPhaseRepository,
    *,
    chat_id: str,
    notification_type: BaseNotificationType,
    ts: datetime,
    message_id: str,
) -> bool:
    value = phase_for_base_type(notification_type)
    if value is None:
        return False
    return repository.advance_if_higher(chat_id, ChatPhase(value=value, ts=ts, message_id=message_id))
