from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SlackLink:
    team_id: str | None
    user_id: str | None
    enabled: bool | None = None


@dataclass(frozen=True)
class PersonRecord:
    person_id: str
    display_name: str
    telegram_user_id: str | None = None
    telegram_username: str | None = None
    slack: tuple[SlackLink, ...] = field(default_factory=tuple)
    updated_at: datetime | None = None


class DirectoryRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_person(self, person: PersonRecord) -> PersonRecord: ...

    def get_person(self, person_id: str) -> PersonRecord | None: ...

    def find_by_telegram_user_id(self, telegram_user_id: str) -> PersonRecord | None: ...

    def list_people(self, person_ids: list[str]) -> list[PersonRecord]: ...


class InMemoryDirectoryRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._people: dict[str, PersonRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._people.clear()

    def upsert_person(self, person: PersonRecord) -> PersonRecord:
        stored = PersonRecord(**{**person.__dict__, "updated_at": _now_utc()})
        with self._lock:
            self._people[person.person_id] = stored
        return stored

    def get_person(self, person_id: str) -> PersonRecord | None:
        with self._lock:
            return self._people.get(person_id)

    def find_by_telegram_user_id(self, telegram_user_id: str) -> PersonRecord | None:
        normalized = str(telegram_user_id).strip()
        with self._lock:
            for person in self._people.values():
                if person.telegram_user_id == normalized:
                    return person
        return None

    def list_people(self, person_ids: list[str]) -> list[PersonRecord]:
        with self._lock:
            return [self._people[value] for value in person_ids if value in self._people]


class DirectoryBase(DeclarativeBase):
    pass


class _PersonRow(DirectoryBase):
    __tablename__ = "people"

    person_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    telegram_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    telegram_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _PersonSlackLinkRow(DirectoryBase):
    __tablename__ = "person_slack_links"

    link_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[str] = mapped_column(String(128), ForeignKey("people.person_id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)


class SqlAlchemyDirectoryRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DirectoryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def _record(self, session, row: _PersonRow) -> PersonRecord:
        links = session.scalars(
            select(_PersonSlackLinkRow)
            .where(_PersonSlackLinkRow.person_id == row.person_id)
            .order_by(_PersonSlackLinkRow.position)
        ).all()
        return PersonRecord(
            person_id=row.person_id,
            display_name=row.display_name,
            telegram_user_id=row.telegram_user_id,
            telegram_username=row.telegram_username,
            slack=tuple(
                SlackLink(team_id=link.team_id, user_id=link.user_id, enabled=link.enabled)
                for link in links
            ),
            updated_at=row.updated_at,
        )

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_PersonSlackLinkRow).delete()
                session.query(_PersonRow).delete()

    def upsert_person(self, person: PersonRecord) -> PersonRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_PersonRow, person.person_id)
                if row is None:
                    row = _PersonRow(
                        person_id=person.person_id,
                        display_name=person.display_name,
                        telegram_user_id=person.telegram_user_id,
                        telegram_username=person.telegram_username,
                        updated_at=now,
                    )
                    session.add(row)
                else:
                    row.display_name = person.display_name
                    row.telegram_user_id = person.telegram_user_id
                    row.telegram_username = person.telegram_username
                    row.updated_at = now
                session.query(_PersonSlackLinkRow).filter(
                    _PersonSlackLinkRow.person_id == person.person_id
                ).delete()
                for position, link in enumerate(person.slack):
                    session.add(
                        _PersonSlackLinkRow(
                            person_id=person.person_id,
                            position=position,
                            team_id=link.team_id,
                            user_id=link.user_id,
                            enabled=link.enabled,
                        )
                    )
        return PersonRecord(**{**person.__dict__, "updated_at": now})

    def get_person(self, person_id: str) -> PersonRecord | None:
        with self._session() as session:
            row = session.get(_PersonRow, person_id)
            if row is None:
                return None
            return self._record(session, row)

    def find_by_telegram_user_id(self, telegram_user_id: str) -> PersonRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_PersonRow)
                .where(_PersonRow.telegram_user_id == str(telegram_user_id).strip())
                .order_by(_PersonRow.person_id)
                .limit(1)
            )
            if row is None:
                return None
            return self._record(session, row)

    def list_people(self, person_ids: list[str]) -> list[PersonRecord]:
        if not person_ids:
            return []
        with self._session() as session:
            rows = session.scalars(select(_PersonRow).where(_PersonRow.person_id.in_(person_ids))).all()
            by_id = {row.person_id: self._record(session, row) for row in rows}
        return [by_id[value] for value in person_ids if value in by_id]


def create_directory_repository(*, backend: str, database_url: str) -> DirectoryRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDirectoryRepository(database_url)
    if normalized == "inmemory":
        return InMemoryDirectoryRepository()
    raise RuntimeError(f"unsupported STORE_BACKEND: {backend}")
