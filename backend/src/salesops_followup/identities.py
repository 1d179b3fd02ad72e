from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal

from .config import Settings

IdentityRole = Literal["internal", "ops_broadcast"]


@dataclass(frozen=True)
class IdentityTable:
    """Identity to role flags, loaded once at startup.

    Telegram user ids carry the ``internal`` role; directory person ids carry
    the ``ops_broadcast`` role.
    """

    roles: dict[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def from_entries(cls, entries: Iterable[tuple[str, IdentityRole]]) -> "IdentityTable":
        collected: dict[str, set[str]] = {}
        for identity, role in entries:
            normalized = str(identity).strip()
            if not normalized:
                continue
            collected.setdefault(normalized, set()).add(role)
        return cls(roles={key: frozenset(value) for key, value in collected.items()})

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdentityTable":
        entries: list[tuple[str, IdentityRole]] = []
        entries.extend((user_id, "internal") for user_id in settings.internal_telegram_user_ids)
        entries.extend((person_id, "ops_broadcast") for person_id in settings.ops_broadcast_person_ids)
        return cls.from_entries(entries)

    def has_role(self, identity: str | int | None, role: IdentityRole) -> bool:
        if identity is None:
            return False
        return role in self.roles.get(str(identity).strip(), frozenset())

    def is_internal(self, telegram_user_id: str | int | None) -> bool:
        return self.has_role(telegram_user_id, "internal")

    def ops_broadcast_person_ids(self) -> list[str]:
        return sorted(key for key, value in self.roles.items() if "ops_broadcast" in value)
