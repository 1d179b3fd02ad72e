from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

from .directory import DirectoryRepository, SlackLink
from .identities import IdentityTable
from .models import NotificationType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlackTarget:
    team_id: str
    user_id: str

    def as_dict(self) -> dict[str, str]:
        return {"team_id": self.team_id, "user_id": self.user_id}


class TargetValidationError(ValueError):
    """Raised when a stored target list cannot be delivered to."""


def _complete(link: SlackLink) -> bool:
    return bool(link.team_id and link.team_id.strip() and link.user_id and link.user_id.strip())


def select_slack_link(links: Iterable[SlackLink], *, team_id: str | None) -> SlackLink | None:
    candidates = list(links)
    if not candidates:
        return None
    if team_id:
        for link in candidates:
            if link.team_id == team_id:
                return link
    for link in candidates:
        if link.enabled is True:
            return link
    return candidates[0]


def parse_targets(raw_targets: object) -> list[SlackTarget]:
    if not isinstance(raw_targets, (list, tuple)) or not raw_targets:
        raise TargetValidationError("targets must be a non-empty list")
    parsed: list[SlackTarget] = []
    for item in raw_targets:
        if not isinstance(item, Mapping):
            raise TargetValidationError("target entries must be objects")
        team_id = str(item.get("team_id") or "").strip()
        user_id = str(item.get("user_id") or "").strip()
        if not team_id or not user_id:
            raise TargetValidationError("target entries require team_id and user_id")
        parsed.append(SlackTarget(team_id=team_id, user_id=user_id))
    return parsed


class TargetResolver:
    def __init__(
        self,
        *,
        directory: DirectoryRepository,
        identities: IdentityTable,
        slack_team_id: str = "",
    ) -> None:
        self._directory = directory
        self._identities = identities
        self._slack_team_id = slack_team_id.strip()

    def for_sender(self, telegram_user_id: str | None) -> list[SlackTarget]:
        if not telegram_user_id:
            return []
        person = self._directory.find_by_telegram_user_id(telegram_user_id)
        if person is None:
            logger.info("no directory entry for telegram user %s", telegram_user_id)
            return []
        link = select_slack_link(person.slack, team_id=self._slack_team_id or None)
        if link is None or not _complete(link):
            logger.info("no usable slack link for person %s", person.person_id)
            return []
        return [SlackTarget(team_id=link.team_id.strip(), user_id=link.user_id.strip())]  # type: ignore[union-attr]

    def for_ops_broadcast(self) -> list[SlackTarget]:
        targets: list[SlackTarget] = []
        for person in self._directory.list_people(self._identities.ops_broadcast_person_ids()):
            for link in person.slack:
                if not _complete(link):
                    continue
                targets.append(SlackTarget(team_id=link.team_id.strip(), user_id=link.user_id.strip()))  # type: ignore[union-attr]
        return targets

    def resolve(self, notification_type: NotificationType, sender_id: str | None) -> list[SlackTarget]:
        if notification_type == "bot_join_call_check":
            return self.for_ops_broadcast()
        return self.for_sender(sender_id)
