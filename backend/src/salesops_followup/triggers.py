from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from .identities import IdentityTable
from .models import BaseNotificationType, MessageKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundEvent:
    chat_id: str
    message_id: str
    occurred_at: datetime
    kind: MessageKind
    sender_id: str | None = None
    sender_username: str | None = None
    chat_title: str | None = None
    chat_type: str | None = None
    update_id: int | None = None
    text: str | None = None
    caption: str | None = None
    file_name: str | None = None
    file_id: str | None = None
    mime_type: str | None = None
    new_member_ids: tuple[str, ...] = field(default_factory=tuple)
    new_member_usernames: tuple[str, ...] = field(default_factory=tuple)

    def combined_text(self) -> str:
        parts = (self.caption, self.text, self.file_name)
        return " ".join(part for part in parts if part).lower()


class TriggerClassifier:
    """Maps an inbound chat event to at most one base notification type."""

    def __init__(
        self,
        *,
        identities: IdentityTable,
        bot_username: str,
        bot_user_id: str = "",
        document_host_domains: tuple[str, ...] = ("docs.google.com", "drive.google.com"),
    ) -> None:
        self._identities = identities
        self._bot_username = bot_username.strip().lstrip("@").lower()
        self._bot_user_id = bot_user_id.strip()
        self._document_host_domains = tuple(
            domain.strip().lower() for domain in document_host_domains if domain.strip()
        )

    def is_bot_among_new_members(self, event: InboundEvent) -> bool:
        if event.kind != "member_join":
            return False
        if self._bot_user_id and self._bot_user_id in event.new_member_ids:
            return True
        if not self._bot_username:
            return False
        usernames = {value.strip().lstrip("@").lower() for value in event.new_member_usernames}
        return self._bot_username in usernames

    def references_document_host(self, combined: str) -> bool:
        return any(domain in combined for domain in self._document_host_domains)

    def classify(self, event: InboundEvent) -> BaseNotificationType | None:
        if not self._identities.is_internal(event.sender_id):
            logger.debug(
                "trigger skipped for non-internal sender chat_id=%s sender_id=%s",
                event.chat_id,
                event.sender_id,
            )
            return None

        if self.is_bot_among_new_members(event):
            return "bot_join_call_check"

        combined = event.combined_text()
        if not combined:
            return None
        on_document_host = self.references_document_host(combined)

        if on_document_host and "proposal" in combined:
            return "proposal_1st"
        if event.kind == "document" and "invoice" in combined:
            return "invoice_1st"
        if "calendly.com" in combined:
            return "calendly"
        if on_document_host and "agreement" in combined:
            return "agreement_1st"
        return None
