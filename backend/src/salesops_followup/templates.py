from __future__ import annotations

from datetime import datetime, timezone
from typing import Mapping
from zoneinfo import ZoneInfo

from .targets import SlackTarget

_REMINDER_LINES: dict[str, tuple[str, str]] = {
    "proposal_1st": (
        "It's been 3 days since you sent the proposal document in",
        "Please follow up when you have a moment.",
    ),
    "proposal_2nd": (
        "It's been 6 days since you sent the proposal document in",
        "If there has been no response, please send a gentle reminder.",
    ),
    "invoice_1st": (
        "It's been 2 days since you sent the invoice in",
        "Please check if the client has received it.",
    ),
    "invoice_2nd": (
        "It's been 4 days since you sent the invoice in",
        "If the payment is still pending, please follow up with the client.",
    ),
    "calendly": (
        "It's been one day since you sent the Calendly link in",
        "Please check if a meeting has been scheduled.",
    ),
    "agreement_1st": (
        "It's been 2 days since you sent the agreement in",
        "Please confirm whether the client has reviewed it.",
    ),
    "agreement_2nd": (
        "It's been 4 days since you sent the agreement in",
        "If there has been no update, please reach out again.",
    ),
}


def format_local_timestamp(value: datetime | str | None, *, tz: str) -> str:
    if value is None or value == "":
        return "(no timestamp)"
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    local = value.astimezone(ZoneInfo(tz))
    return f"{local.strftime('%Y/%m/%d %H:%M')} {local.tzname()}"


def format_mentions(targets: list[SlackTarget]) -> str:
    return " ".join(f"<@{target.user_id}>" for target in targets)


def _text(payload: Mapping[str, object], key: str) -> str:
    value = payload.get(key)
    return str(value).strip() if value not in (None, "") else ""


def build_notification_text(
    notification_type: str,
    *,
    targets: list[SlackTarget],
    payload: Mapping[str, object],
    tz: str,
) -> str:
    mentions = format_mentions(targets)
    chat_title = _text(payload, "chat_title") or "(no chat title)"
    file_name = _text(payload, "file_name") or "(no file)"
    caption = _text(payload, "caption")
    sent_at = format_local_timestamp(payload.get("sent_at"), tz=tz)  # type: ignore[arg-type]

    if notification_type == "bot_join_call_check":
        return (
            f"{mentions}\n"
            f'Reminder: A new bot was added to *"{chat_title}"* on *{sent_at}*.\n'
            "Please check whether the call link has been sent to the group."
        )

    info_lines = [f"• Document: *{file_name}*"]
    if caption:
        info_lines.append(f"• Caption: *{caption}*")
    info_lines.append(f"• Sent at: *{sent_at}*")
    info = "\n".join(info_lines)

    lines = _REMINDER_LINES.get(notification_type)
    if lines is None:
        return f'{mentions}\nFollow-up reminder for *"{chat_title}"*.\n{info}'
    opening, closing = lines
    return f'{mentions}\n{opening} *"{chat_title}"*.\n{info}\n{closing}'


def build_external_join_alert(
    *,
    chat_title: str | None,
    chat_id: str,
    added_by: str,
    at: datetime,
    tz: str,
) -> str:
    title = (chat_title or "").strip() or "(no title)"
    return "\n".join(
        [
            ":warning: Bot was added by an external user, leaving the chat.",
            f"• Title: *{title}*",
            f"• Chat ID: `{chat_id}`",
            f"• At: {format_local_timestamp(at, tz=tz)}",
            f"• Added by: {added_by}",
        ]
    )
