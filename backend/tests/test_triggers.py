from __future__ import annotations

from datetime import datetime, timezone

from salesops_followup.config import Settings
from salesops_followup.identities import IdentityTable
from salesops_followup.triggers import InboundEvent, TriggerClassifier

INTERNAL_ID = "111"


def _classifier(**kwargs) -> TriggerClassifier:
    return TriggerClassifier(
        identities=IdentityTable.from_entries([(INTERNAL_ID, "internal")]),
        bot_username=kwargs.pop("bot_username", "sales_ops_assistant_bot"),
        **kwargs,
    )


def _event(**overrides) -> InboundEvent:
    values = {
        "chat_id": "-1001",
        "message_id": "42",
        "occurred_at": datetime(2025, 1, 9, 10, 0, tzinfo=timezone.utc),
        "kind": "text",
        "sender_id": INTERNAL_ID,
    }
    values.update(overrides)
    return InboundEvent(**values)


def test_document_with_hosted_proposal_link() -> None:
    event = _event(
        kind="document",
        caption="Please review proposal.pdf https://docs.google.com/document/d/abc",
        file_name="proposal.pdf",
    )
    assert _classifier().classify(event) == "proposal_1st"


def test_matching_is_case_insensitive() -> None:
    event = _event(text="PROPOSAL draft: HTTPS://DOCS.GOOGLE.COM/document/d/abc")
    assert _classifier().classify(event) == "proposal_1st"


def test_non_internal_sender_never_triggers() -> None:
    event = _event(sender_id="999", text="proposal https://docs.google.com/x")
    assert _classifier().classify(event) is None
    assert _classifier().classify(_event(sender_id=None, text="https://calendly.com/x")) is None


def test_proposal_without_document_host_is_not_a_trigger() -> None:
    assert _classifier().classify(_event(text="attached the proposal")) is None


def test_invoice_requires_document_kind() -> None:
    assert _classifier().classify(_event(kind="document", file_name="Invoice_2025-01.pdf")) == "invoice_1st"
    assert _classifier().classify(_event(kind="text", text="invoice sent yesterday")) is None


def test_calendly_link() -> None:
    assert _classifier().classify(_event(text="Book here: https://calendly.com/acme/30min")) == "calendly"


def test_agreement_on_drive() -> None:
    event = _event(text="Agreement ready https://drive.google.com/file/d/xyz")
    assert _classifier().classify(event) == "agreement_1st"


def test_rule_order_first_match_wins() -> None:
    both = _event(text="proposal https://docs.google.com/a and https://calendly.com/b")
    assert _classifier().classify(both) == "proposal_1st"
    calendly_first = _event(text="agreement https://docs.google.com/a https://calendly.com/b")
    assert _classifier().classify(calendly_first) == "calendly"


def test_custom_document_hosts() -> None:
    classifier = _classifier(document_host_domains=("box.com",))
    assert classifier.classify(_event(text="proposal https://app.box.com/s/1")) == "proposal_1st"
    assert classifier.classify(_event(text="proposal https://docs.google.com/a")) is None


def test_bot_join_by_username() -> None:
    event = _event(kind="member_join", new_member_ids=("555",), new_member_usernames=("sales_ops_assistant_bot",))
    assert _classifier().classify(event) == "bot_join_call_check"


def test_bot_join_by_user_id() -> None:
    classifier = _classifier(bot_username="", bot_user_id="555")
    event = _event(kind="member_join", new_member_ids=("555",))
    assert classifier.classify(event) == "bot_join_call_check"


def test_other_member_join_is_not_a_trigger() -> None:
    event = _event(kind="member_join", new_member_ids=("777",), new_member_usernames=("someone",))
    assert _classifier().classify(event) is None


def test_identity_table_from_settings() -> None:
    table = IdentityTable.from_settings(
        Settings(internal_telegram_user_ids=("111", "222"), ops_broadcast_person_ids=("ops-2", "ops-1"))
    )
    assert table.is_internal(111)
    assert table.is_internal("222")
    assert not table.is_internal("333")
    assert not table.is_internal(None)
    assert table.ops_broadcast_person_ids() == ["ops-1", "ops-2"]
