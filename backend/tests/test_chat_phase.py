from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from salesops_followup.chat_phase import (
    ChatPhase,
    InMemoryChatPhaseRepository,
    SqlAlchemyChatPhaseRepository,
    advance_for_base_type,
    phase_for_base_type,
    should_apply,
)

TS = datetime(2025, 1, 9, 10, 0, tzinfo=timezone.utc)


def _repositories(tmp_path: Path):
    return [
        InMemoryChatPhaseRepository(),
        SqlAlchemyChatPhaseRepository(f"sqlite:///{tmp_path / 'phases.db'}"),
    ]


def test_phase_mapping_covers_every_base_type() -> None:
    assert phase_for_base_type("bot_join_call_check") == "BotAdded"
    assert phase_for_base_type("calendly") == "CalendlyLinkShared"
    assert phase_for_base_type("proposal_1st") == "ProposalSent"
    assert phase_for_base_type("agreement_1st") == "AgreementSent"
    assert phase_for_base_type("invoice_1st") == "InvoiceSent"
    assert phase_for_base_type("proposal_2nd") is None


def test_should_apply_rules() -> None:
    proposal = ChatPhase(value="ProposalSent", ts=TS, message_id="42")
    assert should_apply(None, proposal) is True
    assert should_apply(proposal, proposal) is False
    assert should_apply(proposal, ChatPhase(value="ProposalSent", ts=TS, message_id="43")) is False
    assert should_apply(proposal, ChatPhase(value="CalendlyLinkShared", ts=TS, message_id="44")) is False
    assert should_apply(proposal, ChatPhase(value="InvoiceSent", ts=TS, message_id="45")) is True
    with pytest.raises(ValueError):
        should_apply(None, ChatPhase(value="Closed", ts=TS, message_id="1"))  # type: ignore[arg-type]


def test_phase_only_moves_forward(tmp_path: Path) -> None:
    for repo in _repositories(tmp_path):
        assert advance_for_base_type(
            repo, chat_id="-1001", notification_type="proposal_1st", ts=TS, message_id="42"
        )
        assert not advance_for_base_type(
            repo, chat_id="-1001", notification_type="calendly", ts=TS, message_id="43"
        )
        phase = repo.get_phase("-1001")
        assert phase is not None
        assert phase.value == "ProposalSent"
        assert phase.message_id == "42"
        assert phase.ts == TS

        assert advance_for_base_type(
            repo, chat_id="-1001", notification_type="invoice_1st", ts=TS, message_id="50"
        )
        phase = repo.get_phase("-1001")
        assert phase is not None
        assert (phase.value, phase.message_id) == ("InvoiceSent", "50")


def test_replayed_event_is_a_no_op(tmp_path: Path) -> None:
    for repo in _repositories(tmp_path):
        candidate = ChatPhase(value="BotAdded", ts=TS, message_id="7")
        assert repo.advance_if_higher("-2002", candidate) is True
        assert repo.advance_if_higher("-2002", candidate) is False


def test_chats_are_independent_and_reset(tmp_path: Path) -> None:
    for repo in _repositories(tmp_path):
        repo.advance_if_higher("-1", ChatPhase(value="AgreementSent", ts=TS, message_id="1"))
        assert repo.get_phase("-2") is None
        repo.reset()
        assert repo.get_phase("-1") is None


class _RacedRepository(SqlAlchemyChatPhaseRepository):
    """Lets a rival repository insert the chat row right after the first locked read."""

    def __init__(self, database_url: str, *, rival: SqlAlchemyChatPhaseRepository, rival_phase: ChatPhase) -> None:
        super().__init__(database_url)
        self._rival = rival
        self._rival_phase = rival_phase
        self._raced = False

    def _phase(self, row):  # type: ignore[override]
        if not self._raced:
            self._raced = True
            assert self._rival.advance_if_higher("c1", self._rival_phase)
        return super()._phase(row)


def test_first_phase_insert_race_keeps_higher_phase(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'race.db'}"
    rival = SqlAlchemyChatPhaseRepository(url)
    repo = _RacedRepository(url, rival=rival, rival_phase=ChatPhase(value="ProposalSent", ts=TS, message_id="42"))

    assert repo.advance_if_higher("c1", ChatPhase(value="InvoiceSent", ts=TS, message_id="50")) is True

    phase = rival.get_phase("c1")
    assert phase is not None
    assert (phase.value, phase.message_id) == ("InvoiceSent", "50")


def test_first_phase_insert_race_loser_with_lower_rank_is_rejected(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'race.db'}"
    rival = SqlAlchemyChatPhaseRepository(url)
    repo = _RacedRepository(url, rival=rival, rival_phase=ChatPhase(value="InvoiceSent", ts=TS, message_id="50"))

    assert repo.advance_if_higher("c1", ChatPhase(value="BotAdded", ts=TS, message_id="7")) is False

    phase = rival.get_phase("c1")
    assert phase is not None
    assert phase.value == "InvoiceSent"
