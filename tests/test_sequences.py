"""Tests for sequence definitions: validation and the one-default-per-organization rule."""

import pytest
from sqlmodel import Session, select

from conftest import ORG, sequence_payload
from proposalai.errors import ValidationError
from proposalai.models import ALL_STOP_CONDITIONS, FollowUpSequence


def _defaults(db, org=ORG):
    with Session(db) as session:
        return session.exec(
            select(FollowUpSequence).where(
                FollowUpSequence.organization_id == org,
                FollowUpSequence.is_default == True,  # noqa: E712
            )
        ).all()


class TestCreateSequence:
    def test_steps_numbered_from_one(self, followups):
        seq = followups.create_sequence(sequence_payload())
        steps = followups.get_steps(seq.id)
        assert [s.step_number for s in steps] == [1, 2]
        assert [s.delay_days for s in steps] == [3, 5]

    def test_default_stop_conditions(self, followups):
        seq = followups.create_sequence(sequence_payload())
        step = followups.get_steps(seq.id)[0]
        assert sorted(step.stop_conditions) == sorted(ALL_STOP_CONDITIONS)

    def test_trigger_and_escalation_stored(self, followups):
        seq = followups.create_sequence(sequence_payload(
            trigger_conditions={"proposal_statuses": ["VIEWED"], "min_value": 100, "client_type": "LEAD"},
            escalation={"enabled": True, "after_days": 5, "escalate_to": ["boss@acme.test"], "message": "Call them"},
        ))
        assert seq.proposal_statuses == ["VIEWED"]
        assert seq.min_value == 100
        assert seq.client_type.value == "LEAD"
        assert seq.escalation_enabled is True
        assert seq.escalation_to == ["boss@acme.test"]
        assert seq.usage_count == 0
        assert seq.success_rate == 0.0

    def test_empty_steps_rejected_and_not_persisted(self, followups, db):
        with pytest.raises(ValidationError):
            followups.create_sequence(sequence_payload(steps=[]))
        assert followups.list_sequences(ORG) == []

    def test_negative_delay_rejected(self, followups):
        payload = sequence_payload()
        payload["steps"][0]["delay_days"] = -1
        with pytest.raises(ValidationError):
            followups.create_sequence(payload)

    def test_non_contiguous_step_numbers_rejected(self, followups):
        payload = sequence_payload()
        payload["steps"][0]["step_number"] = 1
        payload["steps"][1]["step_number"] = 3
        with pytest.raises(ValidationError) as exc:
            followups.create_sequence(payload)
        assert exc.value.errors

    def test_explicit_contiguous_step_numbers_accepted(self, followups):
        payload = sequence_payload()
        payload["steps"][0]["step_number"] = 1
        payload["steps"][1]["step_number"] = 2
        seq = followups.create_sequence(payload)
        assert len(followups.get_steps(seq.id)) == 2

    def test_trigger_statuses_limited_to_sent_viewed(self, followups):
        with pytest.raises(ValidationError):
            followups.create_sequence(sequence_payload(trigger_conditions={"proposal_statuses": ["ACCEPTED"]}))

    def test_invalid_escalation_recipient_rejected(self, followups):
        with pytest.raises(ValidationError):
            followups.create_sequence(sequence_payload(
                escalation={"enabled": True, "escalate_to": ["not-an-email"]},
            ))


class TestDefaultSequence:
    def test_new_default_unsets_previous(self, followups, db):
        first = followups.create_sequence(sequence_payload(name="A"))
        second = followups.create_sequence(sequence_payload(name="B"))
        defaults = _defaults(db)
        assert [s.id for s in defaults] == [second.id]
        assert first.id != second.id

    def test_set_default_switches(self, followups, db):
        first = followups.create_sequence(sequence_payload(name="A"))
        followups.create_sequence(sequence_payload(name="B"))
        followups.set_default(first.id)
        assert [s.id for s in _defaults(db)] == [first.id]

    def test_defaults_are_per_organization(self, followups, db):
        followups.create_sequence(sequence_payload(name="A"))
        followups.create_sequence(sequence_payload(name="Other org", organization_id=2))
        assert len(_defaults(db, ORG)) == 1
        assert len(_defaults(db, 2)) == 1

    def test_list_puts_default_first(self, followups, clock):
        followups.create_sequence(sequence_payload(name="Default"))
        clock.set_day(1)
        followups.create_sequence(sequence_payload(name="Newer", is_default=False))
        names = [s.name for s in followups.list_sequences(ORG)]
        assert names == ["Default", "Newer"]
