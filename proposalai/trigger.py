# proposalai/trigger.py

import logging
from datetime import datetime
from typing import Callable, Optional

from proposalai.crud import FollowUpStore
from proposalai.errors import AlreadyActive, NoSequenceFound, ValidationError
from proposalai.models import ExecutionStatus, FollowUpExecution, FollowUpSequence
from proposalai.proposals import ProposalReader
from proposalai.schemas import TRIGGER_STATUSES, ProposalEvent, ProposalSnapshot
from proposalai.utils import add_days

logger = logging.getLogger(__name__)


def matches_trigger_conditions(proposal: ProposalSnapshot, sequence: FollowUpSequence) -> bool:
    if proposal.status.value not in (sequence.proposal_statuses or []):
        return False

    value = proposal.total_value or 0
    if sequence.min_value is not None and value < sequence.min_value:
        return False
    if sequence.max_value is not None and value > sequence.max_value:
        return False

    # client type only applies when the proposal has a client record
    if sequence.client_type is not None and proposal.client_status is not None:
        if proposal.client_status != sequence.client_type:
            return False

    return True


class TriggerEvaluator:
    """Decides whether a proposal event starts a new follow-up execution."""

    def __init__(self, store: FollowUpStore, proposals: ProposalReader, clock: Callable[[], datetime] = datetime.utcnow):
        self.store = store
        self.proposals = proposals
        self.clock = clock

    def resolve_sequence(self, organization_id: int, sequence_id: int = None) -> FollowUpSequence:
        if sequence_id is not None:
            seq = self.store.get_active_sequence(organization_id, sequence_id)
        else:
            seq = self.store.get_default_sequence(organization_id)
        if not seq:
            raise NoSequenceFound(organization_id, sequence_id)
        return seq

    def trigger(self, event: ProposalEvent, sequence_id: int = None) -> FollowUpExecution:
        """
        Start a run of the explicit (or the organization's default) sequence.

        Raises NoSequenceFound when there is no candidate and AlreadyActive
        when the proposal already has an ACTIVE run.
        """
        seq = self.resolve_sequence(event.organization_id, sequence_id)

        if self.store.find_active_execution(event.proposal_id):
            raise AlreadyActive(event.proposal_id)

        steps = self.store.get_steps(seq.id)
        if not steps:
            raise ValidationError(f"Invalid sequence {seq.id}: no first step found")

        execution = FollowUpExecution(
            proposal_id=event.proposal_id,
            sequence_id=seq.id,
            organization_id=event.organization_id,
            status=ExecutionStatus.ACTIVE,
            current_step=1,
            next_execution_at=add_days(event.timestamp, steps[0].delay_days),
            created_at=event.timestamp,
            updated_at=self.clock(),
        )
        execution = self.store.create_execution(execution)
        logger.info(
            "Triggered follow-up %s for proposal %s with sequence %s (first step due %s)",
            execution.id, event.proposal_id, seq.id, execution.next_execution_at,
        )
        return execution

    def auto_trigger(self, event: ProposalEvent) -> Optional[FollowUpExecution]:
        """Hook for the proposal-sent path: default sequence only, conditions checked, never raises conflicts."""
        proposal = self.proposals.get(event.proposal_id)
        if not proposal or proposal.status not in TRIGGER_STATUSES:
            return None

        seq = self.store.get_default_sequence(event.organization_id)
        if not seq:
            logger.info("No default follow-up sequence found for organization %s", event.organization_id)
            return None

        if not matches_trigger_conditions(proposal, seq):
            logger.info("Proposal %s doesn't match trigger conditions of sequence %s", event.proposal_id, seq.id)
            return None

        try:
            return self.trigger(event, seq.id)
        except AlreadyActive:
            logger.info("Follow-up already active for proposal %s", event.proposal_id)
            return None
