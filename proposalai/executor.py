# proposalai/executor.py

import logging
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import BaseModel

from proposalai.config import settings
from proposalai.crud import FollowUpStore
from proposalai.mailer import DISPATCH_FAILURE, DispatchResult, MessageDispatcher, render_template
from proposalai.models import (
    DeliveryStatus,
    ExecutionLogEntry,
    ExecutionStatus,
    FollowUpExecution,
    LogKind,
    ProposalStatus,
    SequenceStep,
    StopCondition,
    StoppedReason,
)
from proposalai.proposals import ProposalReader
from proposalai.schemas import ProposalSnapshot
from proposalai.utils import add_days, anonymize_email, whole_days_between

logger = logging.getLogger(__name__)

# first match wins when several stop conditions hold at once
STOP_PRECEDENCE = (
    StopCondition.MANUAL_STOP,
    StopCondition.PROPOSAL_ACCEPTED,
    StopCondition.PROPOSAL_REJECTED,
    StopCondition.CLIENT_RESPONDED,
)


class StepOutcome(BaseModel):
    execution_id: int
    status: ExecutionStatus
    current_step: int
    dispatched: Optional[bool] = None
    stopped_reason: Optional[StoppedReason] = None


def stop_condition_met(condition: StopCondition, proposal: ProposalSnapshot, execution: FollowUpExecution) -> bool:
    if condition == StopCondition.MANUAL_STOP:
        return proposal.follow_up_stopped
    if condition == StopCondition.PROPOSAL_ACCEPTED:
        return proposal.status == ProposalStatus.ACCEPTED
    if condition == StopCondition.PROPOSAL_REJECTED:
        return proposal.status == ProposalStatus.REJECTED
    if condition == StopCondition.CLIENT_RESPONDED:
        return proposal.client_responded_at is not None and proposal.client_responded_at > execution.created_at
    return False


def evaluate_stop_conditions(
    step: SequenceStep, proposal: ProposalSnapshot, execution: FollowUpExecution
) -> Optional[StoppedReason]:
    configured = set(step.stop_conditions or [])
    for condition in STOP_PRECEDENCE:
        if condition.value in configured and stop_condition_met(condition, proposal, execution):
            return StoppedReason(condition.value)
    return None


def template_context(proposal: ProposalSnapshot, now: datetime, app_url: str = None) -> dict:
    app_url = (app_url or settings.APP_URL).rstrip("/")
    return {
        "client_name": proposal.client_name or "there",
        "proposal_title": proposal.title,
        "company_name": proposal.client_company or "your company",
        "sender_name": proposal.sender_name or "Team",
        "proposal_url": f"{app_url}/public/proposals/{proposal.public_id}" if proposal.public_id else "",
        "days_since_sent": whole_days_between(proposal.sent_at, now) if proposal.sent_at else 0,
    }


class StepExecutor:
    """
    Runs the current step of one claimed execution and commits the result.

    The caller must hold the execution's claim token; every mutation of the
    pass (log entry plus status/step/next-time) is written in one commit
    guarded by that token.
    """

    def __init__(
        self,
        store: FollowUpStore,
        proposals: ProposalReader,
        dispatcher: MessageDispatcher,
        clock: Callable[[], datetime] = datetime.utcnow,
        app_url: str = None,
    ):
        self.store = store
        self.proposals = proposals
        self.dispatcher = dispatcher
        self.clock = clock
        self.app_url = app_url

    def execute(self, execution: FollowUpExecution, token: str, now: datetime = None) -> StepOutcome:
        now = now or self.clock()
        steps = {s.step_number: s for s in self.store.get_steps(execution.sequence_id)}
        total = len(steps)
        step = steps.get(execution.current_step)

        if step is None or execution.current_step > total:
            # sequence shrank underneath the run
            logger.warning(
                "Execution %s is past the end of sequence %s (step %s of %s), completing",
                execution.id, execution.sequence_id, execution.current_step, total,
            )
            return self._finish(execution, token, [], ExecutionStatus.COMPLETED,
                                StoppedReason.SEQUENCE_COMPLETED, now)

        proposal = self.proposals.get(execution.proposal_id)
        if proposal is None:
            logger.warning("Proposal %s for execution %s no longer exists, stopping",
                           execution.proposal_id, execution.id)
            return self._finish(execution, token, [], ExecutionStatus.STOPPED,
                                StoppedReason.MANUAL_STOP, now)

        reason = evaluate_stop_conditions(step, proposal, execution)
        if reason:
            logger.info("Follow-up sequence stopped for proposal %s: %s", execution.proposal_id, reason.value)
            return self._finish(execution, token, [], ExecutionStatus.STOPPED, reason, now)

        ctx = template_context(proposal, now, self.app_url)
        subject = render_template(step.subject, ctx)
        body = render_template(step.body, ctx)
        if self.store.begin_dispatch(execution.id, token, step.step_number):
            result = self._dispatch(proposal.client_email, subject, body)
        else:
            # an earlier pass sent (or tried to send) this step but never committed
            logger.warning("Step %s of execution %s was already attempted, not sending again",
                           step.step_number, execution.id)
            result = DispatchResult.failure("delivery outcome unknown from an earlier attempt")

        entry = ExecutionLogEntry(
            execution_id=execution.id,
            kind=LogKind.STEP,
            step_number=step.step_number,
            executed_at=now,
            dispatched=result.ok,
            message_id=result.message_id,
            recipient=proposal.client_email,
            subject=subject,
            delivery_status=DeliveryStatus.SENT if result.ok else DeliveryStatus.FAILED,
            error=None if result.ok else f"{result.error_kind}: {result.error}",
        )
        if result.ok:
            logger.info("Follow-up step %s sent to %s for proposal %s",
                        step.step_number, anonymize_email(proposal.client_email), execution.proposal_id)
        else:
            logger.warning("Follow-up step %s for proposal %s not delivered: %s",
                           step.step_number, execution.proposal_id, entry.error)

        if execution.current_step >= total:
            outcome = self._finish(execution, token, [entry], ExecutionStatus.COMPLETED,
                                   StoppedReason.SEQUENCE_COMPLETED, now)
        else:
            next_number = execution.current_step + 1
            next_at = add_days(now, steps[next_number].delay_days)
            self.store.commit_step(
                execution.id, token, [entry],
                status=ExecutionStatus.ACTIVE,
                current_step=next_number,
                next_execution_at=next_at,
                stopped_reason=None,
                now=now,
            )
            outcome = StepOutcome(execution_id=execution.id, status=ExecutionStatus.ACTIVE,
                                  current_step=next_number)
        outcome.dispatched = result.ok
        return outcome

    def _dispatch(self, recipient: Optional[str], subject: str, body: str) -> DispatchResult:
        if not recipient:
            return DispatchResult.failure("no recipient email")
        try:
            return self.dispatcher.send(recipient, subject, body)
        except Exception as e:
            # a misbehaving dispatcher counts as a failed delivery, not a crashed step
            logger.exception("Dispatcher raised while sending to %s", anonymize_email(recipient))
            return DispatchResult.failure(str(e) or e.__class__.__name__, DISPATCH_FAILURE)

    def _finish(
        self,
        execution: FollowUpExecution,
        token: str,
        entries: List[ExecutionLogEntry],
        status: ExecutionStatus,
        reason: StoppedReason,
        now: datetime,
    ) -> StepOutcome:
        self.store.commit_step(
            execution.id, token, entries,
            status=status,
            current_step=execution.current_step,
            next_execution_at=None,
            stopped_reason=reason,
            now=now,
        )
        return StepOutcome(execution_id=execution.id, status=status,
                           current_step=execution.current_step, stopped_reason=reason)
