# proposalai/escalation.py

import logging
from datetime import datetime, timedelta
from typing import Callable
from uuid import uuid4

from proposalai.config import settings
from proposalai.crud import FollowUpStore
from proposalai.errors import ClaimLost, StoreUnavailable
from proposalai.executor import template_context
from proposalai.mailer import MessageDispatcher, render_template
from proposalai.models import DeliveryStatus, ExecutionLogEntry, FollowUpExecution, FollowUpSequence, LogKind
from proposalai.proposals import ProposalReader
from proposalai.utils import whole_days_between

logger = logging.getLogger(__name__)

DEFAULT_ESCALATION_MESSAGE = "No response received despite follow-up attempts."

ESCALATION_SUBJECT = "Follow-up Escalation: {{ proposal_title }}"
ESCALATION_BODY = """\
<h3>Follow-up Escalation Required</h3>
<p>The follow-up sequence for <strong>{{ proposal_title }}</strong> sent to <strong>{{ client_name }}</strong> requires your attention.</p>
<p><strong>Days since sent:</strong> {{ days_since_sent }}</p>
<p><strong>Current status:</strong> {{ proposal_status }}</p>
<p><strong>Message:</strong> {{ message }}</p>
<p><a href="{{ app_url }}/proposals/{{ proposal_id }}">View Proposal</a></p>
"""


class EscalationMonitor:
    """
    Advisory side channel: notifies a sequence's escalation targets once an
    ACTIVE execution has gone `after_days` without a step being executed.
    Never changes the execution's status, step or next-time; an ESCALATION
    entry in the execution log marks the notice as sent.
    """

    def __init__(
        self,
        store: FollowUpStore,
        proposals: ProposalReader,
        dispatcher: MessageDispatcher,
        clock: Callable[[], datetime] = datetime.utcnow,
        claim_timeout_minutes: int = None,
        app_url: str = None,
    ):
        self.store = store
        self.proposals = proposals
        self.dispatcher = dispatcher
        self.clock = clock
        self.claim_timeout = timedelta(
            minutes=settings.CLAIM_TIMEOUT_MINUTES if claim_timeout_minutes is None else claim_timeout_minutes
        )
        self.app_url = (app_url or settings.APP_URL).rstrip("/")

    def days_since_last_action(self, execution: FollowUpExecution, now: datetime) -> int:
        last = self.store.last_step_at(execution.id) or execution.created_at
        return whole_days_between(last, now)

    def run_pass(self, now: datetime = None) -> int:
        now = now or self.clock()
        escalated = 0
        try:
            candidates = self.store.escalation_candidates()
        except StoreUnavailable as e:
            logger.error("Store unavailable, skipping escalation pass: %s", e)
            return escalated

        for execution, sequence in candidates:
            try:
                if self.escalate(execution, sequence, now):
                    escalated += 1
            except StoreUnavailable as e:
                logger.error("Store unavailable, aborting escalation pass: %s", e)
                break
            except Exception:
                logger.exception("Error checking escalation for execution %s", execution.id)
        return escalated

    def escalate(self, execution: FollowUpExecution, sequence: FollowUpSequence, now: datetime) -> bool:
        if not sequence.escalation_enabled or not sequence.escalation_to:
            return False
        if self.store.has_escalated(execution.id):
            return False
        if self.days_since_last_action(execution, now) < sequence.escalation_after_days:
            return False

        token = uuid4().hex
        if not self.store.claim(execution, token, now, now - self.claim_timeout):
            logger.debug("Execution %s busy, escalation deferred", execution.id)
            return False
        # a concurrent monitor may have escalated between our check and the claim
        if self.store.has_escalated(execution.id):
            self.store.release_claim(execution.id, token)
            return False

        try:
            entries = self._notify(execution, sequence, now)
        except StoreUnavailable:
            raise
        except Exception:
            self.store.release_claim(execution.id, token)
            raise
        try:
            self.store.commit_escalation(execution.id, token, entries, now)
        except ClaimLost:
            logger.warning("Execution %s lost its claim before escalation was recorded", execution.id)
            return False
        logger.info("Escalation email sent for proposal %s", execution.proposal_id)
        return True

    def _notify(self, execution: FollowUpExecution, sequence: FollowUpSequence, now: datetime) -> list[ExecutionLogEntry]:
        proposal = self.proposals.get(execution.proposal_id)
        ctx = {
            "proposal_title": f"proposal {execution.proposal_id}",
            "client_name": "the client",
            "days_since_sent": 0,
            "proposal_status": "unknown",
        }
        if proposal:
            ctx.update(template_context(proposal, now, self.app_url))
            ctx["proposal_status"] = proposal.status.value
        ctx.update(
            message=sequence.escalation_message or DEFAULT_ESCALATION_MESSAGE,
            app_url=self.app_url,
            proposal_id=execution.proposal_id,
        )
        subject = render_template(ESCALATION_SUBJECT, ctx)
        body = render_template(ESCALATION_BODY, ctx, autoescape=True)

        entries = []
        for recipient in sequence.escalation_to:
            try:
                result = self.dispatcher.send(recipient, subject, body)
                ok, message_id, error = result.ok, result.message_id, (
                    None if result.ok else f"{result.error_kind}: {result.error}"
                )
            except Exception as e:
                logger.exception("Dispatcher raised while escalating to %s", recipient)
                ok, message_id, error = False, None, f"DispatchFailure: {e}"
            entries.append(ExecutionLogEntry(
                execution_id=execution.id,
                kind=LogKind.ESCALATION,
                step_number=execution.current_step,
                executed_at=now,
                dispatched=ok,
                message_id=message_id,
                recipient=recipient,
                subject=subject,
                delivery_status=DeliveryStatus.SENT if ok else DeliveryStatus.FAILED,
                error=error,
            ))
        return entries
