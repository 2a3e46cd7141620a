# proposalai/engine.py

"""
Follow-up engine facade.

Wires the store, the proposal reader and the message dispatcher into the
trigger evaluator, scheduler, step executor and escalation monitor, and
exposes the operations the rest of the application calls. Collaborators
are passed in explicitly; nothing is looked up from a global registry.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Optional, Union

import pydantic
from sqlalchemy.engine import Engine

from proposalai.config import settings
from proposalai.crud import FollowUpStore
from proposalai.database import create_db_engine, init_db
from proposalai.errors import ValidationError
from proposalai.escalation import EscalationMonitor
from proposalai.executor import StepExecutor
from proposalai.mailer import MessageDispatcher, SMTPDispatcher
from proposalai.models import (
    ExecutionLogEntry,
    ExecutionStatus,
    FollowUpExecution,
    FollowUpSequence,
    SequenceStep,
    StoppedReason,
)
from proposalai.proposals import ProposalReader, SQLProposalReader
from proposalai.scheduler import Scheduler
from proposalai.schemas import PassReport, ProposalEvent, SequenceCreate
from proposalai.trigger import TriggerEvaluator

logger = logging.getLogger(__name__)


class FollowUpEngine:
    def __init__(
        self,
        store: FollowUpStore,
        proposals: ProposalReader,
        dispatcher: MessageDispatcher,
        clock: Callable[[], datetime] = datetime.utcnow,
        claim_timeout_minutes: int = None,
        max_workers: int = None,
        batch_size: int = None,
        app_url: str = None,
    ):
        self.store = store
        self.clock = clock
        self.trigger_evaluator = TriggerEvaluator(store, proposals, clock)
        self.executor = StepExecutor(store, proposals, dispatcher, clock, app_url)
        self.scheduler = Scheduler(
            store, self.executor, clock,
            claim_timeout_minutes=claim_timeout_minutes,
            max_workers=max_workers,
            batch_size=batch_size,
        )
        self.escalation_monitor = EscalationMonitor(
            store, proposals, dispatcher, clock,
            claim_timeout_minutes=claim_timeout_minutes,
            app_url=app_url,
        )

    @classmethod
    def from_settings(cls, engine: Engine = None, dispatcher: MessageDispatcher = None) -> "FollowUpEngine":
        engine = engine or create_db_engine(settings.DB_URL)
        init_db(engine)
        return cls(
            store=FollowUpStore(engine),
            proposals=SQLProposalReader(engine),
            dispatcher=dispatcher or SMTPDispatcher(),
        )

    # ─────────────────────── Sequences ───────────────────────────────
    def create_sequence(self, data: Union[SequenceCreate, dict]) -> FollowUpSequence:
        """Validate and persist a sequence; ValidationError if malformed."""
        if not isinstance(data, SequenceCreate):
            try:
                data = SequenceCreate.model_validate(data)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid follow-up sequence: {e}", errors=e.errors()) from e
        seq, steps = self.store.create_sequence(data, self.clock())
        logger.info("Created follow-up sequence %s (%s steps) for organization %s%s",
                    seq.id, len(steps), seq.organization_id, ", default" if seq.is_default else "")
        return seq

    def set_default(self, sequence_id: int) -> FollowUpSequence:
        return self.store.set_default(sequence_id, self.clock())

    def set_sequence_active(self, sequence_id: int, active: bool) -> FollowUpSequence:
        return self.store.set_sequence_active(sequence_id, active, self.clock())

    def list_sequences(self, organization_id: int) -> list[FollowUpSequence]:
        return self.store.list_sequences(organization_id)

    def get_steps(self, sequence_id: int) -> list[SequenceStep]:
        return self.store.get_steps(sequence_id)

    # ─────────────────────── Triggering ──────────────────────────────
    def trigger(self, event: ProposalEvent, sequence_id: int = None) -> FollowUpExecution:
        return self.trigger_evaluator.trigger(event, sequence_id)

    def auto_trigger(self, event: ProposalEvent) -> Optional[FollowUpExecution]:
        return self.trigger_evaluator.auto_trigger(event)

    def list_active_executions(self, organization_id: int) -> list[FollowUpExecution]:
        return self.store.list_active_executions(organization_id)

    def get_execution(self, execution_id: int) -> Optional[FollowUpExecution]:
        return self.store.get_execution(execution_id)

    def get_execution_log(self, execution_id: int) -> list[ExecutionLogEntry]:
        return self.store.get_log(execution_id)

    # ─────────────────────── Scheduled path ──────────────────────────
    def process_due(self, now: datetime = None) -> PassReport:
        return self.scheduler.run_pass(now)

    def run_escalations(self, now: datetime = None) -> int:
        return self.escalation_monitor.run_pass(now)

    def tick(self, now: datetime = None) -> PassReport:
        """One scheduler pass followed by one escalation pass."""
        now = now or self.clock()
        report = self.process_due(now)
        if not report.aborted:
            report.escalated = self.run_escalations(now)
        return report

    def run_forever(self, interval_seconds: int = None, iterations: int = None) -> None:
        interval = settings.POLL_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        n = 0
        while iterations is None or n < iterations:
            report = self.tick()
            logger.info("Follow-up tick: %s, escalated=%s", report.summary(), report.escalated)
            n += 1
            if iterations is None or n < iterations:
                time.sleep(interval)

    # ─────────────────────── Operator transitions ────────────────────
    def pause(self, execution_id: int) -> FollowUpExecution:
        return self.store.transition(
            execution_id, (ExecutionStatus.ACTIVE,), ExecutionStatus.PAUSED, self.clock(),
            claim_token=None, claimed_at=None,
        )

    def resume(self, execution_id: int) -> FollowUpExecution:
        # a past next_execution_at is kept, so the record is due on the next pass
        return self.store.transition(
            execution_id, (ExecutionStatus.PAUSED,), ExecutionStatus.ACTIVE, self.clock(),
        )

    def stop(self, execution_id: int) -> FollowUpExecution:
        now = self.clock()
        return self.store.transition(
            execution_id, (ExecutionStatus.ACTIVE, ExecutionStatus.PAUSED), ExecutionStatus.STOPPED, now,
            stopped_reason=StoppedReason.MANUAL_STOP, stopped_at=now, next_execution_at=None,
            claim_token=None, claimed_at=None,
        )
