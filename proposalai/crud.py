"""Durable store for follow-up sequences and executions – SQLAlchemy 2.x compatible."""

from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from proposalai.errors import AlreadyActive, ClaimLost, InvalidTransition, NotFound, StoreUnavailable
from proposalai.models import (
    SUCCESS_REASONS,
    TERMINAL_STATUSES,
    ExecutionLogEntry,
    ExecutionStatus,
    FollowUpExecution,
    FollowUpSequence,
    LogKind,
    SequenceStep,
    StoppedReason,
)
from proposalai.schemas import SequenceCreate


class FollowUpStore:
    """
    All reads and writes of sequences and executions go through here.

    Every mutation that must not be observed half-done (default switching,
    execution creation with its usage counter, a step's log append together
    with its state change) runs in a single transaction. Concurrency between
    scheduler passes is handled with conditional UPDATEs whose affected row
    count tells the caller whether it won.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    # ─────────────────────── Sequence & Steps ────────────────────────
    def create_sequence(self, data: SequenceCreate, now: datetime) -> Tuple[FollowUpSequence, List[SequenceStep]]:
        tc, esc = data.trigger_conditions, data.escalation
        seq = FollowUpSequence(
            organization_id=data.organization_id,
            owner_user_id=data.owner_user_id,
            name=data.name,
            description=data.description,
            days_after_sent=tc.days_after_sent,
            proposal_statuses=[s.value for s in tc.proposal_statuses],
            min_value=tc.min_value,
            max_value=tc.max_value,
            client_type=tc.client_type,
            escalation_enabled=esc.enabled,
            escalation_after_days=esc.after_days,
            escalation_to=list(esc.escalate_to),
            escalation_message=esc.message,
            is_active=data.is_active,
            is_default=data.is_default,
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            if data.is_default:
                self._unset_defaults(session, data.organization_id, now)
            session.add(seq)
            session.flush()
            steps = [
                SequenceStep(
                    sequence_id=seq.id,
                    step_number=s.step_number,
                    name=s.name,
                    delay_days=s.delay_days,
                    subject=s.subject,
                    body=s.body,
                    stop_conditions=[c.value for c in s.stop_conditions],
                )
                for s in data.steps
            ]
            session.add_all(steps)
            session.commit()
            return seq, steps

    def _unset_defaults(self, session: Session, organization_id: int, now: datetime) -> None:
        session.exec(
            update(FollowUpSequence)
            .where(
                FollowUpSequence.organization_id == organization_id,
                FollowUpSequence.is_default == True,  # noqa: E712
            )
            .values(is_default=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    def set_default(self, sequence_id: int, now: datetime) -> FollowUpSequence:
        with self._session() as session:
            seq = session.get(FollowUpSequence, sequence_id)
            if not seq:
                raise NotFound(f"Sequence {sequence_id} not found")
            self._unset_defaults(session, seq.organization_id, now)
            seq.is_default = True
            seq.updated_at = now
            session.add(seq)
            session.commit()
            return seq

    def set_sequence_active(self, sequence_id: int, active: bool, now: datetime) -> FollowUpSequence:
        with self._session() as session:
            seq = session.get(FollowUpSequence, sequence_id)
            if not seq:
                raise NotFound(f"Sequence {sequence_id} not found")
            seq.is_active = active
            seq.updated_at = now
            session.add(seq)
            session.commit()
            return seq

    def get_sequence(self, sequence_id: int) -> Optional[FollowUpSequence]:
        with self._session() as session:
            return session.get(FollowUpSequence, sequence_id)

    def get_active_sequence(self, organization_id: int, sequence_id: int) -> Optional[FollowUpSequence]:
        with self._session() as session:
            return session.exec(
                select(FollowUpSequence).where(
                    FollowUpSequence.id == sequence_id,
                    FollowUpSequence.organization_id == organization_id,
                    FollowUpSequence.is_active == True,  # noqa: E712
                )
            ).first()

    def get_default_sequence(self, organization_id: int) -> Optional[FollowUpSequence]:
        with self._session() as session:
            return session.exec(
                select(FollowUpSequence).where(
                    FollowUpSequence.organization_id == organization_id,
                    FollowUpSequence.is_default == True,  # noqa: E712
                    FollowUpSequence.is_active == True,  # noqa: E712
                )
            ).first()

    def list_sequences(self, organization_id: int) -> list[FollowUpSequence]:
        with self._session() as session:
            return session.exec(
                select(FollowUpSequence)
                .where(FollowUpSequence.organization_id == organization_id)
                .order_by(FollowUpSequence.is_default.desc(), FollowUpSequence.created_at.desc())
            ).all()

    def get_steps(self, sequence_id: int) -> list[SequenceStep]:
        with self._session() as session:
            return session.exec(
                select(SequenceStep)
                .where(SequenceStep.sequence_id == sequence_id)
                .order_by(SequenceStep.step_number)
            ).all()

    # ─────────────────────── Executions ──────────────────────────────
    def find_active_execution(self, proposal_id: int) -> Optional[FollowUpExecution]:
        with self._session() as session:
            return session.exec(
                select(FollowUpExecution).where(
                    FollowUpExecution.proposal_id == proposal_id,
                    FollowUpExecution.status == ExecutionStatus.ACTIVE,
                )
            ).first()

    def create_execution(self, execution: FollowUpExecution) -> FollowUpExecution:
        """Insert an ACTIVE execution and bump its sequence's usage count together."""
        with self._session() as session:
            existing = session.exec(
                select(FollowUpExecution.id).where(
                    FollowUpExecution.proposal_id == execution.proposal_id,
                    FollowUpExecution.status == ExecutionStatus.ACTIVE,
                )
            ).first()
            if existing is not None:
                raise AlreadyActive(execution.proposal_id)
            try:
                session.add(execution)
                session.flush()
                session.exec(
                    update(FollowUpSequence)
                    .where(FollowUpSequence.id == execution.sequence_id)
                    .values(usage_count=FollowUpSequence.usage_count + 1)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            except IntegrityError:
                # lost the race against a concurrent trigger for the same proposal
                session.rollback()
                raise AlreadyActive(execution.proposal_id)
            return execution

    def get_execution(self, execution_id: int) -> Optional[FollowUpExecution]:
        with self._session() as session:
            return session.get(FollowUpExecution, execution_id)

    def list_active_executions(self, organization_id: int) -> list[FollowUpExecution]:
        with self._session() as session:
            return session.exec(
                select(FollowUpExecution)
                .where(
                    FollowUpExecution.organization_id == organization_id,
                    FollowUpExecution.status == ExecutionStatus.ACTIVE,
                )
                .order_by(FollowUpExecution.next_execution_at, FollowUpExecution.id)
            ).all()

    def get_log(self, execution_id: int) -> list[ExecutionLogEntry]:
        with self._session() as session:
            return session.exec(
                select(ExecutionLogEntry)
                .where(ExecutionLogEntry.execution_id == execution_id)
                .order_by(ExecutionLogEntry.id)
            ).all()

    def resolve_due(self, now: datetime, limit: int = None) -> list[FollowUpExecution]:
        """ACTIVE executions whose next action is due, oldest-due first."""
        q = (
            select(FollowUpExecution)
            .where(
                FollowUpExecution.status == ExecutionStatus.ACTIVE,
                FollowUpExecution.next_execution_at.is_not(None),
                FollowUpExecution.next_execution_at <= now,
            )
            .order_by(FollowUpExecution.next_execution_at, FollowUpExecution.id)
        )
        if limit:
            q = q.limit(limit)
        with self._session() as session:
            return session.exec(q).all()

    # ─────────────────────── Claims ──────────────────────────────────
    def claim(self, execution: FollowUpExecution, token: str, now: datetime, stale_before: datetime) -> bool:
        """
        Compare-and-swap on the state the caller last saw. Returns False when
        another pass advanced, stopped or still holds the record.
        """
        with self._session() as session:
            result = session.exec(
                update(FollowUpExecution)
                .where(
                    FollowUpExecution.id == execution.id,
                    FollowUpExecution.status == ExecutionStatus.ACTIVE,
                    FollowUpExecution.current_step == execution.current_step,
                    FollowUpExecution.next_execution_at == execution.next_execution_at,
                    or_(
                        FollowUpExecution.claim_token.is_(None),
                        FollowUpExecution.claimed_at < stale_before,
                    ),
                )
                .values(claim_token=token, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def release_claim(self, execution_id: int, token: str) -> None:
        with self._session() as session:
            session.exec(
                update(FollowUpExecution)
                .where(FollowUpExecution.id == execution_id, FollowUpExecution.claim_token == token)
                .values(claim_token=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def begin_dispatch(self, execution_id: int, token: str, step_number: int) -> bool:
        """
        Record that `step_number` is about to be sent, before sending it.

        Returns False when an earlier claim already attempted this step (its
        outcome was never committed), so the caller must not send again.
        Raises ClaimLost when the caller no longer holds the claim.
        """
        with self._session() as session:
            current = session.get(FollowUpExecution, execution_id)
            if not current or current.claim_token != token or current.status != ExecutionStatus.ACTIVE:
                raise ClaimLost(execution_id)
            if current.dispatching_step == step_number:
                return False
            result = session.exec(
                update(FollowUpExecution)
                .where(
                    FollowUpExecution.id == execution_id,
                    FollowUpExecution.claim_token == token,
                    FollowUpExecution.status == ExecutionStatus.ACTIVE,
                )
                .values(dispatching_step=step_number)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimLost(execution_id)
            session.commit()
            return True

    def commit_step(
        self,
        execution_id: int,
        token: str,
        entries: Iterable[ExecutionLogEntry],
        status: ExecutionStatus,
        current_step: int,
        next_execution_at: Optional[datetime],
        stopped_reason: Optional[StoppedReason],
        now: datetime,
    ) -> None:
        """Apply one executor pass: log append and state change in one transaction."""
        values = dict(
            status=status,
            current_step=current_step,
            next_execution_at=next_execution_at,
            stopped_reason=stopped_reason,
            stopped_at=now if status in TERMINAL_STATUSES else None,
            dispatching_step=None,
            claim_token=None,
            claimed_at=None,
            updated_at=now,
        )
        with self._session() as session:
            result = session.exec(
                update(FollowUpExecution)
                .where(
                    FollowUpExecution.id == execution_id,
                    FollowUpExecution.claim_token == token,
                    FollowUpExecution.status == ExecutionStatus.ACTIVE,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimLost(execution_id)
            session.add_all(list(entries))
            if status in TERMINAL_STATUSES:
                self._refresh_success_rate(session, execution_id, now)
            session.commit()

    def commit_escalation(self, execution_id: int, token: str, entries: Iterable[ExecutionLogEntry], now: datetime) -> None:
        """Append escalation entries and release the claim; lifecycle fields are untouched."""
        with self._session() as session:
            result = session.exec(
                update(FollowUpExecution)
                .where(FollowUpExecution.id == execution_id, FollowUpExecution.claim_token == token)
                .values(claim_token=None, claimed_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimLost(execution_id)
            session.add_all(list(entries))
            session.commit()

    def _refresh_success_rate(self, session: Session, execution_id: int, now: datetime) -> None:
        sequence_id = session.exec(
            select(FollowUpExecution.sequence_id).where(FollowUpExecution.id == execution_id)
        ).one()
        terminal = session.exec(
            select(func.count()).select_from(FollowUpExecution).where(
                FollowUpExecution.sequence_id == sequence_id,
                FollowUpExecution.status.in_(TERMINAL_STATUSES),
            )
        ).one()
        wins = session.exec(
            select(func.count()).select_from(FollowUpExecution).where(
                FollowUpExecution.sequence_id == sequence_id,
                FollowUpExecution.status.in_(TERMINAL_STATUSES),
                FollowUpExecution.stopped_reason.in_(SUCCESS_REASONS),
            )
        ).one()
        session.exec(
            update(FollowUpSequence)
            .where(FollowUpSequence.id == sequence_id)
            .values(success_rate=round(wins / terminal, 4) if terminal else 0.0, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    # ─────────────────────── Escalation queries ──────────────────────
    def escalation_candidates(self) -> list[Tuple[FollowUpExecution, FollowUpSequence]]:
        with self._session() as session:
            rows = session.exec(
                select(FollowUpExecution, FollowUpSequence)
                .join(FollowUpSequence, FollowUpSequence.id == FollowUpExecution.sequence_id)
                .where(
                    FollowUpExecution.status == ExecutionStatus.ACTIVE,
                    FollowUpSequence.escalation_enabled == True,  # noqa: E712
                )
                .order_by(FollowUpExecution.id)
            ).all()
            return [(ex, seq) for ex, seq in rows]

    def last_step_at(self, execution_id: int) -> Optional[datetime]:
        with self._session() as session:
            return session.exec(
                select(func.max(ExecutionLogEntry.executed_at)).where(
                    ExecutionLogEntry.execution_id == execution_id,
                    ExecutionLogEntry.kind == LogKind.STEP,
                )
            ).one()

    def has_escalated(self, execution_id: int) -> bool:
        with self._session() as session:
            return session.exec(
                select(ExecutionLogEntry.id).where(
                    ExecutionLogEntry.execution_id == execution_id,
                    ExecutionLogEntry.kind == LogKind.ESCALATION,
                )
            ).first() is not None

    # ─────────────────────── Operator transitions ────────────────────
    def transition(
        self,
        execution_id: int,
        allowed_from: Tuple[ExecutionStatus, ...],
        to: ExecutionStatus,
        now: datetime,
        **values,
    ) -> FollowUpExecution:
        """Out-of-band status change (pause/resume/stop) guarded by the current status."""
        with self._session() as session:
            try:
                result = session.exec(
                    update(FollowUpExecution)
                    .where(
                        FollowUpExecution.id == execution_id,
                        FollowUpExecution.status.in_(allowed_from),
                    )
                    .values(status=to, updated_at=now, **values)
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError:
                # resuming while a newer run of the same proposal is ACTIVE
                session.rollback()
                current = session.get(FollowUpExecution, execution_id)
                raise AlreadyActive(current.proposal_id)
            if result.rowcount != 1:
                session.rollback()
                current = session.get(FollowUpExecution, execution_id)
                if not current:
                    raise NotFound(f"Execution {execution_id} not found")
                raise InvalidTransition(execution_id, current.status.value, to.value)
            if to in TERMINAL_STATUSES:
                self._refresh_success_rate(session, execution_id, now)
            session.commit()
            return session.get(FollowUpExecution, execution_id)
