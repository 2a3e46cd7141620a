### proposalai/models.py
# This file defines the core SQLModel database models for follow-up sequencing.
# Models correspond to database tables for clients, proposals, sequences, steps,
# executions and the per-execution log.

from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import SQLModel, Field


class ProposalStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    VIEWED = "VIEWED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class ClientStatus(str, Enum):
    LEAD = "LEAD"
    PROSPECT = "PROSPECT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    LOST = "LOST"


class StopCondition(str, Enum):
    CLIENT_RESPONDED = "CLIENT_RESPONDED"
    PROPOSAL_ACCEPTED = "PROPOSAL_ACCEPTED"
    PROPOSAL_REJECTED = "PROPOSAL_REJECTED"
    MANUAL_STOP = "MANUAL_STOP"


class StoppedReason(str, Enum):
    CLIENT_RESPONDED = "CLIENT_RESPONDED"
    PROPOSAL_ACCEPTED = "PROPOSAL_ACCEPTED"
    PROPOSAL_REJECTED = "PROPOSAL_REJECTED"
    MANUAL_STOP = "MANUAL_STOP"
    SEQUENCE_COMPLETED = "SEQUENCE_COMPLETED"


class ExecutionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    STOPPED = "STOPPED"


class LogKind(str, Enum):
    STEP = "STEP"
    ESCALATION = "ESCALATION"


class DeliveryStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"


ALL_STOP_CONDITIONS = [c.value for c in StopCondition]
TERMINAL_STATUSES = (ExecutionStatus.COMPLETED, ExecutionStatus.STOPPED)
# Terminal outcomes counted as a win for the sequence's success rate
SUCCESS_REASONS = (StoppedReason.PROPOSAL_ACCEPTED, StoppedReason.CLIENT_RESPONDED)


# ───────────────────────── Proposal read model ─────────────────────────
class Client(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(index=True)
    name: str
    email: str
    company: Optional[str] = None
    status: ClientStatus = ClientStatus.LEAD
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Proposal(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(index=True)
    user_id: int
    client_id: Optional[int] = Field(default=None, foreign_key="client.id")
    # Embedded client info for proposals without a client record
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_company: Optional[str] = None
    title: str
    status: ProposalStatus = ProposalStatus.DRAFT
    total_value: Optional[float] = None
    public_id: Optional[str] = None
    sender_name: Optional[str] = None
    sent_at: Optional[datetime] = None
    client_responded_at: Optional[datetime] = None
    follow_up_stopped: bool = False  # manual stop flag set by the owner
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ─────────────────────────── Sequences ─────────────────────────────────
class FollowUpSequence(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(index=True)
    owner_user_id: int
    name: str
    description: Optional[str] = None

    # trigger conditions
    days_after_sent: int = 3
    proposal_statuses: List[str] = Field(
        default_factory=lambda: [ProposalStatus.SENT.value, ProposalStatus.VIEWED.value],
        sa_column=Column(JSON),
    )
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    client_type: Optional[ClientStatus] = None

    # escalation
    escalation_enabled: bool = False
    escalation_after_days: int = 7
    escalation_to: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    escalation_message: Optional[str] = None

    is_active: bool = True
    is_default: bool = Field(default=False, index=True)

    # derived counters, written by the engine only
    usage_count: int = 0
    success_rate: float = 0.0

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SequenceStep(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    sequence_id: int = Field(foreign_key="followupsequence.id", index=True)
    step_number: int  # 1-indexed, contiguous within a sequence
    name: Optional[str] = None
    delay_days: int  # days after the previous step (or after the trigger for step 1)
    subject: str
    body: str
    stop_conditions: List[str] = Field(default_factory=list, sa_column=Column(JSON))


# ─────────────────────────── Executions ────────────────────────────────
class FollowUpExecution(SQLModel, table=True):
    __table_args__ = (
        # at most one ACTIVE run per proposal
        Index(
            "uq_followupexecution_active_proposal",
            "proposal_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_followupexecution_due", "status", "next_execution_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    proposal_id: int = Field(index=True)
    sequence_id: int = Field(foreign_key="followupsequence.id")
    organization_id: int = Field(index=True)

    status: ExecutionStatus = ExecutionStatus.ACTIVE
    current_step: int = 1
    stopped_reason: Optional[StoppedReason] = None
    stopped_at: Optional[datetime] = None
    next_execution_at: Optional[datetime] = None

    # processing marker for the scheduler's optimistic claim
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    # step whose delivery was attempted under the current or an earlier claim
    dispatching_step: Optional[int] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ExecutionLogEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: int = Field(foreign_key="followupexecution.id", index=True)
    kind: LogKind = LogKind.STEP
    step_number: int
    executed_at: datetime = Field(default_factory=datetime.utcnow)
    dispatched: bool = False
    message_id: Optional[str] = None
    recipient: Optional[str] = None
    subject: Optional[str] = None
    delivery_status: DeliveryStatus = DeliveryStatus.SENT
    error: Optional[str] = None
