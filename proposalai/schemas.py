### proposalai/schemas.py
# Pydantic input & value models passed between the engine's components

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from proposalai.models import (
    ALL_STOP_CONDITIONS,
    ClientStatus,
    ExecutionStatus,
    ProposalStatus,
    StopCondition,
    StoppedReason,
)
from proposalai.utils import validate_email

TRIGGER_STATUSES = {ProposalStatus.SENT, ProposalStatus.VIEWED}


# --- Sequence definition input ---
class TriggerConditions(BaseModel):
    days_after_sent: int = Field(default=3, ge=0)
    proposal_statuses: List[ProposalStatus] = Field(
        default_factory=lambda: [ProposalStatus.SENT, ProposalStatus.VIEWED]
    )
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    client_type: Optional[ClientStatus] = None

    @field_validator("proposal_statuses")
    @classmethod
    def _only_sent_or_viewed(cls, v):
        bad = [s.value for s in v if s not in TRIGGER_STATUSES]
        if bad:
            raise ValueError(f"proposal_statuses may only contain SENT/VIEWED, got {bad}")
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def _range_ordered(self):
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError("min_value must not exceed max_value")
        return self


class EscalationSettings(BaseModel):
    enabled: bool = False
    after_days: int = Field(default=7, ge=0)
    escalate_to: List[str] = Field(default_factory=list)
    message: Optional[str] = None

    @field_validator("escalate_to")
    @classmethod
    def _valid_recipients(cls, v):
        bad = [e for e in v if not validate_email(e)]
        if bad:
            raise ValueError(f"invalid escalation recipient(s): {bad}")
        return v


class StepCreate(BaseModel):
    step_number: Optional[int] = None
    name: Optional[str] = None
    delay_days: int = Field(ge=0)
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)
    stop_conditions: List[StopCondition] = Field(
        default_factory=lambda: [StopCondition(c) for c in ALL_STOP_CONDITIONS]
    )


class SequenceCreate(BaseModel):
    organization_id: int
    owner_user_id: int
    name: str = Field(min_length=1)
    description: Optional[str] = None
    trigger_conditions: TriggerConditions = Field(default_factory=TriggerConditions)
    steps: List[StepCreate]
    escalation: EscalationSettings = Field(default_factory=EscalationSettings)
    is_active: bool = True
    is_default: bool = False

    @field_validator("steps")
    @classmethod
    def _contiguous_steps(cls, steps):
        if not steps:
            raise ValueError("a sequence needs at least one step")
        given = [s.step_number for s in steps]
        if any(n is not None for n in given):
            if given != list(range(1, len(steps) + 1)):
                raise ValueError(
                    f"step numbers must run 1..{len(steps)} in order, got {given}"
                )
        for position, step in enumerate(steps, 1):
            step.step_number = position
        return steps


# --- Trigger input ---
class ProposalEvent(BaseModel):
    proposal_id: int
    organization_id: int
    new_status: ProposalStatus = ProposalStatus.SENT
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# --- Proposal collaborator output ---
class ProposalSnapshot(BaseModel):
    id: int
    organization_id: int
    title: str
    status: ProposalStatus
    total_value: Optional[float] = None
    public_id: Optional[str] = None
    sender_name: Optional[str] = None
    sent_at: Optional[datetime] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_company: Optional[str] = None
    client_status: Optional[ClientStatus] = None
    client_responded_at: Optional[datetime] = None
    follow_up_stopped: bool = False


# --- Read model ---
class ExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    proposal_id: int
    sequence_id: int
    organization_id: int
    status: ExecutionStatus
    current_step: int
    stopped_reason: Optional[StoppedReason] = None
    next_execution_at: Optional[datetime] = None
    created_at: datetime


class PassReport(BaseModel):
    started_at: datetime
    due: int = 0
    processed: int = 0
    advanced: int = 0
    completed: int = 0
    stopped: int = 0
    skipped: int = 0
    failed_dispatches: int = 0
    escalated: int = 0
    aborted: bool = False

    def summary(self) -> str:
        if self.aborted:
            return f"aborted after {self.processed} of {self.due} due"
        return (
            f"processed {self.processed} of {self.due} due "
            f"(advanced={self.advanced}, completed={self.completed}, stopped={self.stopped}, "
            f"skipped={self.skipped}, failed_dispatches={self.failed_dispatches})"
        )
