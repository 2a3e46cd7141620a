# proposalai/errors.py

"""Exception taxonomy for the follow-up engine."""


class FollowUpError(Exception):
    """Base class for every error the engine raises."""


class ValidationError(FollowUpError):
    """A sequence definition is malformed and was not persisted."""

    def __init__(self, message: str, errors: list = None):
        super().__init__(message)
        self.errors = errors or []


class NoSequenceFound(FollowUpError):
    def __init__(self, organization_id: int, sequence_id: int = None):
        self.organization_id = organization_id
        self.sequence_id = sequence_id
        if sequence_id is not None:
            msg = f"No active follow-up sequence {sequence_id} in organization {organization_id}"
        else:
            msg = f"No default follow-up sequence for organization {organization_id}"
        super().__init__(msg)


class AlreadyActive(FollowUpError):
    """A follow-up is already running for the proposal (a conflict, not retryable)."""

    def __init__(self, proposal_id: int):
        self.proposal_id = proposal_id
        super().__init__(f"Follow-up sequence already active for proposal {proposal_id}")


class ClaimLost(FollowUpError):
    """Another scheduler pass claimed or advanced the record first."""

    def __init__(self, execution_id: int):
        self.execution_id = execution_id
        super().__init__(f"Claim lost for execution {execution_id}")


class InvalidTransition(FollowUpError):
    def __init__(self, execution_id: int, current: str, requested: str):
        self.execution_id = execution_id
        super().__init__(
            f"Execution {execution_id} cannot move from {current} to {requested}"
        )


class NotFound(FollowUpError):
    pass


class StoreUnavailable(FollowUpError):
    """The durable store failed; the current pass is aborted."""
