# proposalai/proposals.py

from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from proposalai.errors import StoreUnavailable
from proposalai.models import Client, Proposal
from proposalai.schemas import ProposalSnapshot


class ProposalReader:
    """Read side of the proposal/client collaborator."""

    def get(self, proposal_id: int) -> Optional[ProposalSnapshot]:
        raise NotImplementedError


class SQLProposalReader(ProposalReader):
    """Reads proposals and their client from the application's own tables."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, proposal_id: int) -> Optional[ProposalSnapshot]:
        try:
            with Session(self.engine) as session:
                proposal = session.get(Proposal, proposal_id)
                if not proposal:
                    return None
                client = session.get(Client, proposal.client_id) if proposal.client_id else None
                return to_snapshot(proposal, client)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"reading proposal {proposal_id}: {e}") from e


def to_snapshot(proposal: Proposal, client: Optional[Client] = None) -> ProposalSnapshot:
    # a linked client record wins over the embedded client info
    return ProposalSnapshot(
        id=proposal.id,
        organization_id=proposal.organization_id,
        title=proposal.title,
        status=proposal.status,
        total_value=proposal.total_value,
        public_id=proposal.public_id,
        sender_name=proposal.sender_name,
        sent_at=proposal.sent_at,
        client_name=(client.name if client else None) or proposal.client_name,
        client_email=(client.email if client else None) or proposal.client_email,
        client_company=(client.company if client else None) or proposal.client_company,
        client_status=client.status if client else None,
        client_responded_at=proposal.client_responded_at,
        follow_up_stopped=proposal.follow_up_stopped,
    )
