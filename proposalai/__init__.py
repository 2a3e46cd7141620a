"""ProposalAI follow-up sequencing engine."""

__version__ = "0.1.0"
