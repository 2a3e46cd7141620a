# scripts/seed_db.py
#
# Seed a demo organization: a default follow-up sequence plus N fake clients
# with sent proposals, each auto-triggered into the sequence.
#
#   python3 -m scripts.seed_db --clients 10

import argparse
import uuid
from datetime import datetime

from faker import Faker
from sqlmodel import Session

from proposalai.config import settings
from proposalai.database import create_db_engine
from proposalai.engine import FollowUpEngine
from proposalai.models import Client, ClientStatus, Proposal, ProposalStatus
from proposalai.schemas import ExecutionRead, ProposalEvent
from proposalai.utils import format_datetime

ORG_ID = 1
OWNER_ID = 1

DEFAULT_SEQUENCE = {
    "organization_id": ORG_ID,
    "owner_user_id": OWNER_ID,
    "name": "Standard proposal follow-up",
    "is_default": True,
    "steps": [
        {
            "name": "Gentle nudge",
            "delay_days": 3,
            "subject": "Following up on {{ proposal_title }}",
            "body": "<p>Hi {{ client_name }},</p><p>Just checking you received our proposal "
                    "for {{ company_name }}: <a href=\"{{ proposal_url }}\">view it here</a>.</p>"
                    "<p>{{ sender_name }}</p>",
        },
        {
            "name": "Value reminder",
            "delay_days": 4,
            "subject": "Any questions about {{ proposal_title }}?",
            "body": "<p>Hi {{ client_name }}, it's been {{ days_since_sent }} days. "
                    "Happy to walk you through the details.</p><p>{{ sender_name }}</p>",
        },
        {
            "name": "Last call",
            "delay_days": 7,
            "subject": "Closing the loop on {{ proposal_title }}",
            "body": "<p>Hi {{ client_name }}, should I keep this proposal open for you?</p>"
                    "<p>{{ sender_name }}</p>",
        },
    ],
    "escalation": {
        "enabled": True,
        "after_days": 10,
        "escalate_to": ["sales-lead@example.com"],
    },
}


def seed(n: int) -> None:
    db = create_db_engine(settings.DB_URL)
    engine = FollowUpEngine.from_settings(db)
    engine.create_sequence(DEFAULT_SEQUENCE)

    fake = Faker()
    now = datetime.utcnow()
    proposal_ids = []
    with Session(db) as session:
        for _ in range(n):
            client = Client(
                organization_id=ORG_ID,
                name=fake.name(),
                email=fake.unique.email(),
                company=fake.company(),
                status=ClientStatus.PROSPECT,
            )
            session.add(client)
            session.flush()
            proposal = Proposal(
                organization_id=ORG_ID,
                user_id=OWNER_ID,
                client_id=client.id,
                title=fake.catch_phrase(),
                status=ProposalStatus.SENT,
                total_value=round(fake.pyfloat(min_value=1000, max_value=50000), 2),
                public_id=uuid.uuid4().hex,
                sender_name=fake.name(),
                sent_at=now,
            )
            session.add(proposal)
            session.flush()
            proposal_ids.append(proposal.id)
        session.commit()

    started = 0
    for pid in proposal_ids:
        execution = engine.auto_trigger(ProposalEvent(proposal_id=pid, organization_id=ORG_ID, timestamp=now))
        if execution:
            started += 1
            row = ExecutionRead.model_validate(execution)
            print(f"  proposal {row.proposal_id}: step {row.current_step} due {format_datetime(row.next_execution_at)}")
    print(f"✅ Seeded {n} proposals, {started} follow-ups started.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--clients", type=int, default=5)
    seed(parser.parse_args().clients)
