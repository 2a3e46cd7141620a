"""
Shared pytest fixtures for the follow-up engine test suite.
"""

import itertools
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session

from proposalai.crud import FollowUpStore
from proposalai.database import create_db_engine, init_db
from proposalai.engine import FollowUpEngine
from proposalai.mailer import DispatchResult, MessageDispatcher
from proposalai.models import Client, ClientStatus, Proposal, ProposalStatus
from proposalai.proposals import SQLProposalReader

DAY0 = datetime(2025, 3, 3, 9, 0, 0)
ORG = 1
OWNER = 7


class FakeClock:
    def __init__(self, start: datetime = DAY0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set_day(self, day: int) -> datetime:
        self.now = DAY0 + timedelta(days=day)
        return self.now


class RecordingDispatcher(MessageDispatcher):
    """Collects sent messages; addresses in `failing` get a DispatchFailure."""

    def __init__(self):
        self.sent = []
        self.failing = set()
        self._ids = itertools.count(1)

    def send(self, to_email, subject, body):
        if to_email in self.failing:
            return DispatchResult.failure("550 mailbox unavailable")
        self.sent.append({"to": to_email, "subject": subject, "body": body})
        return DispatchResult(ok=True, message_id=f"<msg-{next(self._ids)}@test>")


def day(n: int) -> datetime:
    return DAY0 + timedelta(days=n)


@pytest.fixture
def db():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def store(db):
    return FollowUpStore(db)


@pytest.fixture
def followups(db, store, clock, dispatcher):
    return FollowUpEngine(
        store=store,
        proposals=SQLProposalReader(db),
        dispatcher=dispatcher,
        clock=clock,
        claim_timeout_minutes=15,
        max_workers=1,
        batch_size=100,
        app_url="https://app.test",
    )


@pytest.fixture
def make_proposal(db):
    def _make(**overrides):
        client_fields = {
            "organization_id": ORG,
            "name": "Jane Doe",
            "email": "jane@acme.test",
            "company": "Acme Corp",
            "status": ClientStatus.PROSPECT,
        }
        client_fields.update(overrides.pop("client", {}))
        fields = {
            "organization_id": ORG,
            "user_id": OWNER,
            "title": "Website Redesign",
            "status": ProposalStatus.SENT,
            "total_value": 12000.0,
            "public_id": "pub123",
            "sender_name": "Sam Seller",
            "sent_at": DAY0,
        }
        fields.update(overrides)
        with Session(db, expire_on_commit=False) as session:
            if fields.get("client_id", "unset") == "unset":
                client = Client(**client_fields)
                session.add(client)
                session.flush()
                fields["client_id"] = client.id
            proposal = Proposal(**fields)
            session.add(proposal)
            session.commit()
            return proposal
    return _make


@pytest.fixture
def update_proposal(db):
    def _update(proposal_id, **changes):
        with Session(db) as session:
            proposal = session.get(Proposal, proposal_id)
            for k, v in changes.items():
                setattr(proposal, k, v)
            session.add(proposal)
            session.commit()
    return _update


def sequence_payload(**overrides):
    payload = {
        "organization_id": ORG,
        "owner_user_id": OWNER,
        "name": "Standard follow-up",
        "is_default": True,
        "steps": [
            {"delay_days": 3, "subject": "About {{ proposal_title }}",
             "body": "<p>Hi {{ client_name }} at {{ company_name }}</p>"},
            {"delay_days": 5, "subject": "Still interested?",
             "body": "<p>{{ sender_name }} here, {{ days_since_sent }} days on.</p>"},
        ],
    }
    payload.update(overrides)
    return payload
