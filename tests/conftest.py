"""Pytest configuration and shared fixtures."""
import os

# Keep the application engine off the working directory during tests
os.environ.setdefault("SIGNFLOW_DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from signflow.adapters import HmacKeyRingSigner, InMemoryDocumentStorage, RecordingEventSink
from signflow.config import Settings
from signflow.database import Base
from signflow.models.domain import Envelope, Signer, InvitationToken, Signature  # noqa: F401
from signflow.models.audit import AuditEvent  # noqa: F401
from signflow.models.enums import SigningOrder
from signflow.rules.workflow import SignerInput
from signflow.services.orchestrator import SigningOrchestrator

OWNER_ID = "user_owner"
OWNER_EMAIL = "owner@example.com"
DOCUMENT_KEY = "documents/lease-2025.pdf"
DOCUMENT = b"%PDF-1.7 residential lease agreement"
CONSENT = "I agree to sign this document electronically."
KEY_ID = "signflow-local-1"


class FakeClock:
    """Deterministic clock; tests move time explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 3, 9, 0, 0))


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", signing_key_id=KEY_ID, allowed_key_ids=[KEY_ID])


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def session_factory(tmp_path):
    """Sessions over one file database, for tests that need two independent connections."""
    engine = create_engine(f"sqlite:///{tmp_path / 'signflow-race.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def storage():
    storage = InMemoryDocumentStorage()
    storage.put(DOCUMENT_KEY, DOCUMENT, {"content-type": "application/pdf"})
    return storage


@pytest.fixture
def crypto():
    return HmacKeyRingSigner({KEY_ID: b"test-signing-secret"})


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def orchestrator(db_session, crypto, storage, events, settings, clock):
    return SigningOrchestrator(db_session, crypto, storage, events, settings, clock)


@pytest.fixture
def make_envelope(orchestrator):
    """
    Create a DRAFT envelope through the orchestrator.

    invitees are (email, order) pairs; the owner's record is added at
    owner_order unless include_owner is False.
    """
    def _make(
        invitees=(("alice@example.com", 1), ("bob@example.com", 2)),
        signing_order=SigningOrder.INVITEES_FIRST,
        include_owner=True,
        owner_order=99,
        expires_at=None,
    ):
        entries = [SignerInput(email=email, order=order) for email, order in invitees]
        if include_owner:
            entries.append(SignerInput(email=OWNER_EMAIL, full_name="Olivia Owner", order=owner_order))
        return orchestrator.create_envelope(
            owner_id=OWNER_ID,
            owner_email=OWNER_EMAIL,
            document_key=DOCUMENT_KEY,
            signers=entries,
            signing_order=signing_order,
            title="Residential lease",
            expires_at=expires_at,
        ).envelope

    return _make


@pytest.fixture
def sent_envelope(orchestrator, make_envelope):
    """
    An INVITEES_FIRST envelope already invited.

    Returns (envelope, {email: secret}).
    """
    envelope = make_envelope()
    result = orchestrator.invite(envelope.id, OWNER_ID)
    return result.envelope, {i.email: i.secret for i in result.invitations}


def signer_by_email(envelope, email):
    return next(s for s in envelope.signers if s.email == email)


@pytest.fixture
def sign_as(orchestrator):
    """Sign for one signer by email: invitees with their secret, the owner in session."""
    def _sign(envelope, email, secrets=None, **kwargs):
        signer = signer_by_email(envelope, email)
        if email == OWNER_EMAIL:
            kwargs.setdefault("actor_id", OWNER_ID)
        elif "secret" not in kwargs:
            kwargs["secret"] = secrets[email]
        kwargs.setdefault("consent_given", True)
        kwargs.setdefault("consent_text", CONSENT)
        return orchestrator.sign(envelope.id, signer.id, **kwargs)

    return _sign
