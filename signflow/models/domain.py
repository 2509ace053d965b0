"""Domain models - envelopes, their signers, invitation tokens and signature evidence."""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, Integer, DateTime, Boolean, ForeignKey, Index, Enum as SQLEnum, text
from sqlalchemy.orm import relationship

from signflow.database import Base
from signflow.models.enums import (
    EnvelopeStatus,
    SigningOrder,
    SignerStatus,
    InvitationTokenStatus,
)


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an offset-aware datetime to naive UTC; naive values are taken as UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class Envelope(Base):
    """
    One document-signing transaction.

    Invariants enforced here:
    - Status is always one of the seven envelope statuses
    - Created in DRAFT (handled in the orchestrator)
    - completed_at is set iff status is COMPLETED
    """
    __tablename__ = "envelopes"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String, nullable=False, index=True)
    owner_email = Column(String(255), nullable=False)
    title = Column(String(255), nullable=True)
    document_key = Column(String(512), nullable=False)
    signing_order = Column(SQLEnum(SigningOrder), nullable=False, default=SigningOrder.INVITEES_FIRST)
    status = Column(SQLEnum(EnvelopeStatus), nullable=False, default=EnvelopeStatus.DRAFT)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    signers = relationship(
        "Signer",
        back_populates="envelope",
        cascade="all, delete-orphan",
        order_by=lambda: [Signer.order, Signer.created_at, Signer.id],
    )


class Signer(Base):
    """
    A participant bound to exactly one envelope.

    Invariants:
    - signed_at is present iff status is SIGNED
    - declined_at and decline_reason are present iff status is DECLINED
    """
    __tablename__ = "signers"

    id = Column(String(32), primary_key=True, default=new_id)
    envelope_id = Column(String(32), ForeignKey("envelopes.id"), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)
    is_external = Column(Boolean, nullable=False, default=True)
    order = Column(Integer, nullable=False, default=1)
    status = Column(SQLEnum(SignerStatus), nullable=False, default=SignerStatus.PENDING)

    decline_reason = Column(String(500), nullable=True)
    signed_at = Column(DateTime, nullable=True)
    declined_at = Column(DateTime, nullable=True)
    consent_reference = Column(String(512), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    envelope = relationship("Envelope", back_populates="signers")


class InvitationToken(Base):
    """
    A single-use, expiring access grant for one signer.

    Invariants:
    - Only the SHA-256 hash of the secret is stored
    - At most one ACTIVE token per signer
    - ACTIVE -> USED happens exactly once and never reverses
    - ACTIVE -> REVOKED is terminal
    """
    __tablename__ = "invitation_tokens"

    id = Column(String(32), primary_key=True, default=new_id)
    envelope_id = Column(String(32), ForeignKey("envelopes.id"), nullable=False, index=True)
    signer_id = Column(String(32), ForeignKey("signers.id"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    status = Column(SQLEnum(InvitationTokenStatus), nullable=False, default=InvitationTokenStatus.ACTIVE)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    last_sent_at = Column(DateTime, nullable=True)
    resend_count = Column(Integer, nullable=False, default=0)

    used_at = Column(DateTime, nullable=True)
    used_by = Column(String, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revoked_reason = Column(String(500), nullable=True)
    revoked_by = Column(String, nullable=True)
    created_by = Column(String, nullable=True)

    # Network provenance captured at send time
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    country = Column(String(8), nullable=True)

    __table_args__ = (
        Index(
            "uq_invitation_tokens_active_signer",
            "signer_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )


class Signature(Base):
    """
    Immutable evidence of a completed signing action.

    Invariants:
    - Created once, never updated or deleted
    """
    __tablename__ = "signatures"

    id = Column(String(32), primary_key=True, default=new_id)
    envelope_id = Column(String(32), ForeignKey("envelopes.id"), nullable=False, index=True)
    signer_id = Column(String(32), ForeignKey("signers.id"), nullable=False, index=True)

    document_hash = Column(String(128), nullable=False)
    signature_hash = Column(String(64), nullable=False)
    storage_key = Column(String(512), nullable=False)
    algorithm = Column(String(32), nullable=False)
    key_id = Column(String(255), nullable=False)

    # Certificate of the signing key, when the signer exposes one
    certificate_issuer = Column(String(255), nullable=True)
    certificate_subject = Column(String(255), nullable=True)
    certificate_valid_from = Column(DateTime, nullable=True)
    certificate_valid_to = Column(DateTime, nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    country = Column(String(8), nullable=True)

    signed_at = Column(DateTime, nullable=False, default=utcnow)
