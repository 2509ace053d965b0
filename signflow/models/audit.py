"""
Audit event model.

Provides the immutable, append-only trail of every state-changing action on an
envelope. Rows are never edited or deleted by the engine.
"""
from sqlalchemy import Column, String, Integer, DateTime, JSON

from signflow.database import Base
from signflow.models.domain import utcnow


class AuditEvent(Base):
    """
    Immutable audit event for reconstructing what happened to an envelope.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    """
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)  # e.g., "signer_signed"
    entity_type = Column(String, nullable=False)  # e.g., "Envelope", "Signer", "InvitationToken"
    entity_id = Column(String, nullable=False, index=True)
    envelope_id = Column(String(32), nullable=True, index=True)
    signer_id = Column(String(32), nullable=True)
    user_id = Column(String, nullable=True)  # Nullable for system events

    # Network context for legal weight
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    country = Column(String(8), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    payload_json = Column(JSON, nullable=True)  # Minimal contextual data


class AuditEventType:
    """Enumeration of audit event types."""
    # Envelope lifecycle
    ENVELOPE_CREATED = "envelope_created"
    ENVELOPE_SENT = "envelope_sent"
    ENVELOPE_STATUS_CHANGED = "envelope_status_changed"
    ENVELOPE_COMPLETED = "envelope_completed"
    ENVELOPE_DECLINED = "envelope_declined"
    ENVELOPE_EXPIRED = "envelope_expired"
    ENVELOPE_RESTARTED = "envelope_restarted"
    ENVELOPE_FINALIZED = "envelope_finalized"
    ENVELOPE_DELETED = "envelope_deleted"

    # Signer actions
    SIGNER_INVITED = "signer_invited"
    SIGNER_REMINDED = "signer_reminded"
    SIGNER_SIGNED = "signer_signed"
    SIGNER_DECLINED = "signer_declined"

    # Token lifecycle
    TOKEN_USED = "token_used"
    TOKEN_REVOKED = "token_revoked"
