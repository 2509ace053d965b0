"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from signflow.models.domain import as_naive_utc
from signflow.models.enums import (
    EnvelopeStatus,
    InvitationTokenStatus,
    SignerStatus,
    SigningOrder,
)


# Envelope schemas
class SignerCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    full_name: Optional[str] = Field(None, max_length=255)
    order: int = Field(1, ge=1)
    is_external: Optional[bool] = None


class EnvelopeCreate(BaseModel):
    owner_email: str = Field(..., min_length=3, max_length=255)
    document_key: str = Field(..., min_length=1, max_length=512)
    title: Optional[str] = Field(None, max_length=255)
    signing_order: SigningOrder = SigningOrder.INVITEES_FIRST
    expires_at: Optional[datetime] = None
    signers: List[SignerCreate] = Field(..., min_length=1)

    @field_validator("expires_at")
    @classmethod
    def normalize_expires_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)


class SignerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    full_name: Optional[str]
    is_external: bool
    order: int
    status: SignerStatus
    decline_reason: Optional[str]
    signed_at: Optional[datetime]
    declined_at: Optional[datetime]


class EnvelopeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    owner_email: str
    title: Optional[str]
    document_key: str
    signing_order: SigningOrder
    status: EnvelopeStatus
    created_at: datetime
    updated_at: datetime
    sent_at: Optional[datetime]
    expires_at: Optional[datetime]
    completed_at: Optional[datetime]
    signers: List[SignerResponse]


# Post-action outcome, returned next to every state-changing result
class OutcomeResponse(BaseModel):
    status_refreshed: bool
    audit_recorded: bool
    event_published: bool
    errors: List[str]


class ActionResponse(BaseModel):
    envelope: EnvelopeResponse
    outcome: OutcomeResponse


# Invitation schemas
class InviteRequest(BaseModel):
    signer_ids: Optional[List[str]] = None


class InvitationIssued(BaseModel):
    signer_id: str
    email: str
    secret: str
    expires_at: datetime


class InviteResponse(BaseModel):
    envelope: EnvelopeResponse
    invitations: List[InvitationIssued]
    outcome: OutcomeResponse


class RemindResponse(BaseModel):
    envelope: EnvelopeResponse
    reminded: List[str]
    reissued: List[InvitationIssued]
    skipped: Dict[str, str]
    outcome: OutcomeResponse


class InvitationResponse(BaseModel):
    envelope_id: str
    envelope_title: Optional[str]
    envelope_status: EnvelopeStatus
    signer_id: str
    signer_email: str
    token_status: InvitationTokenStatus
    expires_at: datetime
    can_sign_now: bool


# Signing schemas
class SignRequest(BaseModel):
    secret: Optional[str] = None
    consent_given: bool = False
    consent_text: Optional[str] = Field(None, max_length=10_000)
    document_hash: Optional[str] = Field(None, max_length=128)
    started_at: Optional[datetime] = None

    @field_validator("started_at")
    @classmethod
    def normalize_started_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)


class SignatureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    signer_id: str
    document_hash: str
    signature_hash: str
    algorithm: str
    key_id: str
    signed_at: datetime


class SignResponse(BaseModel):
    envelope: EnvelopeResponse
    signature: SignatureResponse
    outcome: OutcomeResponse


class DeclineRequest(BaseModel):
    secret: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=500)


class RevokeRequest(BaseModel):
    reason: str = Field("Revoked by owner", min_length=1, max_length=500)


class FinalizeResponse(BaseModel):
    envelope: EnvelopeResponse
    signatures: List[SignatureResponse]
    retention_until: datetime
    completion_key: str
    outcome: OutcomeResponse


# Audit / maintenance
class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    entity_type: str
    entity_id: str
    signer_id: Optional[str]
    user_id: Optional[str]
    ip_address: Optional[str]
    created_at: datetime
    payload_json: Optional[Dict[str, Any]]


class ExpireResponse(BaseModel):
    expired: List[str]
