"""API routes for the envelope signing workflow."""
import ipaddress
from dataclasses import asdict
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request, Response, status
from sqlalchemy.orm import Session

from signflow.adapters import HmacKeyRingSigner, InMemoryDocumentStorage, LoggingEventSink
from signflow.config import Settings, get_settings
from signflow.database import get_db
from signflow.errors import SecurityViolation
from signflow.rules.workflow import SignerInput
from signflow.services.orchestrator import Invitation, PostActionOutcome, SigningOrchestrator
from signflow.services.ports import CryptoSigner, DocumentStorage, EventSink, NetworkContext
from signflow.api.schemas import (
    ActionResponse,
    AuditEventResponse,
    DeclineRequest,
    EnvelopeCreate,
    EnvelopeResponse,
    ExpireResponse,
    FinalizeResponse,
    InvitationIssued,
    InvitationResponse,
    InviteRequest,
    InviteResponse,
    OutcomeResponse,
    RemindResponse,
    RevokeRequest,
    SignatureResponse,
    SignRequest,
    SignResponse,
)

router = APIRouter()


# Collaborators. Deployments override these with app.dependency_overrides.
@lru_cache
def get_crypto() -> CryptoSigner:
    settings = get_settings()
    return HmacKeyRingSigner({settings.signing_key_id: settings.signing_secret.encode("utf-8")})


@lru_cache
def get_storage() -> DocumentStorage:
    return InMemoryDocumentStorage()


@lru_cache
def get_events() -> EventSink:
    return LoggingEventSink()


def get_orchestrator(
    db: Session = Depends(get_db),
    crypto: CryptoSigner = Depends(get_crypto),
    storage: DocumentStorage = Depends(get_storage),
    events: EventSink = Depends(get_events),
) -> SigningOrchestrator:
    return SigningOrchestrator(db, crypto, storage, events, get_settings())


def get_network(
    request: Request,
    user_agent: Optional[str] = Header(None),
    cf_ipcountry: Optional[str] = Header(None),
    x_country: Optional[str] = Header(None),
    x_forwarded_for: Optional[str] = Header(None),
) -> NetworkContext:
    """Caller provenance from the request. Hosts that are not IP addresses are dropped."""
    host = None
    if x_forwarded_for:
        host = x_forwarded_for.split(",")[0].strip()
    elif request.client:
        host = request.client.host
    try:
        ip = str(ipaddress.ip_address(host)) if host else None
    except ValueError:
        ip = None
    country = cf_ipcountry or x_country
    return NetworkContext(
        ip_address=ip,
        user_agent=user_agent,
        country=country.strip().upper() if country else None,
    )


def _outcome(outcome: PostActionOutcome) -> OutcomeResponse:
    return OutcomeResponse(**asdict(outcome))


def _issued(invitation: Invitation) -> InvitationIssued:
    return InvitationIssued(**asdict(invitation))


# Envelope endpoints
@router.post("/envelopes", response_model=ActionResponse, status_code=status.HTTP_201_CREATED)
def create_envelope(
    data: EnvelopeCreate,
    x_user_id: str = Header(...),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """Create a new envelope in DRAFT."""
    result = orchestrator.create_envelope(
        owner_id=x_user_id,
        owner_email=data.owner_email,
        document_key=data.document_key,
        signers=[SignerInput(s.email, s.full_name, s.order, s.is_external) for s in data.signers],
        signing_order=data.signing_order,
        title=data.title,
        expires_at=data.expires_at,
        network=network,
    )
    return ActionResponse(envelope=EnvelopeResponse.model_validate(result.envelope), outcome=_outcome(result.outcome))


@router.get("/envelopes/{envelope_id}", response_model=EnvelopeResponse)
def get_envelope(
    envelope_id: str,
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """Get an envelope. Its status is recomputed from the signers on every read."""
    return orchestrator.get_envelope(envelope_id, actor_id=x_user_id, actor_email=x_user_email, network=network)


@router.delete("/envelopes/{envelope_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_envelope(
    envelope_id: str,
    x_user_id: str = Header(...),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """Delete a DRAFT, EXPIRED or DECLINED envelope."""
    orchestrator.delete_envelope(envelope_id, x_user_id, network=network)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/envelopes/{envelope_id}/document")
def download_document(
    envelope_id: str,
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    content = orchestrator.download_document(envelope_id, actor_id=x_user_id, actor_email=x_user_email,
                                             network=network)
    return Response(content=content, media_type="application/octet-stream")


@router.post("/envelopes/{envelope_id}/invite", response_model=InviteResponse)
def invite(
    envelope_id: str,
    data: Optional[InviteRequest] = None,
    x_user_id: str = Header(...),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """
    Invite pending signers.
    Side effect: the first invite sends the envelope (DRAFT -> SENT).
    """
    result = orchestrator.invite(envelope_id, x_user_id, data.signer_ids if data else None, network=network)
    return InviteResponse(
        envelope=EnvelopeResponse.model_validate(result.envelope),
        invitations=[_issued(i) for i in result.invitations],
        outcome=_outcome(result.outcome),
    )


@router.post("/envelopes/{envelope_id}/remind", response_model=RemindResponse)
def remind(
    envelope_id: str,
    data: Optional[InviteRequest] = None,
    x_user_id: str = Header(...),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    result = orchestrator.remind(envelope_id, x_user_id, data.signer_ids if data else None, network=network)
    return RemindResponse(
        envelope=EnvelopeResponse.model_validate(result.envelope),
        reminded=result.reminded,
        reissued=[_issued(i) for i in result.reissued],
        skipped=result.skipped,
        outcome=_outcome(result.outcome),
    )


@router.post("/envelopes/{envelope_id}/finalize", response_model=FinalizeResponse)
def finalize(
    envelope_id: str,
    x_user_id: str = Header(...),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """Seal a COMPLETED envelope after checking its evidence."""
    result = orchestrator.finalize(envelope_id, x_user_id, network=network)
    return FinalizeResponse(
        envelope=EnvelopeResponse.model_validate(result.envelope),
        signatures=[SignatureResponse.model_validate(s) for s in result.signatures],
        retention_until=result.retention_until,
        completion_key=result.completion_key,
        outcome=_outcome(result.outcome),
    )


@router.post("/envelopes/{envelope_id}/restart", response_model=ActionResponse)
def restart(
    envelope_id: str,
    x_user_id: str = Header(...),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """Reopen a DECLINED envelope as a new DRAFT cycle."""
    result = orchestrator.restart(envelope_id, x_user_id, network=network)
    return ActionResponse(envelope=EnvelopeResponse.model_validate(result.envelope), outcome=_outcome(result.outcome))


# Signer endpoints
@router.post("/envelopes/{envelope_id}/signers/{signer_id}/sign", response_model=SignResponse)
def sign(
    envelope_id: str,
    signer_id: str,
    data: SignRequest,
    x_user_id: Optional[str] = Header(None),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """
    Sign for one signer.
    Invitees present their invitation secret; the owner signs in session.
    """
    result = orchestrator.sign(
        envelope_id,
        signer_id,
        consent_given=data.consent_given,
        consent_text=data.consent_text,
        secret=data.secret,
        actor_id=x_user_id,
        claimed_document_hash=data.document_hash,
        started_at=data.started_at,
        network=network,
    )
    return SignResponse(
        envelope=EnvelopeResponse.model_validate(result.envelope),
        signature=SignatureResponse.model_validate(result.signature),
        outcome=_outcome(result.outcome),
    )


@router.post("/envelopes/{envelope_id}/signers/{signer_id}/decline", response_model=ActionResponse)
def decline(
    envelope_id: str,
    signer_id: str,
    data: DeclineRequest,
    x_user_id: Optional[str] = Header(None),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """
    Decline for one signer.
    Side effect: the envelope becomes DECLINED and every open invitation is revoked.
    """
    result = orchestrator.decline(
        envelope_id, signer_id, reason=data.reason, secret=data.secret, actor_id=x_user_id, network=network,
    )
    return ActionResponse(envelope=EnvelopeResponse.model_validate(result.envelope), outcome=_outcome(result.outcome))


@router.post("/envelopes/{envelope_id}/signers/{signer_id}/decline-unresponsive", response_model=ActionResponse)
def decline_unresponsive(
    envelope_id: str,
    signer_id: str,
    data: Optional[DeclineRequest] = None,
    x_user_id: str = Header(...),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    result = orchestrator.decline_unresponsive(
        envelope_id, signer_id, x_user_id, reason=data.reason if data else None, network=network,
    )
    return ActionResponse(envelope=EnvelopeResponse.model_validate(result.envelope), outcome=_outcome(result.outcome))


@router.post("/envelopes/{envelope_id}/signers/{signer_id}/revoke", response_model=ActionResponse)
def revoke(
    envelope_id: str,
    signer_id: str,
    data: RevokeRequest,
    x_user_id: str = Header(...),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    result = orchestrator.revoke(envelope_id, signer_id, x_user_id, reason=data.reason, network=network)
    return ActionResponse(envelope=EnvelopeResponse.model_validate(result.envelope), outcome=_outcome(result.outcome))


# Invitation endpoints
@router.get("/invitation", response_model=InvitationResponse)
def open_invitation(
    x_invitation_secret: str = Header(...),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """Check an invitation without consuming it. The secret travels in a header, never in the URL."""
    view = orchestrator.open_invitation(x_invitation_secret, network=network)
    return InvitationResponse(
        envelope_id=view.envelope.id,
        envelope_title=view.envelope.title,
        envelope_status=view.envelope.status,
        signer_id=view.signer.id,
        signer_email=view.signer.email,
        token_status=view.token.status,
        expires_at=view.token.expires_at,
        can_sign_now=view.can_sign_now,
    )


# Audit endpoints
@router.get("/envelopes/{envelope_id}/audit", response_model=List[AuditEventResponse])
def list_audit_events(
    envelope_id: str,
    x_user_id: Optional[str] = Header(None),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """Audit trail of an envelope, oldest first."""
    return orchestrator.list_audit_events(envelope_id, actor_id=x_user_id, network=network)


# Maintenance endpoints
def require_maintenance_user(
    x_user_id: str = Header(...),
    settings: Settings = Depends(get_settings),
) -> str:
    if x_user_id not in settings.maintenance_users:
        raise SecurityViolation("Caller may not run maintenance", operation="maintenance", actor_id=x_user_id)
    return x_user_id


@router.post("/maintenance/expire", response_model=ExpireResponse)
def expire_due(
    _: str = Depends(require_maintenance_user),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    network: NetworkContext = Depends(get_network),
):
    """Expire every open envelope past its expiry."""
    return ExpireResponse(expired=[e.id for e in orchestrator.expire_due(network=network)])
