"""
Signing orchestrator.

Coordinates the state machines, the rule layer and the external collaborators
for every envelope operation. Each operation follows the same shape:

1. Load the envelope aggregate (and heal its status)
2. Ask the rule layer to authorize the operation
3. Perform external side effects (crypto, storage)
4. Persist the resulting patches in one transaction
5. Best-effort post actions: status refresh, audit event, outbound event
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from signflow.adapters import LoggingEventSink
from signflow.config import Settings, get_settings
from signflow.errors import (
    ComplianceViolation,
    InvalidStateTransition,
    NotFound,
    SecurityViolation,
    SignflowError,
    SigningFailed,
    WorkflowViolation,
    describe,
)
from signflow.models.audit import AuditEvent, AuditEventType
from signflow.models.domain import Envelope, InvitationToken, Signature, Signer, as_naive_utc, new_id, utcnow
from signflow.models.enums import EnvelopeStatus, SignerStatus, SigningOrder
from signflow.repositories import SqlRepository, StaleWriteError
from signflow.rules import security
from signflow.rules.compliance import retention_deadline
from signflow.rules.dispatch import Operation, RuleContext, run_rules
from signflow.rules.workflow import SignerInput
from signflow.services.audit import events_for_envelope, record_event
from signflow.services.envelope_state import (
    SIGNABLE_STATUSES,
    TERMINAL_STATUSES,
    apply_transition,
    recompute_status,
)
from signflow.services.ports import CryptoSigner, DocumentStorage, EventSink, NetworkContext
from signflow.services.signer_policy import (
    decline_patch,
    eligible_signers,
    ensure_pending,
    is_owner_signer,
    restart_patch,
    sign_patch,
    sorted_signers,
)
from signflow.services.tokens import InvitationTokenService

logger = logging.getLogger(__name__)

_STATUS_EVENTS = {
    EnvelopeStatus.COMPLETED: AuditEventType.ENVELOPE_COMPLETED,
    EnvelopeStatus.DECLINED: AuditEventType.ENVELOPE_DECLINED,
    EnvelopeStatus.EXPIRED: AuditEventType.ENVELOPE_EXPIRED,
}


@dataclass
class PostActionOutcome:
    """What happened after the operation itself succeeded. Never raised."""
    status_refreshed: bool = True
    audit_recorded: bool = True
    event_published: bool = True
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class Invitation:
    signer_id: str
    email: str
    secret: str
    expires_at: datetime


@dataclass
class ActionResult:
    envelope: Envelope
    outcome: PostActionOutcome


@dataclass
class SignResult:
    envelope: Envelope
    signer: Signer
    signature: Signature
    outcome: PostActionOutcome


@dataclass
class InviteResult:
    envelope: Envelope
    invitations: List[Invitation]
    outcome: PostActionOutcome


@dataclass
class RemindResult:
    envelope: Envelope
    reminded: List[str]
    reissued: List[Invitation]
    skipped: Dict[str, str]
    outcome: PostActionOutcome


@dataclass
class FinalizeResult:
    envelope: Envelope
    signatures: List[Signature]
    retention_until: datetime
    completion_key: str
    outcome: PostActionOutcome


@dataclass
class InvitationView:
    """An invitation opened by its secret, without consuming it."""
    envelope: Envelope
    signer: Signer
    token: InvitationToken
    can_sign_now: bool


class SigningOrchestrator:
    """Runs every envelope operation end to end."""

    def __init__(
        self,
        db: Session,
        crypto: CryptoSigner,
        storage: DocumentStorage,
        events: Optional[EventSink] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.crypto = crypto
        self.storage = storage
        self.events = events or LoggingEventSink()
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.envelopes = SqlRepository(db, Envelope)
        self.signers = SqlRepository(db, Signer)
        self.signatures = SqlRepository(db, Signature)
        self.tokens = InvitationTokenService(db, self.settings, self.clock)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load_envelope(self, envelope_id: str) -> Envelope:
        envelope = self.envelopes.get(envelope_id)
        if envelope is None:
            raise NotFound(f"Envelope {envelope_id} not found", entity_id=envelope_id)
        return envelope

    def _load_signer(self, envelope: Envelope, signer_id: str) -> Signer:
        signer = self.signers.get(signer_id)
        if signer is None or signer.envelope_id != envelope.id:
            raise NotFound(f"Signer {signer_id} not found on envelope {envelope.id}", entity_id=signer_id)
        return signer

    def _signers_of(self, envelope: Envelope) -> List[Signer]:
        return sorted_signers(self.signers.query(envelope_id=envelope.id))

    def _context(self, now: datetime, envelope: Optional[Envelope] = None, **kwargs: Any) -> RuleContext:
        signers = self._signers_of(envelope) if envelope is not None else ()
        return RuleContext(settings=self.settings, now=now, envelope=envelope, signers=signers, **kwargs)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _transition(self, envelope: Envelope, target: EnvelopeStatus, now: datetime) -> Envelope:
        """Persist a validated transition, conditioned on the status it was validated against."""
        current = envelope.status
        patch = apply_transition(envelope, target, now)
        try:
            return self.envelopes.update(envelope.id, patch, expected={"status": current})
        except StaleWriteError:
            self.db.refresh(envelope)
            raise InvalidStateTransition(
                f"Envelope changed concurrently while moving to {target.value}",
                operation=f"transition:{target.value}",
                **describe(envelope),
            )

    def _recompute(self, envelope: Envelope, now: datetime) -> Envelope:
        target = recompute_status(envelope, self._signers_of(envelope), now)
        if target == envelope.status:
            return envelope
        return self._transition(envelope, target, now)

    def _heal(self, envelope: Envelope, now: datetime) -> Envelope:
        """
        Bring a stored status in line with the signers before acting on it.

        A failure here is logged and the stored status is used as-is: the
        next read heals it again.
        """
        before = envelope.status
        try:
            envelope = self._recompute(envelope, now)
            if envelope.status != before:
                self._revoke_if_closed(envelope)
            self.db.commit()
        except (SignflowError, StaleWriteError):
            self.db.rollback()
            logger.warning("Could not heal status of envelope %s", envelope.id, exc_info=True)
            return self._load_envelope(envelope.id)
        if envelope.status != before:
            logger.info("Healed envelope %s: %s -> %s", envelope.id, before.value, envelope.status.value)
            self._emit_status_change(PostActionOutcome(), envelope, before, None, None)
        return envelope

    def _revoke_if_closed(self, envelope: Envelope) -> None:
        if envelope.status in TERMINAL_STATUSES or envelope.status == EnvelopeStatus.DECLINED:
            self.tokens.revoke_all_for_envelope(envelope.id, f"Envelope {envelope.status.value.lower()}")

    def refresh_status(self, envelope_id: str) -> Envelope:
        """Recompute and persist an envelope's status from its signers."""
        return self._heal(self._load_envelope(envelope_id), self.clock())

    # ------------------------------------------------------------------
    # Post actions
    # ------------------------------------------------------------------

    def _emit(
        self,
        outcome: PostActionOutcome,
        event_type: str,
        entity_type: str,
        entity_id: str,
        *,
        envelope_id: Optional[str] = None,
        signer_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        network: Optional[NetworkContext] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record the audit event and publish it. Failures are logged, never raised."""
        try:
            record_event(
                self.db, event_type, entity_type, entity_id,
                envelope_id=envelope_id, signer_id=signer_id, user_id=actor_id,
                network=network, payload=payload, now=self.clock(),
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Failed to record audit event %s for %s %s", event_type, entity_type, entity_id)
            outcome.audit_recorded = False
            outcome.errors.append(f"audit:{event_type}")

        try:
            self.events.publish(event_type, {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "envelope_id": envelope_id,
                "signer_id": signer_id,
                **(payload or {}),
            })
        except Exception:
            logger.exception("Failed to publish event %s for %s %s", event_type, entity_type, entity_id)
            outcome.event_published = False
            outcome.errors.append(f"event:{event_type}")

    def _settle(self, envelope: Envelope, outcome: PostActionOutcome, actor_id: Optional[str],
                network: Optional[NetworkContext]) -> Envelope:
        """Re-evaluate the envelope status after a write, best-effort."""
        envelope_id = envelope.id
        before = envelope.status
        now = self.clock()
        try:
            envelope = self._recompute(envelope, now)
            if envelope.status != before:
                self._revoke_if_closed(envelope)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.warning("Status refresh failed for envelope %s; it heals on next read", envelope_id,
                           exc_info=True)
            outcome.status_refreshed = False
            outcome.errors.append("status_refresh")
            return self._load_envelope(envelope_id)

        if envelope.status != before:
            self._emit_status_change(outcome, envelope, before, actor_id, network)
        return envelope

    def _emit_status_change(self, outcome: PostActionOutcome, envelope: Envelope, before: EnvelopeStatus,
                            actor_id: Optional[str], network: Optional[NetworkContext]) -> None:
        event_type = _STATUS_EVENTS.get(envelope.status, AuditEventType.ENVELOPE_STATUS_CHANGED)
        self._emit(
            outcome, event_type, "Envelope", envelope.id,
            envelope_id=envelope.id, actor_id=actor_id, network=network,
            payload={"from": before, "to": envelope.status},
        )

    def _update_pending_signer(self, signer: Signer, patch: Dict[str, Any], operation: str) -> Signer:
        """Apply a signer patch only while the signer is still PENDING."""
        try:
            return self.signers.update(signer.id, patch, expected={"status": SignerStatus.PENDING})
        except StaleWriteError:
            self.db.refresh(signer)
            ensure_pending(signer, operation)
            raise InvalidStateTransition("Signer changed concurrently", operation=operation, **describe(signer))

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def _authenticate(self, envelope: Envelope, signer: Signer, secret: Optional[str],
                      actor_id: Optional[str], operation: str) -> Optional[InvitationToken]:
        """
        Invitees act through their invitation secret; the owner acts in session
        on their own signer record.
        """
        if secret:
            return self.tokens.resolve(secret)
        if is_owner_signer(envelope, signer) and actor_id and actor_id == envelope.owner_id:
            return None
        raise SecurityViolation(
            "An invitation is required to act for this signer",
            operation=operation,
            **describe(signer),
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_envelope(
        self,
        owner_id: str,
        owner_email: str,
        document_key: str,
        signers: Sequence[SignerInput],
        signing_order: SigningOrder = SigningOrder.INVITEES_FIRST,
        title: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        network: Optional[NetworkContext] = None,
    ) -> ActionResult:
        """Create a DRAFT envelope with its signers."""
        now = self.clock()
        expires_at = as_naive_utc(expires_at)
        run_rules(Operation.CREATE, self._context(
            now, owner_email=owner_email, signer_inputs=signers, expires_at=expires_at, network=network,
        ))
        if not self.storage.exists(document_key):
            raise NotFound("Document not found in storage", storage_key=document_key)

        owner = owner_email.strip().lower()
        envelope = Envelope(
            id=new_id(),
            owner_id=owner_id,
            owner_email=owner_email.strip(),
            title=title,
            document_key=document_key,
            signing_order=signing_order,
            status=EnvelopeStatus.DRAFT,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )
        try:
            self.envelopes.create(envelope)
            for position, entry in enumerate(signers):
                email = entry.email.strip()
                is_owner = email.lower() == owner
                if entry.is_external is None:
                    entry = replace(entry, is_external=not is_owner)
                # Offset creation times so equal orders keep their insertion order
                created = now + timedelta(microseconds=position)
                self.signers.create(Signer(
                    id=new_id(),
                    envelope_id=envelope.id,
                    email=email,
                    full_name=entry.full_name,
                    is_external=entry.is_external,
                    order=entry.order,
                    status=SignerStatus.PENDING,
                    created_at=created,
                    updated_at=created,
                ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(envelope)

        outcome = PostActionOutcome()
        self._emit(
            outcome, AuditEventType.ENVELOPE_CREATED, "Envelope", envelope.id,
            envelope_id=envelope.id, actor_id=owner_id, network=network,
            payload={"signers": len(signers), "signing_order": signing_order},
        )
        return ActionResult(envelope=envelope, outcome=outcome)

    def invite(
        self,
        envelope_id: str,
        actor_id: str,
        signer_ids: Optional[Sequence[str]] = None,
        network: Optional[NetworkContext] = None,
    ) -> InviteResult:
        """
        Issue invitations to pending signers. The first invite sends the
        envelope (DRAFT -> SENT). The owner's own record never gets a token.
        """
        now = self.clock()
        envelope = self._heal(self._load_envelope(envelope_id), now)
        run_rules(Operation.INVITE, self._context(now, envelope, actor_id=actor_id, network=network))

        targets = [s for s in self._signers_of(envelope) if s.status == SignerStatus.PENDING]
        if signer_ids is not None:
            wanted = set(signer_ids)
            unknown = wanted - {s.id for s in self._signers_of(envelope)}
            if unknown:
                raise NotFound("Signer not found on envelope", entity_id=sorted(unknown)[0])
            targets = [s for s in targets if s.id in wanted]

        was_draft = envelope.status == EnvelopeStatus.DRAFT
        invitations: List[Invitation] = []
        try:
            if was_draft:
                envelope = self._transition(envelope, EnvelopeStatus.SENT, now)
            for signer in targets:
                issued = self.tokens.issue(signer, envelope, envelope.owner_email, created_by=actor_id,
                                           network=network)
                if issued is None:
                    continue
                self.tokens.mark_sent(issued.token, network)
                invitations.append(Invitation(
                    signer_id=signer.id,
                    email=signer.email,
                    secret=issued.secret,
                    expires_at=issued.token.expires_at,
                ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome = PostActionOutcome()
        if was_draft:
            self._emit(
                outcome, AuditEventType.ENVELOPE_SENT, "Envelope", envelope.id,
                envelope_id=envelope.id, actor_id=actor_id, network=network,
                payload={"from": EnvelopeStatus.DRAFT, "to": EnvelopeStatus.SENT},
            )
        for invitation in invitations:
            self._emit(
                outcome, AuditEventType.SIGNER_INVITED, "Signer", invitation.signer_id,
                envelope_id=envelope.id, signer_id=invitation.signer_id, actor_id=actor_id, network=network,
                payload={"expires_at": invitation.expires_at},
            )
        envelope = self._settle(envelope, outcome, actor_id, network)
        return InviteResult(envelope=envelope, invitations=invitations, outcome=outcome)

    def _reminder_history(self, envelope: Envelope, signer: Signer):
        reminders = [
            e for e in events_for_envelope(self.db, envelope.id)
            if e.event_type == AuditEventType.SIGNER_REMINDED and e.signer_id == signer.id
        ]
        last = reminders[-1].created_at if reminders else None
        return len(reminders), last

    def remind(
        self,
        envelope_id: str,
        actor_id: str,
        signer_ids: Optional[Sequence[str]] = None,
        network: Optional[NetworkContext] = None,
    ) -> RemindResult:
        """
        Remind pending invitees.

        With explicit signer_ids a signer the reminder rules refuse raises;
        otherwise every invitee currently allowed to sign is reminded and the
        refused ones are reported as skipped. A signer whose invitation can
        no longer be resent gets a fresh one.
        """
        now = self.clock()
        envelope = self._heal(self._load_envelope(envelope_id), now)
        run_rules(Operation.REMIND, self._context(now, envelope, actor_id=actor_id, network=network))

        signers = self._signers_of(envelope)
        if signer_ids is not None:
            by_id = {s.id: s for s in signers}
            missing = [sid for sid in signer_ids if sid not in by_id]
            if missing:
                raise NotFound("Signer not found on envelope", entity_id=missing[0])
            targets = [by_id[sid] for sid in signer_ids]
        else:
            targets = eligible_signers(envelope, signers)
        targets = [s for s in targets if not is_owner_signer(envelope, s)]

        reminded: List[Signer] = []
        reissued: List[Invitation] = []
        skipped: Dict[str, str] = {}
        try:
            for signer in targets:
                count, last = self._reminder_history(envelope, signer)
                ctx = self._context(now, envelope, signer=signer, actor_id=actor_id, network=network,
                                    reminders_sent=count, last_reminded_at=last)
                try:
                    run_rules(Operation.REMIND, ctx)
                except WorkflowViolation as exc:
                    if signer_ids is not None:
                        raise
                    logger.info("Skipping reminder for signer %s: %s", signer.id, exc.message)
                    skipped[signer.id] = exc.message
                    continue

                token = self.tokens.active_token_for(signer.id)
                if token is not None and self.tokens.can_be_resent(token):
                    self.tokens.mark_sent(token, network)
                else:
                    issued = self.tokens.issue(signer, envelope, envelope.owner_email, created_by=actor_id,
                                               network=network)
                    self.tokens.mark_sent(issued.token, network)
                    reissued.append(Invitation(signer.id, signer.email, issued.secret, issued.token.expires_at))
                reminded.append(signer)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome = PostActionOutcome()
        for signer in reminded:
            self._emit(
                outcome, AuditEventType.SIGNER_REMINDED, "Signer", signer.id,
                envelope_id=envelope.id, signer_id=signer.id, actor_id=actor_id, network=network,
                payload={"reissued": any(i.signer_id == signer.id for i in reissued)},
            )
        return RemindResult(
            envelope=envelope,
            reminded=[s.id for s in reminded],
            reissued=reissued,
            skipped=skipped,
            outcome=outcome,
        )

    def sign(
        self,
        envelope_id: str,
        signer_id: str,
        *,
        consent_given: bool,
        consent_text: Optional[str],
        secret: Optional[str] = None,
        actor_id: Optional[str] = None,
        claimed_document_hash: Optional[str] = None,
        started_at: Optional[datetime] = None,
        network: Optional[NetworkContext] = None,
    ) -> SignResult:
        """
        Sign the envelope's document for one signer.

        Every rule runs before the crypto signer is called. Token consumption,
        the signature record and the signer transition commit together; the
        envelope status and the audit trail follow best-effort.
        """
        now = self.clock()
        started_at = as_naive_utc(started_at)
        envelope = self._heal(self._load_envelope(envelope_id), now)
        signer = self._load_signer(envelope, signer_id)
        token = self._authenticate(envelope, signer, secret, actor_id, "sign")

        key_id = self.settings.signing_key_id
        algorithm = self.crypto.algorithm
        certificate = self.crypto.describe_key(key_id)
        run_rules(Operation.SIGN, self._context(
            now, envelope,
            signer=signer, actor_id=actor_id, actor_email=signer.email, network=network, token=token,
            consent_given=consent_given, consent_text=consent_text, started_at=started_at,
            algorithm=algorithm, key_id=key_id, certificate=certificate,
        ))

        document = self.storage.get(envelope.document_key)
        document_hash = hashlib.new(security.digest_for(algorithm), document).hexdigest()
        security.validate_hash_format(document_hash, algorithm)
        security.validate_document_hash(claimed_document_hash, document_hash)

        try:
            raw_signature = self.crypto.sign(key_id, bytes.fromhex(document_hash))
        except SigningFailed:
            raise
        except Exception as exc:
            raise SigningFailed("Crypto signer failed", operation="sign", key_id=key_id, **describe(signer)) from exc

        network = network or NetworkContext()
        signature_id = new_id()
        storage_key = f"evidence/{envelope.id}/{signer.id}/{signature_id}.json"
        consent_key = f"consent/{envelope.id}/{signer.id}/{signature_id}.txt"
        security.validate_storage_key(storage_key, self.settings.allowed_storage_prefixes)
        security.validate_storage_key(consent_key, self.settings.allowed_storage_prefixes)

        signature = Signature(
            id=signature_id,
            envelope_id=envelope.id,
            signer_id=signer.id,
            document_hash=document_hash,
            signature_hash=hashlib.sha256(raw_signature).hexdigest(),
            storage_key=storage_key,
            algorithm=algorithm,
            key_id=key_id,
            certificate_issuer=certificate.issuer if certificate else None,
            certificate_subject=certificate.subject if certificate else None,
            certificate_valid_from=certificate.valid_from if certificate else None,
            certificate_valid_to=certificate.valid_to if certificate else None,
            ip_address=network.ip_address,
            user_agent=network.user_agent,
            country=network.country,
            signed_at=now,
        )
        try:
            if token is not None:
                self.tokens.mark_used(token, used_by=signer.email)
            self.signatures.create(signature)
            signer = self._update_pending_signer(signer, sign_patch(signer, now, consent_key), "sign")
            self.storage.put(consent_key, consent_text.encode("utf-8"), {"signer_id": signer.id})
            self.storage.put(storage_key, self._evidence_blob(signature, raw_signature, consent_key),
                             {"content-type": "application/json"})
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome = PostActionOutcome()
        if token is not None:
            self._emit(
                outcome, AuditEventType.TOKEN_USED, "InvitationToken", token.id,
                envelope_id=envelope.id, signer_id=signer.id, actor_id=signer.email, network=network,
            )
        self._emit(
            outcome, AuditEventType.SIGNER_SIGNED, "Signer", signer.id,
            envelope_id=envelope.id, signer_id=signer.id, actor_id=actor_id or signer.email, network=network,
            payload={"signature_id": signature.id, "document_hash": document_hash, "algorithm": algorithm},
        )
        envelope = self._settle(envelope, outcome, actor_id, network)
        return SignResult(envelope=envelope, signer=signer, signature=signature, outcome=outcome)

    @staticmethod
    def _evidence_blob(signature: Signature, raw_signature: bytes, consent_key: str) -> bytes:
        return json.dumps({
            "signature_id": signature.id,
            "envelope_id": signature.envelope_id,
            "signer_id": signature.signer_id,
            "document_hash": signature.document_hash,
            "signature": raw_signature.hex(),
            "algorithm": signature.algorithm,
            "key_id": signature.key_id,
            "signed_at": signature.signed_at.isoformat(),
            "consent_reference": consent_key,
            "ip_address": signature.ip_address,
            "user_agent": signature.user_agent,
            "country": signature.country,
        }, sort_keys=True).encode("utf-8")

    def _close_declined(self, envelope: Envelope, signer: Signer, reason: Optional[str], now: datetime,
                        actor_id: Optional[str], token: Optional[InvitationToken]):
        """Decline the signer, close the envelope and revoke every outstanding invitation."""
        signer = self._update_pending_signer(signer, decline_patch(signer, reason, now), "decline")
        if token is not None:
            self.tokens.mark_used(token, used_by=signer.email)
        envelope = self._transition(envelope, EnvelopeStatus.DECLINED, now)
        revoked = self.tokens.revoke_all_for_envelope(envelope.id, "Envelope declined", actor_id)
        return envelope, signer, revoked

    def _emit_decline(self, outcome: PostActionOutcome, envelope: Envelope, before: EnvelopeStatus,
                      signer: Signer, revoked: List[InvitationToken], actor_id: Optional[str],
                      network: Optional[NetworkContext], cleanup: bool = False) -> None:
        self._emit(
            outcome, AuditEventType.SIGNER_DECLINED, "Signer", signer.id,
            envelope_id=envelope.id, signer_id=signer.id, actor_id=actor_id, network=network,
            payload={"reason": signer.decline_reason, "cleanup": cleanup},
        )
        self._emit_status_change(outcome, envelope, before, actor_id, network)
        for token in revoked:
            self._emit(
                outcome, AuditEventType.TOKEN_REVOKED, "InvitationToken", token.id,
                envelope_id=envelope.id, signer_id=token.signer_id, actor_id=actor_id, network=network,
                payload={"reason": token.revoked_reason},
            )

    def decline(
        self,
        envelope_id: str,
        signer_id: str,
        *,
        reason: Optional[str] = None,
        secret: Optional[str] = None,
        actor_id: Optional[str] = None,
        network: Optional[NetworkContext] = None,
    ) -> ActionResult:
        """A pending signer refuses to sign. The envelope is DECLINED immediately."""
        now = self.clock()
        envelope = self._heal(self._load_envelope(envelope_id), now)
        signer = self._load_signer(envelope, signer_id)
        token = self._authenticate(envelope, signer, secret, actor_id, "decline")
        run_rules(Operation.DECLINE, self._context(
            now, envelope, signer=signer, actor_id=actor_id, actor_email=signer.email, network=network, token=token,
        ))

        before = envelope.status
        try:
            envelope, signer, revoked = self._close_declined(envelope, signer, reason, now, actor_id, token)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome = PostActionOutcome()
        self._emit_decline(outcome, envelope, before, signer, revoked, actor_id or signer.email, network)
        return ActionResult(envelope=envelope, outcome=outcome)

    def decline_unresponsive(
        self,
        envelope_id: str,
        signer_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        network: Optional[NetworkContext] = None,
    ) -> ActionResult:
        """Decline on behalf of a signer who let the processing window lapse."""
        now = self.clock()
        envelope = self._heal(self._load_envelope(envelope_id), now)
        signer = self._load_signer(envelope, signer_id)
        token = self.tokens.active_token_for(signer.id)
        run_rules(Operation.DECLINE_CLEANUP, self._context(
            now, envelope, signer=signer, actor_id=actor_id, network=network,
            started_at=token.last_sent_at if token is not None else None,
        ))

        before = envelope.status
        try:
            envelope, signer, revoked = self._close_declined(
                envelope, signer, reason or "No response within the processing window", now, actor_id, None,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome = PostActionOutcome()
        self._emit_decline(outcome, envelope, before, signer, revoked, actor_id, network, cleanup=True)
        return ActionResult(envelope=envelope, outcome=outcome)

    def revoke(
        self,
        envelope_id: str,
        signer_id: str,
        actor_id: str,
        reason: str = "Revoked by owner",
        network: Optional[NetworkContext] = None,
    ) -> ActionResult:
        """Revoke a pending signer's active invitation."""
        now = self.clock()
        envelope = self._heal(self._load_envelope(envelope_id), now)
        signer = self._load_signer(envelope, signer_id)
        run_rules(Operation.REVOKE, self._context(now, envelope, signer=signer, actor_id=actor_id,
                                                   network=network))

        token = self.tokens.active_token_for(signer.id)
        if token is None:
            raise NotFound("Signer has no active invitation", entity_id=signer.id)
        try:
            token = self.tokens.revoke(token, reason, actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome = PostActionOutcome()
        self._emit(
            outcome, AuditEventType.TOKEN_REVOKED, "InvitationToken", token.id,
            envelope_id=envelope.id, signer_id=signer.id, actor_id=actor_id, network=network,
            payload={"reason": token.revoked_reason},
        )
        return ActionResult(envelope=envelope, outcome=outcome)

    def _current_signatures(self, envelope: Envelope) -> List[Signature]:
        """Signatures of the current signing cycle."""
        signatures = self.signatures.query(envelope_id=envelope.id)
        if envelope.sent_at is None:
            return []
        return sorted((s for s in signatures if s.signed_at >= envelope.sent_at), key=lambda s: s.signed_at)

    def _verify_evidence(self, signature: Signature) -> None:
        """The stored evidence must match the record and verify under its key."""
        evidence = json.loads(self.storage.get(signature.storage_key))
        raw_signature = bytes.fromhex(evidence["signature"])
        if hashlib.sha256(raw_signature).hexdigest() != signature.signature_hash:
            raise ComplianceViolation("Stored signature does not match its record", signature_id=signature.id)
        if evidence["document_hash"] != signature.document_hash:
            raise ComplianceViolation("Stored document hash does not match its record", signature_id=signature.id)
        try:
            verified = self.crypto.verify(signature.key_id, bytes.fromhex(signature.document_hash), raw_signature)
        except SigningFailed:
            raise
        except Exception as exc:
            raise SigningFailed("Crypto verifier failed", signature_id=signature.id) from exc
        if not verified:
            raise ComplianceViolation("Signature does not verify", signature_id=signature.id)

    def finalize(
        self,
        envelope_id: str,
        actor_id: str,
        network: Optional[NetworkContext] = None,
    ) -> FinalizeResult:
        """
        Seal a COMPLETED envelope: check the evidence of every signer is
        compliant and verifies, then store the completion record.
        """
        now = self.clock()
        envelope = self._heal(self._load_envelope(envelope_id), now)
        signatures = self._current_signatures(envelope)
        signers = self._signers_of(envelope)
        run_rules(Operation.FINALIZE, self._context(
            now, envelope, actor_id=actor_id, network=network,
            signatures=signatures, events=events_for_envelope(self.db, envelope.id),
        ))

        unsigned = {s.id for s in signers} - {sig.signer_id for sig in signatures}
        if unsigned:
            raise ComplianceViolation("Signers without signature evidence", envelope_id=envelope.id,
                                      missing=sorted(unsigned))
        for signature in signatures:
            self._verify_evidence(signature)

        retention_until = retention_deadline(envelope.completed_at, self.settings.retention_period,
                                             self.settings.retention_unit)
        completion_key = f"evidence/{envelope.id}/completion.json"
        security.validate_storage_key(completion_key, self.settings.allowed_storage_prefixes)
        self.storage.put(completion_key, json.dumps({
            "envelope_id": envelope.id,
            "document_key": envelope.document_key,
            "completed_at": envelope.completed_at.isoformat(),
            "finalized_at": now.isoformat(),
            "retention_until": retention_until.isoformat(),
            "signatures": [
                {"signature_id": s.id, "signer_id": s.signer_id, "document_hash": s.document_hash,
                 "signature_hash": s.signature_hash, "signed_at": s.signed_at.isoformat()}
                for s in signatures
            ],
        }, sort_keys=True).encode("utf-8"), {"content-type": "application/json"})

        outcome = PostActionOutcome()
        self._emit(
            outcome, AuditEventType.ENVELOPE_FINALIZED, "Envelope", envelope.id,
            envelope_id=envelope.id, actor_id=actor_id, network=network,
            payload={"completion_key": completion_key, "retention_until": retention_until},
        )
        return FinalizeResult(
            envelope=envelope,
            signatures=signatures,
            retention_until=retention_until,
            completion_key=completion_key,
            outcome=outcome,
        )

    def restart(
        self,
        envelope_id: str,
        actor_id: str,
        network: Optional[NetworkContext] = None,
    ) -> ActionResult:
        """Owner reopens a DECLINED envelope as a fresh DRAFT cycle; every signer is PENDING again."""
        now = self.clock()
        envelope = self._heal(self._load_envelope(envelope_id), now)
        run_rules(Operation.RESTART, self._context(now, envelope, actor_id=actor_id, network=network))

        try:
            envelope = self._transition(envelope, EnvelopeStatus.DRAFT, now)
            for signer in self._signers_of(envelope):
                self.signers.update(signer.id, restart_patch(now))
            self.tokens.revoke_all_for_envelope(envelope.id, "Envelope restarted", actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome = PostActionOutcome()
        self._emit(
            outcome, AuditEventType.ENVELOPE_RESTARTED, "Envelope", envelope.id,
            envelope_id=envelope.id, actor_id=actor_id, network=network,
            payload={"from": EnvelopeStatus.DECLINED, "to": EnvelopeStatus.DRAFT},
        )
        return ActionResult(envelope=envelope, outcome=outcome)

    def expire_due(self, network: Optional[NetworkContext] = None) -> List[Envelope]:
        """Move every open envelope past its expiry to EXPIRED and revoke its invitations."""
        now = self.clock()
        candidates = (
            self.db.query(Envelope)
            .filter(
                Envelope.expires_at.isnot(None),
                Envelope.expires_at <= now,
                Envelope.status.notin_(list(TERMINAL_STATUSES) + [EnvelopeStatus.DECLINED]),
            )
            .all()
        )
        expired = []
        for envelope in candidates:
            before = envelope.status
            try:
                run_rules(Operation.EXPIRE, self._context(now, envelope, network=network))
                envelope = self._transition(envelope, EnvelopeStatus.EXPIRED, now)
                revoked = self.tokens.revoke_all_for_envelope(envelope.id, "Envelope expired")
                self.db.commit()
            except SignflowError as exc:
                self.db.rollback()
                logger.warning("Skipping expiry of envelope %s: %s", envelope.id, exc.message)
                continue

            outcome = PostActionOutcome()
            self._emit_status_change(outcome, envelope, before, None, network)
            for token in revoked:
                self._emit(
                    outcome, AuditEventType.TOKEN_REVOKED, "InvitationToken", token.id,
                    envelope_id=envelope.id, signer_id=token.signer_id, network=network,
                    payload={"reason": token.revoked_reason},
                )
            expired.append(envelope)
        if expired:
            logger.info("Expired %d envelope(s)", len(expired))
        return expired

    def delete_envelope(
        self,
        envelope_id: str,
        actor_id: str,
        network: Optional[NetworkContext] = None,
    ) -> PostActionOutcome:
        """Delete a DRAFT, EXPIRED or DECLINED envelope holding no signature evidence, with its signers and invitations."""
        now = self.clock()
        envelope = self._heal(self._load_envelope(envelope_id), now)
        run_rules(Operation.DELETE, self._context(
            now, envelope, actor_id=actor_id, network=network,
            signatures=self.signatures.query(envelope_id=envelope.id),
        ))

        status = envelope.status
        try:
            self.db.query(InvitationToken).filter(InvitationToken.envelope_id == envelope.id).delete()
            self.db.delete(envelope)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome = PostActionOutcome()
        self._emit(
            outcome, AuditEventType.ENVELOPE_DELETED, "Envelope", envelope_id,
            envelope_id=envelope_id, actor_id=actor_id, network=network,
            payload={"status": status},
        )
        return outcome

    def get_envelope(
        self,
        envelope_id: str,
        actor_id: Optional[str] = None,
        actor_email: Optional[str] = None,
        network: Optional[NetworkContext] = None,
    ) -> Envelope:
        """Read an envelope, healing its stored status first."""
        now = self.clock()
        envelope = self._heal(self._load_envelope(envelope_id), now)
        run_rules(Operation.ACCESS, self._context(
            now, envelope, actor_id=actor_id, actor_email=actor_email, network=network,
        ))
        return envelope

    def open_invitation(self, secret: str, network: Optional[NetworkContext] = None) -> InvitationView:
        """Check an invitation secret and describe what it grants, without consuming it."""
        now = self.clock()
        token = self.tokens.resolve(secret)
        envelope = self._heal(self._load_envelope(token.envelope_id), now)
        self.tokens.validate(token)
        signer = self._load_signer(envelope, token.signer_id)
        run_rules(Operation.ACCESS, self._context(
            now, envelope, actor_email=signer.email, network=network,
        ))
        eligible = eligible_signers(envelope, self._signers_of(envelope))
        can_sign_now = envelope.status in SIGNABLE_STATUSES and any(s.id == signer.id for s in eligible)
        return InvitationView(envelope=envelope, signer=signer, token=token, can_sign_now=can_sign_now)

    def download_document(
        self,
        envelope_id: str,
        actor_id: Optional[str] = None,
        actor_email: Optional[str] = None,
        network: Optional[NetworkContext] = None,
    ) -> bytes:
        """The envelope's document, for callers allowed to read it and while retention allows it."""
        now = self.clock()
        envelope = self._heal(self._load_envelope(envelope_id), now)
        run_rules(Operation.DOWNLOAD, self._context(
            now, envelope, actor_id=actor_id, actor_email=actor_email, network=network,
        ))
        return self.storage.get(envelope.document_key)

    def list_audit_events(
        self,
        envelope_id: str,
        actor_id: Optional[str] = None,
        network: Optional[NetworkContext] = None,
    ) -> List[AuditEvent]:
        now = self.clock()
        envelope = self._load_envelope(envelope_id)
        run_rules(Operation.AUDIT, self._context(now, envelope, actor_id=actor_id, network=network))
        return events_for_envelope(self.db, envelope.id)
