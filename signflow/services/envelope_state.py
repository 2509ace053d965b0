"""
Envelope state machine.

This is the single authority for the legal status of an envelope - every status
write MUST be produced by apply_transition here.
"""
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional, Sequence

from signflow.errors import InvalidStateTransition, describe
from signflow.models.domain import Envelope, Signer
from signflow.models.enums import EnvelopeStatus, SignerStatus, SigningOrder
from signflow.services.signer_policy import is_owner_signer


ALLOWED_TRANSITIONS: Mapping[EnvelopeStatus, FrozenSet[EnvelopeStatus]] = {
    EnvelopeStatus.DRAFT: frozenset({EnvelopeStatus.SENT, EnvelopeStatus.EXPIRED}),
    EnvelopeStatus.SENT: frozenset({
        EnvelopeStatus.IN_PROGRESS,
        EnvelopeStatus.READY_FOR_SIGNATURE,
        EnvelopeStatus.COMPLETED,
        EnvelopeStatus.EXPIRED,
        EnvelopeStatus.DECLINED,
    }),
    EnvelopeStatus.IN_PROGRESS: frozenset({
        EnvelopeStatus.READY_FOR_SIGNATURE,
        EnvelopeStatus.COMPLETED,
        EnvelopeStatus.EXPIRED,
        EnvelopeStatus.DECLINED,
    }),
    EnvelopeStatus.READY_FOR_SIGNATURE: frozenset({EnvelopeStatus.COMPLETED, EnvelopeStatus.EXPIRED}),
    EnvelopeStatus.COMPLETED: frozenset(),
    EnvelopeStatus.EXPIRED: frozenset(),
    # Only through the owner's explicit restart
    EnvelopeStatus.DECLINED: frozenset({EnvelopeStatus.DRAFT}),
}

TERMINAL_STATUSES = frozenset({EnvelopeStatus.COMPLETED, EnvelopeStatus.EXPIRED})

# Statuses in which signers may act on the envelope
SIGNABLE_STATUSES = frozenset({
    EnvelopeStatus.SENT,
    EnvelopeStatus.IN_PROGRESS,
    EnvelopeStatus.READY_FOR_SIGNATURE,
})

# Statuses from which the envelope may be deleted
DELETABLE_STATUSES = frozenset({EnvelopeStatus.DRAFT, EnvelopeStatus.EXPIRED, EnvelopeStatus.DECLINED})


def can_transition(current: EnvelopeStatus, target: EnvelopeStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def is_expired(envelope: Envelope, now: datetime) -> bool:
    return envelope.expires_at is not None and now >= envelope.expires_at


def apply_transition(envelope: Envelope, target: EnvelopeStatus, now: datetime) -> Dict[str, Any]:
    """
    Validate a status change and return the field patch that performs it.

    The caller persists the patch through the repository, conditioned on the
    envelope still having its current status.

    Raises:
        InvalidStateTransition: when target is not allowed from the current status.
    """
    current = envelope.status
    if not can_transition(current, target):
        allowed = sorted(s.value for s in ALLOWED_TRANSITIONS[current])
        raise InvalidStateTransition(
            f"Envelope cannot move from {current.value} to {target.value}. "
            f"Allowed: {', '.join(allowed) or 'none'}",
            operation=f"transition:{target.value}",
            allowed=allowed,
            **describe(envelope),
        )

    patch: Dict[str, Any] = {"status": target, "updated_at": now}
    if target == EnvelopeStatus.SENT:
        patch["sent_at"] = now
    elif target == EnvelopeStatus.COMPLETED:
        patch["completed_at"] = now
    elif target == EnvelopeStatus.DRAFT:
        # Restart opens a fresh cycle
        patch["sent_at"] = None
        patch["completed_at"] = None
    return patch


def awaiting_owner_only(envelope: Envelope, signers: Sequence[Signer]) -> bool:
    """
    True under OWNER_FIRST when every signer except the owner's record has signed
    and the owner has not.

    Under INVITEES_FIRST the envelope stays IN_PROGRESS while the owner's
    signature is pending.
    """
    if envelope.signing_order != SigningOrder.OWNER_FIRST:
        return False
    owner = [s for s in signers if is_owner_signer(envelope, s)]
    others = [s for s in signers if not is_owner_signer(envelope, s)]
    if not owner or not others:
        return False
    return (
        all(s.status == SignerStatus.SIGNED for s in others)
        and all(s.status == SignerStatus.PENDING for s in owner)
    )


def recompute_status(envelope: Envelope, signers: Sequence[Signer], now: Optional[datetime] = None) -> EnvelopeStatus:
    """
    Derive the envelope status from its signers.

    The stored status is never trusted as the sole source of truth:
    - COMPLETED, EXPIRED and DECLINED are sticky
    - DRAFT stays DRAFT until sent (or EXPIRED past expires_at)
    - Any declined signer -> DECLINED
    - Every signer SIGNED -> COMPLETED
    - Past expires_at -> EXPIRED
    - OWNER_FIRST with only the owner's signature missing -> READY_FOR_SIGNATURE
    - At least one signature -> IN_PROGRESS, otherwise SENT

    A status the transition table forbids from the stored one is never proposed.
    """
    stored = envelope.status
    if stored in TERMINAL_STATUSES or stored == EnvelopeStatus.DECLINED:
        return stored

    expired = now is not None and is_expired(envelope, now)
    if stored == EnvelopeStatus.DRAFT:
        return EnvelopeStatus.EXPIRED if expired else EnvelopeStatus.DRAFT

    if any(s.status == SignerStatus.DECLINED for s in signers):
        target = EnvelopeStatus.DECLINED
    elif signers and all(s.status == SignerStatus.SIGNED for s in signers):
        target = EnvelopeStatus.COMPLETED
    elif expired:
        target = EnvelopeStatus.EXPIRED
    elif awaiting_owner_only(envelope, signers):
        target = EnvelopeStatus.READY_FOR_SIGNATURE
    elif any(s.status == SignerStatus.SIGNED for s in signers):
        target = EnvelopeStatus.IN_PROGRESS
    else:
        target = EnvelopeStatus.SENT

    if target == stored or can_transition(stored, target):
        return target
    return stored
