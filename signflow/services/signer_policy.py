"""
Signer state machine and signing-order policy.

Each signer moves PENDING -> SIGNED or PENDING -> DECLINED, both terminal. The
ordering policy decides whether a PENDING signer may sign right now.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from signflow.errors import (
    AlreadyDeclined,
    AlreadySigned,
    InvalidStateTransition,
    WorkflowViolation,
    describe,
)
from signflow.models.domain import Envelope, Signer
from signflow.models.enums import EnvelopeStatus, SignerStatus, SigningOrder

_SIGNABLE = (EnvelopeStatus.SENT, EnvelopeStatus.IN_PROGRESS, EnvelopeStatus.READY_FOR_SIGNATURE)


def is_owner_signer(envelope: Envelope, signer: Signer) -> bool:
    """The owner's signer record is the one whose email matches the envelope owner."""
    return (signer.email or "").strip().lower() == (envelope.owner_email or "").strip().lower()


def sorted_signers(signers: Sequence[Signer]) -> List[Signer]:
    """Ascending order, ties broken by insertion."""
    return sorted(signers, key=lambda s: (s.order, s.created_at or datetime.min, s.id or ""))


def lowest_pending_order(signers: Sequence[Signer]) -> Optional[int]:
    pending = [s.order for s in signers if s.status == SignerStatus.PENDING]
    return min(pending) if pending else None


def ensure_pending(signer: Signer, operation: str) -> None:
    """
    Raises:
        AlreadySigned / AlreadyDeclined: when the signer is no longer PENDING.
    """
    if signer.status == SignerStatus.SIGNED:
        raise AlreadySigned("Signer has already signed", operation=operation, **describe(signer))
    if signer.status == SignerStatus.DECLINED:
        raise AlreadyDeclined("Signer has already declined", operation=operation, **describe(signer))


def _ensure_envelope_signable(envelope: Envelope, operation: str) -> None:
    if envelope.status not in _SIGNABLE:
        raise InvalidStateTransition(
            f"Envelope in status {envelope.status.value} does not accept {operation}",
            operation=operation,
            **describe(envelope),
        )


def check_order(envelope: Envelope, signer: Signer, signers: Sequence[Signer]) -> None:
    """
    Apply the ordering policy to a PENDING signer.

    - INVITEES_FIRST: non-owner signers sign in ascending order (ties together),
      the owner signs once every other signer has signed
    - OWNER_FIRST: the owner signs first, then the ascending-order rule applies

    Raises:
        WorkflowViolation: when the policy does not permit this signer yet.
    """
    owner_records = [s for s in signers if is_owner_signer(envelope, s)]
    invitees = [s for s in signers if not is_owner_signer(envelope, s)]
    policy = envelope.signing_order

    if is_owner_signer(envelope, signer):
        if policy == SigningOrder.INVITEES_FIRST:
            waiting = [s for s in invitees if s.status != SignerStatus.SIGNED]
            if waiting:
                raise WorkflowViolation(
                    "The owner signs after every invitee has signed",
                    operation="sign",
                    policy=policy.value,
                    waiting_on=len(waiting),
                    **describe(signer),
                )
        return

    if policy == SigningOrder.OWNER_FIRST:
        if any(s.status != SignerStatus.SIGNED for s in owner_records):
            raise WorkflowViolation(
                "The owner must sign before any invitee",
                operation="sign",
                policy=policy.value,
                **describe(signer),
            )

    current = lowest_pending_order(invitees)
    if current is not None and signer.order > current:
        raise WorkflowViolation(
            f"Signer at order {signer.order} must wait for order {current}",
            operation="sign",
            policy=policy.value,
            signer_order=signer.order,
            current_order=current,
            **describe(signer),
        )


def check_can_sign(envelope: Envelope, signer: Signer, signers: Sequence[Signer]) -> None:
    """Signer must be PENDING, the envelope must accept signatures and the policy must permit it."""
    ensure_pending(signer, "sign")
    _ensure_envelope_signable(envelope, "sign")
    check_order(envelope, signer, signers)


def check_can_decline(envelope: Envelope, signer: Signer) -> None:
    """
    Any PENDING signer may decline at any time regardless of order.

    READY_FOR_SIGNATURE only leads to COMPLETED or EXPIRED, so a decline is
    refused there.
    """
    ensure_pending(signer, "decline")
    _ensure_envelope_signable(envelope, "decline")
    if envelope.status == EnvelopeStatus.READY_FOR_SIGNATURE:
        raise InvalidStateTransition(
            "Envelope is ready for the final signature and can no longer be declined",
            operation="decline",
            **describe(envelope),
        )


def eligible_signers(envelope: Envelope, signers: Sequence[Signer]) -> List[Signer]:
    """PENDING signers the policy would let sign right now."""
    eligible = []
    for signer in sorted_signers(signers):
        if signer.status != SignerStatus.PENDING:
            continue
        try:
            check_order(envelope, signer, signers)
        except WorkflowViolation:
            continue
        eligible.append(signer)
    return eligible


def sign_patch(signer: Signer, now: datetime, consent_reference: Optional[str] = None) -> Dict[str, Any]:
    ensure_pending(signer, "sign")
    return {
        "status": SignerStatus.SIGNED,
        "signed_at": now,
        "consent_reference": consent_reference,
        "updated_at": now,
    }


def decline_patch(signer: Signer, reason: Optional[str], now: datetime) -> Dict[str, Any]:
    ensure_pending(signer, "decline")
    return {
        "status": SignerStatus.DECLINED,
        "declined_at": now,
        "decline_reason": (reason or "").strip()[:500] or "No reason given",
        "updated_at": now,
    }


def restart_patch(now: datetime) -> Dict[str, Any]:
    """
    Reset a signer for a new cycle after the owner restarts a declined envelope.

    This creates a new signing cycle - not a "reopen" of the old one.
    """
    return {
        "status": SignerStatus.PENDING,
        "signed_at": None,
        "declined_at": None,
        "decline_reason": None,
        "consent_reference": None,
        "updated_at": now,
    }
