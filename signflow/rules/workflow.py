"""
Workflow rules: who may act, in which envelope status, in what order and when.

Pure validators. They read entities and raise; they never write.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, Optional, Sequence

from signflow.errors import (
    InvalidExpiration,
    InvalidStateTransition,
    SecurityViolation,
    WorkflowTimeout,
    WorkflowViolation,
    describe,
)
from signflow.models.domain import Envelope, Signer
from signflow.models.enums import EnvelopeStatus
from signflow.services.envelope_state import DELETABLE_STATUSES, SIGNABLE_STATUSES
from signflow.services.signer_policy import check_can_decline, check_can_sign

_ACTIVE = frozenset({EnvelopeStatus.SENT, EnvelopeStatus.IN_PROGRESS})

# Envelope statuses in which each named operation may run
OPERATION_STATUSES: Dict[str, FrozenSet[EnvelopeStatus]] = {
    "invite": frozenset({EnvelopeStatus.DRAFT}) | _ACTIVE,
    "remind": _ACTIVE,
    "sign": SIGNABLE_STATUSES,
    "decline": _ACTIVE,
    "decline_cleanup": _ACTIVE,
    "revoke": SIGNABLE_STATUSES,
    "finalize": frozenset({EnvelopeStatus.COMPLETED}),
    "restart": frozenset({EnvelopeStatus.DECLINED}),
    "expire": frozenset({EnvelopeStatus.DRAFT}) | SIGNABLE_STATUSES,
    "delete": DELETABLE_STATUSES,
}


@dataclass(frozen=True)
class SignerInput:
    """A signer as requested at envelope creation."""
    email: str
    full_name: Optional[str] = None
    order: int = 1
    is_external: Optional[bool] = None


def validate_owner(envelope: Envelope, actor_id: Optional[str], operation: str) -> None:
    """Owner-only operations: invite, remind, revoke, finalize, restart, delete."""
    if not actor_id or actor_id != envelope.owner_id:
        raise SecurityViolation(
            "Only the envelope owner can perform this operation",
            operation=operation,
            actor_id=actor_id,
            **describe(envelope),
        )


def validate_operation_status(envelope: Envelope, operation: str) -> None:
    allowed = OPERATION_STATUSES.get(operation)
    if allowed is None or envelope.status in allowed:
        return
    raise InvalidStateTransition(
        f"Envelope in status {envelope.status.value} does not accept {operation}",
        operation=operation,
        allowed=sorted(s.value for s in allowed),
        **describe(envelope),
    )


def validate_signing_order(envelope: Envelope, signer: Signer, signers: Sequence[Signer]) -> None:
    check_can_sign(envelope, signer, signers)


def validate_decline(envelope: Envelope, signer: Signer) -> None:
    check_can_decline(envelope, signer)


def validate_reminder(
    signer: Signer,
    reminders_sent: int,
    last_reminded_at: Optional[datetime],
    now: datetime,
    max_reminders: int,
    min_hours_between: int,
) -> None:
    """
    Raises:
        WorkflowViolation: cap reached or still inside the cooldown.
    """
    if reminders_sent >= max_reminders:
        raise WorkflowViolation(
            f"Reminder limit of {max_reminders} reached",
            operation="remind",
            reminders_sent=reminders_sent,
            **describe(signer),
        )
    if last_reminded_at is not None:
        next_allowed = last_reminded_at + timedelta(hours=min_hours_between)
        if now < next_allowed:
            raise WorkflowViolation(
                f"Signer was reminded less than {min_hours_between}h ago",
                operation="remind",
                next_allowed_at=next_allowed.isoformat(),
                **describe(signer),
            )


def validate_processing_window(
    operation: str,
    started_at: Optional[datetime],
    now: datetime,
    max_processing_ms: int,
) -> None:
    """
    Enforce the processing window measured from started_at.

    - decline_cleanup may only run once the window has elapsed
    - sign must complete inside the window
    """
    if started_at is None:
        if operation == "decline_cleanup":
            raise WorkflowViolation("Invitation was never sent", operation=operation)
        return

    elapsed_ms = (now - started_at).total_seconds() * 1000
    if operation == "decline_cleanup" and elapsed_ms < max_processing_ms:
        raise WorkflowViolation(
            "Signer is still inside the response window",
            operation=operation,
            elapsed_ms=int(elapsed_ms),
            max_processing_ms=max_processing_ms,
        )
    if operation == "sign" and elapsed_ms > max_processing_ms:
        raise WorkflowTimeout(
            "Signing exceeded the processing window",
            operation=operation,
            elapsed_ms=int(elapsed_ms),
            max_processing_ms=max_processing_ms,
        )


def validate_consent(signer: Signer, consent_given: bool, consent_text: Optional[str]) -> None:
    if not consent_given or not (consent_text or "").strip():
        raise WorkflowViolation("Consent must be given before signing", operation="sign", **describe(signer))


def validate_new_envelope(
    owner_email: str,
    signers: Iterable[SignerInput],
    expires_at: Optional[datetime],
    now: datetime,
    require_unique: bool = True,
) -> None:
    """
    Composition rules for a new envelope.

    Raises:
        WorkflowViolation: empty, duplicated, mis-ordered or mis-flagged signers
        InvalidExpiration: expiry not in the future
    """
    entries = list(signers)
    if not entries:
        raise WorkflowViolation("An envelope needs at least one signer", operation="create")

    if expires_at is not None and expires_at <= now:
        raise InvalidExpiration("Envelope expiry must be in the future", operation="create",
                                expires_at=expires_at.isoformat())

    owner = (owner_email or "").strip().lower()
    seen_emails = set()
    seen_orders = set()
    for entry in entries:
        email = (entry.email or "").strip().lower()
        if not email or "@" not in email:
            raise WorkflowViolation(f"Invalid signer email {entry.email!r}", operation="create")
        if entry.order < 1:
            raise WorkflowViolation("Signer order must be a positive integer", operation="create",
                                    email=email, signer_order=entry.order)
        if email == owner and entry.is_external is True:
            raise WorkflowViolation("The owner cannot be an external signer", operation="create", email=email)
        if require_unique:
            if email in seen_emails:
                raise WorkflowViolation(f"Duplicate signer email {email}", operation="create", email=email)
            if entry.order in seen_orders:
                raise WorkflowViolation(f"Duplicate signer order {entry.order}", operation="create",
                                        signer_order=entry.order)
        seen_emails.add(email)
        seen_orders.add(entry.order)
