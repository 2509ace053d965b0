"""
Operation dispatch for the rule layer.

Every Operation maps to the tuple of rules that must pass before it runs. The
table is checked for completeness at import time, so a new Operation cannot
ship without deciding its rules.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from signflow.config import Settings
from signflow.errors import WorkflowViolation, describe
from signflow.models.audit import AuditEvent
from signflow.models.domain import Envelope, InvitationToken, Signature, Signer
from signflow.rules import compliance, security, workflow
from signflow.services.envelope_state import is_expired
from signflow.services.ports import CertificateInfo, NetworkContext
from signflow.services.signer_policy import ensure_pending
from signflow.services.tokens import validate_token


class Operation(str, Enum):
    CREATE = "create"
    INVITE = "invite"
    REMIND = "remind"
    SIGN = "sign"
    DECLINE = "decline"
    DECLINE_CLEANUP = "decline_cleanup"
    REVOKE = "revoke"
    FINALIZE = "finalize"
    RESTART = "restart"
    EXPIRE = "expire"
    DELETE = "delete"
    ACCESS = "access"
    DOWNLOAD = "download"
    AUDIT = "audit"


@dataclass
class RuleContext:
    """Everything a rule may look at. Rules only read it."""
    settings: Settings
    now: datetime
    envelope: Optional[Envelope] = None
    signers: Sequence[Signer] = ()
    signer: Optional[Signer] = None
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    network: Optional[NetworkContext] = None
    token: Optional[InvitationToken] = None

    # create
    owner_email: Optional[str] = None
    signer_inputs: Sequence[workflow.SignerInput] = ()
    expires_at: Optional[datetime] = None

    # sign
    consent_given: bool = False
    consent_text: Optional[str] = None
    started_at: Optional[datetime] = None
    algorithm: Optional[str] = None
    key_id: Optional[str] = None
    certificate: Optional[CertificateInfo] = None

    # remind
    reminders_sent: int = 0
    last_reminded_at: Optional[datetime] = None

    # finalize, delete
    signatures: Sequence[Signature] = ()
    events: Sequence[AuditEvent] = ()


Rule = Callable[[Operation, RuleContext], None]


def _owner(op: Operation, ctx: RuleContext) -> None:
    workflow.validate_owner(ctx.envelope, ctx.actor_id, op.value)


def _status(op: Operation, ctx: RuleContext) -> None:
    workflow.validate_operation_status(ctx.envelope, op.value)


def _pending(op: Operation, ctx: RuleContext) -> None:
    if ctx.signer is None:
        return
    ensure_pending(ctx.signer, op.value)


def _signing_order(op: Operation, ctx: RuleContext) -> None:
    workflow.validate_signing_order(ctx.envelope, ctx.signer, ctx.signers)


def _decline(op: Operation, ctx: RuleContext) -> None:
    workflow.validate_decline(ctx.envelope, ctx.signer)


def _consent(op: Operation, ctx: RuleContext) -> None:
    workflow.validate_consent(ctx.signer, ctx.consent_given, ctx.consent_text)


def _processing_window(op: Operation, ctx: RuleContext) -> None:
    workflow.validate_processing_window(op.value, ctx.started_at, ctx.now, ctx.settings.max_processing_time_ms)


def _reminder(op: Operation, ctx: RuleContext) -> None:
    if ctx.signer is None:
        return
    workflow.validate_reminder(
        ctx.signer,
        ctx.reminders_sent,
        ctx.last_reminded_at,
        ctx.now,
        ctx.settings.max_reminders_per_signer,
        ctx.settings.min_hours_between_reminders,
    )


def _new_envelope(op: Operation, ctx: RuleContext) -> None:
    workflow.validate_new_envelope(
        ctx.owner_email,
        ctx.signer_inputs,
        ctx.expires_at,
        ctx.now,
        ctx.settings.require_unique_emails_per_envelope,
    )


def _expiry_due(op: Operation, ctx: RuleContext) -> None:
    if not is_expired(ctx.envelope, ctx.now):
        raise WorkflowViolation("Envelope has not reached its expiry", operation=op.value, **describe(ctx.envelope))


def _network(op: Operation, ctx: RuleContext) -> None:
    security.validate_network_context(ctx.network)


def _token_owner(op: Operation, ctx: RuleContext) -> None:
    if ctx.token is not None:
        security.validate_token_owner(ctx.token, ctx.signer)


def _token_valid(op: Operation, ctx: RuleContext) -> None:
    if ctx.token is not None:
        validate_token(ctx.token, ctx.now)


def _timestamp(op: Operation, ctx: RuleContext) -> None:
    if ctx.started_at is None:
        return
    s = ctx.settings
    security.validate_timestamp(
        ctx.started_at, ctx.now, s.signature_max_age_hours, s.timestamp_floor, s.clock_skew_seconds,
    )


def _key_id(op: Operation, ctx: RuleContext) -> None:
    security.validate_key_id(ctx.key_id, ctx.settings.allowed_key_ids)


def _certificate(op: Operation, ctx: RuleContext) -> None:
    security.validate_certificate(ctx.certificate, ctx.now)


def _algorithm(op: Operation, ctx: RuleContext) -> None:
    security.digest_for(ctx.algorithm)
    compliance.validate_algorithm(
        ctx.algorithm,
        ctx.settings.allowed_algorithms,
        ctx.settings.min_security_level,
        ctx.settings.compliance_level,
    )


def _caller_access(op: Operation, ctx: RuleContext) -> None:
    security.validate_caller_access(
        ctx.envelope, ctx.signers, ctx.actor_id, ctx.actor_email, ctx.settings.allowed_audit_users,
    )


def _audit_access(op: Operation, ctx: RuleContext) -> None:
    security.validate_caller_access(
        ctx.envelope, ctx.signers, ctx.actor_id, ctx.actor_email, ctx.settings.allowed_audit_users,
        include_signers=False,
    )


def _retention(op: Operation, ctx: RuleContext) -> None:
    s = ctx.settings
    compliance.validate_retention_policy(
        ctx.envelope.completed_at, ctx.now, s.retention_period, s.retention_unit,
        s.archive_required, s.delete_after_retention,
    )


def _access_logging(op: Operation, ctx: RuleContext) -> None:
    compliance.validate_access_logging(ctx.envelope, ctx.signers, ctx.events)


def _preserve_evidence(op: Operation, ctx: RuleContext) -> None:
    compliance.validate_evidence_preserved(ctx.envelope, ctx.signatures)


def _evidence(op: Operation, ctx: RuleContext) -> None:
    s = ctx.settings
    for signature in ctx.signatures:
        compliance.validate_tamper_evidence(signature, ctx.now, s.clock_skew_seconds)
        compliance.validate_legal_validity(signature, ctx.now, s.legal_validity_days)
        compliance.validate_certificate_compliance(signature, s.trusted_certificate_issuers, s.compliance_level)
        compliance.validate_algorithm(
            signature.algorithm, s.allowed_algorithms, s.min_security_level, s.compliance_level,
        )


RULES: Dict[Operation, Tuple[Rule, ...]] = {
    Operation.CREATE: (_new_envelope, _network),
    Operation.INVITE: (_owner, _status, _network),
    Operation.REMIND: (_owner, _status, _pending, _reminder, _network),
    Operation.SIGN: (
        _signing_order, _token_owner, _token_valid, _consent, _processing_window,
        _timestamp, _network, _key_id, _certificate, _algorithm,
    ),
    Operation.DECLINE: (_decline, _token_owner, _token_valid, _network),
    Operation.DECLINE_CLEANUP: (_owner, _status, _pending, _processing_window),
    Operation.REVOKE: (_owner, _status, _pending),
    Operation.FINALIZE: (_owner, _status, _access_logging, _evidence, _retention),
    Operation.RESTART: (_owner, _status),
    Operation.EXPIRE: (_status, _expiry_due),
    Operation.DELETE: (_owner, _status, _preserve_evidence),
    Operation.ACCESS: (_caller_access,),
    Operation.DOWNLOAD: (_caller_access, _retention),
    Operation.AUDIT: (_audit_access,),
}

_missing: List[str] = [op.value for op in Operation if op not in RULES]
if _missing:
    raise RuntimeError(f"Operations without rules: {', '.join(_missing)}")


def run_rules(operation: Operation, context: RuleContext) -> None:
    """Run every rule registered for the operation; the first failure propagates."""
    for rule in RULES[operation]:
        rule(operation, context)
