"""
Compliance rules: whether collected evidence is legally defensible.

Pure validators raising ComplianceViolation.
"""
import re
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from signflow.errors import ComplianceViolation
from signflow.models.audit import AuditEvent, AuditEventType
from signflow.models.domain import Envelope, Signature, Signer
from signflow.models.enums import ComplianceLevel, RetentionUnit, SecurityLevel, SignerStatus, SigningAlgorithm
from signflow.rules.security import ALGORITHM_DIGESTS

ALGORITHM_SECURITY_LEVELS = {
    SigningAlgorithm.HMAC_SHA256.value: SecurityLevel.LOW,
    SigningAlgorithm.SHA256_RSA.value: SecurityLevel.MEDIUM,
    SigningAlgorithm.ECDSA_P256_SHA256.value: SecurityLevel.MEDIUM,
    SigningAlgorithm.SHA384_RSA.value: SecurityLevel.HIGH,
    SigningAlgorithm.SHA512_RSA.value: SecurityLevel.HIGH,
    SigningAlgorithm.ECDSA_P384_SHA384.value: SecurityLevel.HIGH,
}

# Minimum algorithm strength each compliance level accepts
COMPLIANCE_MINIMUMS = {
    ComplianceLevel.BASIC: SecurityLevel.LOW,
    ComplianceLevel.ADVANCED: SecurityLevel.MEDIUM,
    ComplianceLevel.HIGH_SECURITY: SecurityLevel.HIGH,
}

_LEVEL_RANK = {SecurityLevel.LOW: 1, SecurityLevel.MEDIUM: 2, SecurityLevel.HIGH: 3}
_HEX_LENGTHS = {"sha256": 64, "sha384": 96, "sha512": 128}
_HEX = re.compile(r"^[0-9a-f]+$")

# Approximate unit lengths for the retention clock
_RETENTION_DAYS = {RetentionUnit.DAYS: 1, RetentionUnit.MONTHS: 30, RetentionUnit.YEARS: 365}


def validate_algorithm(
    algorithm: str,
    allowed: Sequence[str],
    min_security_level: str,
    compliance_level: str,
) -> None:
    if not algorithm:
        raise ComplianceViolation("Signing algorithm is required")
    if algorithm not in allowed:
        raise ComplianceViolation(f"Algorithm {algorithm} is not allowed by policy", algorithm=algorithm)
    level = ALGORITHM_SECURITY_LEVELS.get(algorithm)
    if level is None:
        raise ComplianceViolation(f"Algorithm {algorithm} has no known security level", algorithm=algorithm)

    minimum = SecurityLevel(min_security_level)
    if _LEVEL_RANK[level] < _LEVEL_RANK[minimum]:
        raise ComplianceViolation(
            f"Algorithm {algorithm} is below the minimum security level {minimum.value}",
            algorithm=algorithm,
            security_level=level.value,
        )
    required = COMPLIANCE_MINIMUMS[ComplianceLevel(compliance_level)]
    if _LEVEL_RANK[level] < _LEVEL_RANK[required]:
        raise ComplianceViolation(
            f"Algorithm {algorithm} does not meet compliance level {compliance_level}",
            algorithm=algorithm,
            security_level=level.value,
        )


def validate_legal_validity(signature: Signature, now: datetime, validity_days: int) -> None:
    """A signature stays legally valid for validity_days after it was made."""
    if signature.signed_at is None:
        raise ComplianceViolation("Signature has no timestamp", signature_id=signature.id)
    if now - signature.signed_at > timedelta(days=validity_days):
        raise ComplianceViolation(
            "Signature is outside its legal validity window",
            signature_id=signature.id,
            signed_at=signature.signed_at.isoformat(),
        )
    if signature.certificate_valid_to is not None and signature.certificate_valid_to < signature.signed_at:
        raise ComplianceViolation("Certificate had expired when the signature was made", signature_id=signature.id)


def validate_certificate_compliance(
    signature: Signature,
    trusted_issuers: Sequence[str],
    compliance_level: str,
) -> None:
    """
    When trusted issuers are configured every certificate must come from one.
    HIGH_SECURITY additionally requires a certificate on every signature.
    """
    issuer = signature.certificate_issuer
    if issuer is None:
        if ComplianceLevel(compliance_level) == ComplianceLevel.HIGH_SECURITY:
            raise ComplianceViolation("Certificate information is required", signature_id=signature.id)
        return
    if not signature.certificate_subject:
        raise ComplianceViolation("Certificate subject is missing", signature_id=signature.id)
    if trusted_issuers and issuer not in trusted_issuers:
        raise ComplianceViolation(f"Certificate issuer {issuer} is not trusted", signature_id=signature.id)


def retention_deadline(completed_at: datetime, period: int, unit: str) -> datetime:
    return completed_at + timedelta(days=period * _RETENTION_DAYS[RetentionUnit(unit)])


def validate_retention_policy(
    completed_at: Optional[datetime],
    now: datetime,
    period: int,
    unit: str,
    archive_required: bool,
    delete_after_retention: bool,
) -> None:
    """
    Past the retention deadline the evidence must be archived or deleted,
    whichever the policy demands, instead of being served again.
    """
    if period <= 0:
        raise ComplianceViolation("Retention period must be positive", retention_period=period)
    if completed_at is None:
        return
    deadline = retention_deadline(completed_at, period, unit)
    if now <= deadline:
        return
    if delete_after_retention:
        raise ComplianceViolation("Evidence has exceeded retention and should be deleted",
                                  retention_deadline=deadline.isoformat())
    if archive_required:
        raise ComplianceViolation("Evidence has exceeded retention and should be archived",
                                  retention_deadline=deadline.isoformat())


def missing_access_log_entries(
    envelope: Envelope,
    signers: Iterable[Signer],
    events: Iterable[AuditEvent],
) -> List[str]:
    """Audit facts a completed envelope must have on record, by description."""
    recorded = {(e.event_type, e.signer_id) for e in events}
    kinds = {kind for kind, _ in recorded}
    missing = []
    if AuditEventType.ENVELOPE_CREATED not in kinds:
        missing.append(AuditEventType.ENVELOPE_CREATED)
    if AuditEventType.ENVELOPE_SENT not in kinds:
        missing.append(AuditEventType.ENVELOPE_SENT)
    for signer in signers:
        if signer.status == SignerStatus.SIGNED and (AuditEventType.SIGNER_SIGNED, signer.id) not in recorded:
            missing.append(f"{AuditEventType.SIGNER_SIGNED}:{signer.id}")
    return missing


def validate_access_logging(envelope: Envelope, signers: Iterable[Signer], events: Iterable[AuditEvent]) -> None:
    missing = missing_access_log_entries(envelope, signers, events)
    if missing:
        raise ComplianceViolation("Audit trail is incomplete", envelope_id=envelope.id, missing=missing)


def validate_tamper_evidence(signature: Signature, now: datetime, skew_seconds: int = 0) -> None:
    """Document hash, signature hash and timestamp present, well-formed and not future-dated."""
    digest = ALGORITHM_DIGESTS.get(signature.algorithm)
    if digest is None:
        raise ComplianceViolation(f"Unknown algorithm {signature.algorithm}", signature_id=signature.id)
    doc_hash = signature.document_hash or ""
    if len(doc_hash) != _HEX_LENGTHS[digest] or not _HEX.match(doc_hash):
        raise ComplianceViolation("Document hash is missing or malformed", signature_id=signature.id)
    sig_hash = signature.signature_hash or ""
    if len(sig_hash) != 64 or not _HEX.match(sig_hash):
        raise ComplianceViolation("Signature hash is missing or malformed", signature_id=signature.id)
    if signature.signed_at is None:
        raise ComplianceViolation("Signature timestamp is missing", signature_id=signature.id)
    if signature.signed_at > now + timedelta(seconds=skew_seconds):
        raise ComplianceViolation("Signature timestamp is in the future", signature_id=signature.id)


def validate_evidence_preserved(envelope: Envelope, signatures: Sequence[Signature]) -> None:
    """Signature evidence is append-only; an envelope holding any cannot be deleted."""
    if signatures:
        raise ComplianceViolation(
            "Envelope holds signature evidence and cannot be deleted",
            operation="delete",
            envelope_id=envelope.id,
            signature_count=len(signatures),
        )
