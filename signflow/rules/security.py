"""
Security rules: cryptographic evidence format, provenance and access.

Pure validators raising SecurityViolation.
"""
import hmac
import ipaddress
import re
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from signflow.errors import SecurityViolation, describe
from signflow.models.domain import Envelope, InvitationToken, Signer
from signflow.models.enums import SigningAlgorithm
from signflow.services.ports import CertificateInfo, NetworkContext

# hashlib digest used by each signing algorithm
ALGORITHM_DIGESTS = {
    SigningAlgorithm.HMAC_SHA256.value: "sha256",
    SigningAlgorithm.SHA256_RSA.value: "sha256",
    SigningAlgorithm.SHA384_RSA.value: "sha384",
    SigningAlgorithm.SHA512_RSA.value: "sha512",
    SigningAlgorithm.ECDSA_P256_SHA256.value: "sha256",
    SigningAlgorithm.ECDSA_P384_SHA384.value: "sha384",
}

_HEX_LENGTHS = {"sha256": 64, "sha384": 96, "sha512": 128}
_HEX = re.compile(r"^[0-9a-f]+$")
_COUNTRY = re.compile(r"^[A-Z0-9]{2}$")
_MAX_USER_AGENT = 500


def digest_for(algorithm: str) -> str:
    try:
        return ALGORITHM_DIGESTS[algorithm]
    except KeyError:
        raise SecurityViolation(f"Unsupported signing algorithm {algorithm}", algorithm=algorithm)


def validate_hash_format(value: Optional[str], algorithm: str, field: str = "document_hash") -> None:
    """Lowercase hex whose length matches the algorithm's digest."""
    expected = _HEX_LENGTHS[digest_for(algorithm)]
    if not value or len(value) != expected or not _HEX.match(value):
        raise SecurityViolation(
            f"{field} is not a {expected}-character hex digest",
            field=field,
            algorithm=algorithm,
        )


def validate_certificate(certificate: Optional[CertificateInfo], now: datetime) -> None:
    """A certificate, when present, must name issuer and subject and be valid now."""
    if certificate is None:
        return
    if not (certificate.issuer or "").strip() or not (certificate.subject or "").strip():
        raise SecurityViolation("Certificate must carry an issuer and a subject")
    if certificate.valid_from > certificate.valid_to:
        raise SecurityViolation("Certificate validity period is inverted", issuer=certificate.issuer)
    if not certificate.valid_from <= now <= certificate.valid_to:
        raise SecurityViolation(
            "Certificate is not valid at signing time",
            issuer=certificate.issuer,
            valid_from=certificate.valid_from.isoformat(),
            valid_to=certificate.valid_to.isoformat(),
        )


def validate_timestamp(
    timestamp: Optional[datetime],
    now: datetime,
    max_age_hours: int,
    floor: datetime,
    skew_seconds: int,
) -> None:
    """Not future-dated beyond the skew, not before the floor, not older than max_age_hours."""
    if timestamp is None:
        raise SecurityViolation("Timestamp is required")
    if timestamp > now + timedelta(seconds=skew_seconds):
        raise SecurityViolation("Timestamp is in the future", timestamp=timestamp.isoformat())
    if timestamp < floor:
        raise SecurityViolation("Timestamp predates the accepted floor", timestamp=timestamp.isoformat())
    if now - timestamp > timedelta(hours=max_age_hours):
        raise SecurityViolation(f"Timestamp is older than {max_age_hours}h", timestamp=timestamp.isoformat())


def validate_key_id(key_id: Optional[str], allowed: Sequence[str]) -> None:
    if not key_id:
        raise SecurityViolation("Signing key id is required")
    if allowed and key_id not in allowed:
        raise SecurityViolation(f"Signing key {key_id} is not authorized", key_id=key_id)


def validate_storage_key(storage_key: Optional[str], allowed_prefixes: Sequence[str]) -> None:
    if not storage_key or ".." in storage_key or storage_key.startswith("/"):
        raise SecurityViolation("Invalid storage key", storage_key=storage_key)
    if allowed_prefixes and not any(storage_key.startswith(p) for p in allowed_prefixes):
        raise SecurityViolation("Storage key is outside the allowed locations", storage_key=storage_key)


def validate_caller_access(
    envelope: Envelope,
    signers: Iterable[Signer],
    caller_id: Optional[str],
    caller_email: Optional[str],
    allowed_users: Sequence[str],
    include_signers: bool = True,
) -> None:
    """
    Read access: the owner, an allow-listed user, and (unless include_signers
    is False) any signer of the envelope by email.
    """
    if caller_id and (caller_id == envelope.owner_id or caller_id in allowed_users):
        return
    if include_signers and caller_email:
        email = caller_email.strip().lower()
        if any(s.email.strip().lower() == email for s in signers):
            return
    raise SecurityViolation("Caller may not access this envelope", caller_id=caller_id, **describe(envelope))


def validate_network_context(network: Optional[NetworkContext]) -> None:
    if network is None:
        return
    if network.ip_address:
        try:
            ipaddress.ip_address(network.ip_address)
        except ValueError:
            raise SecurityViolation("Invalid IP address", ip_address=network.ip_address)
    if network.user_agent and len(network.user_agent) > _MAX_USER_AGENT:
        raise SecurityViolation(f"User agent longer than {_MAX_USER_AGENT} characters")
    if network.country and not _COUNTRY.match(network.country):
        raise SecurityViolation("Country must be a two-character region code", country=network.country)


def validate_document_hash(claimed: Optional[str], actual: str) -> None:
    """The hash the signer saw must be the hash of the stored document."""
    if claimed is None:
        return
    if not hmac.compare_digest(claimed.lower(), actual.lower()):
        raise SecurityViolation("Document changed since it was presented to the signer")


def validate_token_owner(token: InvitationToken, signer: Signer) -> None:
    if token.signer_id != signer.id or token.envelope_id != signer.envelope_id:
        raise SecurityViolation("Invitation does not belong to this signer", **describe(signer))
