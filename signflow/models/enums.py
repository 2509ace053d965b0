"""Enums for the signing engine - these define the valid values for statuses and policies."""
from enum import Enum


class EnvelopeStatus(str, Enum):
    """The seven legal statuses of an envelope. No other statuses are allowed."""
    DRAFT = "DRAFT"
    SENT = "SENT"
    IN_PROGRESS = "IN_PROGRESS"
    READY_FOR_SIGNATURE = "READY_FOR_SIGNATURE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    DECLINED = "DECLINED"


class SigningOrder(str, Enum):
    """Whether the owner or the invitees sign first."""
    OWNER_FIRST = "OWNER_FIRST"
    INVITEES_FIRST = "INVITEES_FIRST"


class SignerStatus(str, Enum):
    PENDING = "PENDING"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"


class InvitationTokenStatus(str, Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    REVOKED = "REVOKED"


class SigningAlgorithm(str, Enum):
    HMAC_SHA256 = "HMAC_SHA256"
    SHA256_RSA = "SHA256_RSA"
    SHA384_RSA = "SHA384_RSA"
    SHA512_RSA = "SHA512_RSA"
    ECDSA_P256_SHA256 = "ECDSA_P256_SHA256"
    ECDSA_P384_SHA384 = "ECDSA_P384_SHA384"


class SecurityLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ComplianceLevel(str, Enum):
    BASIC = "BASIC"
    ADVANCED = "ADVANCED"
    HIGH_SECURITY = "HIGH_SECURITY"


class RetentionUnit(str, Enum):
    DAYS = "DAYS"
    MONTHS = "MONTHS"
    YEARS = "YEARS"
