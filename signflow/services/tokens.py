"""
Invitation token lifecycle.

A token is the signer's credential to act on an envelope. Only the SHA-256 of
the secret is stored; the secret itself is handed back once at issue time.

    ACTIVE -> USED      exactly once, never reversed
    ACTIVE -> REVOKED   terminal
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from signflow.config import Settings, get_settings
from signflow.errors import (
    ConcurrentModification,
    InvalidExpiration,
    NotFound,
    TokenAlreadyUsed,
    TokenExpired,
    TokenRevoked,
    describe,
)
from signflow.models.domain import Envelope, InvitationToken, Signer, utcnow
from signflow.models.enums import InvitationTokenStatus
from signflow.repositories import SqlRepository, StaleWriteError
from signflow.services.ports import NetworkContext

logger = logging.getLogger(__name__)


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def token_is_expired(token: InvitationToken, now: datetime) -> bool:
    return now >= token.expires_at


def can_be_resent(token: InvitationToken, max_resends: int, now: datetime) -> bool:
    return (
        token.status == InvitationTokenStatus.ACTIVE
        and not token_is_expired(token, now)
        and (token.resend_count or 0) < max_resends
    )


def validate_token(token: InvitationToken, now: datetime) -> InvitationToken:
    """
    Check a token can still be used.

    Raises:
        TokenExpired: past expires_at
        TokenAlreadyUsed: already consumed
        TokenRevoked: revoked
    """
    if token_is_expired(token, now):
        raise TokenExpired("Invitation has expired", operation="use_token",
                           expires_at=token.expires_at.isoformat(), **describe(token))
    if token.status == InvitationTokenStatus.USED:
        raise TokenAlreadyUsed("Invitation has already been used", operation="use_token", **describe(token))
    if token.status == InvitationTokenStatus.REVOKED:
        raise TokenRevoked("Invitation has been revoked", operation="use_token",
                           reason=token.revoked_reason, **describe(token))
    return token


def sent_patch(token: InvitationToken, network: Optional[NetworkContext], now: datetime) -> Dict[str, Any]:
    network = network or NetworkContext()
    patch: Dict[str, Any] = {
        "last_sent_at": now,
        "resend_count": (token.resend_count or 0) + 1,
        "updated_at": now,
    }
    if token.sent_at is None:
        patch["sent_at"] = now
    # Keep previously captured provenance when this send carries none
    for field, value in network.as_dict().items():
        if value is not None:
            patch[field] = value
    return patch


def used_patch(used_by: Optional[str], now: datetime) -> Dict[str, Any]:
    return {"status": InvitationTokenStatus.USED, "used_at": now, "used_by": used_by, "updated_at": now}


def revoked_patch(reason: str, revoked_by: Optional[str], now: datetime) -> Dict[str, Any]:
    return {
        "status": InvitationTokenStatus.REVOKED,
        "revoked_at": now,
        "revoked_reason": (reason or "Revoked")[:500],
        "revoked_by": revoked_by,
        "updated_at": now,
    }


@dataclass
class IssuedToken:
    """A freshly issued token and its secret. The secret is not recoverable later."""
    token: InvitationToken
    secret: str


class InvitationTokenService:
    """Issues, delivers, consumes and revokes invitation tokens."""

    def __init__(self, db: Session, settings: Optional[Settings] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.repo = SqlRepository(db, InvitationToken)

    def issue(
        self,
        signer: Signer,
        envelope: Envelope,
        acting_owner_email: Optional[str],
        created_by: Optional[str] = None,
        network: Optional[NetworkContext] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[IssuedToken]:
        """
        Issue a token for a signer, replacing any ACTIVE one.

        Returns None when the signer is the acting owner: owners sign in
        session, not by invitation.

        Raises:
            InvalidExpiration: when the expiry is not strictly in the future.
            ConcurrentModification: when a racing request issued one first; the
                session is rolled back.
        """
        if acting_owner_email and signer.email.strip().lower() == acting_owner_email.strip().lower():
            logger.info("Skipping invitation for owner signer %s on envelope %s", signer.id, envelope.id)
            return None

        now = self.clock()
        if expires_at is None:
            expires_at = now + timedelta(days=self.settings.token_ttl_days)
        if expires_at <= now:
            raise InvalidExpiration(
                "Invitation expiry must be in the future",
                operation="issue_token",
                expires_at=expires_at.isoformat(),
                **describe(signer),
            )

        existing = self.active_token_for(signer.id)
        if existing is not None:
            self.revoke(existing, "Replaced by a new invitation", created_by)

        network = network or NetworkContext()
        secret = secrets.token_urlsafe(32)
        token = InvitationToken(
            envelope_id=envelope.id,
            signer_id=signer.id,
            token_hash=hash_secret(secret),
            status=InvitationTokenStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            resend_count=0,
            created_by=created_by,
            ip_address=network.ip_address,
            user_agent=network.user_agent,
            country=network.country,
        )
        try:
            self.repo.create(token)
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("Lost race issuing a token for signer %s", signer.id)
            raise ConcurrentModification(
                "Another invitation was issued for this signer at the same time",
                operation="issue_token",
                signer_id=signer.id,
            ) from exc
        return IssuedToken(token=token, secret=secret)

    def mark_sent(self, token: InvitationToken, network: Optional[NetworkContext] = None) -> InvitationToken:
        """Record a delivery. Status is unchanged."""
        now = self.clock()
        validate_token(token, now)
        try:
            return self.repo.update(token.id, sent_patch(token, network, now),
                                    expected={"status": InvitationTokenStatus.ACTIVE})
        except StaleWriteError:
            self.db.refresh(token)
            return validate_token(token, now)

    def can_be_resent(self, token: InvitationToken) -> bool:
        return can_be_resent(token, self.settings.max_resends, self.clock())

    def validate(self, token: InvitationToken) -> InvitationToken:
        return validate_token(token, self.clock())

    def resolve(self, secret: str) -> InvitationToken:
        """Look a token up by the secret the signer presents."""
        matches = self.repo.query(token_hash=hash_secret(secret or ""))
        if not matches:
            raise NotFound("Invitation not found", operation="resolve_token")
        return matches[0]

    def active_token_for(self, signer_id: str) -> Optional[InvitationToken]:
        matches = self.repo.query(signer_id=signer_id, status=InvitationTokenStatus.ACTIVE)
        return matches[0] if matches else None

    def mark_used(self, token: InvitationToken, used_by: Optional[str]) -> InvitationToken:
        """
        Consume a token.

        The write is conditioned on the token still being ACTIVE, so of two
        racing consumers exactly one succeeds.

        Raises:
            TokenExpired / TokenAlreadyUsed / TokenRevoked
        """
        now = self.clock()
        validate_token(token, now)
        try:
            return self.repo.update(token.id, used_patch(used_by, now),
                                    expected={"status": InvitationTokenStatus.ACTIVE})
        except StaleWriteError:
            self.db.refresh(token)
            logger.warning("Lost race consuming token %s (now %s)", token.id, token.status.value)
            if token.status == InvitationTokenStatus.REVOKED:
                raise TokenRevoked("Invitation has been revoked", operation="use_token",
                                   reason=token.revoked_reason, **describe(token))
            raise TokenAlreadyUsed("Invitation has already been used", operation="use_token", **describe(token))

    def revoke(self, token: InvitationToken, reason: str, revoked_by: Optional[str] = None) -> InvitationToken:
        """
        Revoke an ACTIVE token. Revoking a REVOKED token is a no-op that keeps
        the first reason.

        Raises:
            TokenAlreadyUsed: a used token stays used.
        """
        if token.status == InvitationTokenStatus.REVOKED:
            return token
        if token.status == InvitationTokenStatus.USED:
            raise TokenAlreadyUsed("A used invitation cannot be revoked", operation="revoke_token", **describe(token))

        try:
            return self.repo.update(token.id, revoked_patch(reason, revoked_by, self.clock()),
                                    expected={"status": InvitationTokenStatus.ACTIVE})
        except StaleWriteError:
            self.db.refresh(token)
            if token.status == InvitationTokenStatus.USED:
                raise TokenAlreadyUsed("A used invitation cannot be revoked",
                                       operation="revoke_token", **describe(token))
            return token

    def revoke_all_for_envelope(self, envelope_id: str, reason: str,
                                revoked_by: Optional[str] = None) -> List[InvitationToken]:
        """Revoke every ACTIVE token of an envelope."""
        revoked = []
        for token in self.repo.query(envelope_id=envelope_id, status=InvitationTokenStatus.ACTIVE):
            revoked.append(self.revoke(token, reason, revoked_by))
        return revoked
