"""
Contracts for the external collaborators the engine talks to.

The engine treats the crypto signer, blob storage and event publisher as
black boxes reached only through these interfaces.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class NetworkContext:
    """Caller network provenance, captured at the boundary and threaded to audit."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"ip_address": self.ip_address, "user_agent": self.user_agent, "country": self.country}


@dataclass(frozen=True)
class CertificateInfo:
    issuer: str
    subject: str
    valid_from: datetime
    valid_to: datetime


class CryptoSigner(ABC):
    """Produces signatures over message digests with keys it owns."""

    #: Algorithm identifier recorded on every signature this signer produces
    algorithm: str = "HMAC_SHA256"

    @abstractmethod
    def sign(self, key_id: str, digest: bytes) -> bytes:
        """Sign a digest. Failures surface as SigningFailed."""

    @abstractmethod
    def verify(self, key_id: str, digest: bytes, signature: bytes) -> bool:
        pass

    def describe_key(self, key_id: str) -> Optional[CertificateInfo]:
        """Certificate for the key, when the signer exposes one."""
        return None


class DocumentStorage(ABC):
    """Blob storage for documents and evidence."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        pass

    @abstractmethod
    def put(self, key: str, data: bytes, metadata: Optional[Mapping[str, str]] = None) -> None:
        pass


class EventSink(ABC):
    """Outbound event publisher. Fire-and-forget."""

    @abstractmethod
    def publish(self, event_type: str, payload: Mapping[str, Any]) -> None:
        pass
