"""
Local implementations of the collaborator contracts.

Used by the development server and the test-suite; production deployments wire
their KMS, object store and outbox behind the same interfaces.
"""
import hashlib
import hmac
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from signflow.errors import NotFound, SigningFailed
from signflow.services.ports import CertificateInfo, CryptoSigner, DocumentStorage, EventSink

logger = logging.getLogger(__name__)


class HmacKeyRingSigner(CryptoSigner):
    """HMAC-SHA256 signer over a ring of named secrets."""

    algorithm = "HMAC_SHA256"

    def __init__(self, keys: Mapping[str, bytes], certificates: Optional[Mapping[str, CertificateInfo]] = None):
        self._keys = dict(keys)
        self._certificates = dict(certificates or {})

    def _key(self, key_id: str) -> bytes:
        try:
            return self._keys[key_id]
        except KeyError:
            raise SigningFailed(f"Unknown signing key {key_id}", key_id=key_id)

    def sign(self, key_id: str, digest: bytes) -> bytes:
        return hmac.new(self._key(key_id), digest, hashlib.sha256).digest()

    def verify(self, key_id: str, digest: bytes, signature: bytes) -> bool:
        expected = hmac.new(self._key(key_id), digest, hashlib.sha256).digest()
        return hmac.compare_digest(expected, signature)

    def describe_key(self, key_id: str) -> Optional[CertificateInfo]:
        return self._certificates.get(key_id)


class InMemoryDocumentStorage(DocumentStorage):
    def __init__(self):
        self._blobs: Dict[str, Tuple[bytes, Dict[str, str]]] = {}

    def exists(self, key: str) -> bool:
        return key in self._blobs

    def get(self, key: str) -> bytes:
        if key not in self._blobs:
            raise NotFound("Document not found in storage", storage_key=key)
        return self._blobs[key][0]

    def put(self, key: str, data: bytes, metadata: Optional[Mapping[str, str]] = None) -> None:
        self._blobs[key] = (bytes(data), dict(metadata or {}))

    def metadata(self, key: str) -> Dict[str, str]:
        return dict(self._blobs[key][1])


class LoggingEventSink(EventSink):
    """Publishes events to the application log."""

    def publish(self, event_type: str, payload: Mapping[str, Any]) -> None:
        logger.info("event %s %s", event_type, dict(payload))


class RecordingEventSink(EventSink):
    """Keeps published events in memory, in order."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, event_type: str, payload: Mapping[str, Any]) -> None:
        self.events.append((event_type, dict(payload)))

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [payload for kind, payload in self.events if kind == event_type]
