"""Append-only audit trail. Events are never updated or deleted."""
import enum
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from signflow.models.audit import AuditEvent
from signflow.services.ports import NetworkContext

# Column limits (match model)
_IP_LEN = 64
_USER_AGENT_LEN = 500
_COUNTRY_LEN = 8


def _sanitize_value(v: Any) -> Any:
    """Convert to a JSON-serializable value so the payload never raises on INSERT."""
    if v is None or isinstance(v, (str, int, float, bool)):
        return v
    if isinstance(v, enum.Enum):
        return v.value
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, dict):
        return {str(k): _sanitize_value(x) for k, x in v.items()}
    if isinstance(v, (list, tuple, set, frozenset)):
        return [_sanitize_value(x) for x in v]
    return str(v)


def sanitize_payload(payload: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if payload is None:
        return None
    return {str(k): _sanitize_value(v) for k, v in payload.items()}


def record_event(
    db: Session,
    event_type: str,
    entity_type: str,
    entity_id: str,
    *,
    envelope_id: Optional[str] = None,
    signer_id: Optional[str] = None,
    user_id: Optional[str] = None,
    network: Optional[NetworkContext] = None,
    payload: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> AuditEvent:
    """Append one audit event. String fields are truncated to column limits; commit stays with the caller."""
    network = network or NetworkContext()
    event = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        envelope_id=envelope_id,
        signer_id=signer_id,
        user_id=user_id,
        ip_address=network.ip_address[:_IP_LEN] if network.ip_address else None,
        user_agent=network.user_agent[:_USER_AGENT_LEN] if network.user_agent else None,
        country=network.country[:_COUNTRY_LEN] if network.country else None,
        payload_json=sanitize_payload(payload),
    )
    if now is not None:
        event.created_at = now
    db.add(event)
    db.flush()
    return event


def events_for_envelope(db: Session, envelope_id: str) -> List[AuditEvent]:
    """Every event recorded against an envelope, oldest first."""
    return (
        db.query(AuditEvent)
        .filter(AuditEvent.envelope_id == envelope_id)
        .order_by(AuditEvent.created_at, AuditEvent.id)
        .all()
    )
