"""
Audit logging service.
Append-only audit log with integrity hashing.
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Optional, Dict
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


def _integrity_hash(canonical_data: Dict, integrity_secret: str) -> str:
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    hash_input = f"{canonical_json}:{integrity_secret}"
    return hashlib.sha256(hash_input.encode()).hexdigest()


def _canonical(entity_type, entity_id, action, actor_id, actor_role, source, timestamp_utc, context) -> Dict:
    return {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "source": source,
        "timestamp_utc": timestamp_utc.isoformat(),
        "context": context,
    }


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    context: Optional[Dict] = None,
    timestamp_utc: Optional[datetime] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """
    Add an append-only audit log entry to the session.

    The entry is flushed but not committed, so it lands in the same
    transaction as the change it records.

    Args:
        db: Database session
        entity_type: Type of entity (work_session)
        entity_id: Entity ID
        action: Action performed (CLOCK_IN|CLOCK_OUT)
        actor_id: User ID who performed the action
        actor_role: Role of the actor (worker|supervisor|admin|system)
        source: Source of the action (app|supervisor|system|api)
        context: Additional context (worker_id, building_id, GPS data, etc.)
        timestamp_utc: Event time (defaults to now)
        integrity_secret: Secret for integrity hash (defaults to AUDIT_SECRET)

    Returns:
        Created AuditLog object
    """
    if timestamp_utc is None:
        timestamp_utc = datetime.now(timezone.utc)
    if integrity_secret is None:
        integrity_secret = settings.audit_secret

    integrity_hash = None
    if integrity_secret:
        integrity_hash = _integrity_hash(
            _canonical(entity_type, entity_id, action, actor_id, actor_role, source, timestamp_utc, context),
            integrity_secret,
        )

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source or "system",
        timestamp_utc=timestamp_utc,
        context=context,
        integrity_hash=integrity_hash,
    )

    db.add(audit_log)
    db.flush()

    return audit_log


def verify_audit_log(audit_log: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    """Recompute the integrity hash of a stored entry and compare."""
    if integrity_secret is None:
        integrity_secret = settings.audit_secret
    if not integrity_secret or not audit_log.integrity_hash:
        return False
    timestamp_utc = audit_log.timestamp_utc
    # SQLite drops tzinfo on the way back
    if timestamp_utc.tzinfo is None:
        timestamp_utc = timestamp_utc.replace(tzinfo=timezone.utc)
    expected = _integrity_hash(
        _canonical(
            audit_log.entity_type, audit_log.entity_id, audit_log.action, audit_log.actor_id,
            audit_log.actor_role, audit_log.source, timestamp_utc, audit_log.context,
        ),
        integrity_secret,
    )
    return expected == audit_log.integrity_hash


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0
) -> list:
    """
    Get audit logs with optional filtering, newest first.
    """
    query = db.query(AuditLog)

    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)

    if entity_id:
        query = query.filter(AuditLog.entity_id == str(entity_id))

    query = query.order_by(AuditLog.timestamp_utc.desc())
    query = query.limit(limit).offset(offset)

    return query.all()
