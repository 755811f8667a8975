import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Float,
    JSON,
    Text,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


class Building(Base):
    """Building reference data with its clock-in geofence"""
    __tablename__ = "buildings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500))
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    geofence_radius_m: Mapped[float] = mapped_column(Float, nullable=False, default=100)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class WorkSession(Base):
    """Worker clock-in/out session; clock_out_at is NULL while open"""
    __tablename__ = "work_sessions"

    id: Mapped[uuid.UUID] = uuid_pk()
    worker_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    building_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    clock_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    clock_in_lat: Mapped[float] = mapped_column(Float, nullable=False)
    clock_in_lng: Mapped[float] = mapped_column(Float, nullable=False)
    clock_in_accuracy_m: Mapped[float] = mapped_column(Float, nullable=False)
    clock_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    total_hours: Mapped[Optional[float]] = mapped_column(Float)
    warning: Mapped[Optional[str]] = mapped_column(Text)  # Validator warning surfaced at clock-in
    override_by: Mapped[Optional[str]] = mapped_column(String(64))  # Supervisor who bypassed the geofence

    __table_args__ = (
        # At most one open session per worker, even across processes
        Index(
            'uq_work_sessions_open_worker',
            'worker_id',
            unique=True,
            sqlite_where=text('clock_out_at IS NULL'),
            postgresql_where=text('clock_out_at IS NULL'),
        ),
        Index('idx_work_sessions_worker_clock_in', 'worker_id', 'clock_in_at'),
    )


class AuditLog(Base):
    """Append-only audit log for clock events"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # work_session
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CLOCK_IN|CLOCK_OUT
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # worker|supervisor|admin|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # app|supervisor|system|api
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)  # {worker_id, building_id, gps_lat, gps_lng, gps_accuracy_m, ...}
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )
