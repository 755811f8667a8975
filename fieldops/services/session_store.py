"""
Work session storage.
In-memory store for embedded use and a SQLAlchemy store that also writes
the clock-in/clock-out audit trail.
"""
import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..models.models import WorkSession as WorkSessionRecord
from ..schemas.dispatch import Coordinate, WorkSession
from .audit import create_audit_log
from .time_rules import ensure_utc


class OpenSessionExists(Exception):
    """Raised by a store when the worker already has an open session."""


class InMemorySessionStore:
    def __init__(self):
        self._sessions: Dict[str, WorkSession] = {}
        self._open_by_worker: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_open(self, worker_id: str) -> Optional[WorkSession]:
        with self._lock:
            session_id = self._open_by_worker.get(worker_id)
            return self._sessions.get(session_id) if session_id else None

    def open(self, session: WorkSession, actor_role: Optional[str] = None) -> WorkSession:
        with self._lock:
            if session.worker_id in self._open_by_worker:
                raise OpenSessionExists(session.worker_id)
            self._sessions[session.id] = session
            self._open_by_worker[session.worker_id] = session.id
            return session

    def close(self, session: WorkSession, clock_out_at: datetime, total_hours: float) -> WorkSession:
        with self._lock:
            closed = session.model_copy(update={"clock_out_at": clock_out_at, "total_hours": total_hours})
            self._sessions[session.id] = closed
            self._open_by_worker.pop(session.worker_id, None)
            return closed

    def list_open(self) -> List[WorkSession]:
        with self._lock:
            return [self._sessions[sid] for sid in self._open_by_worker.values()]

    def history(self, worker_id: str, since: Optional[datetime] = None) -> List[WorkSession]:
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.worker_id == worker_id]
        if since is not None:
            since = ensure_utc(since)
            sessions = [s for s in sessions if s.clock_in_at >= since]
        return sorted(sessions, key=lambda s: s.clock_in_at)


def session_from_record(record: WorkSessionRecord) -> WorkSession:
    return WorkSession(
        id=str(record.id),
        worker_id=record.worker_id,
        building_id=record.building_id,
        clock_in_at=ensure_utc(record.clock_in_at),
        clock_in_coordinate=Coordinate(latitude=record.clock_in_lat, longitude=record.clock_in_lng),
        clock_in_accuracy_m=record.clock_in_accuracy_m,
        clock_out_at=ensure_utc(record.clock_out_at) if record.clock_out_at else None,
        total_hours=record.total_hours,
        warning=record.warning,
        override_by=record.override_by,
    )


class SqlSessionStore:
    def __init__(self, session_factory: sessionmaker, audit: bool = True):
        self._session_factory = session_factory
        self._audit = audit

    def _open_query(self, db, worker_id: str):
        return db.query(WorkSessionRecord).filter(
            WorkSessionRecord.worker_id == worker_id,
            WorkSessionRecord.clock_out_at.is_(None),
        )

    def get_open(self, worker_id: str) -> Optional[WorkSession]:
        with self._session_factory() as db:
            record = self._open_query(db, worker_id).first()
            return session_from_record(record) if record else None

    def open(self, session: WorkSession, actor_role: Optional[str] = None) -> WorkSession:
        with self._session_factory() as db:
            record = WorkSessionRecord(
                id=uuid.UUID(session.id),
                worker_id=session.worker_id,
                building_id=session.building_id,
                clock_in_at=session.clock_in_at,
                clock_in_lat=session.clock_in_coordinate.latitude,
                clock_in_lng=session.clock_in_coordinate.longitude,
                clock_in_accuracy_m=session.clock_in_accuracy_m,
                warning=session.warning,
                override_by=session.override_by,
            )
            db.add(record)
            try:
                db.flush()
            except IntegrityError as e:
                db.rollback()
                raise OpenSessionExists(session.worker_id) from e
            if self._audit:
                create_audit_log(
                    db,
                    entity_type="work_session",
                    entity_id=session.id,
                    action="CLOCK_IN",
                    actor_id=session.override_by or session.worker_id,
                    actor_role=actor_role or "worker",
                    source="supervisor" if session.override_by else "app",
                    timestamp_utc=session.clock_in_at,
                    context={
                        "worker_id": session.worker_id,
                        "building_id": session.building_id,
                        "gps_lat": session.clock_in_coordinate.latitude,
                        "gps_lng": session.clock_in_coordinate.longitude,
                        "gps_accuracy_m": session.clock_in_accuracy_m,
                        "warning": session.warning,
                    },
                )
            db.commit()
            return session

    def close(self, session: WorkSession, clock_out_at: datetime, total_hours: float) -> WorkSession:
        with self._session_factory() as db:
            record = db.get(WorkSessionRecord, uuid.UUID(session.id))
            record.clock_out_at = clock_out_at
            record.total_hours = total_hours
            if self._audit:
                create_audit_log(
                    db,
                    entity_type="work_session",
                    entity_id=session.id,
                    action="CLOCK_OUT",
                    actor_id=session.worker_id,
                    actor_role="worker",
                    source="app",
                    timestamp_utc=clock_out_at,
                    context={
                        "worker_id": session.worker_id,
                        "building_id": session.building_id,
                        "total_hours": total_hours,
                    },
                )
            db.commit()
            return session_from_record(record)

    def list_open(self) -> List[WorkSession]:
        with self._session_factory() as db:
            records = (
                db.query(WorkSessionRecord)
                .filter(WorkSessionRecord.clock_out_at.is_(None))
                .order_by(WorkSessionRecord.clock_in_at)
                .all()
            )
            return [session_from_record(r) for r in records]

    def history(self, worker_id: str, since: Optional[datetime] = None) -> List[WorkSession]:
        with self._session_factory() as db:
            query = db.query(WorkSessionRecord).filter(WorkSessionRecord.worker_id == worker_id)
            if since is not None:
                query = query.filter(WorkSessionRecord.clock_in_at >= ensure_utc(since))
            records = query.order_by(WorkSessionRecord.clock_in_at).all()
            return [session_from_record(r) for r in records]
