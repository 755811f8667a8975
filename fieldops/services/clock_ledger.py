"""
Clock-in ledger.
Opens and closes worker sessions, enforcing a single open session per worker.
Each worker's clock-in/clock-out runs under its own lock.
"""
import threading
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from ..schemas.dispatch import (
    ClockInError,
    ClockInResult,
    ClockStatus,
    Coordinate,
    GeoStatus,
    WorkerClockStats,
    WorkSession,
)
from .geofence import GeoThresholds, validate
from .session_store import OpenSessionExists
from .time_rules import ensure_utc, hours_between

logger = structlog.get_logger(__name__)


class WorkerLocks:
    """Lazily created lock per worker id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    def for_worker(self, worker_id: str) -> threading.Lock:
        with self._guard:
            return self._locks[worker_id]


class ClockInLedger:
    def __init__(self, registry, store, thresholds: Optional[GeoThresholds] = None):
        self.registry = registry
        self.store = store
        self.thresholds = thresholds or GeoThresholds.from_settings()
        self._locks = WorkerLocks()

    def clock_in(
        self,
        worker_id: str,
        building_id: str,
        reported: Coordinate,
        accuracy_m: float,
        now: datetime,
        override_authorized: bool = False,
        override_by: Optional[str] = None,
        actor_role: Optional[str] = None,
    ) -> ClockInResult:
        building = self.registry.get(building_id)
        if building is None:
            logger.warning("clock_in_rejected", worker_id=worker_id, building_id=building_id,
                           error=ClockInError.unknown_building.value)
            return ClockInResult.failure(ClockInError.unknown_building, f"Building {building_id} not found")

        now = ensure_utc(now)
        with self._locks.for_worker(worker_id):
            if self.store.get_open(worker_id) is not None:
                logger.info("clock_in_rejected", worker_id=worker_id, building_id=building_id,
                            error=ClockInError.already_clocked_in.value)
                return ClockInResult.failure(ClockInError.already_clocked_in, "Worker is already clocked in")

            result = validate(reported, accuracy_m, building, override=override_authorized,
                              thresholds=self.thresholds)
            if result.status == GeoStatus.reject:
                logger.info(
                    "clock_in_rejected",
                    worker_id=worker_id,
                    building_id=building_id,
                    error=result.error.value,
                    distance_m=result.distance_meters,
                    accuracy_m=accuracy_m,
                )
                return ClockInResult.failure(result.error, result.reason, distance_meters=result.distance_meters)

            session = WorkSession(
                id=str(uuid.uuid4()),
                worker_id=worker_id,
                building_id=building_id,
                clock_in_at=now,
                clock_in_coordinate=reported,
                clock_in_accuracy_m=accuracy_m,
                warning=result.reason if result.status == GeoStatus.warn else None,
                override_by=override_by if override_authorized else None,
            )
            try:
                session = self.store.open(session, actor_role=actor_role)
            except OpenSessionExists:
                # Another process opened a session between our check and insert
                return ClockInResult.failure(ClockInError.already_clocked_in, "Worker is already clocked in")

        logger.info(
            "clock_in",
            worker_id=worker_id,
            building_id=building_id,
            session_id=session.id,
            distance_m=result.distance_meters,
            warning=session.warning,
            override_by=session.override_by,
        )
        return ClockInResult.success(session, warning=session.warning, distance_meters=result.distance_meters)

    def clock_out(self, worker_id: str, now: datetime) -> ClockInResult:
        now = ensure_utc(now)
        with self._locks.for_worker(worker_id):
            session = self.store.get_open(worker_id)
            if session is None:
                logger.info("clock_out_rejected", worker_id=worker_id, error=ClockInError.no_open_session.value)
                return ClockInResult.failure(ClockInError.no_open_session, "Worker has no open session")
            if now < session.clock_in_at:
                raise ValueError(
                    f"Clock-out time {now.isoformat()} precedes clock-in {session.clock_in_at.isoformat()}"
                )
            total_hours = hours_between(session.clock_in_at, now)
            closed = self.store.close(session, now, total_hours)

        logger.info("clock_out", worker_id=worker_id, session_id=closed.id, total_hours=round(total_hours, 2))
        return ClockInResult.success(closed)

    def open_session_for(self, worker_id: str) -> Optional[WorkSession]:
        return self.store.get_open(worker_id)

    def clock_status(self, worker_id: str) -> ClockStatus:
        if self.store.get_open(worker_id) is not None:
            return ClockStatus.clocked_in
        return ClockStatus.clocked_out

    def active_sessions(self) -> List[WorkSession]:
        return self.store.list_open()

    def worker_stats(self, worker_id: str, since: Optional[datetime] = None) -> WorkerClockStats:
        """Totals over the worker's closed sessions since the given time."""
        sessions = self.store.history(worker_id, since=since)
        closed = [s for s in sessions if s.clock_out_at is not None]
        total_hours = sum(s.total_hours or 0.0 for s in closed)
        return WorkerClockStats(
            worker_id=worker_id,
            status=self.clock_status(worker_id),
            total_sessions=len(closed),
            total_hours=total_hours,
            average_hours=total_hours / len(closed) if closed else 0.0,
            last_clock_in=max((s.clock_in_at for s in sessions), default=None),
            last_clock_out=max((s.clock_out_at for s in closed), default=None),
        )
