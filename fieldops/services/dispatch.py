"""
Dispatch service: the call surface used by the API and UI layers.

Built with its building registry, session ledger and clock injected, so
nothing is looked up from module-level state.
"""
from datetime import datetime
from typing import Callable, Mapping, Optional, Sequence, Union

from sqlalchemy.orm import sessionmaker

from ..schemas.dispatch import (
    Building,
    ClockInError,
    ClockInResult,
    Coordinate,
    CrewWorkload,
    GeoStatus,
    RoutePlan,
    TaskAssignment,
    ValidationResult,
    WorkloadBalance,
    WorkloadSnapshot,
)
from . import workload
from .clock_ledger import ClockInLedger
from .geofence import GeoThresholds, validate
from .permissions import can_override_geofence, normalize_role
from .registry import SqlBuildingRegistry
from .route_optimizer import RouteOptimizer
from .session_store import SqlSessionStore
from .time_rules import utc_now


class DispatchService:
    def __init__(
        self,
        registry,
        ledger: ClockInLedger,
        optimizer: Optional[RouteOptimizer] = None,
        clock: Callable[[], datetime] = utc_now,
        thresholds: Optional[GeoThresholds] = None,
    ):
        self.registry = registry
        self.ledger = ledger
        self.optimizer = optimizer or RouteOptimizer()
        self.clock = clock
        self.thresholds = thresholds or ledger.thresholds

    @classmethod
    def from_session_factory(cls, session_factory: sessionmaker, **kwargs) -> "DispatchService":
        registry = SqlBuildingRegistry(session_factory)
        ledger = ClockInLedger(registry, SqlSessionStore(session_factory), thresholds=kwargs.get("thresholds"))
        return cls(registry, ledger, **kwargs)

    def geo_validate(
        self,
        reported: Coordinate,
        accuracy_m: float,
        building: Union[str, Building],
        override_role: Optional[str] = None,
    ) -> ValidationResult:
        if isinstance(building, str):
            found = self.registry.get(building)
            if found is None:
                return ValidationResult(
                    status=GeoStatus.reject,
                    error=ClockInError.unknown_building,
                    reason=f"Building {building} not found",
                )
            building = found
        return validate(
            reported,
            accuracy_m,
            building,
            override=can_override_geofence(override_role),
            thresholds=self.thresholds,
        )

    def clock_in(
        self,
        worker_id: str,
        building_id: str,
        reported: Coordinate,
        accuracy_m: float,
        now: Optional[datetime] = None,
        override_role: Optional[str] = None,
        override_by: Optional[str] = None,
    ) -> ClockInResult:
        authorized = can_override_geofence(override_role)
        return self.ledger.clock_in(
            worker_id,
            building_id,
            reported,
            accuracy_m,
            now or self.clock(),
            override_authorized=authorized,
            override_by=override_by if authorized else None,
            actor_role=normalize_role(override_role) if authorized else "worker",
        )

    def clock_out(self, worker_id: str, now: Optional[datetime] = None) -> ClockInResult:
        return self.ledger.clock_out(worker_id, now or self.clock())

    def optimize_route(
        self,
        worker_id: str,
        tasks: Sequence[TaskAssignment],
        start_location: Coordinate,
        now: Optional[datetime] = None,
        buildings: Optional[Mapping[str, Building]] = None,
    ) -> RoutePlan:
        if buildings is None:
            buildings = self.registry.get_many(t.building_id for t in tasks)
        return self.optimizer.optimize(worker_id, tasks, buildings, start_location, now or self.clock())

    def compute_workload(self, snapshots: Sequence[WorkloadSnapshot]) -> WorkloadBalance:
        return workload.balance(snapshots)

    def crew_workload(
        self,
        tasks_by_worker: Mapping[str, Sequence[TaskAssignment]],
        start_locations: Mapping[str, Coordinate],
        now: Optional[datetime] = None,
    ) -> CrewWorkload:
        """Plan every worker's route, then score the crew's balance."""
        now = now or self.clock()
        plans = []
        for worker_id in sorted(tasks_by_worker):
            tasks = tasks_by_worker[worker_id]
            if worker_id not in start_locations:
                raise ValueError(f"No start location for worker {worker_id}")
            plans.append(self.optimize_route(worker_id, tasks, start_locations[worker_id], now))
        snapshots = [workload.snapshot_from_plan(p) for p in plans]
        return CrewWorkload(plans=plans, snapshots=snapshots, balance=workload.balance(snapshots))

