from datetime import date as date_type, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..config import settings


class GeoStatus(str, Enum):
    ok = "ok"
    warn = "warn"
    reject = "reject"


class ClockInError(str, Enum):
    already_clocked_in = "already_clocked_in"
    no_open_session = "no_open_session"
    geofence_rejected = "geofence_rejected"
    accuracy_too_low = "accuracy_too_low"
    invalid_coordinate = "invalid_coordinate"
    unknown_building = "unknown_building"


class ClockStatus(str, Enum):
    clocked_in = "clocked_in"
    clocked_out = "clocked_out"


class TaskStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    overdue = "overdue"


class Coordinate(BaseModel):
    latitude: float
    longitude: float

    class Config:
        frozen = True


class Building(BaseModel):
    id: str
    name: str
    coordinate: Coordinate
    geofence_radius_m: float = Field(default_factory=lambda: float(settings.geo_radius_m_default))
    address: Optional[str] = None

    class Config:
        frozen = True


class TaskAssignment(BaseModel):
    id: str
    worker_id: str
    building_id: str
    estimated_duration_minutes: int = Field(ge=0)
    priority: int = 1
    due_at: Optional[datetime] = None
    status: TaskStatus = TaskStatus.pending
    title: Optional[str] = None

    class Config:
        frozen = True


class WorkSession(BaseModel):
    id: str
    worker_id: str
    building_id: str
    clock_in_at: datetime
    clock_in_coordinate: Coordinate
    clock_in_accuracy_m: float
    clock_out_at: Optional[datetime] = None
    total_hours: Optional[float] = None
    warning: Optional[str] = None
    override_by: Optional[str] = None

    class Config:
        frozen = True

    @property
    def is_open(self) -> bool:
        return self.clock_out_at is None


class ValidationResult(BaseModel):
    status: GeoStatus
    distance_meters: Optional[float] = None  # None when the reported coordinate is unusable
    reason: Optional[str] = None
    error: Optional[ClockInError] = None

    class Config:
        frozen = True


class ClockInResult(BaseModel):
    ok: bool
    session: Optional[WorkSession] = None
    error: Optional[ClockInError] = None
    warning: Optional[str] = None
    distance_meters: Optional[float] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, session: WorkSession, warning: Optional[str] = None,
                distance_meters: Optional[float] = None) -> "ClockInResult":
        return cls(ok=True, session=session, warning=warning, distance_meters=distance_meters)

    @classmethod
    def failure(cls, error: ClockInError, message: str,
                distance_meters: Optional[float] = None,
                session: Optional[WorkSession] = None) -> "ClockInResult":
        return cls(ok=False, error=error, message=message, distance_meters=distance_meters, session=session)


class WorkerClockStats(BaseModel):
    worker_id: str
    status: ClockStatus
    total_sessions: int
    total_hours: float
    average_hours: float
    last_clock_in: Optional[datetime] = None
    last_clock_out: Optional[datetime] = None


class RouteStop(BaseModel):
    sequence: int
    building_id: str
    distance_from_previous_km: float
    arrival_at: Optional[datetime] = None
    departure_at: Optional[datetime] = None
    service_minutes: int = 0
    task_ids: List[str] = []
    misses_due: bool = False  # Arrival falls after the earliest task due time


class RoutePlan(BaseModel):
    worker_id: str
    date: Optional[date_type] = None
    ordered_stops: List[str] = []
    total_distance_km: float = 0.0
    total_duration_minutes: float = 0.0
    efficiency_tasks_per_hour: float = 0.0
    task_count: int = 0
    travel_minutes: float = 0.0
    started_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    stops: List[RouteStop] = []


class WorkloadSnapshot(BaseModel):
    worker_id: str
    task_count: int = Field(ge=0)
    daily_hours: float = 0.0
    efficiency: float = 0.0
    buildings_covered: int = 0


class WorkloadBalance(BaseModel):
    average_efficiency: float
    balance_score: float
    total_tasks: int = 0
    worker_count: int = 0
    status: str = "well_balanced"


class CrewWorkload(BaseModel):
    plans: List[RoutePlan]
    snapshots: List[WorkloadSnapshot]
    balance: WorkloadBalance


# Request payloads

class GpsFix(BaseModel):
    lat: float
    lng: float
    accuracy_m: float

    def to_coordinate(self) -> Coordinate:
        return Coordinate(latitude=self.lat, longitude=self.lng)


class GeoValidateRequest(BaseModel):
    building_id: str
    gps: GpsFix
    override_role: Optional[str] = None


class ClockInRequest(BaseModel):
    worker_id: str
    building_id: str
    gps: GpsFix
    override_role: Optional[str] = None  # Role of the actor requesting a geofence override
    override_by: Optional[str] = None


class ClockOutRequest(BaseModel):
    worker_id: str


class OptimizeRouteRequest(BaseModel):
    worker_id: str
    tasks: List[TaskAssignment]
    start_location: Coordinate


class WorkloadRequest(BaseModel):
    snapshots: List[WorkloadSnapshot]
