"""
Route optimization service.

Orders a worker's buildings for the day with a nearest-neighbour heuristic
from the start location. This is a greedy approximation of the routing
problem, not an exact solution: a worker visits tens of buildings at most,
and the result has to be fast and deterministic. An optional 2-opt pass
can shorten the greedy path further.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from ..config import settings
from ..schemas.dispatch import (
    Building,
    Coordinate,
    RoutePlan,
    RouteStop,
    TaskAssignment,
    TaskStatus,
)
from .geofence import distance_between
from .time_rules import ensure_utc, local_date

logger = structlog.get_logger(__name__)

_OPEN_STATUSES = (TaskStatus.pending, TaskStatus.in_progress)

# Distances (meters) closer than this to the nearest candidate are a tie
TIE_TOLERANCE_M = 1e-3


class RouteInputError(ValueError):
    """Route request that cannot be planned (too many stops, unknown building)."""


def _due_key(due_at: Optional[datetime]) -> Tuple[int, float]:
    # Stops with no due time sort after every dated stop
    if due_at is None:
        return (1, 0.0)
    return (0, ensure_utc(due_at).timestamp())


def _leg_km(a: Coordinate, b: Coordinate) -> float:
    return distance_between(a, b) / 1000.0


def _path_km(start: Coordinate, order: Sequence[str], buildings: Mapping[str, Building]) -> float:
    total = 0.0
    current = start
    for building_id in order:
        coordinate = buildings[building_id].coordinate
        total += _leg_km(current, coordinate)
        current = coordinate
    return total


def nearest_neighbor_order(
    start: Coordinate,
    building_ids: Sequence[str],
    buildings: Mapping[str, Building],
    earliest_due: Mapping[str, Optional[datetime]],
) -> List[str]:
    """
    Greedy visiting order.

    Picks the unvisited building closest to the current position. Every
    building within TIE_TOLERANCE_M of the closest one counts as tied; ties
    go to the earliest due task, then to the lowest building id.
    """
    remaining = set(building_ids)
    order: List[str] = []
    current = start
    while remaining:
        distances = {bid: distance_between(current, buildings[bid].coordinate) for bid in remaining}
        nearest = min(distances.values())
        tied = [bid for bid, d in distances.items() if d - nearest <= TIE_TOLERANCE_M]
        next_id = min(tied, key=lambda bid: (_due_key(earliest_due.get(bid)), bid))
        order.append(next_id)
        remaining.remove(next_id)
        current = buildings[next_id].coordinate
    return order


def two_opt(start: Coordinate, order: List[str], buildings: Mapping[str, Building]) -> List[str]:
    """
    Improve an open path from a fixed start by reversing segments while
    that shortens the total distance.
    """
    best = list(order)
    best_km = _path_km(start, best, buildings)
    improved = True
    while improved:
        improved = False
        for i in range(len(best) - 1):
            for j in range(i + 1, len(best)):
                candidate = best[:i] + best[i:j + 1][::-1] + best[j + 1:]
                candidate_km = _path_km(start, candidate, buildings)
                # Require a real gain so float noise cannot loop forever
                if candidate_km < best_km - 1e-9:
                    best, best_km = candidate, candidate_km
                    improved = True
    return best


def mark_overdue(tasks: Sequence[TaskAssignment], now: datetime) -> List[TaskAssignment]:
    """Copies of the tasks with open, past-due tasks moved to overdue."""
    now = ensure_utc(now)
    marked = []
    for task in tasks:
        if task.status in _OPEN_STATUSES and task.due_at is not None and ensure_utc(task.due_at) < now:
            task = task.model_copy(update={"status": TaskStatus.overdue})
        marked.append(task)
    return marked


class RouteOptimizer:
    def __init__(
        self,
        average_speed_kmh: Optional[float] = None,
        max_stops: Optional[int] = None,
        use_two_opt: Optional[bool] = None,
        timezone_str: Optional[str] = None,
    ):
        self.average_speed_kmh = settings.route_average_speed_kmh if average_speed_kmh is None else average_speed_kmh
        self.max_stops = settings.route_max_stops if max_stops is None else max_stops
        self.use_two_opt = settings.route_two_opt if use_two_opt is None else use_two_opt
        self.timezone_str = timezone_str or settings.tz_default
        if self.average_speed_kmh <= 0:
            raise ValueError("average_speed_kmh must be positive")
        if self.max_stops < 1:
            raise ValueError("max_stops must be at least 1")

    def travel_minutes(self, distance_km: float) -> float:
        return distance_km / self.average_speed_kmh * 60.0

    def optimize(
        self,
        worker_id: str,
        tasks: Sequence[TaskAssignment],
        buildings: Mapping[str, Building],
        start_location: Coordinate,
        at: datetime,
    ) -> RoutePlan:
        at = ensure_utc(at)
        plan_date = local_date(at, self.timezone_str)
        if not tasks:
            return RoutePlan(worker_id=worker_id, date=plan_date, started_at=at, estimated_completion=at)

        tasks_by_building: Dict[str, List[TaskAssignment]] = {}
        for task in tasks:
            tasks_by_building.setdefault(task.building_id, []).append(task)

        if len(tasks_by_building) > self.max_stops:
            raise RouteInputError(
                f"Route for worker {worker_id} has {len(tasks_by_building)} stops (max {self.max_stops})"
            )
        missing = sorted(bid for bid in tasks_by_building if bid not in buildings)
        if missing:
            raise RouteInputError(f"Unknown buildings in task list: {', '.join(missing)}")

        earliest_due = {
            bid: min((ensure_utc(t.due_at) for t in group if t.due_at is not None), default=None)
            for bid, group in tasks_by_building.items()
        }

        order = nearest_neighbor_order(start_location, list(tasks_by_building), buildings, earliest_due)
        if self.use_two_opt and len(order) > 2:
            order = two_opt(start_location, order, buildings)

        stops: List[RouteStop] = []
        clock = at
        current = start_location
        total_km = 0.0
        service_total = 0
        for sequence, building_id in enumerate(order, start=1):
            coordinate = buildings[building_id].coordinate
            leg_km = _leg_km(current, coordinate)
            total_km += leg_km
            arrival = clock + timedelta(minutes=self.travel_minutes(leg_km))
            group = tasks_by_building[building_id]
            service = sum(t.estimated_duration_minutes for t in group)
            service_total += service
            departure = arrival + timedelta(minutes=service)
            due = earliest_due[building_id]
            stops.append(RouteStop(
                sequence=sequence,
                building_id=building_id,
                distance_from_previous_km=leg_km,
                arrival_at=arrival,
                departure_at=departure,
                service_minutes=service,
                task_ids=[t.id for t in group],
                misses_due=due is not None and arrival > due,
            ))
            clock = departure
            current = coordinate

        travel = self.travel_minutes(total_km)
        total_minutes = service_total + travel
        task_count = len(tasks)
        efficiency = task_count / (total_minutes / 60.0) if total_minutes > 0 else 0.0

        late = [s.building_id for s in stops if s.misses_due]
        if late:
            logger.warning("route_misses_due", worker_id=worker_id, buildings=late)
        logger.info(
            "route_optimized",
            worker_id=worker_id,
            stops=len(order),
            tasks=task_count,
            distance_km=round(total_km, 3),
            duration_min=round(total_minutes, 1),
        )

        return RoutePlan(
            worker_id=worker_id,
            date=plan_date,
            ordered_stops=order,
            total_distance_km=total_km,
            total_duration_minutes=total_minutes,
            efficiency_tasks_per_hour=efficiency,
            task_count=task_count,
            travel_minutes=travel,
            started_at=at,
            estimated_completion=at + timedelta(minutes=total_minutes),
            stops=stops,
        )
