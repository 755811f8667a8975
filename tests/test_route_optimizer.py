import random
from datetime import date, datetime, timedelta

import pytest
import pytz

from fieldops.schemas.dispatch import Building, Coordinate, TaskAssignment, TaskStatus
from fieldops.services.route_optimizer import (
    RouteInputError,
    RouteOptimizer,
    mark_overdue,
    nearest_neighbor_order,
)

from conftest import km_east

ORIGIN = Coordinate(latitude=0.0, longitude=0.0)


def task(task_id, building_id, minutes=30, due_at=None, status=TaskStatus.pending):
    return TaskAssignment(
        id=task_id,
        worker_id="w1",
        building_id=building_id,
        estimated_duration_minutes=minutes,
        due_at=due_at,
        status=status,
    )


def building(building_id, km):
    return Building(id=building_id, name=building_id, coordinate=Coordinate(latitude=0.0, longitude=km_east(km)))


@pytest.fixture
def optimizer():
    return RouteOptimizer(average_speed_kmh=40, max_stops=500, use_two_opt=False, timezone_str="America/New_York")


@pytest.fixture
def line():
    return {b.id: b for b in [building("X", 0), building("Y", 1), building("Z", 3)]}


def test_empty_task_list_gives_empty_plan(optimizer, now):
    plan = optimizer.optimize("w1", [], {}, ORIGIN, now)

    assert plan.ordered_stops == []
    assert plan.total_distance_km == 0
    assert plan.total_duration_minutes == 0
    assert plan.efficiency_tasks_per_hour == 0
    assert plan.stops == []
    assert plan.worker_id == "w1"


def test_collinear_buildings_visited_nearest_first(optimizer, line, now):
    tasks = [task("t-z", "Z"), task("t-x", "X"), task("t-y", "Y")]

    plan = optimizer.optimize("w1", tasks, line, ORIGIN, now)

    assert plan.ordered_stops == ["X", "Y", "Z"]
    assert plan.total_distance_km == pytest.approx(3.0, abs=1e-6)
    assert [s.distance_from_previous_km for s in plan.stops] == pytest.approx([0.0, 1.0, 2.0], abs=1e-6)


def test_duration_and_efficiency(optimizer, line, now):
    tasks = [task("t1", "Y", minutes=30), task("t2", "Z", minutes=45)]

    plan = optimizer.optimize("w1", tasks, line, ORIGIN, now)

    # 3 km at 40 km/h is 4.5 minutes of travel
    assert plan.travel_minutes == pytest.approx(4.5)
    assert plan.total_duration_minutes == pytest.approx(79.5)
    assert plan.efficiency_tasks_per_hour == pytest.approx(2 / (79.5 / 60))
    assert plan.task_count == 2
    assert plan.estimated_completion == now + timedelta(minutes=79.5)


def test_multiple_tasks_at_one_building_share_a_stop(optimizer, line, now):
    tasks = [task("t1", "Y", 20), task("t2", "Y", 25), task("t3", "X", 10)]

    plan = optimizer.optimize("w1", tasks, line, ORIGIN, now)

    assert plan.ordered_stops == ["X", "Y"]
    assert plan.stops[1].task_ids == ["t1", "t2"]
    assert plan.stops[1].service_minutes == 45
    assert plan.task_count == 3


def test_stop_schedule(optimizer, line, now):
    plan = optimizer.optimize("w1", [task("t1", "Y", 30), task("t2", "Z", 15)], line, ORIGIN, now)

    first, second = plan.stops
    assert first.arrival_at == now + timedelta(minutes=1.5)
    assert first.departure_at == now + timedelta(minutes=31.5)
    assert second.arrival_at == now + timedelta(minutes=34.5)
    assert [first.sequence, second.sequence] == [1, 2]


def test_equidistant_tie_broken_by_due_time(optimizer, now):
    buildings = {"east": building("east", 1), "west": building("west", -1)}
    tasks = [
        task("t-east", "east", due_at=now + timedelta(hours=3)),
        task("t-west", "west", due_at=now + timedelta(hours=1)),
    ]

    plan = optimizer.optimize("w1", tasks, buildings, ORIGIN, now)

    assert plan.ordered_stops[0] == "west"


def test_equidistant_tie_without_due_time_broken_by_id(optimizer, now):
    buildings = {"b-east": building("b-east", 1), "a-west": building("a-west", -1)}
    tasks = [task("t1", "b-east"), task("t2", "a-west")]

    plan = optimizer.optimize("w1", tasks, buildings, ORIGIN, now)

    assert plan.ordered_stops[0] == "a-west"


def test_dated_stop_beats_undated_on_tie(now):
    buildings = {"a": building("a", 1), "b": building("b", -1)}
    earliest_due = {"a": None, "b": now}

    assert nearest_neighbor_order(ORIGIN, ["a", "b"], buildings, earliest_due) == ["b", "a"]


def test_stop_arriving_after_due_is_flagged(optimizer, line, now):
    tasks = [
        task("t1", "Y", minutes=120),
        task("t2", "Z", minutes=10, due_at=now + timedelta(minutes=30)),
    ]

    plan = optimizer.optimize("w1", tasks, line, ORIGIN, now)

    assert [s.misses_due for s in plan.stops] == [False, True]


@pytest.mark.parametrize("seed", range(5))
def test_ordered_stops_is_a_permutation_of_buildings(optimizer, now, seed):
    rng = random.Random(seed)
    buildings = {
        f"b{i}": Building(
            id=f"b{i}",
            name=f"b{i}",
            coordinate=Coordinate(latitude=40.7 + rng.uniform(-0.05, 0.05), longitude=-74.0 + rng.uniform(-0.05, 0.05)),
        )
        for i in range(25)
    }
    tasks = [task(f"t{n}", rng.choice(list(buildings)), minutes=rng.randint(5, 60)) for n in range(60)]

    plan = optimizer.optimize("w1", tasks, buildings, Coordinate(latitude=40.7, longitude=-74.0), now)

    referenced = {t.building_id for t in tasks}
    assert len(plan.ordered_stops) == len(set(plan.ordered_stops))
    assert set(plan.ordered_stops) == referenced


@pytest.mark.parametrize("seed", range(5))
def test_two_opt_never_lengthens_route(now, seed):
    rng = random.Random(seed)
    buildings = {
        f"b{i}": Building(
            id=f"b{i}",
            name=f"b{i}",
            coordinate=Coordinate(latitude=rng.uniform(40.6, 40.8), longitude=rng.uniform(-74.1, -73.9)),
        )
        for i in range(12)
    }
    tasks = [task(f"t{i}", bid) for i, bid in enumerate(buildings)]
    start = Coordinate(latitude=40.7, longitude=-74.0)

    greedy = RouteOptimizer(use_two_opt=False).optimize("w1", tasks, buildings, start, now)
    improved = RouteOptimizer(use_two_opt=True).optimize("w1", tasks, buildings, start, now)

    assert improved.total_distance_km <= greedy.total_distance_km + 1e-9
    assert sorted(improved.ordered_stops) == sorted(buildings)


def test_nearest_neighbor_is_deterministic(optimizer, line, now):
    tasks = [task("t-z", "Z"), task("t-x", "X"), task("t-y", "Y")]

    plans = [optimizer.optimize("w1", list(reversed(tasks)) if i % 2 else tasks, line, ORIGIN, now) for i in range(4)]

    assert all(p.ordered_stops == plans[0].ordered_stops for p in plans)


def test_unknown_building_is_an_input_error(optimizer, line, now):
    with pytest.raises(RouteInputError):
        optimizer.optimize("w1", [task("t1", "missing")], line, ORIGIN, now)


def test_too_many_stops_is_an_input_error(line, now):
    optimizer = RouteOptimizer(max_stops=2)

    with pytest.raises(RouteInputError):
        optimizer.optimize("w1", [task("t1", "X"), task("t2", "Y"), task("t3", "Z")], line, ORIGIN, now)


def test_plan_date_is_local(optimizer, line):
    # 02:00 UTC is still the previous evening in New York
    at = datetime(2025, 3, 10, 2, 0, tzinfo=pytz.UTC)

    plan = optimizer.optimize("w1", [task("t1", "X")], line, ORIGIN, at)

    assert plan.date == date(2025, 3, 9)


def test_mark_overdue(now):
    tasks = [
        task("late", "X", due_at=now - timedelta(minutes=1)),
        task("started-late", "X", due_at=now - timedelta(hours=2), status=TaskStatus.in_progress),
        task("on-time", "X", due_at=now + timedelta(minutes=1)),
        task("done", "X", due_at=now - timedelta(hours=1), status=TaskStatus.completed),
        task("undated", "X"),
    ]

    marked = {t.id: t.status for t in mark_overdue(tasks, now)}

    assert marked == {
        "late": TaskStatus.overdue,
        "started-late": TaskStatus.overdue,
        "on-time": TaskStatus.pending,
        "done": TaskStatus.completed,
        "undated": TaskStatus.pending,
    }
    assert tasks[0].status == TaskStatus.pending


@pytest.mark.parametrize("speed", [0, -5])
def test_rejects_non_positive_speed(speed):
    with pytest.raises(ValueError):
        RouteOptimizer(average_speed_kmh=speed)


@pytest.mark.parametrize("max_stops", [0, -1])
def test_rejects_max_stops_below_one(max_stops):
    with pytest.raises(ValueError):
        RouteOptimizer(max_stops=max_stops)


def test_explicit_limits_are_kept():
    optimizer = RouteOptimizer(average_speed_kmh=12.5, max_stops=1)

    assert optimizer.average_speed_kmh == 12.5
    assert optimizer.max_stops == 1


def test_sub_millimetre_difference_is_a_tie(now):
    # 1000.0004 m and 1000.0006 m land in different millimetres when rounded
    buildings = {"a": building("a", 1.0000004), "b": building("b", -1.0000006)}
    earliest_due = {"a": now + timedelta(hours=2), "b": now}

    assert nearest_neighbor_order(ORIGIN, ["a", "b"], buildings, earliest_due) == ["b", "a"]


def test_difference_beyond_tolerance_is_not_a_tie(now):
    buildings = {"a": building("a", 1.0), "b": building("b", -1.00001)}
    earliest_due = {"a": now + timedelta(hours=2), "b": now}

    assert nearest_neighbor_order(ORIGIN, ["a", "b"], buildings, earliest_due) == ["a", "b"]
