import math
from datetime import datetime

import pytest
import pytz
from sqlalchemy.orm import sessionmaker

from fieldops.db import Base, make_engine
from fieldops.models import models  # noqa: F401
from fieldops.schemas.dispatch import Building, Coordinate
from fieldops.services.clock_ledger import ClockInLedger
from fieldops.services.dispatch import DispatchService
from fieldops.services.geofence import EARTH_RADIUS_M, GeoThresholds
from fieldops.services.registry import InMemoryBuildingRegistry
from fieldops.services.route_optimizer import RouteOptimizer
from fieldops.services.session_store import InMemorySessionStore

# Length of one degree of longitude on the equator, in km
KM_PER_DEGREE = 2 * math.pi * EARTH_RADIUS_M / 1000 / 360


def km_east(km: float) -> float:
    """Longitude offset (degrees) that lies `km` east of 0 on the equator."""
    return km / KM_PER_DEGREE


@pytest.fixture
def now():
    return datetime(2025, 3, 10, 13, 0, tzinfo=pytz.UTC)


@pytest.fixture
def nyc_building():
    return Building(
        id="bldg-nyc",
        name="Chambers St",
        coordinate=Coordinate(latitude=40.7128, longitude=-74.0060),
        geofence_radius_m=100,
    )


@pytest.fixture
def thresholds():
    return GeoThresholds(accuracy_warn_m=50, accuracy_ceiling_m=150)


@pytest.fixture
def registry(nyc_building):
    return InMemoryBuildingRegistry([
        nyc_building,
        Building(id="bldg-x", name="X", coordinate=Coordinate(latitude=0.0, longitude=0.0)),
        Building(id="bldg-y", name="Y", coordinate=Coordinate(latitude=0.0, longitude=km_east(1))),
        Building(id="bldg-z", name="Z", coordinate=Coordinate(latitude=0.0, longitude=km_east(3))),
    ])


@pytest.fixture
def ledger(registry, thresholds):
    return ClockInLedger(registry, InMemorySessionStore(), thresholds=thresholds)


@pytest.fixture
def service(registry, ledger, now):
    return DispatchService(
        registry,
        ledger,
        optimizer=RouteOptimizer(average_speed_kmh=40, max_stops=500, use_two_opt=False,
                                 timezone_str="America/New_York"),
        clock=lambda: now,
    )


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
