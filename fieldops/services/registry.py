"""
Building registry.
Read-only lookup of buildings and their geofences, backed by memory or the database.
"""
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import sessionmaker

from ..models.models import Building as BuildingRecord
from ..schemas.dispatch import Building, Coordinate


class InMemoryBuildingRegistry:
    def __init__(self, buildings: Iterable[Building] = ()):
        self._buildings: Dict[str, Building] = {b.id: b for b in buildings}

    def get(self, building_id: str) -> Optional[Building]:
        return self._buildings.get(building_id)

    def get_many(self, building_ids: Iterable[str]) -> Dict[str, Building]:
        return {bid: self._buildings[bid] for bid in building_ids if bid in self._buildings}

    def all(self) -> List[Building]:
        return list(self._buildings.values())


def building_from_record(record: BuildingRecord) -> Building:
    return Building(
        id=record.id,
        name=record.name,
        address=record.address,
        coordinate=Coordinate(latitude=float(record.lat), longitude=float(record.lng)),
        geofence_radius_m=float(record.geofence_radius_m),
    )


class SqlBuildingRegistry:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, building_id: str) -> Optional[Building]:
        with self._session_factory() as db:
            record = db.get(BuildingRecord, building_id)
            return building_from_record(record) if record else None

    def get_many(self, building_ids: Iterable[str]) -> Dict[str, Building]:
        ids = list(set(building_ids))
        if not ids:
            return {}
        with self._session_factory() as db:
            records = db.query(BuildingRecord).filter(BuildingRecord.id.in_(ids)).all()
            return {r.id: building_from_record(r) for r in records}

    def all(self) -> List[Building]:
        with self._session_factory() as db:
            return [building_from_record(r) for r in db.query(BuildingRecord).order_by(BuildingRecord.id).all()]
