"""
Geofence validation service.
Uses Haversine formula to calculate distance between points and classifies
clock-in attempts as ok / warn / reject.
"""
import math
from dataclasses import dataclass
from typing import Optional

from ..config import settings
from ..schemas.dispatch import (
    Building,
    ClockInError,
    Coordinate,
    GeoStatus,
    ValidationResult,
)

# Earth radius in meters
EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class GeoThresholds:
    accuracy_warn_m: float = 50.0
    accuracy_ceiling_m: float = 150.0
    edge_warn_ratio: Optional[float] = None

    @classmethod
    def from_settings(cls) -> "GeoThresholds":
        return cls(
            accuracy_warn_m=float(settings.gps_accuracy_warn_m),
            accuracy_ceiling_m=float(settings.gps_accuracy_ceiling_m),
            edge_warn_ratio=settings.geo_edge_warn_ratio,
        )


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    # Rounding can push a slightly outside [0, 1] for antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def distance_between(a: Coordinate, b: Coordinate) -> float:
    """Distance in meters between two coordinates."""
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def is_valid_coordinate(coord: Coordinate) -> bool:
    lat, lng = coord.latitude, coord.longitude
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def validate(
    reported: Coordinate,
    accuracy_m: float,
    target: Building,
    override: bool = False,
    thresholds: Optional[GeoThresholds] = None,
) -> ValidationResult:
    """
    Classify a clock-in position against a building geofence.

    Args:
        reported: Position reported by the device
        accuracy_m: GPS accuracy radius in meters
        target: Building being clocked into
        override: True when a supervisor has authorised bypassing the geofence
        thresholds: Accuracy thresholds (defaults from settings)

    Returns:
        ValidationResult with status ok|warn|reject and the computed distance.

    Raises:
        ValueError: if the building itself carries an invalid coordinate or radius
    """
    if thresholds is None:
        thresholds = GeoThresholds.from_settings()

    if not is_valid_coordinate(target.coordinate) or not target.geofence_radius_m > 0:
        raise ValueError(f"Building {target.id} has malformed geofence data")

    if not is_valid_coordinate(reported) or not math.isfinite(accuracy_m) or accuracy_m < 0:
        return ValidationResult(
            status=GeoStatus.reject,
            error=ClockInError.invalid_coordinate,
            reason="Reported position or accuracy is not a valid GPS fix",
        )

    distance = distance_between(reported, target.coordinate)
    radius = target.geofence_radius_m
    warnings = []

    if distance > radius:
        if not override:
            return ValidationResult(
                status=GeoStatus.reject,
                distance_meters=distance,
                error=ClockInError.geofence_rejected,
                reason=f"Worker is {round(distance)}m away from building (max: {round(radius)}m)",
            )
        warnings.append(f"Outside geofence by {round(distance - radius)}m; supervisor override applied")

    if accuracy_m > thresholds.accuracy_ceiling_m:
        if not override:
            return ValidationResult(
                status=GeoStatus.reject,
                distance_meters=distance,
                error=ClockInError.accuracy_too_low,
                reason=(
                    f"GPS accuracy {round(accuracy_m)}m exceeds the "
                    f"{round(thresholds.accuracy_ceiling_m)}m limit"
                ),
            )
        warnings.append(f"GPS accuracy {round(accuracy_m)}m above limit; supervisor override applied")
    elif accuracy_m > thresholds.accuracy_warn_m:
        warnings.append(f"GPS accuracy is low ({round(accuracy_m)}m)")

    if (
        thresholds.edge_warn_ratio is not None
        and radius * thresholds.edge_warn_ratio < distance <= radius
    ):
        warnings.append(f"Worker is near the edge of the geofence ({round(distance)}m from building)")

    if warnings:
        return ValidationResult(status=GeoStatus.warn, distance_meters=distance, reason="; ".join(warnings))
    return ValidationResult(status=GeoStatus.ok, distance_meters=distance)
