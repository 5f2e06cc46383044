"""
FleetTrack Geofence Evaluator

Distance from a point to a geofence target, and whether the point lies
within the target's radius.

The radius depends on how the trip is tracked. A vehicle-mounted GPS
device is accurate to tens of meters, so GPS geofences are tight
(default 200 m). SIM location comes from cell-tower triangulation and
can be off by several hundred meters, so SIM geofences are wider
(default 500 m). Trips with no tracking type (and manual samples) use
the SIM radius.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..exceptions import GeofenceMissingCoordinatesError
from ..models import GeoPoint, Location, LocationSource, TrackingType


DEFAULT_GPS_RADIUS_METERS = 200.0
DEFAULT_SIM_RADIUS_METERS = 500.0

EARTH_RADIUS_METERS = 6371000


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points.

    Uses the Haversine formula for accurate distances on a sphere.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

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
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def radius_for(
    target: Location,
    tracking_type: Union[TrackingType, LocationSource, str, None],
) -> float:
    """Geofence radius of ``target`` for the given tracking type."""
    kind = getattr(tracking_type, "value", tracking_type)
    if kind == TrackingType.GPS.value:
        return target.gps_radius_meters or DEFAULT_GPS_RADIUS_METERS
    return target.sim_radius_meters or DEFAULT_SIM_RADIUS_METERS


@dataclass(frozen=True)
class GeofenceResult:
    """Distance to a target and membership in its radius."""
    distance_meters: float
    radius_meters: float
    within_geofence: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distance_meters": round(self.distance_meters),
            "radius_meters": self.radius_meters,
            "within_geofence": self.within_geofence,
        }


def evaluate(
    point: GeoPoint,
    target: Optional[Location],
    tracking_type: Union[TrackingType, LocationSource, str, None],
) -> GeofenceResult:
    """
    Evaluate ``point`` against ``target``.

    Raises:
        GeofenceMissingCoordinatesError: target is missing or has no coordinates
    """
    if target is None or not target.has_coordinates:
        name = target.name if target is not None else "target"
        raise GeofenceMissingCoordinatesError(f"{name or 'Location'} coordinates not configured")

    distance = haversine_distance(
        point.latitude, point.longitude, target.latitude, target.longitude,
    )
    radius = radius_for(target, tracking_type)

    return GeofenceResult(
        distance_meters=distance,
        radius_meters=radius,
        within_geofence=distance <= radius,
    )
