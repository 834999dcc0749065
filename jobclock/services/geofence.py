"""
Geofence validation service.
Uses Haversine formula to calculate distance between points.

The pass/fail threshold is the job radius clamped to a safe band, widened by
the reported GPS accuracy (never by less than a fixed floor).
"""
import math
from dataclasses import dataclass
from typing import Optional

from ..config import settings
from ..errors import InvalidArgument, FailedPrecondition

# Earth radius in meters
EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class GeofenceResult:
    distance_m: float
    base_radius_m: float
    effective_radius_m: float
    accuracy_m: Optional[float]

    @property
    def valid(self) -> bool:
        return self.distance_m <= self.effective_radius_m

    def log_fields(self) -> dict:
        return {
            "distanceM": round(self.distance_m, 1),
            "radiusM": self.base_radius_m,
            "accuracyM": self.accuracy_m,
            "effectiveRadiusM": round(self.effective_radius_m, 1),
        }


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
    # Convert to radians
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    # Haversine formula
    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    # Rounding can push a marginally above 1 for antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def distance(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in meters between two points."""
    return haversine_distance(a.lat, a.lng, b.lat, b.lng)


def validate_coordinates(lat, lng) -> GeoPoint:
    """Reject non-numeric or out-of-range coordinates before any distance math."""
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidArgument("Invalid coordinates: lat and lng must be numbers")
    if math.isnan(lat_f) or lat_f < -90 or lat_f > 90:
        raise InvalidArgument("Invalid latitude: must be between -90 and 90")
    if math.isnan(lng_f) or lng_f < -180 or lng_f > 180:
        raise InvalidArgument("Invalid longitude: must be between -180 and 180")
    return GeoPoint(lat_f, lng_f)


def validate_accuracy(accuracy_m: Optional[float]) -> Optional[float]:
    if accuracy_m is None:
        return None
    try:
        value = float(accuracy_m)
    except (TypeError, ValueError):
        raise InvalidArgument("Invalid accuracy: must be a number")
    if math.isnan(value) or value < 0 or value > settings.gps_accuracy_max_m:
        raise InvalidArgument(
            f"Invalid accuracy: must be between 0 and {settings.gps_accuracy_max_m:.0f} meters"
        )
    return value


def check_accuracy_ceiling(accuracy_m: Optional[float], ceiling_m: Optional[float] = None) -> None:
    """Clock-in only: refuse fixes whose reported accuracy is too coarse."""
    if ceiling_m is None:
        ceiling_m = settings.gps_accuracy_ceiling_m
    if accuracy_m is not None and accuracy_m > ceiling_m:
        raise FailedPrecondition(
            f"GPS accuracy too low. Please wait for better signal (current: {accuracy_m:.0f}m)"
        )


def base_radius(radius_m: Optional[float]) -> float:
    if radius_m is None:
        radius_m = settings.geo_radius_m_default
    return max(settings.geo_radius_m_min, min(float(radius_m), settings.geo_radius_m_max))


def effective_radius(radius_m: Optional[float], accuracy_m: Optional[float]) -> float:
    accuracy_buffer = max(accuracy_m or 0.0, settings.geo_accuracy_floor_m)
    return base_radius(radius_m) + accuracy_buffer


def evaluate(center: GeoPoint, radius_m: Optional[float], point: GeoPoint, accuracy_m: Optional[float] = None) -> GeofenceResult:
    """
    Evaluate a point against a job geofence.

    Boundary is inclusive: a point exactly at the effective radius is valid.
    """
    return GeofenceResult(
        distance_m=distance(center, point),
        base_radius_m=base_radius(radius_m),
        effective_radius_m=effective_radius(radius_m, accuracy_m),
        accuracy_m=accuracy_m,
    )
