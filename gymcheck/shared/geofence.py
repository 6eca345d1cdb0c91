"""Geofence math: haversine distance to registered gym locations."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from gymcheck.shared.contract import GeofenceResult

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class GymLocation:
    id: str
    latitude: float
    longitude: float
    name: Optional[str] = None
    # Overrides the global radius when set.
    radius_meters: Optional[float] = None


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points, in meters."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def nearest_location(
    latitude: float,
    longitude: float,
    locations: Iterable[GymLocation],
) -> Optional[Tuple[GymLocation, float]]:
    nearest: Optional[GymLocation] = None
    best = math.inf
    for loc in locations:
        d = distance_meters(latitude, longitude, loc.latitude, loc.longitude)
        if d < best:
            best = d
            nearest = loc
    if nearest is None:
        return None
    return nearest, round(best, 1)


def check_geofence(
    latitude: Optional[float],
    longitude: Optional[float],
    locations: Iterable[GymLocation],
    radius_meters: float = 100.0,
) -> GeofenceResult:
    if latitude is None or longitude is None:
        return {
            "gps_provided": False,
            "geofence_match": False,
            "nearest_distance_meters": None,
            "nearest_location_id": None,
        }

    found = nearest_location(latitude, longitude, locations)
    if found is None:
        return {
            "gps_provided": True,
            "geofence_match": False,
            "nearest_distance_meters": None,
            "nearest_location_id": None,
        }

    loc, dist = found
    radius = loc.radius_meters if loc.radius_meters is not None else radius_meters
    return {
        "gps_provided": True,
        "geofence_match": dist <= radius,
        "nearest_distance_meters": dist,
        "nearest_location_id": loc.id,
    }


def geofence_from_distance(
    distance: Optional[float],
    radius_meters: float,
) -> GeofenceResult:
    """Geofence snapshot when the client already measured its distance to the gym."""

    if distance is None:
        return check_geofence(None, None, [])
    return {
        "gps_provided": True,
        "geofence_match": distance <= radius_meters,
        "nearest_distance_meters": round(float(distance), 1),
        "nearest_location_id": None,
    }


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def load_locations(raw: Optional[str]) -> List[GymLocation]:
    """Parse a JSON array of locations; malformed input yields an empty registry."""

    if not raw:
        return []
    try:
        items = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(items, list):
        return []

    locations: List[GymLocation] = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        lat = item.get("latitude")
        lon = item.get("longitude")
        if not (_is_number(lat) and _is_number(lon)):
            continue
        radius = item.get("radiusMeters", item.get("radius_meters"))
        locations.append(
            GymLocation(
                id=str(item.get("id", idx)),
                latitude=float(lat),
                longitude=float(lon),
                name=item.get("name"),
                radius_meters=float(radius) if _is_number(radius) else None,
            )
        )
    return locations
