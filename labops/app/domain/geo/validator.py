"""
Geolocation validation.

Great-circle distance between geohash cells and tolerance checks used by
stop-arrival rules and custody location validation.
"""

import math
from typing import Tuple

from labops.app.domain.geo import geohash

# Clinic-arrival tolerance; only an explicit per-call argument overrides it
DEFAULT_TOLERANCE_METERS = 100.0

EARTH_RADIUS_KM = 6371.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.
    
    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)
    
    Returns:
        Distance in kilometers
    """
    lat1_rad = math.radians(lat1)
    lon1_rad = math.radians(lon1)
    lat2_rad = math.radians(lat2)
    lon2_rad = math.radians(lon2)
    
    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad
    
    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    # Clamp floating point noise near antipodes
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    
    return EARTH_RADIUS_KM * c


def geohash_distance_km(hash1: str, hash2: str) -> float:
    """Distance in kilometers between the midpoints of two geohash cells."""
    # Canonical argument order keeps the result exactly symmetric
    first, second = sorted((hash1.lower(), hash2.lower()))
    lat1, lng1 = geohash.decode(first)
    lat2, lng2 = geohash.decode(second)
    return haversine_distance(lat1, lng1, lat2, lng2)


def within_tolerance(
    point_geohash: str,
    reference_geohash: str,
    tolerance_meters: float = DEFAULT_TOLERANCE_METERS,
) -> Tuple[bool, float]:
    """
    Check whether a point lies within ``tolerance_meters`` of a reference.
    
    Args:
        point_geohash: Observed location (e.g. where the driver tapped "arrived")
        reference_geohash: Registered location (e.g. the clinic address)
        tolerance_meters: Maximum accepted distance
    
    Returns:
        (valid, distance_meters)
    
    Raises:
        ValueError: If either geohash cannot be decoded
    """
    distance_meters = geohash_distance_km(point_geohash, reference_geohash) * 1000
    return distance_meters <= tolerance_meters, distance_meters
