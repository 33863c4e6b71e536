"""
Geographic Distance Helpers
Great-circle distances and simple duration estimates over ordered waypoints
"""

import math
from collections import namedtuple

from transport_errors import InvalidCoordinate, InvalidSpeed

EARTH_RADIUS_KM = 6371.0

GeoPoint = namedtuple('GeoPoint', ['latitude', 'longitude'])


def validate_coordinate(latitude, longitude, field_prefix=''):
    """
    Validate a latitude/longitude pair
    Returns:
        GeoPoint with float components
    Raises:
        InvalidCoordinate naming the offending component
    """
    lat_field = f"{field_prefix}latitude"
    lon_field = f"{field_prefix}longitude"

    try:
        lat = float(latitude)
    except (TypeError, ValueError):
        raise InvalidCoordinate("must be a number", field=lat_field, value=latitude)
    try:
        lon = float(longitude)
    except (TypeError, ValueError):
        raise InvalidCoordinate("must be a number", field=lon_field, value=longitude)

    if math.isnan(lat) or not -90.0 <= lat <= 90.0:
        raise InvalidCoordinate("must be between -90 and 90", field=lat_field, value=latitude)
    if math.isnan(lon) or not -180.0 <= lon <= 180.0:
        raise InvalidCoordinate("must be between -180 and 180", field=lon_field, value=longitude)

    return GeoPoint(lat, lon)


def distance(a, b) -> float:
    """Haversine distance in kilometers between two (latitude, longitude) points"""
    lat1, lon1 = validate_coordinate(a[0], a[1], 'from_')
    lat2, lon2 = validate_coordinate(b[0], b[1], 'to_')

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def route_distance(points) -> float:
    """Sum of consecutive distances along points; 0 for fewer than two points"""
    points = list(points)
    return sum(distance(points[i], points[i + 1]) for i in range(len(points) - 1))


def estimate_duration(distance_km, assumed_speed_kmh) -> int:
    """Minutes needed to cover distance_km at assumed_speed_kmh, rounded up"""
    if assumed_speed_kmh is None or assumed_speed_kmh <= 0:
        raise InvalidSpeed("must be greater than 0", field='assumed_speed_kmh', value=assumed_speed_kmh)
    return math.ceil(distance_km / assumed_speed_kmh * 60)
