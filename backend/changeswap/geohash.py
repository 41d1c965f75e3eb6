"""
Geohash Index.

Encodes lat/lng pairs into base32 geohash strings and measures great-circle
distance. A geohash interleaves longitude and latitude bisection bits, so
points that share a prefix share a grid cell; a prefix is a coarse proximity
bucket that can be matched with a plain string ``LIKE 'prefix%'`` query.

Key facts:
    Precision p encodes 5p bits: ceil(5p/2) for longitude, floor(5p/2) for latitude.
    Precision 5 cells are roughly 4.9 km x 4.9 km at the equator.
    Distance uses the haversine formula with R = 6371 km.

All functions are pure. Invalid coordinates raise ValidationError instead of
producing a meaningless cell.
"""

import math
from numbers import Real

from changeswap.errors import ValidationError

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_BASE32_INDEX = {c: i for i, c in enumerate(BASE32)}

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = 111.32
MAX_PRECISION = 12


def validate_coordinates(lat, lng) -> None:
    """Reject anything that is not a finite, in-range latitude/longitude.

    Raises:
        ValidationError: On non-numeric, NaN, infinite or out-of-range input.
    """
    for name, value, limit in (("latitude", lat, 90.0), ("longitude", lng, 180.0)):
        if isinstance(value, bool) or not isinstance(value, Real):
            raise ValidationError(f"{name} must be a number, got {value!r}")
        if not math.isfinite(value):
            raise ValidationError(f"{name} must be finite, got {value!r}")
        if value < -limit or value > limit:
            raise ValidationError(f"{name} {value} out of range [-{limit:g}, {limit:g}]")


def _validate_precision(precision: int) -> None:
    if isinstance(precision, bool) or not isinstance(precision, int):
        raise ValidationError("precision must be an integer")
    if precision < 1 or precision > MAX_PRECISION:
        raise ValidationError(f"precision must be between 1 and {MAX_PRECISION}")


def encode(lat: float, lng: float, precision: int = 5) -> str:
    """Encode a coordinate into a geohash of ``precision`` characters.

    Points in the same grid cell always produce the same string.

    Args:
        lat: Latitude in degrees, [-90, 90].
        lng: Longitude in degrees, [-180, 180].
        precision: Number of base32 characters (1-12).

    Returns:
        The geohash string.
    """
    validate_coordinates(lat, lng)
    _validate_precision(precision)

    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars = []
    bits = 0
    bit_count = 0
    even = True  # even bits refine longitude

    while len(chars) < precision:
        if even:
            mid = (lng_range[0] + lng_range[1]) / 2
            if lng >= mid:
                bits = (bits << 1) | 1
                lng_range[0] = mid
            else:
                bits <<= 1
                lng_range[1] = mid
        else:
            mid = (lat_range[0] + lat_range[1]) / 2
            if lat >= mid:
                bits = (bits << 1) | 1
                lat_range[0] = mid
            else:
                bits <<= 1
                lat_range[1] = mid

        even = not even
        bit_count += 1
        if bit_count == 5:
            chars.append(BASE32[bits])
            bits = 0
            bit_count = 0

    return "".join(chars)


def decode_bbox(geohash: str) -> tuple[float, float, float, float]:
    """Return the cell bounds as (min_lat, min_lng, max_lat, max_lng)."""
    if not geohash:
        raise ValidationError("geohash must be a non-empty string")

    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    even = True

    for char in geohash.lower():
        cd = _BASE32_INDEX.get(char)
        if cd is None:
            raise ValidationError(f"Invalid geohash character {char!r}")
        for shift in range(4, -1, -1):
            bit = (cd >> shift) & 1
            target = lng_range if even else lat_range
            mid = (target[0] + target[1]) / 2
            if bit:
                target[0] = mid
            else:
                target[1] = mid
            even = not even

    return lat_range[0], lng_range[0], lat_range[1], lng_range[1]


def decode(geohash: str) -> tuple[float, float]:
    """Approximate inverse of encode: the centre of the cell as (lat, lng)."""
    min_lat, min_lng, max_lat, max_lng = decode_bbox(geohash)
    return (min_lat + max_lat) / 2, (min_lng + max_lng) / 2


def cell_size_degrees(precision: int) -> tuple[float, float]:
    """Cell (height, width) in degrees for a precision."""
    _validate_precision(precision)
    total_bits = 5 * precision
    lng_bits = (total_bits + 1) // 2
    lat_bits = total_bits // 2
    return 180.0 / (2 ** lat_bits), 360.0 / (2 ** lng_bits)


def neighbors(geohash: str) -> list[str]:
    """The (up to) eight cells around ``geohash``, same precision.

    Order: N, S, E, W, NE, NW, SE, SW. Longitude wraps at the antimeridian;
    cells that would lie beyond a pole are omitted.
    """
    precision = len(geohash)
    min_lat, min_lng, max_lat, max_lng = decode_bbox(geohash)
    height = max_lat - min_lat
    width = max_lng - min_lng
    center_lat = (min_lat + max_lat) / 2
    center_lng = (min_lng + max_lng) / 2

    offsets = [(1, 0), (-1, 0), (0, 1), (0, -1), (1, 1), (1, -1), (-1, 1), (-1, -1)]
    result = []
    for dlat, dlng in offsets:
        lat = center_lat + dlat * height
        if lat > 90.0 or lat < -90.0:
            continue
        lng = center_lng + dlng * width
        lng = ((lng + 180.0) % 360.0) - 180.0
        cell = encode(lat, lng, precision)
        if cell != geohash and cell not in result:
            result.append(cell)
    return result


def covering_prefixes(lat: float, lng: float, radius_km: float, max_precision: int = 5) -> list[str]:
    """Prefixes whose union contains every point within ``radius_km``.

    Picks the longest precision (<= max_precision) whose cells are at least
    ``radius_km`` on each side, then returns the home cell plus its neighbours.
    Returns an empty list when no precision is coarse enough, meaning the
    caller should not narrow by prefix at all.
    """
    validate_coordinates(lat, lng)
    if not math.isfinite(radius_km) or radius_km <= 0:
        raise ValidationError("radius_km must be a positive number")

    lat_scale = math.cos(math.radians(lat))
    for precision in range(max_precision, 0, -1):
        height_deg, width_deg = cell_size_degrees(precision)
        height_km = height_deg * KM_PER_DEGREE
        width_km = width_deg * KM_PER_DEGREE * lat_scale
        if min(height_km, width_km) >= radius_km:
            home = encode(lat, lng, precision)
            return [home] + neighbors(home)
    return []


def distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres (haversine).

    Symmetric in its two points; zero for identical points.
    """
    validate_coordinates(lat1, lng1)
    validate_coordinates(lat2, lng2)

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Rounding can push a past 1 for near-antipodal points
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c
