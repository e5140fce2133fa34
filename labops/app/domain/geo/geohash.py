"""
Geohash encoding and decoding.

Standard base-32 bit interleaving: 5 bits per character, alternating
longitude/latitude bits starting with longitude. Encode and decode use the
same algorithm, so ``decode(encode(lat, lng))`` lands inside the encoded cell.
"""

from typing import Tuple

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_BASE32_INDEX = {char: index for index, char in enumerate(BASE32)}

MAX_PRECISION = 12


def encode(lat: float, lng: float, precision: int = 9) -> str:
    """
    Encode coordinates as a geohash.
    
    Args:
        lat: Latitude in degrees (-90..90)
        lng: Longitude in degrees (-180..180)
        precision: Number of characters (1..12); 9 characters is roughly 5m
    
    Returns:
        Geohash string
    
    Raises:
        ValueError: If coordinates or precision are out of range
    """
    if not -90 <= lat <= 90:
        raise ValueError("Latitude must be between -90 and 90")
    if not -180 <= lng <= 180:
        raise ValueError("Longitude must be between -180 and 180")
    if not 1 <= precision <= MAX_PRECISION:
        raise ValueError(f"Precision must be between 1 and {MAX_PRECISION}")
    
    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars = []
    index = 0
    bit = 0
    even_bit = True
    
    while len(chars) < precision:
        value, bounds = (lng, lng_range) if even_bit else (lat, lat_range)
        mid = (bounds[0] + bounds[1]) / 2
        if value > mid:
            index = (index << 1) | 1
            bounds[0] = mid
        else:
            index = index << 1
            bounds[1] = mid
        even_bit = not even_bit
        
        bit += 1
        if bit == 5:
            chars.append(BASE32[index])
            bit = 0
            index = 0
    
    return "".join(chars)


def decode_bounds(geohash: str) -> Tuple[float, float, float, float]:
    """
    Decode a geohash to its cell bounds.
    
    Returns:
        (lat_min, lat_max, lng_min, lng_max)
    
    Raises:
        ValueError: If the geohash is empty or contains a non base-32 character
    """
    if not geohash:
        raise ValueError("Invalid geohash")
    
    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    even_bit = True
    
    for char in geohash.lower():
        index = _BASE32_INDEX.get(char)
        if index is None:
            raise ValueError(f"Invalid character in geohash: {char}")
        for shift in range(4, -1, -1):
            bounds = lng_range if even_bit else lat_range
            mid = (bounds[0] + bounds[1]) / 2
            if (index >> shift) & 1:
                bounds[0] = mid
            else:
                bounds[1] = mid
            even_bit = not even_bit
    
    return lat_range[0], lat_range[1], lng_range[0], lng_range[1]


def decode(geohash: str) -> Tuple[float, float]:
    """Decode a geohash to the (lat, lng) midpoint of its cell."""
    lat_min, lat_max, lng_min, lng_max = decode_bounds(geohash)
    return (lat_min + lat_max) / 2, (lng_min + lng_max) / 2
