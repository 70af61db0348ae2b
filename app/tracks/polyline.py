"""Track simplification and encoded-polyline codec.

Coordinates are (latitude, longitude) tuples in degrees.
"""

from __future__ import annotations

from collections.abc import Sequence

Coordinate = tuple[float, float]

DEFAULT_TOLERANCE_DEGREES = 1e-4  # ~11 m
DEFAULT_PRECISION = 5


def _perpendicular_distance(point: Coordinate, start: Coordinate, end: Coordinate) -> float:
    """Distance from point to the line through start and end, in degrees."""
    dx = end[0] - start[0]
    dy = end[1] - start[1]
    if dx == 0 and dy == 0:
        return ((point[0] - start[0]) ** 2 + (point[1] - start[1]) ** 2) ** 0.5
    numerator = abs(dy * point[0] - dx * point[1] + end[0] * start[1] - end[1] * start[0])
    return numerator / (dx * dx + dy * dy) ** 0.5


def simplify_track(
    coords: Sequence[Coordinate],
    tolerance: float = DEFAULT_TOLERANCE_DEGREES,
) -> list[Coordinate]:
    """Ramer-Douglas-Peucker simplification.

    Iterative so long rides cannot hit the recursion limit. Tracks with two
    points or fewer are returned unchanged.

    Args:
        coords: Ordered (lat, lon) pairs
        tolerance: Maximum perpendicular distance, in degrees, a dropped point may have

    Returns:
        The retained points, in original order, endpoints always kept
    """
    points = list(coords)
    if len(points) <= 2:
        return points

    keep = [False] * len(points)
    keep[0] = keep[-1] = True
    stack = [(0, len(points) - 1)]

    while stack:
        first, last = stack.pop()
        max_distance = 0.0
        index = first
        for i in range(first + 1, last):
            distance = _perpendicular_distance(points[i], points[first], points[last])
            if distance > max_distance:
                max_distance = distance
                index = i
        if max_distance > tolerance:
            keep[index] = True
            stack.append((first, index))
            stack.append((index, last))

    return [point for point, kept in zip(points, keep, strict=True) if kept]


def _encode_value(value: int) -> str:
    value = ~(value << 1) if value < 0 else value << 1
    chunks = []
    while value >= 0x20:
        chunks.append(chr((0x20 | (value & 0x1F)) + 63))
        value >>= 5
    chunks.append(chr(value + 63))
    return "".join(chunks)


def encode_polyline(coords: Sequence[Coordinate], precision: int = DEFAULT_PRECISION) -> str | None:
    """Encode coordinates with the delta / base-64-character polyline scheme.

    Returns:
        Encoded string, or None when there are no coordinates
    """
    if not coords:
        return None

    factor = 10**precision
    output = []
    prev_lat = prev_lon = 0
    for lat, lon in coords:
        lat_i = int(round(lat * factor))
        lon_i = int(round(lon * factor))
        output.append(_encode_value(lat_i - prev_lat))
        output.append(_encode_value(lon_i - prev_lon))
        prev_lat, prev_lon = lat_i, lon_i
    return "".join(output)


def decode_polyline(encoded: str, precision: int = DEFAULT_PRECISION) -> list[Coordinate]:
    """Decode an encoded polyline back into (lat, lon) pairs.

    Raises:
        ValueError: If the string ends in the middle of a value
    """
    factor = 10**precision
    coords: list[Coordinate] = []
    index = 0
    lat = lon = 0
    length = len(encoded)

    while index < length:
        deltas = []
        for _ in range(2):
            shift = result = 0
            while True:
                if index >= length:
                    raise ValueError("Truncated polyline")
                byte = ord(encoded[index]) - 63
                index += 1
                result |= (byte & 0x1F) << shift
                shift += 5
                if byte < 0x20:
                    break
            deltas.append(~(result >> 1) if result & 1 else result >> 1)
        lat += deltas[0]
        lon += deltas[1]
        coords.append((lat / factor, lon / factor))

    return coords
