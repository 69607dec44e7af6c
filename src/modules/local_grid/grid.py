"""Grid point generation for geo-grid rank scans.

Points are laid out on a planar approximation around the center: latitude
degrees per mile come from the mean Earth radius and longitude spacing is
stretched by ``1 / cos(center latitude)``.  This is accurate to well under
one percent for the radii a local campaign uses (at most 50 miles).
"""

import math

from src.modules.local_grid.types import GridPoint
from src.utils.validators import (
    validate_coordinates,
    validate_grid_size,
    validate_radius,
)

EARTH_RADIUS_MILES = 3958.8
MILES_PER_DEGREE_LAT = math.pi * EARTH_RADIUS_MILES / 180.0
DEFAULT_ZOOM = 14


def get_grid_center(grid_size: int) -> tuple[int, int]:
    """Return the (row, col) of the center point."""
    center = grid_size // 2
    return center, center


def is_grid_center(point: GridPoint, grid_size: int) -> bool:
    return (point.row, point.col) == get_grid_center(grid_size)


def _half_side(radius_miles: float) -> float:
    # The lattice corners sit exactly one radius away from the center.
    return radius_miles / math.sqrt(2.0)


def generate_grid_points(
    center_lat: float,
    center_lng: float,
    grid_size: int,
    radius_miles: float,
) -> list[GridPoint]:
    """Generate an ``grid_size`` x ``grid_size`` lattice around a center.

    Args:
        center_lat: Center latitude in decimal degrees.
        center_lng: Center longitude in decimal degrees.
        grid_size: Odd number of rows/columns between 3 and 11.
        radius_miles: Distance from the center to each lattice corner.

    Returns:
        Points in row-major order, row 0 northernmost and col 0 westernmost.
        The center point carries the input coordinate unchanged.

    Raises:
        ValueError: If any argument is out of range.
    """
    for ok, message in (
        validate_grid_size(grid_size),
        validate_radius(radius_miles),
        validate_coordinates(center_lat, center_lng),
    ):
        if not ok:
            raise ValueError(message)

    center_lat = float(center_lat)
    center_lng = float(center_lng)
    spacing_miles = 2.0 * _half_side(float(radius_miles)) / (grid_size - 1)
    lat_step = spacing_miles / MILES_PER_DEGREE_LAT
    lng_step = lat_step / math.cos(math.radians(center_lat))
    center_index, _ = get_grid_center(grid_size)

    points: list[GridPoint] = []
    for row in range(grid_size):
        row_offset = center_index - row
        lat = center_lat + row_offset * lat_step if row_offset else center_lat
        for col in range(grid_size):
            col_offset = col - center_index
            lng = center_lng + col_offset * lng_step if col_offset else center_lng
            points.append(GridPoint(row=row, col=col, lat=lat, lng=lng))
    return points


def calculate_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in miles (haversine)."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def get_grid_stats(grid_size: int, radius_miles: float) -> dict[str, float]:
    """Summarize a grid configuration (point count, spacing, half side)."""
    half_side = _half_side(radius_miles)
    return {
        "total_points": grid_size * grid_size,
        "half_side_miles": round(half_side, 3),
        "spacing_miles": round(2.0 * half_side / (grid_size - 1), 3),
        "center_index": grid_size // 2,
    }


def format_coordinate_for_api(lat: float, lng: float, zoom: int = DEFAULT_ZOOM) -> str:
    """Format a coordinate as ``lat,lng,<zoom>z`` with seven decimals.

    Zoom 14-15 matches typical grid spacing; street-level zoom often returns
    no listings in residential areas.
    """
    return f"{lat:.7f},{lng:.7f},{zoom}z"
