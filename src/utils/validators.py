"""Input validation utilities for campaign coordinates, grids, and keywords."""

import math

SCAN_FREQUENCIES = ("daily", "weekly", "monthly")

MIN_GRID_SIZE = 3
MAX_GRID_SIZE = 11
MAX_RADIUS_MILES = 50.0
# Beyond this latitude the cosine longitude correction blows up.
MAX_ABS_LATITUDE = 85.0


def validate_coordinates(lat: float, lng: float) -> tuple[bool, str]:
    """Validate a latitude/longitude pair.

    Returns:
        Tuple of (is_valid, error_message).  error_message is empty on success.
    """
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        return False, "Coordinates must be numeric."
    if math.isnan(lat) or math.isnan(lng):
        return False, "Coordinates must not be NaN."
    if not -MAX_ABS_LATITUDE <= lat <= MAX_ABS_LATITUDE:
        return False, f"Latitude {lat} outside [-{MAX_ABS_LATITUDE}, {MAX_ABS_LATITUDE}]."
    if not -180.0 <= lng <= 180.0:
        return False, f"Longitude {lng} outside [-180, 180]."
    return True, ""


def validate_grid_size(grid_size: int) -> tuple[bool, str]:
    """Grid size must be an odd integer between 3 and 11 so a center point exists."""
    if isinstance(grid_size, bool) or not isinstance(grid_size, int):
        return False, "Grid size must be an integer."
    if grid_size < MIN_GRID_SIZE or grid_size > MAX_GRID_SIZE:
        return False, f"Grid size must be between {MIN_GRID_SIZE} and {MAX_GRID_SIZE}."
    if grid_size % 2 == 0:
        return False, "Grid size must be odd."
    return True, ""


def validate_radius(radius_miles: float) -> tuple[bool, str]:
    try:
        radius = float(radius_miles)
    except (TypeError, ValueError):
        return False, "Radius must be numeric."
    if not 0 < radius <= MAX_RADIUS_MILES:
        return False, f"Radius must be greater than 0 and at most {MAX_RADIUS_MILES} miles."
    return True, ""


def validate_frequency(frequency: str) -> tuple[bool, str]:
    if frequency not in SCAN_FREQUENCIES:
        return False, f"Scan frequency must be one of {', '.join(SCAN_FREQUENCIES)}."
    return True, ""


def clean_keywords(keywords: list[str] | None) -> list[str]:
    """Trim keywords and drop blanks and case-insensitive duplicates, keeping order."""
    cleaned: list[str] = []
    seen: set[str] = set()
    for kw in keywords or []:
        kw = (kw or "").strip()
        if not kw or kw.lower() in seen:
            continue
        seen.add(kw.lower())
        cleaned.append(kw)
    return cleaned
