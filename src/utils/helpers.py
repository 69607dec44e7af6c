"""General-purpose helper utilities for the local grid tracker."""

import calendar
import re
from datetime import datetime, timedelta
from typing import Optional

_QUOTES_RE = re.compile(r"[‘’`]")
_DASHES_RE = re.compile(r"[–—]")
_PUNCT_RE = re.compile(r"[.,]")
_SPACE_RE = re.compile(r"\s+")
_LEGAL_SUFFIX_RE = re.compile(r"\b(llc|inc|ltd|pc|dds|dmd)\b")


def normalize_business_name(name: str, strip_suffixes: bool = False) -> str:
    """Normalize a business name for identity comparison.

    Args:
        name: Raw listing title.
        strip_suffixes: Also drop legal/credential suffixes such as
            ``LLC`` or ``DDS`` (used for target matching).

    Examples:
        >>> normalize_business_name("  Joe’s  Pizza, Inc. ")
        "joe's pizza inc"
        >>> normalize_business_name("Smile Dental DDS", strip_suffixes=True)
        'smile dental'
    """
    text = (name or "").lower()
    text = _QUOTES_RE.sub("'", text)
    text = _DASHES_RE.sub("-", text)
    text = _PUNCT_RE.sub("", text)
    if strip_suffixes:
        text = _LEGAL_SUFFIX_RE.sub("", text)
    text = _SPACE_RE.sub(" ", text)
    return text.strip()


def is_target_business(
    listing_name: str,
    target_name: str,
    listing_id: Optional[str] = None,
    target_id: Optional[str] = None,
) -> bool:
    """Return True when a listing is the tracked business.

    External ids decide when both sides carry one. Otherwise names are
    compared after normalization: exact match, the target contained in the
    listing, or the listing contained in the target when the listing name is
    longer than five characters.
    """
    if listing_id and target_id:
        return listing_id == target_id

    listing = normalize_business_name(listing_name, strip_suffixes=True)
    target = normalize_business_name(target_name, strip_suffixes=True)
    if not listing or not target:
        return False
    if listing == target:
        return True
    if target in listing:
        return True
    return listing in target and len(listing) > 5


def round_or_none(value: Optional[float], digits: int = 2) -> Optional[float]:
    """Round *value* unless it is None."""
    if value is None:
        return None
    return round(value, digits)


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def calculate_next_scan(last_run_at: datetime, frequency: str) -> datetime:
    """Return when the next scan is due for a campaign cadence.

    Raises:
        ValueError: for an unknown cadence.
    """
    if frequency == "daily":
        return last_run_at + timedelta(days=1)
    if frequency == "weekly":
        return last_run_at + timedelta(days=7)
    if frequency == "monthly":
        return add_months(last_run_at, 1)
    raise ValueError(f"Unknown scan frequency: {frequency!r}")
