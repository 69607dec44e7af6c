"""SQLAlchemy ORM models. Importing this package registers every table on Base.metadata."""

from src.models.local_grid import (
    LocalCampaign,
    GridScan,
    GridPointResult,
    ScanCompetitorStat,
    GBPSnapshot,
)

__all__ = [
    "LocalCampaign",
    "GridScan",
    "GridPointResult",
    "ScanCompetitorStat",
    "GBPSnapshot",
]
