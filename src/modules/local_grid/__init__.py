"""Local grid rank tracking module.

Samples map-pack rankings on an N x N grid around a business, aggregates
per-competitor visibility and tracks rank changes between scans.
"""

from src.modules.local_grid.aggregator import (
    aggregate_competitor_stats,
    apply_rank_changes,
    calculate_market_share,
    generate_competitive_summary,
    get_top_competitors,
    group_by_performance_tier,
)
from src.modules.local_grid.errors import (
    GridScanError,
    InvalidTransitionError,
    OrchestrationError,
    PermanentLookupError,
    PersistenceError,
    RankLookupError,
    ScanAlreadyRunningError,
    TransientLookupError,
)
from src.modules.local_grid.grid import generate_grid_points
from src.modules.local_grid.orchestrator import ProgressSink, ScanOrchestrator
from src.modules.local_grid.profile import BusinessProfileRefresher
from src.modules.local_grid.repository import ScanRepository
from src.modules.local_grid.scanner import KeywordGridScanner, estimate_scan_cost
from src.modules.local_grid.types import (
    GridPoint,
    ScanOutcome,
    ScanProgress,
    ScanStatus,
    TargetBusiness,
)

__all__ = [
    "aggregate_competitor_stats",
    "apply_rank_changes",
    "calculate_market_share",
    "generate_competitive_summary",
    "get_top_competitors",
    "group_by_performance_tier",
    "GridScanError",
    "InvalidTransitionError",
    "OrchestrationError",
    "PermanentLookupError",
    "PersistenceError",
    "RankLookupError",
    "ScanAlreadyRunningError",
    "TransientLookupError",
    "generate_grid_points",
    "ProgressSink",
    "ScanOrchestrator",
    "BusinessProfileRefresher",
    "ScanRepository",
    "KeywordGridScanner",
    "estimate_scan_cost",
    "GridPoint",
    "ScanOutcome",
    "ScanProgress",
    "ScanStatus",
    "TargetBusiness",
]
