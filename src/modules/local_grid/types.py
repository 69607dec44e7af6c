"""Value types shared by the grid generator, scanner, aggregator and orchestrator."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from src.modules.local_grid.errors import InvalidTransitionError


class CampaignStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class ScanStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanStatus.COMPLETED, ScanStatus.FAILED)


# RUNNING -> RUNNING covers progress writes; terminal states have no exits.
ALLOWED_TRANSITIONS: dict[ScanStatus, frozenset[ScanStatus]] = {
    ScanStatus.PENDING: frozenset({ScanStatus.RUNNING}),
    ScanStatus.RUNNING: frozenset(
        {ScanStatus.RUNNING, ScanStatus.COMPLETED, ScanStatus.FAILED}
    ),
    ScanStatus.COMPLETED: frozenset(),
    ScanStatus.FAILED: frozenset(),
}


def ensure_transition(
    current: "ScanStatus | str",
    target: "ScanStatus | str",
    scan_id: Optional[int] = None,
) -> ScanStatus:
    """Validate a status change and return the target status.

    Raises:
        InvalidTransitionError: if the state machine forbids the change.
    """
    current_status = ScanStatus(current)
    target_status = ScanStatus(target)
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(scan_id, current_status.value, target_status.value)
    return target_status


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GridPoint:
    """One lattice point. Row 0 is the northern edge, col 0 the western edge."""

    row: int
    col: int
    lat: float
    lng: float


@dataclass(frozen=True)
class TargetBusiness:
    """The tracked business, matched by external id first and name second."""

    name: str
    external_id: Optional[str] = None


@dataclass
class CompetitorRanking:
    """A business listing returned at one grid point."""

    name: str
    rank: int
    external_id: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    category: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompetitorRanking":
        return cls(
            name=data.get("name", ""),
            rank=int(data.get("rank", 0)),
            external_id=data.get("external_id"),
            rating=data.get("rating"),
            review_count=data.get("review_count"),
            address=data.get("address"),
            phone=data.get("phone"),
            category=data.get("category"),
        )


@dataclass
class RankLookupResult:
    """What a rank lookup returns for one keyword at one coordinate."""

    top_results: list[CompetitorRanking] = field(default_factory=list)
    target_rank: Optional[int] = None


@dataclass
class KeywordScanResult:
    """Outcome of one (keyword, grid point) lookup. Failed calls keep the pair."""

    keyword: str
    point: GridPoint
    success: bool
    target_rank: Optional[int] = None
    top_rankings: list[CompetitorRanking] = field(default_factory=list)
    total_results: int = 0
    error: Optional[str] = None
    attempts: int = 0
    scanned_at: datetime = field(default_factory=_utcnow)

    @property
    def pair(self) -> tuple[str, int, int]:
        return (self.keyword, self.point.row, self.point.col)


@dataclass
class KeywordSummary:
    """Target-business statistics for a single keyword."""

    keyword: str
    successful_scans: int = 0
    failed_scans: int = 0
    avg_rank: Optional[float] = None
    times_in_top_3: int = 0
    times_in_top_10: int = 0
    times_ranked: int = 0


@dataclass
class CompetitorStat:
    """Aggregated visibility of one business across a scan."""

    identity: str
    business_name: str
    avg_rank: float
    appearances: int
    times_in_top_3: int
    times_in_top_10: int
    times_in_top_20: int
    share_of_voice: float
    external_id: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    is_target: bool = False
    prev_avg_rank: Optional[float] = None
    rank_change: Optional[float] = None


@dataclass
class ScanAggregation:
    """Result of aggregating a scan's point results."""

    stats: list[CompetitorStat]
    target_stats: Optional[CompetitorStat]
    avg_rank: Optional[float]
    share_of_voice: float
    top_competitor: Optional[str]
    successful_points: int

    @property
    def competitors(self) -> list[CompetitorStat]:
        """Every stat except the target's."""
        return [s for s in self.stats if not s.is_target]


@dataclass
class ScanOutcome:
    """Summary returned to the caller of ``run_scan``."""

    scan_id: int
    avg_rank: Optional[float]
    share_of_voice: float
    top_competitor: Optional[str]
    api_calls_used: int
    failed_points: int = 0
    total_points: int = 0
    estimated_cost: float = 0.0


@dataclass
class ScanProgress:
    scan_id: int
    status: ScanStatus
    progress: int
    error_message: Optional[str] = None
