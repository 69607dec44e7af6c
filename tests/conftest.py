"""Shared pytest fixtures for the local grid tracker tests."""

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

# Ensure project root is on sys.path so 'src' is importable.
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from src.modules.local_grid.grid import generate_grid_points  # noqa: E402
from src.modules.local_grid.types import (  # noqa: E402
    CompetitorRanking,
    GridPoint,
    RankLookupResult,
    TargetBusiness,
)

CAMPAIGN_LAT = 30.0
CAMPAIGN_LNG = -97.0


@pytest.fixture(autouse=True)
def _reset_db_engine():
    """Autouse fixture: reset the global DB engine before and after every test."""
    from src.database import reset_engine
    reset_engine()
    yield
    reset_engine()


@pytest.fixture()
def test_db():
    """Provide an in-memory SQLite database with all tables created."""
    from src.database import reset_engine, init_db
    reset_engine()
    db_url = "sqlite:///:memory:"
    init_db(database_url=db_url, echo=False)
    yield db_url


@pytest.fixture()
def repository(test_db):
    from src.modules.local_grid.repository import ScanRepository
    return ScanRepository()


@pytest.fixture()
def campaign(repository):
    """A 3x3, two-keyword campaign for 'Smile Dental' centered on (30.0, -97.0)."""
    return repository.create_campaign(
        business_name="Smile Dental",
        center_lat=CAMPAIGN_LAT,
        center_lng=CAMPAIGN_LNG,
        keywords=["dentist", "emergency dentist"],
        grid_size=3,
        radius_miles=5.0,
        scan_frequency="weekly",
    )


@pytest.fixture()
def grid_points() -> list[GridPoint]:
    return generate_grid_points(CAMPAIGN_LAT, CAMPAIGN_LNG, 3, 5.0)


Handler = Callable[[str, GridPoint, int], RankLookupResult]


class FakeRankLookupClient:
    """Scripted rank lookup client.

    ``handler(keyword, point, attempt)`` returns a ``RankLookupResult`` or
    raises; ``attempt`` counts calls for the same (keyword, point) from 1.
    Unknown coordinates resolve to ``None`` as the point.
    """

    def __init__(self, handler: Handler, points: Optional[list[GridPoint]] = None):
        self._handler = handler
        self._points = {(p.lat, p.lng): p for p in points or []}
        self.calls: list[tuple[str, float, float]] = []
        self._attempts: dict[tuple[str, float, float], int] = {}

    async def lookup(self, keyword, lat, lng, target: Optional[TargetBusiness] = None):
        key = (keyword, lat, lng)
        self.calls.append(key)
        self._attempts[key] = self._attempts.get(key, 0) + 1
        point = self._points.get((lat, lng))
        return self._handler(keyword, point, self._attempts[key])


def listing(name: str, rank: int, cid: Optional[str] = None, **kwargs) -> CompetitorRanking:
    return CompetitorRanking(name=name, rank=rank, external_id=cid, **kwargs)


def result_of(*listings: CompetitorRanking, target_rank: Optional[int] = None) -> RankLookupResult:
    return RankLookupResult(top_results=list(listings), target_rank=target_rank)


@pytest.fixture()
def fake_client_factory(grid_points):
    def _make(handler: Handler) -> FakeRankLookupClient:
        return FakeRankLookupClient(handler, grid_points)
    return _make


@pytest.fixture()
def scanner_factory():
    """Build scanners with no backoff delay so retry tests run instantly."""
    from src.modules.local_grid.scanner import KeywordGridScanner
    from src.utils.rate_limiter import LookupLimiter

    def _make(client, max_retries: int = 2, call_timeout: float = 5.0, max_concurrent: int = 10):
        return KeywordGridScanner(
            client,
            LookupLimiter(max_concurrent=max_concurrent),
            max_retries=max_retries,
            retry_backoff=0.0,
            call_timeout=call_timeout,
        )
    return _make
