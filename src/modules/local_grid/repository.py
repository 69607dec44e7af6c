"""SQLAlchemy-backed storage for campaigns, scans, point results and competitor stats.

Every status change goes through ``ensure_transition`` so a scan can never
leave a terminal state, whichever caller writes to it.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Generator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.database import as_utc, get_session, utcnow
from src.models.local_grid import (
    GBPSnapshot,
    GridPointResult,
    GridScan,
    LocalCampaign,
    ScanCompetitorStat,
)
from src.modules.local_grid.errors import PersistenceError
from src.modules.local_grid.types import (
    CampaignStatus,
    CompetitorRanking,
    CompetitorStat,
    KeywordScanResult,
    ScanProgress,
    ScanStatus,
    ensure_transition,
)
from src.utils.helpers import calculate_next_scan
from src.utils.validators import (
    clean_keywords,
    validate_coordinates,
    validate_frequency,
    validate_grid_size,
    validate_radius,
)

logger = logging.getLogger(__name__)

_ACTIVE_SCAN_STATES = (ScanStatus.PENDING.value, ScanStatus.RUNNING.value)
_CAMPAIGN_FIELDS = {
    "business_name", "place_id", "gmb_cid", "center_lat", "center_lng",
    "grid_size", "radius_miles", "keywords", "status", "scan_frequency",
    "next_scan_at",
}


@contextmanager
def _persist(action: str) -> Generator[Session, None, None]:
    """Open a session and translate storage failures into ``PersistenceError``."""
    try:
        with get_session() as session:
            yield session
    except SQLAlchemyError as exc:
        logger.error("Storage failure while trying to %s: %s", action, exc)
        raise PersistenceError(f"Failed to {action}: {exc}") from exc


def _validate_campaign(fields: dict[str, Any]) -> None:
    checks = []
    if "center_lat" in fields or "center_lng" in fields:
        checks.append(validate_coordinates(fields.get("center_lat"), fields.get("center_lng")))
    if "grid_size" in fields:
        checks.append(validate_grid_size(fields["grid_size"]))
    if "radius_miles" in fields:
        checks.append(validate_radius(fields["radius_miles"]))
    if "scan_frequency" in fields:
        checks.append(validate_frequency(fields["scan_frequency"]))
    if "status" in fields and fields["status"] not in CampaignStatus.__members__:
        checks.append((False, f"Unknown campaign status {fields['status']!r}."))
    for ok, message in checks:
        if not ok:
            raise ValueError(message)


def _stat_from_row(row: ScanCompetitorStat) -> CompetitorStat:
    return CompetitorStat(
        identity=row.identity_key,
        business_name=row.business_name,
        avg_rank=row.avg_rank,
        appearances=row.appearances,
        times_in_top_3=row.times_in_top_3,
        times_in_top_10=row.times_in_top_10,
        times_in_top_20=row.times_in_top_20,
        share_of_voice=row.share_of_voice,
        external_id=row.external_id,
        rating=row.rating,
        review_count=row.review_count,
        is_target=row.is_target,
        prev_avg_rank=row.prev_avg_rank,
        rank_change=row.rank_change,
    )


class ScanRepository:
    """Persistence operations used by the orchestrator, scheduler and CLI.

    Returned ORM objects are detached; scalar attributes stay readable
    because sessions are created with ``expire_on_commit=False``.

    Usage::

        repo = ScanRepository()
        campaign = repo.create_campaign("Smile Dental", 30.27, -97.74, ["dentist"])
        scan = repo.create_scan(campaign.id, ["dentist"], total_points=49)
    """

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    def create_campaign(
        self,
        business_name: str,
        center_lat: float,
        center_lng: float,
        keywords: list[str],
        grid_size: int = 7,
        radius_miles: float = 5.0,
        scan_frequency: str = "weekly",
        place_id: Optional[str] = None,
        gmb_cid: Optional[str] = None,
    ) -> LocalCampaign:
        """Validate and store a new ACTIVE campaign.

        Raises:
            ValueError: on an empty name, no keywords or an invalid grid.
        """
        if not (business_name or "").strip():
            raise ValueError("Business name is required.")
        cleaned = clean_keywords(keywords)
        if not cleaned:
            raise ValueError("At least one keyword is required.")
        _validate_campaign({
            "center_lat": center_lat,
            "center_lng": center_lng,
            "grid_size": grid_size,
            "radius_miles": radius_miles,
            "scan_frequency": scan_frequency,
        })

        with _persist("create campaign") as session:
            campaign = LocalCampaign(
                business_name=business_name.strip(),
                place_id=place_id,
                gmb_cid=gmb_cid,
                center_lat=float(center_lat),
                center_lng=float(center_lng),
                grid_size=grid_size,
                radius_miles=float(radius_miles),
                keywords=cleaned,
                status=CampaignStatus.ACTIVE.value,
                scan_frequency=scan_frequency,
            )
            session.add(campaign)
            session.flush()
        logger.info("Created campaign %d for %r", campaign.id, campaign.business_name)
        return campaign

    def get_campaign(self, campaign_id: int) -> Optional[LocalCampaign]:
        with _persist("load campaign") as session:
            return session.get(LocalCampaign, campaign_id)

    def list_campaigns(self, include_archived: bool = False) -> list[LocalCampaign]:
        with _persist("list campaigns") as session:
            query = session.query(LocalCampaign)
            if not include_archived:
                query = query.filter(LocalCampaign.status != CampaignStatus.ARCHIVED.value)
            return query.order_by(LocalCampaign.id.asc()).all()

    def update_campaign(self, campaign_id: int, **fields: Any) -> Optional[LocalCampaign]:
        """Update whitelisted campaign fields; returns None when the campaign is missing."""
        unknown = set(fields) - _CAMPAIGN_FIELDS
        if unknown:
            raise ValueError(f"Unknown campaign fields: {', '.join(sorted(unknown))}")
        if "keywords" in fields:
            fields["keywords"] = clean_keywords(fields["keywords"])
            if not fields["keywords"]:
                raise ValueError("At least one keyword is required.")

        with _persist("update campaign") as session:
            campaign = session.get(LocalCampaign, campaign_id)
            if campaign is None:
                return None
            merged = {"center_lat": campaign.center_lat, "center_lng": campaign.center_lng}
            merged.update(fields)
            _validate_campaign(merged)
            for name, value in fields.items():
                setattr(campaign, name, value)
        return campaign

    def archive_campaign(self, campaign_id: int) -> bool:
        """Soft-delete a campaign; its scans stay readable."""
        with _persist("archive campaign") as session:
            campaign = session.get(LocalCampaign, campaign_id)
            if campaign is None:
                return False
            campaign.status = CampaignStatus.ARCHIVED.value
            campaign.next_scan_at = None
        logger.info("Archived campaign %d", campaign_id)
        return True

    def get_campaigns_due_for_scan(
        self, now: Optional[datetime] = None, limit: int = 20
    ) -> list[LocalCampaign]:
        """ACTIVE campaigns whose next scan is due; never-scheduled ones count as due."""
        now = now or utcnow()
        with _persist("load due campaigns") as session:
            return (
                session.query(LocalCampaign)
                .filter(
                    LocalCampaign.status == CampaignStatus.ACTIVE.value,
                    (LocalCampaign.next_scan_at.is_(None)) | (LocalCampaign.next_scan_at <= now),
                )
                .order_by(LocalCampaign.next_scan_at.asc(), LocalCampaign.id.asc())
                .limit(limit)
                .all()
            )

    def update_campaign_schedule(
        self, campaign_id: int, last_run_at: datetime, frequency: str
    ) -> datetime:
        """Record a finished run and return the next due time."""
        next_scan_at = calculate_next_scan(as_utc(last_run_at), frequency)
        with _persist("update campaign schedule") as session:
            campaign = session.get(LocalCampaign, campaign_id)
            if campaign is not None:
                campaign.last_scan_at = last_run_at
                campaign.next_scan_at = next_scan_at
        logger.debug("Campaign %d next scan at %s", campaign_id, next_scan_at.isoformat())
        return next_scan_at

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def create_scan(
        self, campaign_id: int, keywords: Optional[list[str]] = None, total_points: int = 0
    ) -> GridScan:
        with _persist("create scan") as session:
            scan = GridScan(
                campaign_id=campaign_id,
                status=ScanStatus.PENDING.value,
                progress=0,
                keywords=keywords,
                total_points=total_points,
            )
            session.add(scan)
            session.flush()
        logger.info("Created scan %d for campaign %d", scan.id, campaign_id)
        return scan

    def _load_scan(self, session: Session, scan_id: int) -> GridScan:
        scan = session.get(GridScan, scan_id)
        if scan is None:
            raise PersistenceError(f"Scan {scan_id} does not exist")
        return scan

    def start_scan(self, scan_id: int) -> GridScan:
        with _persist("start scan") as session:
            scan = self._load_scan(session, scan_id)
            ensure_transition(scan.status, ScanStatus.RUNNING, scan_id)
            scan.status = ScanStatus.RUNNING.value
            scan.started_at = utcnow()
        logger.info("Scan %d RUNNING", scan_id)
        return scan

    def set_scan_plan(self, scan_id: int, keywords: list[str], total_points: int) -> None:
        with _persist("record scan plan") as session:
            scan = self._load_scan(session, scan_id)
            ensure_transition(scan.status, ScanStatus.RUNNING, scan_id)
            scan.keywords = keywords
            scan.total_points = total_points

    def update_scan_progress(self, scan_id: int, progress: int) -> int:
        """Store progress, clamped to [0, 100] and never lower than before."""
        progress = max(0, min(100, int(progress)))
        with _persist("update scan progress") as session:
            scan = self._load_scan(session, scan_id)
            ensure_transition(scan.status, ScanStatus.RUNNING, scan_id)
            scan.progress = max(scan.progress or 0, progress)
            return scan.progress

    def complete_scan(
        self,
        scan_id: int,
        avg_rank: Optional[float],
        share_of_voice: float,
        top_competitor: Optional[str],
        api_calls_used: int,
        failed_points: int,
        estimated_cost: float,
    ) -> GridScan:
        with _persist("complete scan") as session:
            scan = self._load_scan(session, scan_id)
            ensure_transition(scan.status, ScanStatus.COMPLETED, scan_id)
            scan.status = ScanStatus.COMPLETED.value
            scan.progress = 100
            scan.avg_rank = avg_rank
            scan.share_of_voice = share_of_voice
            scan.top_competitor = top_competitor
            scan.api_calls_used = api_calls_used
            scan.failed_points = failed_points
            scan.estimated_cost = estimated_cost
            scan.completed_at = utcnow()
        logger.info(
            "Scan %d COMPLETED: avg_rank=%s sov=%.3f failed_points=%d",
            scan_id, avg_rank, share_of_voice, failed_points,
        )
        return scan

    def fail_scan(self, scan_id: int, error_message: str) -> GridScan:
        """Mark a scan FAILED, passing through RUNNING when it never started.

        The first recorded error message is kept.
        """
        with _persist("fail scan") as session:
            scan = self._load_scan(session, scan_id)
            self._fail(scan, error_message)
        logger.error("Scan %d FAILED: %s", scan_id, scan.error_message)
        return scan

    @staticmethod
    def _fail(scan: GridScan, error_message: str) -> None:
        if scan.status == ScanStatus.PENDING.value:
            ensure_transition(scan.status, ScanStatus.RUNNING, scan.id)
            scan.status = ScanStatus.RUNNING.value
            scan.started_at = scan.started_at or utcnow()
        ensure_transition(scan.status, ScanStatus.FAILED, scan.id)
        scan.status = ScanStatus.FAILED.value
        scan.error_message = scan.error_message or error_message
        scan.completed_at = utcnow()

    def get_scan(self, scan_id: int) -> Optional[GridScan]:
        with _persist("load scan") as session:
            return session.get(GridScan, scan_id)

    def get_scan_progress(self, scan_id: int) -> Optional[ScanProgress]:
        scan = self.get_scan(scan_id)
        if scan is None:
            return None
        return ScanProgress(
            scan_id=scan.id,
            status=ScanStatus(scan.status),
            progress=scan.progress or 0,
            error_message=scan.error_message,
        )

    def list_campaign_scans(self, campaign_id: int, limit: int = 20) -> list[GridScan]:
        with _persist("list scans") as session:
            return (
                session.query(GridScan)
                .filter(GridScan.campaign_id == campaign_id)
                .order_by(GridScan.created_at.desc(), GridScan.id.desc())
                .limit(limit)
                .all()
            )

    def find_active_scan(self, campaign_id: int) -> Optional[GridScan]:
        with _persist("find active scan") as session:
            return (
                session.query(GridScan)
                .filter(
                    GridScan.campaign_id == campaign_id,
                    GridScan.status.in_(_ACTIVE_SCAN_STATES),
                )
                .order_by(GridScan.id.desc())
                .first()
            )

    def fail_stale_scans(
        self, max_age: timedelta, now: Optional[datetime] = None
    ) -> list[int]:
        """Fail PENDING/RUNNING scans created more than ``max_age`` ago.

        Returns:
            Ids of the scans that were marked FAILED.
        """
        cutoff = (now or utcnow()) - max_age
        message = f"Scan abandoned: no completion within {int(max_age.total_seconds() // 60)} minutes"
        with _persist("sweep stale scans") as session:
            stale = (
                session.query(GridScan)
                .filter(
                    GridScan.status.in_(_ACTIVE_SCAN_STATES),
                    GridScan.created_at < cutoff,
                )
                .all()
            )
            for scan in stale:
                self._fail(scan, message)
            swept = [scan.id for scan in stale]
        if swept:
            logger.warning("Marked %d stale scans FAILED: %s", len(swept), swept)
        return swept

    # ------------------------------------------------------------------
    # Point results and competitor stats
    # ------------------------------------------------------------------

    def save_point_results(self, scan_id: int, results: list[KeywordScanResult]) -> int:
        """Replace the scan's point results with ``results``."""
        with _persist("save point results") as session:
            session.query(GridPointResult).filter(GridPointResult.scan_id == scan_id).delete()
            for result in results:
                session.add(
                    GridPointResult(
                        scan_id=scan_id,
                        keyword=result.keyword,
                        grid_row=result.point.row,
                        grid_col=result.point.col,
                        lat=result.point.lat,
                        lng=result.point.lng,
                        success=result.success,
                        target_rank=result.target_rank,
                        top_rankings=[r.to_dict() for r in result.top_rankings],
                        total_results=result.total_results,
                        error_message=result.error,
                        attempts=result.attempts,
                        scanned_at=result.scanned_at,
                    )
                )
        logger.debug("Saved %d point results for scan %d", len(results), scan_id)
        return len(results)

    def get_point_results(
        self, scan_id: int, keyword: Optional[str] = None
    ) -> list[GridPointResult]:
        with _persist("load point results") as session:
            query = session.query(GridPointResult).filter(GridPointResult.scan_id == scan_id)
            if keyword is not None:
                query = query.filter(GridPointResult.keyword == keyword)
            return query.order_by(
                GridPointResult.keyword.asc(),
                GridPointResult.grid_row.asc(),
                GridPointResult.grid_col.asc(),
            ).all()

    @staticmethod
    def rankings_of(row: GridPointResult) -> list[CompetitorRanking]:
        return [CompetitorRanking.from_dict(item) for item in row.top_rankings or []]

    def save_competitor_stats(self, scan_id: int, stats: list[CompetitorStat]) -> int:
        """Replace the scan's competitor stats with ``stats``."""
        with _persist("save competitor stats") as session:
            session.query(ScanCompetitorStat).filter(ScanCompetitorStat.scan_id == scan_id).delete()
            for stat in stats:
                session.add(
                    ScanCompetitorStat(
                        scan_id=scan_id,
                        identity_key=stat.identity,
                        business_name=stat.business_name,
                        external_id=stat.external_id,
                        rating=stat.rating,
                        review_count=stat.review_count,
                        avg_rank=stat.avg_rank,
                        appearances=stat.appearances,
                        times_in_top_3=stat.times_in_top_3,
                        times_in_top_10=stat.times_in_top_10,
                        times_in_top_20=stat.times_in_top_20,
                        share_of_voice=stat.share_of_voice,
                        prev_avg_rank=stat.prev_avg_rank,
                        rank_change=stat.rank_change,
                        is_target=stat.is_target,
                    )
                )
        logger.debug("Saved %d competitor stats for scan %d", len(stats), scan_id)
        return len(stats)

    def get_competitor_stats(self, scan_id: int) -> list[CompetitorStat]:
        with _persist("load competitor stats") as session:
            rows = (
                session.query(ScanCompetitorStat)
                .filter(ScanCompetitorStat.scan_id == scan_id)
                .order_by(
                    ScanCompetitorStat.share_of_voice.desc(),
                    ScanCompetitorStat.avg_rank.asc(),
                    ScanCompetitorStat.identity_key.asc(),
                )
                .all()
            )
        return [_stat_from_row(row) for row in rows]

    def get_previous_competitor_stats(
        self, campaign_id: int, exclude_scan_id: Optional[int] = None
    ) -> Optional[dict[str, CompetitorStat]]:
        """Stats of the campaign's latest COMPLETED scan, keyed by identity.

        Returns None when the campaign has no earlier completed scan.
        """
        with _persist("load previous competitor stats") as session:
            query = session.query(GridScan).filter(
                GridScan.campaign_id == campaign_id,
                GridScan.status == ScanStatus.COMPLETED.value,
            )
            if exclude_scan_id is not None:
                query = query.filter(GridScan.id != exclude_scan_id)
            previous = query.order_by(
                GridScan.completed_at.desc(), GridScan.id.desc()
            ).first()
            if previous is None:
                return None
            rows = (
                session.query(ScanCompetitorStat)
                .filter(ScanCompetitorStat.scan_id == previous.id)
                .all()
            )
        return {row.identity_key: _stat_from_row(row) for row in rows}

    # ------------------------------------------------------------------
    # Business profile snapshots
    # ------------------------------------------------------------------

    def save_profile_snapshot(self, campaign_id: int, profile: dict[str, Any]) -> GBPSnapshot:
        with _persist("save profile snapshot") as session:
            snapshot = GBPSnapshot(
                campaign_id=campaign_id,
                business_name=profile.get("business_name"),
                external_id=profile.get("external_id"),
                rating=profile.get("rating"),
                review_count=profile.get("review_count"),
                address=profile.get("address"),
                phone=profile.get("phone"),
                website=profile.get("website"),
                categories=profile.get("categories") or [],
                raw_data=profile.get("raw"),
            )
            session.add(snapshot)
            session.flush()
        logger.info("Saved profile snapshot %d for campaign %d", snapshot.id, campaign_id)
        return snapshot

    def get_latest_profile_snapshot(self, campaign_id: int) -> Optional[GBPSnapshot]:
        with _persist("load profile snapshot") as session:
            return (
                session.query(GBPSnapshot)
                .filter(GBPSnapshot.campaign_id == campaign_id)
                .order_by(GBPSnapshot.captured_at.desc(), GBPSnapshot.id.desc())
                .first()
            )
