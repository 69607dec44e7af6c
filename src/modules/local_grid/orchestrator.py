"""Scan orchestration: drive one grid scan from PENDING to COMPLETED or FAILED.

Usage::

    orchestrator = ScanOrchestrator(ScanRepository(), scanner)
    outcome = await orchestrator.run_scan(campaign_id)
    progress = orchestrator.get_scan_progress(outcome.scan_id)
"""

import asyncio
import logging
from datetime import timedelta
from functools import partial
from typing import Callable, Optional

from src.database import utcnow
from src.models.local_grid import LocalCampaign
from src.modules.local_grid.aggregator import (
    DEFAULT_DEPTH,
    aggregate_competitor_stats,
    apply_rank_changes,
)
from src.modules.local_grid.errors import (
    GridScanError,
    OrchestrationError,
    PersistenceError,
    ScanAlreadyRunningError,
)
from src.modules.local_grid.grid import generate_grid_points
from src.modules.local_grid.profile import BusinessProfileRefresher
from src.modules.local_grid.repository import ScanRepository
from src.modules.local_grid.scanner import DEFAULT_COST_PER_CALL, KeywordGridScanner
from src.modules.local_grid.types import (
    CampaignStatus,
    ScanOutcome,
    ScanProgress,
    TargetBusiness,
)
from src.utils.validators import clean_keywords

logger = logging.getLogger(__name__)


class ProgressSink:
    """Turn (completed, total) callbacks into whole-step progress writes.

    Writes only when a new multiple of ``step`` is reached, so progress is
    clamped to [0, 100] and never goes backwards.
    """

    def __init__(self, writer: Callable[[int], object], step: int = 10):
        if not 1 <= step <= 100:
            raise ValueError("step must be between 1 and 100")
        self._writer = writer
        self._step = step
        self._last = 0

    @property
    def last_written(self) -> int:
        return self._last

    def __call__(self, completed: int, total: int) -> None:
        percent = 100 if total <= 0 else int(completed * 100 / total)
        percent = max(0, min(100, percent))
        stepped = percent - percent % self._step
        if stepped <= self._last:
            return
        self._last = stepped
        self._writer(stepped)


class ScanOrchestrator:
    """Run grid scans for campaigns and keep their scan records consistent."""

    def __init__(
        self,
        repository: ScanRepository,
        scanner: KeywordGridScanner,
        max_concurrent_scans: int = 5,
        profile_refresher: Optional[BusinessProfileRefresher] = None,
        cost_per_call: float = DEFAULT_COST_PER_CALL,
        progress_step: int = 10,
        depth: int = DEFAULT_DEPTH,
        stale_after: timedelta = timedelta(minutes=120),
    ):
        self._repository = repository
        self._scanner = scanner
        self._scan_slots = asyncio.Semaphore(max_concurrent_scans)
        self._profile_refresher = profile_refresher
        self._cost_per_call = cost_per_call
        self._progress_step = progress_step
        self._depth = depth
        self._stale_after = stale_after
        self._active_campaigns: set[int] = set()
        self._background: set[asyncio.Task] = set()

    @property
    def active_campaigns(self) -> frozenset[int]:
        return frozenset(self._active_campaigns)

    async def run_scan(
        self, campaign_id: int, keywords: Optional[list[str]] = None
    ) -> ScanOutcome:
        """Run one full scan for a campaign.

        Args:
            campaign_id: Campaign to scan.
            keywords: Override the campaign's keyword list for this run.

        Raises:
            OrchestrationError: campaign missing or archived, no keywords,
                or an invalid grid.  The scan (if created) is marked FAILED.
            ScanAlreadyRunningError: a scan for this campaign is in flight.
            PersistenceError: storage failed; the scan keeps its last state.
        """
        campaign = self._repository.get_campaign(campaign_id)
        if campaign is None:
            raise OrchestrationError(f"Campaign {campaign_id} does not exist")
        if campaign.status == CampaignStatus.ARCHIVED.value:
            raise OrchestrationError(f"Campaign {campaign_id} is archived")
        if campaign_id in self._active_campaigns or self._repository.find_active_scan(campaign_id):
            raise ScanAlreadyRunningError(campaign_id)

        self._active_campaigns.add(campaign_id)
        try:
            scan = self._repository.create_scan(campaign_id)
            try:
                async with self._scan_slots:
                    self._repository.start_scan(scan.id)
                    return await self._execute(campaign, scan.id, keywords)
            except PersistenceError:
                raise
            except Exception as exc:
                self._mark_failed(scan.id, exc)
                raise
        finally:
            self._active_campaigns.discard(campaign_id)

    async def _execute(
        self,
        campaign: LocalCampaign,
        scan_id: int,
        keywords: Optional[list[str]],
    ) -> ScanOutcome:
        repo = self._repository
        cleaned = clean_keywords(keywords if keywords is not None else campaign.keywords)
        if not cleaned:
            raise OrchestrationError(f"Campaign {campaign.id} has no keywords to scan")
        try:
            points = generate_grid_points(
                campaign.center_lat, campaign.center_lng, campaign.grid_size, campaign.radius_miles
            )
        except ValueError as exc:
            raise OrchestrationError(f"Invalid grid configuration: {exc}") from exc

        total_points = len(points) * len(cleaned)
        repo.set_scan_plan(scan_id, cleaned, total_points)
        logger.info(
            "Scan %d: campaign %d, %d keywords on a %dx%d grid (%.1f mi)",
            scan_id, campaign.id, len(cleaned), campaign.grid_size,
            campaign.grid_size, campaign.radius_miles,
        )

        target = TargetBusiness(name=campaign.business_name, external_id=campaign.gmb_cid)
        sink = ProgressSink(partial(self._write_progress, scan_id), self._progress_step)
        results = await self._scanner.scan(points, cleaned, target, on_progress=sink)

        repo.save_point_results(scan_id, results)
        aggregation = aggregate_competitor_stats(results, target, depth=self._depth)
        previous = repo.get_previous_competitor_stats(campaign.id, exclude_scan_id=scan_id)
        stats = apply_rank_changes(aggregation.stats, previous)
        repo.save_competitor_stats(scan_id, stats)

        api_calls = sum(r.attempts for r in results)
        failed_points = sum(1 for r in results if not r.success)
        estimated_cost = round(api_calls * self._cost_per_call, 4)
        repo.complete_scan(
            scan_id,
            avg_rank=aggregation.avg_rank,
            share_of_voice=aggregation.share_of_voice,
            top_competitor=aggregation.top_competitor,
            api_calls_used=api_calls,
            failed_points=failed_points,
            estimated_cost=estimated_cost,
        )

        self._schedule_next(campaign)
        self._start_profile_refresh(campaign)

        return ScanOutcome(
            scan_id=scan_id,
            avg_rank=aggregation.avg_rank,
            share_of_voice=aggregation.share_of_voice,
            top_competitor=aggregation.top_competitor,
            api_calls_used=api_calls,
            failed_points=failed_points,
            total_points=total_points,
            estimated_cost=estimated_cost,
        )

    def _write_progress(self, scan_id: int, percent: int) -> None:
        try:
            self._repository.update_scan_progress(scan_id, percent)
        except GridScanError as exc:
            # Progress is advisory; the final status write still decides the outcome.
            # A scan swept to FAILED mid-run rejects progress with InvalidTransitionError.
            logger.warning("Scan %d: progress write failed: %s", scan_id, exc)

    def _mark_failed(self, scan_id: int, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        try:
            self._repository.fail_scan(scan_id, message)
        except GridScanError as fail_exc:
            logger.error("Scan %d: could not record failure (%s): %s", scan_id, message, fail_exc)

    def _schedule_next(self, campaign: LocalCampaign) -> None:
        try:
            next_at = self._repository.update_campaign_schedule(
                campaign.id, utcnow(), campaign.scan_frequency
            )
        except (ValueError, PersistenceError) as exc:
            logger.error("Campaign %d: could not schedule next scan: %s", campaign.id, exc)
            return
        logger.info("Campaign %d: next %s scan at %s", campaign.id, campaign.scan_frequency, next_at)

    def _start_profile_refresh(self, campaign: LocalCampaign) -> None:
        if self._profile_refresher is None:
            return
        task = asyncio.create_task(self._refresh_profile(campaign))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_profile(self, campaign: LocalCampaign) -> None:
        try:
            await self._profile_refresher.refresh(campaign)
        except Exception as exc:
            logger.warning("Campaign %d: profile refresh failed: %s", campaign.id, exc)

    async def drain(self) -> None:
        """Wait for background profile refreshes to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def get_scan_progress(self, scan_id: int) -> Optional[ScanProgress]:
        return self._repository.get_scan_progress(scan_id)

    def sweep_stale_scans(self, max_age: Optional[timedelta] = None) -> list[int]:
        """Fail scans stuck in PENDING or RUNNING for longer than ``max_age``."""
        return self._repository.fail_stale_scans(
            self._stale_after if max_age is None else max_age
        )

    async def run_due_scans(self, limit: int = 20) -> list[ScanOutcome]:
        """Scan every due ACTIVE campaign concurrently; failures are logged, not raised."""
        campaigns = self._repository.get_campaigns_due_for_scan(limit=limit)
        if not campaigns:
            logger.info("No campaigns due for scanning")
            return []

        logger.info("Running %d due campaign scans", len(campaigns))
        results = await asyncio.gather(
            *(self.run_scan(c.id) for c in campaigns), return_exceptions=True
        )
        outcomes: list[ScanOutcome] = []
        for campaign, result in zip(campaigns, results):
            if isinstance(result, ScanAlreadyRunningError):
                logger.info("Campaign %d skipped: scan already running", campaign.id)
            elif isinstance(result, BaseException):
                logger.error("Campaign %d scan failed: %s", campaign.id, result)
            else:
                outcomes.append(result)
        return outcomes
