"""End-to-end tests for the scan orchestrator against an in-memory database."""

import asyncio
from datetime import timedelta

import pytest

from conftest import listing, result_of
from src.database import utcnow
from src.modules.local_grid.errors import (
    InvalidTransitionError,
    OrchestrationError,
    PermanentLookupError,
    ScanAlreadyRunningError,
    TransientLookupError,
)
from src.modules.local_grid.orchestrator import ProgressSink, ScanOrchestrator
from src.modules.local_grid.profile import BusinessProfileRefresher
from src.modules.local_grid.types import ScanStatus


def _smile_first(keyword, point, attempt):
    return result_of(listing("Smile Dental", 1), listing("Bright Teeth", 2), target_rank=1)


@pytest.fixture()
def orchestrator_factory(repository, fake_client_factory, scanner_factory):
    def _make(handler, **kwargs):
        client = fake_client_factory(handler)
        return ScanOrchestrator(repository, scanner_factory(client), **kwargs)
    return _make


class _ProfileSource:
    def __init__(self, profile=None, error=None):
        self.profile = profile
        self.error = error
        self.keywords = []

    async def fetch_business_info(self, keyword):
        self.keywords.append(keyword)
        if self.error is not None:
            raise self.error
        return self.profile


class TestRunScan:

    @pytest.mark.asyncio
    async def test_partial_failures_still_complete(self, repository, campaign, orchestrator_factory):
        def handler(keyword, point, attempt):
            if keyword == "dentist" and point.row == 0:
                raise PermanentLookupError("invalid location", 400)
            return _smile_first(keyword, point, attempt)

        orchestrator = orchestrator_factory(handler)
        outcome = await orchestrator.run_scan(campaign.id)

        scan = repository.get_scan(outcome.scan_id)
        assert scan.status == "COMPLETED"
        assert scan.progress == 100
        assert scan.total_points == 18
        assert scan.failed_points == 3
        assert scan.api_calls_used == 18
        assert scan.estimated_cost == pytest.approx(0.09)
        assert scan.keywords == ["dentist", "emergency dentist"]

        rows = repository.get_point_results(outcome.scan_id)
        assert len(rows) == 18
        assert sum(1 for r in rows if r.success) == 15
        assert outcome.failed_points == 3

    @pytest.mark.asyncio
    async def test_target_top_three_at_five_points(self, repository, campaign, orchestrator_factory):
        def handler(keyword, point, attempt):
            if point.row * 3 + point.col < 5:
                return result_of(listing("Smile Dental", 1), listing("Bright Teeth", 2), target_rank=1)
            return result_of(listing("Bright Teeth", 1))

        orchestrator = orchestrator_factory(handler)
        outcome = await orchestrator.run_scan(campaign.id, keywords=["dentist"])

        assert outcome.avg_rank == 1.0
        assert 0.0 < outcome.share_of_voice < 1.0
        assert outcome.top_competitor == "Bright Teeth"

        stats = {s.business_name: s for s in repository.get_competitor_stats(outcome.scan_id)}
        target = stats["Smile Dental"]
        assert target.is_target
        assert target.times_in_top_3 == 5
        assert target.appearances == 5
        assert target.rank_change is None

        scan = repository.get_scan(outcome.scan_id)
        assert scan.avg_rank == 1.0
        assert scan.share_of_voice == pytest.approx(outcome.share_of_voice)

    @pytest.mark.asyncio
    async def test_rank_change_between_scans(self, repository, campaign, orchestrator_factory):
        rank = {"value": 8}

        def handler(keyword, point, attempt):
            return result_of(listing("Smile Dental", rank["value"]), target_rank=rank["value"])

        orchestrator = orchestrator_factory(handler)
        first = await orchestrator.run_scan(campaign.id)
        rank["value"] = 5
        second = await orchestrator.run_scan(campaign.id)

        assert first.avg_rank == 8.0
        assert second.avg_rank == 5.0
        target = next(s for s in repository.get_competitor_stats(second.scan_id) if s.is_target)
        assert target.prev_avg_rank == 8.0
        assert target.rank_change == 3.0

    @pytest.mark.asyncio
    async def test_retries_count_towards_api_calls(self, repository, campaign, orchestrator_factory):
        def handler(keyword, point, attempt):
            if point.row == 1 and point.col == 1 and attempt == 1:
                raise TransientLookupError("rate limited", 429)
            return _smile_first(keyword, point, attempt)

        orchestrator = orchestrator_factory(handler)
        outcome = await orchestrator.run_scan(campaign.id, keywords=["dentist"])
        assert outcome.failed_points == 0
        assert outcome.api_calls_used == 10
        assert outcome.estimated_cost == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_schedules_next_scan(self, repository, campaign, orchestrator_factory):
        orchestrator = orchestrator_factory(_smile_first)
        await orchestrator.run_scan(campaign.id)
        stored = repository.get_campaign(campaign.id)
        assert stored.last_scan_at is not None
        assert stored.next_scan_at is not None
        assert stored.next_scan_at - stored.last_scan_at == timedelta(days=7)

    @pytest.mark.asyncio
    async def test_missing_or_archived_campaign(self, repository, campaign, orchestrator_factory):
        orchestrator = orchestrator_factory(_smile_first)
        with pytest.raises(OrchestrationError):
            await orchestrator.run_scan(9999)

        repository.archive_campaign(campaign.id)
        with pytest.raises(OrchestrationError):
            await orchestrator.run_scan(campaign.id)
        assert repository.list_campaign_scans(campaign.id) == []

    @pytest.mark.asyncio
    async def test_no_keywords_fails_scan(self, repository, campaign, orchestrator_factory):
        orchestrator = orchestrator_factory(_smile_first)
        with pytest.raises(OrchestrationError):
            await orchestrator.run_scan(campaign.id, keywords=["  "])

        scans = repository.list_campaign_scans(campaign.id)
        assert len(scans) == 1
        assert scans[0].status == "FAILED"
        assert "no keywords" in scans[0].error_message
        assert orchestrator.active_campaigns == frozenset()

    @pytest.mark.asyncio
    async def test_concurrent_start_is_rejected(self, repository, campaign, orchestrator_factory):
        orchestrator = orchestrator_factory(_smile_first)
        first, second = await asyncio.gather(
            orchestrator.run_scan(campaign.id),
            orchestrator.run_scan(campaign.id),
            return_exceptions=True,
        )
        assert first.avg_rank == 1.0
        assert isinstance(second, ScanAlreadyRunningError)
        assert len(repository.list_campaign_scans(campaign.id)) == 1

    @pytest.mark.asyncio
    async def test_persisted_active_scan_blocks_new_run(self, repository, campaign, orchestrator_factory):
        repository.create_scan(campaign.id)
        orchestrator = orchestrator_factory(_smile_first)
        with pytest.raises(ScanAlreadyRunningError):
            await orchestrator.run_scan(campaign.id)

    @pytest.mark.asyncio
    async def test_progress_reported_after_completion(self, repository, campaign, orchestrator_factory):
        orchestrator = orchestrator_factory(_smile_first)
        outcome = await orchestrator.run_scan(campaign.id)
        progress = orchestrator.get_scan_progress(outcome.scan_id)
        assert progress.status is ScanStatus.COMPLETED
        assert progress.progress == 100
        assert orchestrator.get_scan_progress(404) is None

    @pytest.mark.asyncio
    async def test_concurrent_scans_respect_ceiling(self, repository, campaign, fake_client_factory, scanner_factory):
        campaigns = [campaign] + [
            repository.create_campaign(f"Clinic {i}", 30.0 + i, -97.0, ["dentist"], grid_size=3)
            for i in range(3)
        ]

        class _CountingScanner:
            def __init__(self, inner):
                self.inner = inner
                self.in_flight = 0
                self.peak = 0

            async def scan(self, *args, **kwargs):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                try:
                    await asyncio.sleep(0.01)
                    return await self.inner.scan(*args, **kwargs)
                finally:
                    self.in_flight -= 1

        scanner = _CountingScanner(scanner_factory(fake_client_factory(_smile_first)))
        orchestrator = ScanOrchestrator(repository, scanner, max_concurrent_scans=2)
        outcomes = await asyncio.gather(*(orchestrator.run_scan(c.id) for c in campaigns))

        assert scanner.peak == 2
        for outcome in outcomes:
            assert repository.get_scan(outcome.scan_id).status == "COMPLETED"

    def test_progress_write_on_failed_scan_is_ignored(self, repository, campaign, orchestrator_factory):
        orchestrator = orchestrator_factory(_smile_first)
        scan = repository.create_scan(campaign.id)
        repository.start_scan(scan.id)
        repository.update_scan_progress(scan.id, 30)
        repository.fail_scan(scan.id, "abandoned")

        orchestrator._write_progress(scan.id, 50)

        stored = repository.get_scan(scan.id)
        assert stored.status == "FAILED"
        assert stored.progress == 30

    @pytest.mark.asyncio
    async def test_scan_swept_mid_run_stays_failed(self, repository, campaign, orchestrator_factory):
        swept = []

        def handler(keyword, point, attempt):
            if not swept:
                swept.extend(repository.fail_stale_scans(timedelta(0), now=utcnow() + timedelta(seconds=1)))
            return _smile_first(keyword, point, attempt)

        orchestrator = orchestrator_factory(handler)
        with pytest.raises(InvalidTransitionError):
            await orchestrator.run_scan(campaign.id)

        scan = repository.get_scan(swept[0])
        assert scan.status == "FAILED"
        assert "abandoned" in scan.error_message
        # Every lookup finished and was stored before completion was refused.
        assert len(repository.get_point_results(scan.id)) == 18
        assert orchestrator.active_campaigns == frozenset()


class TestProfileRefresh:

    @pytest.mark.asyncio
    async def test_snapshot_saved_after_scan(self, repository, campaign, fake_client_factory, scanner_factory):
        source = _ProfileSource(profile={"business_name": "Smile Dental", "rating": 4.8, "review_count": 120})
        orchestrator = ScanOrchestrator(
            repository,
            scanner_factory(fake_client_factory(_smile_first)),
            profile_refresher=BusinessProfileRefresher(source, repository),
        )
        await orchestrator.run_scan(campaign.id)
        await orchestrator.drain()

        snapshot = repository.get_latest_profile_snapshot(campaign.id)
        assert snapshot.rating == 4.8
        assert snapshot.review_count == 120
        assert source.keywords == ["Smile Dental"]

    @pytest.mark.asyncio
    async def test_refresh_failure_does_not_fail_scan(self, repository, campaign, fake_client_factory, scanner_factory):
        source = _ProfileSource(error=RuntimeError("profile API down"))
        orchestrator = ScanOrchestrator(
            repository,
            scanner_factory(fake_client_factory(_smile_first)),
            profile_refresher=BusinessProfileRefresher(source, repository),
        )
        outcome = await orchestrator.run_scan(campaign.id)
        await orchestrator.drain()

        assert repository.get_scan(outcome.scan_id).status == "COMPLETED"
        assert repository.get_latest_profile_snapshot(campaign.id) is None

    @pytest.mark.asyncio
    async def test_refresh_uses_cid_when_known(self, repository):
        campaign = repository.create_campaign(
            "Smile Dental", 30.0, -97.0, ["dentist"], grid_size=3, gmb_cid="12345",
        )
        source = _ProfileSource(profile=None)
        assert await BusinessProfileRefresher(source, repository).refresh(campaign) is None
        assert source.keywords == ["cid:12345"]


class TestBatchOperations:

    @pytest.mark.asyncio
    async def test_run_due_scans(self, repository, campaign, orchestrator_factory):
        archived = repository.create_campaign("Closed Dental", 31.0, -97.0, ["dentist"], grid_size=3)
        repository.archive_campaign(archived.id)

        orchestrator = orchestrator_factory(_smile_first)
        outcomes = await orchestrator.run_due_scans()
        assert len(outcomes) == 1
        assert repository.get_scan(outcomes[0].scan_id).campaign_id == campaign.id

        # The completed scan pushed the campaign's next run a week out.
        assert await orchestrator.run_due_scans() == []

    @pytest.mark.asyncio
    async def test_sweep_stale_scans(self, repository, campaign, orchestrator_factory):
        stuck = repository.create_scan(campaign.id)
        orchestrator = orchestrator_factory(_smile_first)

        assert orchestrator.sweep_stale_scans() == []
        assert orchestrator.sweep_stale_scans(max_age=timedelta(0)) == [stuck.id]
        assert repository.get_scan(stuck.id).status == "FAILED"

        outcome = await orchestrator.run_scan(campaign.id)
        assert repository.get_scan(outcome.scan_id).status == "COMPLETED"


class TestProgressSink:

    def test_writes_whole_steps_only(self):
        written = []
        sink = ProgressSink(written.append, step=10)
        for done in range(1, 10):
            sink(done, 9)
        assert written == [10, 20, 30, 40, 50, 60, 70, 80, 100]
        assert sink.last_written == 100

    def test_never_goes_backwards(self):
        written = []
        sink = ProgressSink(written.append, step=25)
        sink(3, 4)
        sink(1, 4)
        sink(0, 4)
        assert written == [75]

    def test_zero_total_counts_as_done(self):
        written = []
        ProgressSink(written.append)(0, 0)
        assert written == [100]

    def test_rejects_bad_step(self):
        with pytest.raises(ValueError):
            ProgressSink(lambda p: None, step=0)
