"""Tests for competitor aggregation, rank changes and competitive summaries."""

import pytest

from conftest import listing
from src.modules.local_grid.aggregator import (
    aggregate_competitor_stats,
    apply_rank_changes,
    calculate_market_share,
    generate_competitive_summary,
    get_top_competitors,
    group_by_performance_tier,
)
from src.modules.local_grid.types import (
    CompetitorStat,
    GridPoint,
    KeywordScanResult,
    TargetBusiness,
)

TARGET = TargetBusiness("Smile Dental")


def _point(i: int) -> GridPoint:
    return GridPoint(row=i // 3, col=i % 3, lat=30.0 + i * 0.01, lng=-97.0)


def _ok(i: int, *listings, keyword: str = "dentist") -> KeywordScanResult:
    return KeywordScanResult(
        keyword=keyword, point=_point(i), success=True,
        top_rankings=list(listings), total_results=len(listings), attempts=1,
    )


def _failed(i: int, keyword: str = "dentist") -> KeywordScanResult:
    return KeywordScanResult(keyword=keyword, point=_point(i), success=False, error="x", attempts=1)


def _stat(identity: str, avg_rank: float, sov: float = 0.1, **kwargs) -> CompetitorStat:
    defaults = dict(
        business_name=identity.split(":", 1)[1],
        appearances=1, times_in_top_3=0, times_in_top_10=0, times_in_top_20=0,
    )
    defaults.update(kwargs)
    return CompetitorStat(identity=identity, avg_rank=avg_rank, share_of_voice=sov, **defaults)


class TestAggregateCompetitorStats:

    def test_sole_rank_one_business_has_full_share(self):
        results = [_ok(i, listing("Solo Dental", 1, cid="1")) for i in range(9)]
        agg = aggregate_competitor_stats(results, TargetBusiness("Solo Dental", "1"))
        assert len(agg.stats) == 1
        stat = agg.stats[0]
        assert stat.share_of_voice == pytest.approx(1.0)
        assert stat.avg_rank == 1.0
        assert stat.times_in_top_3 == 9
        assert stat.is_target
        assert agg.top_competitor == "Solo Dental"
        assert agg.share_of_voice == pytest.approx(1.0)

    def test_share_of_voice_bounds_and_sum(self):
        results = [
            _ok(i, listing("Smile Dental", 1), listing("Bright Teeth", 2), listing("Care Dental", 3))
            for i in range(5)
        ] + [
            _ok(i, listing("Bright Teeth", 1), listing("Care Dental", 15))
            for i in range(5, 9)
        ]
        agg = aggregate_competitor_stats(results, TARGET)
        assert all(0.0 <= s.share_of_voice <= 1.0 for s in agg.stats)
        assert sum(s.share_of_voice for s in agg.stats) <= 1.0 + 1e-9
        for stat in agg.stats:
            assert stat.times_in_top_3 <= agg.successful_points
            assert stat.times_in_top_10 <= agg.successful_points
            assert stat.times_in_top_20 <= agg.successful_points

    def test_absent_business_has_no_stat(self):
        results = [_ok(i, listing("Bright Teeth", 1)) for i in range(3)]
        agg = aggregate_competitor_stats(results, TARGET)
        assert [s.business_name for s in agg.stats] == ["Bright Teeth"]
        assert agg.target_stats is None
        assert agg.avg_rank is None
        assert agg.share_of_voice == 0.0
        assert agg.top_competitor == "Bright Teeth"

    def test_average_over_appearances_only(self):
        results = [
            _ok(0, listing("Smile Dental", 2)),
            _ok(1, listing("Smile Dental", 4)),
            _ok(2, listing("Other", 1)),
            _failed(3),
        ]
        agg = aggregate_competitor_stats(results, TARGET)
        assert agg.target_stats.avg_rank == 3.0
        assert agg.target_stats.appearances == 2
        assert agg.successful_points == 3

    def test_duplicate_listing_in_one_point_counts_once_at_best_rank(self):
        results = [_ok(0, listing("Smile Dental", 5, cid="9"), listing("Smile Dental", 2, cid="9"))]
        agg = aggregate_competitor_stats(results, TARGET)
        stat = agg.target_stats
        assert stat.appearances == 1
        assert stat.avg_rank == 2.0
        assert stat.times_in_top_3 == 1
        assert stat.share_of_voice == pytest.approx(1.0)

    def test_name_only_listing_merges_into_unique_cid(self):
        results = [
            _ok(0, listing("Bright Teeth", 1)),
            _ok(1, listing("Bright Teeth", 3, cid="42")),
        ]
        agg = aggregate_competitor_stats(results, TARGET)
        assert len(agg.stats) == 1
        assert agg.stats[0].identity == "cid:42"
        assert agg.stats[0].appearances == 2
        assert agg.stats[0].avg_rank == 2.0

    def test_ambiguous_names_do_not_merge(self):
        results = [
            _ok(0, listing("Bright Teeth", 1, cid="1")),
            _ok(1, listing("Bright Teeth", 1, cid="2")),
            _ok(2, listing("Bright Teeth", 2)),
        ]
        agg = aggregate_competitor_stats(results, TARGET)
        assert {s.identity for s in agg.stats} == {"cid:1", "cid:2", "name:bright teeth"}

    def test_listings_beyond_depth_earn_no_share(self):
        results = [_ok(0, listing("Near", 1), listing("Far", 25))]
        agg = aggregate_competitor_stats(results, TARGET, depth=20)
        far = next(s for s in agg.stats if s.business_name == "Far")
        assert far.share_of_voice == 0.0
        assert far.times_in_top_20 == 0

    def test_no_successful_points(self):
        agg = aggregate_competitor_stats([_failed(0), _failed(1)], TARGET)
        assert agg.stats == []
        assert agg.avg_rank is None
        assert agg.top_competitor is None
        assert agg.successful_points == 0

    def test_point_without_listings_dilutes_share(self):
        results = [_ok(0, listing("Smile Dental", 1)), _ok(1)]
        agg = aggregate_competitor_stats(results, TARGET)
        assert agg.share_of_voice == pytest.approx(0.5)

    def test_top_competitor_tie_breaks_on_avg_rank(self):
        results = [
            _ok(0, listing("Alpha", 1)),
            _ok(1, listing("Beta", 2)),
        ]
        agg = aggregate_competitor_stats(results, None)
        # Each is alone at its point, so both have 0.5 share of voice.
        assert agg.stats[0].share_of_voice == agg.stats[1].share_of_voice
        assert agg.top_competitor == "Alpha"

    def test_target_matched_by_cid_over_name(self):
        results = [_ok(0, listing("Smile Dental", 1, cid="1"), listing("Smile Dental Two", 2, cid="2"))]
        agg = aggregate_competitor_stats(results, TargetBusiness("Whatever", "2"))
        assert agg.target_stats.identity == "cid:2"
        assert [s.is_target for s in agg.stats].count(True) == 1


class TestApplyRankChanges:

    def test_first_scan_has_no_changes(self):
        current = [_stat("cid:1", 4.0)]
        changed = apply_rank_changes(current, None)
        assert changed[0].rank_change is None
        assert changed[0].prev_avg_rank is None

    def test_improvement_is_positive(self):
        previous = {"cid:1": _stat("cid:1", 10.0)}
        changed = apply_rank_changes([_stat("cid:1", 4.0)], previous)
        assert changed[0].rank_change == 6.0
        assert changed[0].prev_avg_rank == 10.0

    def test_decline_is_negative_and_rounded(self):
        previous = {"cid:1": _stat("cid:1", 2.333)}
        changed = apply_rank_changes([_stat("cid:1", 3.0)], previous)
        assert changed[0].rank_change == -0.67

    def test_new_entrants_and_dropped_businesses(self):
        previous = {"cid:gone": _stat("cid:gone", 1.0)}
        changed = apply_rank_changes([_stat("cid:new", 5.0)], previous)
        assert len(changed) == 1
        assert changed[0].identity == "cid:new"
        assert changed[0].rank_change is None

    def test_name_identity_upgraded_to_cid(self):
        previous = {"name:bright teeth": _stat("name:bright teeth", 8.0, business_name="Bright Teeth")}
        current = [_stat("cid:7", 5.0, business_name="Bright Teeth")]
        assert apply_rank_changes(current, previous)[0].rank_change == 3.0

    def test_distinct_cid_with_same_name_has_no_change(self):
        previous = {"cid:A": _stat("cid:A", 2.0, business_name="Joe's Pizza")}
        current = [_stat("cid:B", 7.0, business_name="Joe's Pizza")]
        changed = apply_rank_changes(current, previous)
        assert changed[0].rank_change is None
        assert changed[0].prev_avg_rank is None


class TestCompetitiveViews:

    def _aggregation(self):
        results = [
            _ok(i, listing("Leader", 1), listing("Smile Dental", 4), listing("Chaser", 12),
                listing("Laggard", 25, review_count=300))
            for i in range(4)
        ]
        return aggregate_competitor_stats(results, TARGET)

    def test_group_by_performance_tier(self):
        tiers = group_by_performance_tier(self._aggregation().stats)
        assert [s.business_name for s in tiers["dominant"]] == ["Leader"]
        assert [s.business_name for s in tiers["strong"]] == ["Smile Dental"]
        assert [s.business_name for s in tiers["moderate"]] == ["Chaser"]
        assert [s.business_name for s in tiers["weak"]] == ["Laggard"]

    def test_get_top_competitors(self):
        stats = self._aggregation().stats
        assert [s.business_name for s in get_top_competitors(stats, 2)] == ["Leader", "Smile Dental"]
        assert get_top_competitors(stats, 1, "review_count")[0].business_name == "Laggard"
        with pytest.raises(ValueError):
            get_top_competitors(stats, 1, "bogus")

    def test_market_share_includes_target_once(self):
        rows = calculate_market_share(self._aggregation())
        assert sum(1 for r in rows if r["is_target"]) == 1
        assert rows == sorted(rows, key=lambda r: r["share_of_voice"], reverse=True)

    def test_competitive_summary(self):
        summary = generate_competitive_summary(self._aggregation())
        assert summary["target_position"] == "strong"
        assert summary["competitors_ahead"] == 1
        assert summary["main_threats"] == ["Leader"]
        assert summary["recommendation"]

    def test_summary_when_target_absent(self):
        agg = aggregate_competitor_stats([_ok(0, listing("Leader", 1))], TARGET)
        summary = generate_competitive_summary(agg)
        assert summary["target_position"] == "not_ranking"
        assert summary["main_threats"] == ["Leader"]
