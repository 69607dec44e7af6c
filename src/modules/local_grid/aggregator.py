"""Competitor aggregation and rank-change calculation for grid scans.

Turns the point results of one scan into per-business visibility stats:
average rank over appearances, top-3/10/20 counts and a share of voice that
weights each listing by ``1 / rank``, normalized per point result.
"""

import dataclasses
import logging
from collections import defaultdict
from typing import Any, Mapping, Optional

from src.modules.local_grid.types import (
    CompetitorRanking,
    CompetitorStat,
    KeywordScanResult,
    ScanAggregation,
    TargetBusiness,
)
from src.utils.helpers import is_target_business, normalize_business_name, round_or_none

logger = logging.getLogger(__name__)

DEFAULT_DEPTH = 20

PERFORMANCE_TIERS = ("dominant", "strong", "moderate", "weak")

RECOMMENDATIONS = {
    "dominant": "Maintain strong position. Focus on review acquisition and content updates.",
    "strong": (
        "Good visibility. Optimize the business profile and increase review "
        "velocity to reach a dominant position."
    ),
    "moderate": (
        "Improve local signals. Focus on proximity optimization, review "
        "generation and category relevance."
    ),
    "weak": (
        "Significant improvement needed. Audit profile completeness, build "
        "citations and implement a local content strategy."
    ),
    "not_ranking": (
        "Not appearing in local results. Verify the listing is claimed, "
        "categories are correct and NAP is consistent."
    ),
}


def name_identity(name: str) -> str:
    return f"name:{normalize_business_name(name)}"


def cid_identity(external_id: str) -> str:
    return f"cid:{external_id}"


def _build_name_index(results: list[KeywordScanResult]) -> dict[str, str]:
    """Map normalized names to the single external id they appear with.

    Names seen with more than one external id are ambiguous and left out, so
    a bare-name listing only merges when the match is unique.
    """
    ids_by_name: dict[str, set[str]] = defaultdict(set)
    for result in results:
        if not result.success:
            continue
        for listing in result.top_rankings:
            if listing.external_id:
                ids_by_name[normalize_business_name(listing.name)].add(listing.external_id)
    return {name: next(iter(ids)) for name, ids in ids_by_name.items() if len(ids) == 1}


def resolve_identity(listing: CompetitorRanking, name_index: Mapping[str, str]) -> str:
    if listing.external_id:
        return cid_identity(listing.external_id)
    normalized = normalize_business_name(listing.name)
    if normalized in name_index:
        return cid_identity(name_index[normalized])
    return f"name:{normalized}"


class _Accumulator:
    __slots__ = (
        "identity", "business_name", "external_id", "rating", "review_count",
        "rank_total", "appearances", "top_3", "top_10", "top_20", "voice",
    )

    def __init__(self, identity: str, listing: CompetitorRanking):
        self.identity = identity
        self.business_name = listing.name
        self.external_id = identity[4:] if identity.startswith("cid:") else None
        self.rating = listing.rating
        self.review_count = listing.review_count
        self.rank_total = 0
        self.appearances = 0
        self.top_3 = 0
        self.top_10 = 0
        self.top_20 = 0
        self.voice = 0.0

    def add(self, listing: CompetitorRanking) -> None:
        rank = listing.rank
        self.rank_total += rank
        self.appearances += 1
        if rank <= 3:
            self.top_3 += 1
        if rank <= 10:
            self.top_10 += 1
        if rank <= 20:
            self.top_20 += 1
        # Keep the rating backed by the most reviews.
        if listing.rating is not None and (
            self.rating is None or (listing.review_count or 0) > (self.review_count or 0)
        ):
            self.rating = listing.rating
            self.review_count = listing.review_count


def _best_per_identity(
    listings: list[CompetitorRanking], name_index: Mapping[str, str]
) -> dict[str, CompetitorRanking]:
    best: dict[str, CompetitorRanking] = {}
    for listing in listings:
        if listing.rank is None or listing.rank < 1:
            continue
        identity = resolve_identity(listing, name_index)
        current = best.get(identity)
        if current is None or listing.rank < current.rank:
            best[identity] = listing
    return best


def _ranking_key(stat: CompetitorStat) -> tuple:
    return (-stat.share_of_voice, stat.avg_rank, stat.identity)


def _find_target(
    stats: list[CompetitorStat], target: Optional[TargetBusiness]
) -> Optional[CompetitorStat]:
    if target is None:
        return None
    if target.external_id:
        wanted = cid_identity(target.external_id)
        for stat in stats:
            if stat.identity == wanted:
                return stat
    matches = [
        s for s in stats
        if is_target_business(s.business_name, target.name, s.external_id, target.external_id)
    ]
    if not matches:
        return None
    return min(matches, key=_ranking_key)


def aggregate_competitor_stats(
    results: list[KeywordScanResult],
    target: Optional[TargetBusiness] = None,
    depth: int = DEFAULT_DEPTH,
) -> ScanAggregation:
    """Aggregate every successful point result of a scan into per-business stats.

    Args:
        results: All point results of the scan; failed ones are ignored.
        target: The tracked business, flagged with ``is_target`` when found.
        depth: Listings ranked deeper than this earn no share of voice.

    Returns:
        A ``ScanAggregation`` whose stats are ordered best first (share of
        voice descending, then average rank, then identity).
    """
    successful = [r for r in results if r.success]
    if not successful:
        logger.info("No successful point results to aggregate")
        return ScanAggregation(
            stats=[], target_stats=None, avg_rank=None,
            share_of_voice=0.0, top_competitor=None, successful_points=0,
        )

    name_index = _build_name_index(successful)
    accumulators: dict[str, _Accumulator] = {}

    for result in successful:
        best = _best_per_identity(result.top_rankings, name_index)
        weights = {
            identity: 1.0 / listing.rank
            for identity, listing in best.items()
            if listing.rank <= depth
        }
        weight_total = sum(weights.values())
        for identity, listing in best.items():
            acc = accumulators.get(identity)
            if acc is None:
                acc = accumulators[identity] = _Accumulator(identity, listing)
            acc.add(listing)
            if weight_total and identity in weights:
                acc.voice += weights[identity] / weight_total

    point_count = len(successful)
    stats = [
        CompetitorStat(
            identity=acc.identity,
            business_name=acc.business_name,
            avg_rank=round(acc.rank_total / acc.appearances, 2),
            appearances=acc.appearances,
            times_in_top_3=acc.top_3,
            times_in_top_10=acc.top_10,
            times_in_top_20=acc.top_20,
            share_of_voice=min(acc.voice / point_count, 1.0),
            external_id=acc.external_id,
            rating=acc.rating,
            review_count=acc.review_count,
        )
        for acc in accumulators.values()
    ]
    stats.sort(key=_ranking_key)

    target_stats = _find_target(stats, target)
    if target_stats is not None:
        target_stats.is_target = True
    elif target is not None:
        logger.info("Target %r not found in %d point results", target.name, point_count)

    return ScanAggregation(
        stats=stats,
        target_stats=target_stats,
        avg_rank=target_stats.avg_rank if target_stats else None,
        share_of_voice=target_stats.share_of_voice if target_stats else 0.0,
        top_competitor=stats[0].business_name if stats else None,
        successful_points=point_count,
    )


def apply_rank_changes(
    current: list[CompetitorStat],
    previous: Optional[Mapping[str, CompetitorStat]],
) -> list[CompetitorStat]:
    """Attach previous average rank and change to each current stat.

    ``previous`` maps identity keys of the last completed scan to its stats.
    A positive change means the business moved up.  Businesses missing from
    the previous scan get ``None``; businesses only in the previous scan are
    not carried over.
    """
    if not previous:
        return [dataclasses.replace(s, prev_avg_rank=None, rank_change=None) for s in current]

    # Earlier scans may have keyed a business by name before its id was known.
    # Only name-keyed stats qualify; two distinct CIDs never match by name.
    by_name = {
        identity: stat
        for identity, stat in previous.items()
        if identity.startswith("name:")
    }

    changed = []
    for stat in current:
        prev = previous.get(stat.identity) or by_name.get(name_identity(stat.business_name))
        if prev is None:
            changed.append(dataclasses.replace(stat, prev_avg_rank=None, rank_change=None))
            continue
        changed.append(
            dataclasses.replace(
                stat,
                prev_avg_rank=prev.avg_rank,
                rank_change=round_or_none(prev.avg_rank - stat.avg_rank),
            )
        )
    return changed


def group_by_performance_tier(stats: list[CompetitorStat]) -> dict[str, list[CompetitorStat]]:
    """Bucket stats by average rank: <=3, <=10, <=20, deeper."""
    tiers: dict[str, list[CompetitorStat]] = {tier: [] for tier in PERFORMANCE_TIERS}
    for stat in stats:
        if stat.avg_rank <= 3:
            tiers["dominant"].append(stat)
        elif stat.avg_rank <= 10:
            tiers["strong"].append(stat)
        elif stat.avg_rank <= 20:
            tiers["moderate"].append(stat)
        else:
            tiers["weak"].append(stat)
    return tiers


_SORT_KEYS = {
    "avg_rank": lambda s: (s.avg_rank, s.identity),
    "share_of_voice": lambda s: (-s.share_of_voice, s.identity),
    "times_in_top_3": lambda s: (-s.times_in_top_3, s.identity),
    "review_count": lambda s: (-(s.review_count or 0), s.identity),
}


def get_top_competitors(
    stats: list[CompetitorStat], n: int, sort_by: str = "avg_rank"
) -> list[CompetitorStat]:
    if sort_by not in _SORT_KEYS:
        raise ValueError(f"Unknown sort key {sort_by!r}; expected one of {sorted(_SORT_KEYS)}")
    return sorted(stats, key=_SORT_KEYS[sort_by])[:max(n, 0)]


def calculate_market_share(aggregation: ScanAggregation, top_n: int = 9) -> list[dict[str, Any]]:
    """Share-of-voice view of the top competitors plus the target."""
    rows = [
        {"name": s.business_name, "share_of_voice": s.share_of_voice, "is_target": False}
        for s in get_top_competitors(aggregation.competitors, top_n, "share_of_voice")
    ]
    target = aggregation.target_stats
    if target is not None:
        rows.append(
            {"name": target.business_name, "share_of_voice": target.share_of_voice, "is_target": True}
        )
    rows.sort(key=lambda row: row["share_of_voice"], reverse=True)
    return rows


def generate_competitive_summary(aggregation: ScanAggregation) -> dict[str, Any]:
    """Describe where the target stands and who threatens it."""
    target = aggregation.target_stats
    competitors = aggregation.competitors

    if target is None or target.times_in_top_20 == 0:
        position = "not_ranking"
    elif target.avg_rank <= 3:
        position = "dominant"
    elif target.avg_rank <= 10:
        position = "strong"
    elif target.avg_rank <= 20:
        position = "moderate"
    else:
        position = "weak"

    if target is None:
        ahead = len(competitors)
        threats = [c.business_name for c in competitors[:3]]
    else:
        ahead = sum(1 for c in competitors if c.avg_rank < target.avg_rank)
        threats = [
            c.business_name
            for c in competitors
            if c.share_of_voice > target.share_of_voice
        ][:3]

    return {
        "target_position": position,
        "competitors_ahead": ahead,
        "main_threats": threats,
        "recommendation": RECOMMENDATIONS[position],
    }
