"""Keyword grid scanner: fan rank lookups out over every (keyword, point) pair."""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from src.modules.local_grid.errors import PermanentLookupError, TransientLookupError
from src.modules.local_grid.types import (
    GridPoint,
    KeywordScanResult,
    KeywordSummary,
    RankLookupResult,
    TargetBusiness,
)
from src.utils.rate_limiter import LookupLimiter

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]

DEFAULT_COST_PER_CALL = 0.005


class RankLookupClient(Protocol):
    """Contract for the external ranking data source.

    Implementations perform exactly one call per invocation and raise
    ``TransientLookupError`` or ``PermanentLookupError``; retrying is the
    scanner's job.
    """

    async def lookup(
        self,
        keyword: str,
        lat: float,
        lng: float,
        target: Optional[TargetBusiness] = None,
    ) -> RankLookupResult:
        ...


class KeywordGridScanner:
    """Run rank lookups for every keyword at every grid point.

    Every call goes through the injected ``LookupLimiter``.  Transient errors
    and timeouts are retried with exponential backoff; anything else becomes a
    failed result.  Exactly one ``KeywordScanResult`` is returned per pair.

    Usage::

        scanner = KeywordGridScanner(client, LookupLimiter(max_concurrent=10))
        results = await scanner.scan(points, ["dentist"], TargetBusiness("Smile Co"))
    """

    def __init__(
        self,
        client: RankLookupClient,
        limiter: LookupLimiter,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        call_timeout: float = 60.0,
    ):
        self._client = client
        self._limiter = limiter
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._call_timeout = call_timeout

    async def scan(
        self,
        points: list[GridPoint],
        keywords: list[str],
        target: Optional[TargetBusiness] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[KeywordScanResult]:
        """Scan all pairs concurrently and return one result per pair.

        Result order follows completion, not input order; use
        ``KeywordScanResult.pair`` to trace a result back to its input.
        """
        pairs = [(kw, point) for kw in keywords for point in points]
        total = len(pairs)
        if total == 0:
            return []

        completed = 0
        results: list[KeywordScanResult] = []
        logger.info(
            "Scanning %d keywords x %d points (%d lookups)",
            len(keywords), len(points), total,
        )

        async def _run(keyword: str, point: GridPoint) -> None:
            nonlocal completed
            result = await self._scan_pair(keyword, point, target)
            results.append(result)
            completed += 1
            if on_progress is not None:
                outcome = on_progress(completed, total)
                if inspect.isawaitable(outcome):
                    await outcome

        await asyncio.gather(*(_run(kw, point) for kw, point in pairs))

        failed = sum(1 for r in results if not r.success)
        logger.info("Scan finished: %d ok, %d failed", total - failed, failed)
        return results

    async def _scan_pair(
        self,
        keyword: str,
        point: GridPoint,
        target: Optional[TargetBusiness],
    ) -> KeywordScanResult:
        """Look up one pair, retrying transient failures."""
        attempts = 0
        while True:
            attempts += 1
            try:
                async with self._limiter:
                    lookup = await asyncio.wait_for(
                        self._client.lookup(keyword, point.lat, point.lng, target),
                        timeout=self._call_timeout,
                    )
            except (TransientLookupError, asyncio.TimeoutError) as exc:
                reason = str(exc) or "lookup timed out"
                if attempts > self._max_retries:
                    logger.warning(
                        "Lookup %r at (%d,%d) gave up after %d attempts: %s",
                        keyword, point.row, point.col, attempts, reason,
                    )
                    return self._failed(keyword, point, reason, attempts)
                delay = self._retry_backoff * (2 ** (attempts - 1))
                logger.debug(
                    "Transient failure for %r at (%d,%d), retry %d/%d in %.1fs: %s",
                    keyword, point.row, point.col, attempts, self._max_retries, delay, reason,
                )
                await asyncio.sleep(delay)
                continue
            except PermanentLookupError as exc:
                logger.warning(
                    "Lookup %r at (%d,%d) failed permanently: %s",
                    keyword, point.row, point.col, exc,
                )
                return self._failed(keyword, point, str(exc), attempts)
            except Exception as exc:
                logger.warning(
                    "Unexpected lookup error for %r at (%d,%d): %r",
                    keyword, point.row, point.col, exc,
                )
                return self._failed(keyword, point, repr(exc), attempts)

            return KeywordScanResult(
                keyword=keyword,
                point=point,
                success=True,
                target_rank=lookup.target_rank,
                top_rankings=list(lookup.top_results),
                total_results=len(lookup.top_results),
                attempts=attempts,
            )

    @staticmethod
    def _failed(keyword: str, point: GridPoint, error: str, attempts: int) -> KeywordScanResult:
        return KeywordScanResult(
            keyword=keyword,
            point=point,
            success=False,
            error=error,
            attempts=attempts,
        )


def summarize_keywords(results: list[KeywordScanResult]) -> list[KeywordSummary]:
    """Per-keyword target statistics, in first-seen keyword order."""
    summaries: dict[str, KeywordSummary] = {}
    rank_totals: dict[str, int] = {}
    for result in results:
        summary = summaries.setdefault(result.keyword, KeywordSummary(keyword=result.keyword))
        if not result.success:
            summary.failed_scans += 1
            continue
        summary.successful_scans += 1
        rank = result.target_rank
        if rank is None:
            continue
        summary.times_ranked += 1
        rank_totals[result.keyword] = rank_totals.get(result.keyword, 0) + rank
        if rank <= 3:
            summary.times_in_top_3 += 1
        if rank <= 10:
            summary.times_in_top_10 += 1

    for keyword, summary in summaries.items():
        if summary.times_ranked:
            summary.avg_rank = round(rank_totals[keyword] / summary.times_ranked, 2)
    return list(summaries.values())


def calculate_scan_stats(results: list[KeywordScanResult]) -> dict[str, Any]:
    """Roll per-keyword summaries up into scan-wide counters.

    ``overall_avg_rank`` is the mean of per-keyword averages so a keyword
    with many ranked points does not drown out the others.
    """
    summaries = summarize_keywords(results)
    ranked = [s.avg_rank for s in summaries if s.avg_rank is not None]
    return {
        "total_scans": len(results),
        "successful_scans": sum(s.successful_scans for s in summaries),
        "failed_scans": sum(s.failed_scans for s in summaries),
        "api_calls": sum(r.attempts for r in results),
        "overall_avg_rank": round(sum(ranked) / len(ranked), 2) if ranked else None,
        "times_in_top_3": sum(s.times_in_top_3 for s in summaries),
        "times_in_top_10": sum(s.times_in_top_10 for s in summaries),
        "times_ranked": sum(s.times_ranked for s in summaries),
    }


def estimate_scan_cost(
    grid_size: int,
    keyword_count: int,
    cost_per_call: float = DEFAULT_COST_PER_CALL,
) -> dict[str, Any]:
    """Estimate lookup volume and cost before a scan runs."""
    total_points = grid_size * grid_size
    total_calls = total_points * keyword_count
    return {
        "total_points": total_points,
        "total_calls": total_calls,
        "estimated_cost": round(total_calls * cost_per_call, 4),
    }
