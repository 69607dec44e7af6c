"""DataForSEO Google Maps integration: map-pack rankings at a coordinate and business profile info."""

import logging
import os
from typing import Any, Optional

import httpx

from src.modules.local_grid.errors import PermanentLookupError, TransientLookupError
from src.modules.local_grid.grid import DEFAULT_ZOOM, format_coordinate_for_api
from src.modules.local_grid.types import CompetitorRanking, RankLookupResult, TargetBusiness
from src.utils.helpers import is_target_business

logger = logging.getLogger(__name__)

DATAFORSEO_API_URL = "https://api.dataforseo.com/v3"
MAPS_ENDPOINT = "serp/google/maps/live/advanced"
BUSINESS_INFO_ENDPOINT = "business_data/google/my_business_info/live"

STATUS_OK = 20000
STATUS_RATE_LIMITED = 40202
DEFAULT_LOCATION_CODE = 2840  # United States


def _classify_api_status(status_code: int, message: str) -> Exception:
    """Map a DataForSEO task/response status code to a lookup error."""
    text = f"DataForSEO {status_code}: {message}"
    if status_code == STATUS_RATE_LIMITED or status_code >= 50000:
        return TransientLookupError(text, status_code)
    return PermanentLookupError(text, status_code)


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_maps_item(item: dict[str, Any]) -> Optional[CompetitorRanking]:
    """Convert one ``maps_search`` item into a ranking; None if it has no usable rank."""
    rank = _to_int(item.get("rank_absolute") or item.get("rank_group"))
    name = (item.get("title") or "").strip()
    if rank is None or rank < 1 or not name:
        return None
    rating = item.get("rating") or {}
    cid = item.get("cid")
    return CompetitorRanking(
        name=name,
        rank=rank,
        external_id=str(cid) if cid else None,
        rating=_to_float(rating.get("value")),
        review_count=_to_int(rating.get("votes_count")),
        address=item.get("address"),
        phone=item.get("phone"),
        category=item.get("category"),
    )


class DataForSEOMapsClient:
    """Rank lookup client backed by the DataForSEO Google Maps live SERP.

    Each ``lookup`` performs exactly one HTTP request.  Retries belong to
    the caller, so failures are only classified here: rate limits, timeouts
    and server errors raise ``TransientLookupError``; auth, payment,
    invalid input and malformed payloads raise ``PermanentLookupError``.

    Usage::

        client = DataForSEOMapsClient()
        result = await client.lookup("dentist", 30.2672, -97.7431,
                                     TargetBusiness("Smile Dental"))
        await client.close()
    """

    def __init__(
        self,
        login: Optional[str] = None,
        password: Optional[str] = None,
        base_url: str = DATAFORSEO_API_URL,
        timeout: float = 60.0,
        depth: int = 20,
        zoom: int = DEFAULT_ZOOM,
        language_code: str = "en",
        location_code: int = DEFAULT_LOCATION_CODE,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._login = login or os.getenv("DATAFORSEO_LOGIN", "")
        self._password = password or os.getenv("DATAFORSEO_PASSWORD", "")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._depth = depth
        self._zoom = zoom
        self._language_code = language_code
        self._location_code = location_code
        self._client = http_client
        self._owns_client = http_client is None
        self._request_count = 0

        if not (self._login and self._password):
            logger.warning(
                "DATAFORSEO_LOGIN / DATAFORSEO_PASSWORD not set. "
                "Rank lookups will fail until credentials are configured."
            )

    @property
    def request_count(self) -> int:
        return self._request_count

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                auth=(self._login, self._password),
                timeout=self._timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def _post(self, endpoint: str, task: dict[str, Any]) -> list[dict[str, Any]]:
        """POST one task and return the items of its first result.

        Raises:
            TransientLookupError / PermanentLookupError on any failure.
        """
        if not (self._login and self._password) and self._owns_client:
            raise PermanentLookupError("DataForSEO credentials are not configured")

        client = self._get_client()
        self._request_count += 1
        try:
            response = await client.post(endpoint, json=[task])
        except httpx.TimeoutException as exc:
            raise TransientLookupError(f"DataForSEO request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientLookupError(f"DataForSEO transport error: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientLookupError(f"DataForSEO HTTP {status}", status)
        if status >= 400:
            raise PermanentLookupError(f"DataForSEO HTTP {status}: {response.text[:200]}", status)

        try:
            payload = response.json()
        except ValueError as exc:
            raise PermanentLookupError("DataForSEO returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise PermanentLookupError("DataForSEO returned an unexpected payload")

        api_status = _to_int(payload.get("status_code"))
        if api_status is not None and api_status != STATUS_OK:
            raise _classify_api_status(api_status, payload.get("status_message", ""))

        tasks = payload.get("tasks") or []
        if not tasks:
            raise PermanentLookupError("DataForSEO response has no tasks")
        first = tasks[0] or {}
        task_status = _to_int(first.get("status_code"))
        if task_status is not None and task_status != STATUS_OK:
            raise _classify_api_status(task_status, first.get("status_message", ""))

        results = first.get("result") or []
        if not results:
            return []
        return (results[0] or {}).get("items") or []

    async def lookup(
        self,
        keyword: str,
        lat: float,
        lng: float,
        target: Optional[TargetBusiness] = None,
    ) -> RankLookupResult:
        """Return the map-pack listings for ``keyword`` as seen from (lat, lng)."""
        if not (keyword or "").strip():
            raise PermanentLookupError("Keyword must not be empty")

        task = {
            "keyword": keyword,
            "language_code": self._language_code,
            "location_coordinate": format_coordinate_for_api(lat, lng, self._zoom),
            "depth": self._depth,
            "device": "desktop",
            # Place-search mode skews local-intent queries.
            "search_places": False,
        }
        items = await self._post(MAPS_ENDPOINT, task)

        rankings: list[CompetitorRanking] = []
        for item in items:
            if item.get("type", "maps_search") != "maps_search":
                continue
            ranking = parse_maps_item(item)
            if ranking is not None:
                rankings.append(ranking)
        rankings.sort(key=lambda r: r.rank)

        target_rank = None
        if target is not None:
            for ranking in rankings:
                if is_target_business(ranking.name, target.name, ranking.external_id, target.external_id):
                    target_rank = ranking.rank
                    break

        logger.debug(
            "Maps lookup %r @ %.5f,%.5f -> %d listings, target rank %s",
            keyword, lat, lng, len(rankings), target_rank,
        )
        return RankLookupResult(top_results=rankings, target_rank=target_rank)

    async def fetch_business_info(
        self,
        keyword: str,
        location_code: Optional[int] = None,
    ) -> Optional[dict[str, Any]]:
        """Fetch business profile data for a name or ``cid:<id>`` keyword.

        Returns:
            A flat profile dict, or None when no listing matched.
        """
        task = {
            "keyword": keyword,
            "language_code": self._language_code,
            "location_code": location_code or self._location_code,
        }
        items = await self._post(BUSINESS_INFO_ENDPOINT, task)
        if not items:
            logger.info("No business info found for %r", keyword)
            return None

        item = items[0]
        rating = item.get("rating") or {}
        categories = [item.get("category")] if item.get("category") else []
        categories += [c for c in item.get("additional_categories") or [] if c]
        return {
            "business_name": item.get("title"),
            "external_id": str(item["cid"]) if item.get("cid") else None,
            "rating": _to_float(rating.get("value")),
            "review_count": _to_int(rating.get("votes_count")),
            "address": item.get("address"),
            "phone": item.get("phone"),
            "website": item.get("url"),
            "categories": categories,
            "raw": item,
        }

    async def close(self) -> None:
        """Release the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
