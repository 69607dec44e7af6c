"""Business profile refresh run after each completed scan."""

import logging
from typing import Any, Optional, Protocol

from src.models.local_grid import GBPSnapshot, LocalCampaign
from src.modules.local_grid.repository import ScanRepository

logger = logging.getLogger(__name__)


class BusinessInfoSource(Protocol):
    async def fetch_business_info(self, keyword: str) -> Optional[dict[str, Any]]:
        ...


class BusinessProfileRefresher:
    """Fetch the target's current profile data and store it as a snapshot.

    Looks the business up by CID when the campaign has one, otherwise by
    name.
    """

    def __init__(self, source: BusinessInfoSource, repository: ScanRepository):
        self._source = source
        self._repository = repository

    async def refresh(self, campaign: LocalCampaign) -> Optional[GBPSnapshot]:
        keyword = f"cid:{campaign.gmb_cid}" if campaign.gmb_cid else campaign.business_name
        profile = await self._source.fetch_business_info(keyword)
        if profile is None:
            logger.info("No profile data for campaign %d (%r)", campaign.id, keyword)
            return None
        return self._repository.save_profile_snapshot(campaign.id, profile)
