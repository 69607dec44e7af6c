"""Exception hierarchy for local grid scanning."""

from typing import Optional


class GridScanError(Exception):
    """Base class for every error raised by the local grid package."""


class RankLookupError(GridScanError):
    """A single rank lookup failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientLookupError(RankLookupError):
    """Retryable lookup failure (rate limit, timeout, upstream 5xx)."""


class PermanentLookupError(RankLookupError):
    """Non-retryable lookup failure (invalid input, malformed response)."""


class OrchestrationError(GridScanError):
    """The scan as a whole cannot run (bad campaign or grid configuration)."""


class ScanAlreadyRunningError(OrchestrationError):
    """A scan is already active for the campaign."""

    def __init__(self, campaign_id: int):
        super().__init__(f"A scan is already running for campaign {campaign_id}")
        self.campaign_id = campaign_id


class InvalidTransitionError(GridScanError):
    """A scan status change that the state machine does not allow."""

    def __init__(self, scan_id: Optional[int], current: str, target: str):
        super().__init__(
            f"Scan {scan_id}: illegal status transition {current} -> {target}"
        )
        self.scan_id = scan_id
        self.current = current
        self.target = target


class PersistenceError(GridScanError):
    """A storage operation failed; the scan keeps its last known state."""
