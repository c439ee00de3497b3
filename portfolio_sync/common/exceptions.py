"""
Exception hierarchy for the portfolio sync pipeline.
"""

from typing import Dict, Optional


class PortfolioSyncError(Exception):
    """Base class for all pipeline errors"""


class IngestionError(PortfolioSyncError):
    """Structural failure reading a source workbook (run is aborted)"""


class SourceFetchError(IngestionError):
    """Remote source could not be downloaded"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class WeightValidationError(PortfolioSyncError, ValueError):
    """Weight settings rejected before persisting"""

    def __init__(self, message: str, category: Optional[str] = None,
                 field_errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.category = category
        self.field_errors = field_errors or {}


class SyncInProgressError(PortfolioSyncError):
    """Another live sync run holds the organization's lease"""

    def __init__(self, organization_id: str, active_run_id: str):
        super().__init__(
            f"Sync already in progress for organization '{organization_id}' (run {active_run_id})"
        )
        self.organization_id = organization_id
        self.active_run_id = active_run_id


class NotFoundError(PortfolioSyncError):
    """Requested record does not exist"""


class RunSupersededError(PortfolioSyncError):
    """A sync run lost its lease or was ended by someone else while executing"""

    def __init__(self, run_id: str, reason: str):
        super().__init__(f"Sync run {run_id} stopped: {reason}")
        self.run_id = run_id
        self.reason = reason
