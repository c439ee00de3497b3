"""
Sync runs, leases, recalculation and scheduling.
"""

from .engine import SyncScheduler
from .events import EventBroadcaster, build_scores_updated_event, build_weight_update_event
from .lease import LeaseCheckResult, SyncLeaseManager
from .models import SyncLease, SyncRun, SyncStatus
from .orchestrator import INTERACTIVE_TRIGGERS, SyncOrchestrator, SyncResult, SyncTrigger
from .provisioning import ProvisioningResult, provision_missing_officers
from .recalculation import RecalculationProgress, RecalculationService, RecalculationSummary

__all__ = [
    'SyncScheduler',
    'EventBroadcaster', 'build_scores_updated_event', 'build_weight_update_event',
    'LeaseCheckResult', 'SyncLeaseManager',
    'SyncLease', 'SyncRun', 'SyncStatus',
    'INTERACTIVE_TRIGGERS', 'SyncOrchestrator', 'SyncResult', 'SyncTrigger',
    'ProvisioningResult', 'provision_missing_officers',
    'RecalculationProgress', 'RecalculationService', 'RecalculationSummary',
]
