"""
Sync lease manager.

Only one sync per organization should be in progress. Runs take an explicit
lease (owner run id + expiry) before starting and renew it as they report
progress. A lease whose owner stopped renewing expires, and the next run
takes it over and marks the abandoned run as failed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..common.date_utils import utcnow
from .models import SyncLease, SyncRun, SyncStatus


logger = logging.getLogger(__name__)


@dataclass
class LeaseCheckResult:
    """Result of a lease acquisition attempt."""
    acquired: bool
    reason: Optional[str] = None
    holder_id: Optional[str] = None
    superseded_run_id: Optional[str] = None


class SyncLeaseManager:
    """
    Acquire, renew and release per-organization sync leases.

    All methods work inside the caller's session so the lease change commits
    together with the run it belongs to.
    """

    def __init__(self, lease_minutes: int = 10):
        """
        Args:
            lease_minutes: Lease duration; also the staleness threshold
        """
        self.lease_duration = timedelta(minutes=lease_minutes)

    def acquire(self, session: Session, organization_id: str, owner_id: str,
                now: Optional[datetime] = None) -> LeaseCheckResult:
        """
        Try to take the organization's lease for owner_id.

        Args:
            session: Active session
            organization_id: Organization to lock
            owner_id: Run id requesting the lease
            now: Reference time (for tests)

        Returns:
            LeaseCheckResult: acquired=False with the holder when refused
        """
        now = now or utcnow()
        lease = session.get(SyncLease, organization_id, with_for_update=True)

        if lease is None:
            session.add(SyncLease(
                organization_id=organization_id,
                owner_id=owner_id,
                acquired_at=now,
                expires_at=now + self.lease_duration,
            ))
            session.flush()
            logger.info(f"Sync lease for '{organization_id}' acquired by {owner_id}")
            return LeaseCheckResult(acquired=True)

        if lease.owner_id == owner_id:
            lease.expires_at = now + self.lease_duration
            return LeaseCheckResult(acquired=True)

        holder = session.get(SyncRun, lease.owner_id)
        holder_finished = holder is None or holder.is_terminal

        if not holder_finished and not lease.is_expired(now):
            return LeaseCheckResult(
                acquired=False,
                reason=f"Run {lease.owner_id} holds the sync lease until {lease.expires_at.isoformat()}",
                holder_id=lease.owner_id,
            )

        superseded = None
        if not holder_finished:
            holder.status = SyncStatus.ERROR.value
            holder.error_message = f"Abandoned: sync lease expired and was taken over by run {owner_id}"
            holder.completed_at = now
            superseded = holder.id
            logger.warning(f"Sync run {holder.id} for '{organization_id}' judged stale; superseded by {owner_id}")

        lease.owner_id = owner_id
        lease.acquired_at = now
        lease.expires_at = now + self.lease_duration
        session.flush()
        logger.info(f"Sync lease for '{organization_id}' taken over by {owner_id}")
        return LeaseCheckResult(acquired=True, superseded_run_id=superseded)

    def renew(self, session: Session, organization_id: str, owner_id: str,
              now: Optional[datetime] = None) -> bool:
        """Extend the lease if owner_id still holds it."""
        lease = session.get(SyncLease, organization_id)
        if lease is None or lease.owner_id != owner_id:
            return False
        lease.expires_at = (now or utcnow()) + self.lease_duration
        return True

    def release(self, session: Session, organization_id: str, owner_id: Optional[str] = None) -> bool:
        """
        Drop the lease.

        Args:
            owner_id: Only release when held by this run (any holder when None)

        Returns:
            bool: True if a lease was removed
        """
        lease = session.get(SyncLease, organization_id)
        if lease is None or (owner_id is not None and lease.owner_id != owner_id):
            return False
        session.delete(lease)
        session.flush()
        logger.info(f"Sync lease for '{organization_id}' released by {lease.owner_id}")
        return True

    def holder(self, session: Session, organization_id: str,
               now: Optional[datetime] = None) -> Optional[str]:
        """Run id holding a live lease, or None."""
        lease = session.get(SyncLease, organization_id)
        if lease is None or lease.is_expired(now):
            return None
        return lease.owner_id
