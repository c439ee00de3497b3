"""
SQLAlchemy models for sync run tracking.
Follows the patterns established in common/models.py.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, Integer, String, DateTime, Text, Index, CheckConstraint

from ..common.date_utils import utcnow
from ..common.models import Base, JSONType, TimestampMixin, new_uuid


class SyncStatus(Enum):
    """Sync run status."""
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    SUCCESS = 'success'
    ERROR = 'error'


TERMINAL_STATUSES = (SyncStatus.SUCCESS.value, SyncStatus.ERROR.value)
ACTIVE_STATUSES = (SyncStatus.PENDING.value, SyncStatus.IN_PROGRESS.value)


class SyncRun(Base, TimestampMixin):
    """
    One ingestion run for one organization.
    Created when the sync is accepted, updated with progress while it runs,
    terminal once it reaches success or error.
    """
    __tablename__ = 'sync_runs'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(100), nullable=False)
    source = Column(Text)
    triggered_by = Column(String(20), nullable=False, default='manual')  # scheduler, manual, upload, cli

    status = Column(String(20), nullable=False, default=SyncStatus.PENDING.value)
    progress_percentage = Column(Integer, nullable=False, default=0)
    current_step = Column(String(255))
    records_processed = Column(Integer, nullable=False, default=0)
    changed_records = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)

    quality_report = Column(JSONType)
    provisioned_users = Column(JSONType)
    provisioning_errors = Column(JSONType)

    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index('idx_sync_runs_org_created', 'organization_id', 'created_at'),
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'success', 'error')",
            name='chk_sync_runs_status'
        ),
    )

    def __repr__(self):
        return (f"<SyncRun(id={self.id}, organization={self.organization_id}, "
                f"status={self.status}, progress={self.progress_percentage})>")

    @property
    def is_terminal(self) -> bool:
        """Check if the run has finished."""
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'source': self.source,
            'triggered_by': self.triggered_by,
            'status': self.status,
            'progress_percentage': self.progress_percentage,
            'current_step': self.current_step,
            'records_processed': self.records_processed,
            'changed_records': self.changed_records,
            'error_message': self.error_message,
            'quality_report': self.quality_report,
            'provisioned_users': self.provisioned_users or [],
            'provisioning_errors': self.provisioning_errors or [],
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class SyncLease(Base):
    """
    Advisory per-organization sync lease.
    Held by one run id until it is released or expires; an expired lease
    can be taken over by a later run.
    """
    __tablename__ = 'sync_leases'

    organization_id = Column(String(100), primary_key=True)
    owner_id = Column(String(36), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<SyncLease(organization={self.organization_id}, owner={self.owner_id}, expires={self.expires_at})>"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the lease has expired."""
        return (now or utcnow()) >= self.expires_at
