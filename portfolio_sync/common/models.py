"""
SQLAlchemy ORM models with base classes and mixins.
Client portfolio records, per-organization weight settings, loan officer
accounts and the interaction events that trigger score recalculation.
"""

from datetime import datetime, date
from typing import Dict, Any
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Boolean, Text, ForeignKey,
    Index, UniqueConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func, false


# Declarative base for all models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), 'postgresql')


def new_uuid() -> str:
    return str(uuid4())


class TimestampMixin:
    """Mixin for automatic timestamp tracking (naive UTC)"""
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())


class BaseModel:
    """Base model with common functionality"""

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model instance to dictionary.

        Returns:
            dict: Dictionary representation of the model
        """
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(value, (datetime, date)):
                value = value.isoformat()
            result[column.name] = value
        return result

    def __repr__(self) -> str:
        """String representation of model"""
        return f"<{self.__class__.__name__}({self.to_dict()})>"


# ============================================================================
# Domain Models
# ============================================================================


class Client(Base, BaseModel, TimestampMixin):
    """
    One lending client of an organization's portfolio.

    Natural key: organization_id + client_id (the external id from the
    spreadsheet extract). Financial fields and import-time scores are owned by
    the sync; feedback and interaction fields are owned by loan officers and
    never written by the reconciler.
    """
    __tablename__ = 'clients'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(100), nullable=False, index=True)
    client_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    loan_officer_id = Column(String(100), nullable=False, index=True)
    manager_id = Column(String(100))

    # ========================================================================
    # Raw portfolio metrics
    # ========================================================================
    outstanding = Column(Float, nullable=False, server_default='0')
    outstanding_at_risk = Column(Float, nullable=False, server_default='0')
    par_per_loan = Column(Float, nullable=False, server_default='0')
    late_days = Column(Integer, nullable=False, server_default='0')
    total_delayed_instalments = Column(Integer, nullable=False, server_default='0')
    paid_instalments = Column(Integer, nullable=False, server_default='0')
    count_reschedule = Column(Integer, nullable=False, server_default='0')
    payment_monthly = Column(Float, nullable=False, server_default='0')

    # ========================================================================
    # Derived scores
    # ========================================================================
    is_at_risk = Column(Boolean, nullable=False, server_default=false())
    risk_score = Column(Float, nullable=False, server_default='1')
    composite_urgency = Column(Float, nullable=False, server_default='0')
    urgency_classification = Column(String(30), nullable=False, server_default='Low Urgency')
    urgency_breakdown = Column(JSONType)

    # ========================================================================
    # Officer-entered interaction data
    # ========================================================================
    last_visit_date = Column(DateTime)
    last_phone_call_date = Column(DateTime)
    feedback_score = Column(Integer, nullable=False, server_default='3')
    payment_willingness = Column(Integer)
    financial_situation = Column(Integer)
    communication_quality = Column(Integer)
    compliance_cooperation = Column(Integer)
    future_outlook = Column(Integer)
    visit_notes = Column(Text)

    data_hash = Column(String(32))

    __table_args__ = (
        UniqueConstraint('organization_id', 'client_id', name='uq_clients_org_client'),
        Index('idx_clients_org_officer', 'organization_id', 'loan_officer_id'),
    )


class WeightSettings(Base, BaseModel, TimestampMixin):
    """Scoring weights for one organization (percentages)"""
    __tablename__ = 'weight_settings'

    organization_id = Column(String(100), primary_key=True)

    risk_late_days_weight = Column(Integer, nullable=False, default=25)
    risk_outstanding_at_risk_weight = Column(Integer, nullable=False, default=20)
    risk_par_per_loan_weight = Column(Integer, nullable=False, default=20)
    risk_reschedules_weight = Column(Integer, nullable=False, default=15)
    risk_payment_consistency_weight = Column(Integer, nullable=False, default=10)
    risk_delayed_instalments_weight = Column(Integer, nullable=False, default=10)

    urgency_risk_score_weight = Column(Integer, nullable=False, default=50)
    urgency_days_since_visit_weight = Column(Integer, nullable=False, default=40)
    urgency_feedback_score_weight = Column(Integer, nullable=False, default=10)

    feedback_payment_willingness_weight = Column(Integer, nullable=False, default=30)
    feedback_financial_situation_weight = Column(Integer, nullable=False, default=25)
    feedback_communication_quality_weight = Column(Integer, nullable=False, default=15)
    feedback_compliance_cooperation_weight = Column(Integer, nullable=False, default=20)
    feedback_future_outlook_weight = Column(Integer, nullable=False, default=10)


class LoanOfficer(Base, BaseModel, TimestampMixin):
    """Loan officer account, possibly auto-provisioned by an ingestion run"""
    __tablename__ = 'loan_officers'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(100), nullable=False)
    loan_officer_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    setup_token = Column(String(64))
    requires_setup = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint('organization_id', 'loan_officer_id', name='uq_loan_officers_org_officer'),
    )


class Visit(Base, BaseModel, TimestampMixin):
    """Scheduled field visit to a client"""
    __tablename__ = 'visits'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(100), nullable=False, index=True)
    client_pk = Column(String(36), ForeignKey('clients.id', ondelete='CASCADE'), nullable=False)
    loan_officer_id = Column(String(100), nullable=False)
    scheduled_date = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default='scheduled')  # scheduled, completed, cancelled
    notes = Column(Text)
    completed_at = Column(DateTime)

    client = relationship('Client')


class PhoneCall(Base, BaseModel, TimestampMixin):
    """Scheduled phone call to a client"""
    __tablename__ = 'phone_calls'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(100), nullable=False, index=True)
    client_pk = Column(String(36), ForeignKey('clients.id', ondelete='CASCADE'), nullable=False)
    loan_officer_id = Column(String(100), nullable=False)
    scheduled_date = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default='scheduled')
    duration_minutes = Column(Integer)
    notes = Column(Text)
    completed_at = Column(DateTime)

    client = relationship('Client')


def create_tables(engine) -> None:
    """Create every table known to the declarative base (scheduler tables included)."""
    from ..scheduler import models  # noqa: F401  registers SyncRun / SyncLease
    Base.metadata.create_all(engine)
