"""Point rules and the append-only point ledger."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from waitlist_referrals.db.base import Base
from waitlist_referrals.models._common import enum_values, utcnow


class PointEvent(str, Enum):
    """Events that point rules can be attached to."""

    SIGNUP = "signup"
    REFERRAL_CONFIRMED = "referral_confirmed"
    EMAIL_VERIFIED = "email_verified"
    MILESTONE = "milestone"
    MANUAL = "manual"


class PointRule(Base):
    """Configurable point award evaluated by the scoring engine."""

    __tablename__ = "point_rules"
    __table_args__ = (
        Index("ix_point_rules_waitlist_event_priority", "waitlist_id", "event", "priority"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    waitlist_id = Column(UUID(as_uuid=True), nullable=False)
    event = Column(SqlEnum(PointEvent, name="point_event", values_callable=enum_values), nullable=False)
    points = Column(Integer, nullable=False)
    conditions = Column(JSON, nullable=True)
    name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    priority = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )


class PointLedgerEntry(Base):
    """Append-only audit record of a point award or adjustment."""

    __tablename__ = "point_ledger_entries"
    __table_args__ = (
        Index("ix_point_ledger_entries_subscriber_campaign", "subscriber_id", "campaign_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    subscriber_id = Column(
        UUID(as_uuid=True),
        ForeignKey("waitlist_subscribers.id", ondelete="CASCADE"),
        nullable=False,
    )
    campaign_id = Column(
        UUID(as_uuid=True),
        ForeignKey("referral_campaigns.id", ondelete="CASCADE"),
        nullable=False,
    )
    event = Column(SqlEnum(PointEvent, name="point_event", values_callable=enum_values), nullable=False)
    points = Column(Integer, nullable=False)
    reference_id = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    subscriber = relationship("Subscriber", back_populates="ledger_entries")
