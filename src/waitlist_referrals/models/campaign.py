"""Referral campaign model."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Enum as SqlEnum, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from waitlist_referrals.db.base import Base
from waitlist_referrals.models._common import enum_values, utcnow


class CampaignStatus(str, Enum):
    """Lifecycle of a referral campaign; ENDED is terminal."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class ReferralCampaign(Base):
    """Referral campaign attached to a waitlist."""

    __tablename__ = "referral_campaigns"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    waitlist_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(
        SqlEnum(CampaignStatus, name="referral_campaign_status", values_callable=enum_values),
        nullable=False,
        default=CampaignStatus.DRAFT,
        server_default=CampaignStatus.DRAFT.value,
    )
    settings = Column(JSON, nullable=False, default=dict)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )

    rewards = relationship("Reward", back_populates="campaign", cascade="all, delete-orphan")
