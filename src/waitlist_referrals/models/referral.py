"""Referral edges between subscribers."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Enum as SqlEnum, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from waitlist_referrals.db.base import Base
from waitlist_referrals.models._common import enum_values, utcnow


class ReferralStatus(str, Enum):
    """Lifecycle statuses for referral edges."""

    PENDING = "pending"
    COMPLETED = "completed"
    CONFIRMED = "confirmed"
    VERIFIED = "verified"
    CANCELLED = "cancelled"


CONFIRMED_REFERRAL_STATUSES = (
    ReferralStatus.COMPLETED,
    ReferralStatus.CONFIRMED,
    ReferralStatus.VERIFIED,
)


class Referral(Base):
    """Directed referrer -> referred edge, unique per (waitlist, referrer, referred email)."""

    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint(
            "waitlist_id",
            "referrer_id",
            "referred_email",
            name="uq_referrals_waitlist_referrer_email",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    waitlist_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    referrer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("waitlist_subscribers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    referred_email = Column(String, nullable=False)
    referred_id = Column(
        UUID(as_uuid=True),
        ForeignKey("waitlist_subscribers.id", ondelete="SET NULL"),
        nullable=True,
    )
    status = Column(
        SqlEnum(ReferralStatus, name="referral_status", values_callable=enum_values),
        nullable=False,
        default=ReferralStatus.PENDING,
        server_default=ReferralStatus.PENDING.value,
    )
    source = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )

    referrer = relationship("Subscriber", foreign_keys=[referrer_id])
    referred = relationship("Subscriber", foreign_keys=[referred_id])
