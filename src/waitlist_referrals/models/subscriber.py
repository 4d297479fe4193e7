"""Waitlist subscriber model."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from waitlist_referrals.db.base import Base
from waitlist_referrals.models._common import utcnow


class Subscriber(Base):
    """A person on a waitlist.

    ``score`` is an incrementally maintained cache of the point ledger and
    ``rank`` is a best-effort cache of the live leaderboard position; only the
    leaderboard ranker writes ``rank``.
    """

    __tablename__ = "waitlist_subscribers"
    __table_args__ = (
        UniqueConstraint("waitlist_id", "email", name="uq_waitlist_subscribers_waitlist_email"),
        Index("ix_waitlist_subscribers_ranking", "waitlist_id", "score", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    waitlist_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    email = Column(String, nullable=False)
    referral_code = Column(String, nullable=False, unique=True, index=True)
    score = Column(Integer, nullable=False, default=0, server_default="0")
    rank = Column(Integer, nullable=True)
    verified = Column(Boolean, nullable=False, default=False, server_default="false")
    referred_by_id = Column(
        UUID(as_uuid=True),
        ForeignKey("waitlist_subscribers.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )

    referred_by = relationship("Subscriber", remote_side=[id])
    ledger_entries = relationship("PointLedgerEntry", back_populates="subscriber")
    rewards = relationship("SubscriberReward", back_populates="subscriber")
