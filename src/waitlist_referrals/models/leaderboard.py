"""Immutable leaderboard snapshots."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, func
from sqlalchemy.dialects.postgresql import UUID

from waitlist_referrals.db.base import Base
from waitlist_referrals.models._common import utcnow


class RankingSnapshot(Base):
    """Rank and score of one subscriber within one snapshot generation.

    Rows are append-only; every call to create a snapshot writes a new
    ``generation_id`` shared by all rows of that pass.
    """

    __tablename__ = "ranking_snapshots"
    __table_args__ = (
        Index("ix_ranking_snapshots_generation_rank", "generation_id", "rank"),
        Index("ix_ranking_snapshots_waitlist_calculated", "waitlist_id", "calculated_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    waitlist_id = Column(UUID(as_uuid=True), nullable=False)
    generation_id = Column(UUID(as_uuid=True), nullable=False)
    subscriber_id = Column(
        UUID(as_uuid=True),
        ForeignKey("waitlist_subscribers.id", ondelete="CASCADE"),
        nullable=False,
    )
    rank = Column(Integer, nullable=False)
    score = Column(Integer, nullable=False)
    referral_count = Column(Integer, nullable=False, default=0, server_default="0")
    is_final = Column(Boolean, nullable=False, default=False, server_default="false")
    calculated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
