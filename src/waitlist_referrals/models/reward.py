"""Campaign rewards and their per-subscriber unlock records."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from waitlist_referrals.db.base import Base
from waitlist_referrals.models._common import enum_values, utcnow


class RewardType(str, Enum):
    FEATURE = "feature"
    ACCESS = "access"
    DISCOUNT = "discount"
    CUSTOM = "custom"


class RewardDistributionRule(str, Enum):
    """Predicate deciding which subscribers qualify for a reward."""

    TOP_N = "top_n"
    MIN_SCORE = "min_score"
    MIN_REFERRALS = "min_referrals"
    MANUAL = "manual"


class SubscriberRewardStatus(str, Enum):
    UNLOCKED = "unlocked"
    CLAIMED = "claimed"


class Reward(Base):
    """Reward offered by a referral campaign."""

    __tablename__ = "campaign_rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(
        UUID(as_uuid=True),
        ForeignKey("referral_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    reward_type = Column(
        SqlEnum(RewardType, name="reward_type", values_callable=enum_values),
        nullable=False,
        default=RewardType.CUSTOM,
    )
    distribution_rule = Column(
        SqlEnum(RewardDistributionRule, name="reward_distribution_rule", values_callable=enum_values),
        nullable=False,
    )
    rule_params = Column(JSON, nullable=False, default=dict)
    payload = Column(JSON, nullable=False, default=dict)
    max_recipients = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )

    campaign = relationship("ReferralCampaign", back_populates="rewards")
    subscriber_rewards = relationship(
        "SubscriberReward", back_populates="reward", cascade="all, delete-orphan"
    )


class SubscriberReward(Base):
    """Unlock record; the unique (subscriber, reward) pair guards against double unlocks."""

    __tablename__ = "subscriber_rewards"
    __table_args__ = (
        UniqueConstraint("subscriber_id", "reward_id", name="uq_subscriber_rewards_subscriber_reward"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    subscriber_id = Column(
        UUID(as_uuid=True),
        ForeignKey("waitlist_subscribers.id", ondelete="CASCADE"),
        nullable=False,
    )
    reward_id = Column(
        UUID(as_uuid=True),
        ForeignKey("campaign_rewards.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(
        SqlEnum(SubscriberRewardStatus, name="subscriber_reward_status", values_callable=enum_values),
        nullable=False,
        default=SubscriberRewardStatus.UNLOCKED,
        server_default=SubscriberRewardStatus.UNLOCKED.value,
    )
    unlocked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)

    subscriber = relationship("Subscriber", back_populates="rewards")
    reward = relationship("Reward", back_populates="subscriber_rewards")
