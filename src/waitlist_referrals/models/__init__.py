"""SQLAlchemy models package."""

from .campaign import CampaignStatus, ReferralCampaign  # noqa: F401
from .leaderboard import RankingSnapshot  # noqa: F401
from .referral import CONFIRMED_REFERRAL_STATUSES, Referral, ReferralStatus  # noqa: F401
from .reward import (  # noqa: F401
    Reward,
    RewardDistributionRule,
    RewardType,
    SubscriberReward,
    SubscriberRewardStatus,
)
from .scoring import PointEvent, PointLedgerEntry, PointRule  # noqa: F401
from .subscriber import Subscriber  # noqa: F401
