"""Point rules and rewards seeded into every new campaign."""

from __future__ import annotations

from waitlist_referrals.models import PointEvent, RewardDistributionRule, RewardType
from waitlist_referrals.schemas.campaign import PointRuleCreate, RewardCreate, RewardRuleParams


def default_point_rules() -> list[PointRuleCreate]:
    """Signup and verification bonuses plus per-referral, first-referral and milestone awards."""

    return [
        PointRuleCreate(
            event=PointEvent.SIGNUP,
            points=5,
            name="Signup Bonus",
            description="Welcome bonus for joining the waitlist",
            priority=1,
        ),
        PointRuleCreate(
            event=PointEvent.EMAIL_VERIFIED,
            points=10,
            name="Email Verification Bonus",
            description="Bonus for verifying your email address",
            priority=2,
        ),
        PointRuleCreate(
            event=PointEvent.REFERRAL_CONFIRMED,
            points=25,
            name="Referral Confirmed",
            description="Points for each friend you refer",
            priority=3,
        ),
        PointRuleCreate(
            event=PointEvent.REFERRAL_CONFIRMED,
            points=50,
            conditions={"firstReferralOnly": True},
            name="First Referral Bonus",
            description="Extra bonus for your first referral",
            priority=4,
        ),
        PointRuleCreate(
            event=PointEvent.REFERRAL_CONFIRMED,
            points=100,
            conditions={"referralCount": {"equals": 5}},
            name="5 Referrals Milestone",
            description="Milestone bonus when you reach 5 referrals",
            priority=5,
        ),
        PointRuleCreate(
            event=PointEvent.REFERRAL_CONFIRMED,
            points=250,
            conditions={"referralCount": {"equals": 10}},
            name="10 Referrals Milestone",
            description="Major milestone bonus when you reach 10 referrals",
            priority=6,
        ),
    ]


def default_rewards() -> list[RewardCreate]:
    return [
        RewardCreate(
            name="Early Access",
            description="Get early access before public launch",
            reward_type=RewardType.ACCESS,
            distribution_rule=RewardDistributionRule.MIN_REFERRALS,
            rule_params=RewardRuleParams(min_referrals=3),
            payload={"accessLevel": "early", "message": "You'll get early access before public launch"},
        ),
        RewardCreate(
            name="Power User",
            description="Unlock beta features and priority support",
            reward_type=RewardType.FEATURE,
            distribution_rule=RewardDistributionRule.MIN_REFERRALS,
            rule_params=RewardRuleParams(min_referrals=10),
            payload={"features": ["beta_features", "priority_support"], "badge": "Power User"},
        ),
        RewardCreate(
            name="Top 10 Launch Winners",
            description="Exclusive perks reserved for top advocates",
            reward_type=RewardType.CUSTOM,
            distribution_rule=RewardDistributionRule.TOP_N,
            rule_params=RewardRuleParams(top_n=10),
            payload={"title": "Launch Champion"},
            max_recipients=10,
        ),
        RewardCreate(
            name="Community Builder",
            description="50% discount coupon for reaching 500 points",
            reward_type=RewardType.DISCOUNT,
            distribution_rule=RewardDistributionRule.MIN_SCORE,
            rule_params=RewardRuleParams(min_score=500),
            payload={"coupon": "LAUNCH-50", "discount": "50%"},
        ),
    ]


__all__ = ["default_point_rules", "default_rewards"]
