"""Reward unlock resolution.

Each reward's distribution rule is checked against a subscriber's live stats
(rank, score, confirmed referral count). A qualifying subscriber gets one
``SubscriberReward`` row; the unique (subscriber, reward) constraint makes a
second concurrent unlock fail, which is treated as already unlocked.

``max_recipients`` is checked before the insert without a lock, so concurrent
resolutions can overshoot it slightly. Manual grants raise once it is met.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from waitlist_referrals.models import (
    ReferralCampaign,
    Reward,
    RewardDistributionRule,
    Subscriber,
    SubscriberReward,
    SubscriberRewardStatus,
)
from waitlist_referrals.models._common import utcnow
from waitlist_referrals.observability.referrals import get_referral_store
from waitlist_referrals.schemas.campaign import RewardRuleParams
from waitlist_referrals.services.errors import (
    InvalidRewardTransitionError,
    RewardCapacityReachedError,
    RewardNotFoundError,
    SubscriberNotFoundError,
    SubscriberRewardNotFoundError,
)
from waitlist_referrals.services.leaderboard import LeaderboardRanker
from waitlist_referrals.services.leaderboard.ranker import confirmed_referral_counts


@dataclass(frozen=True, slots=True)
class RewardCandidate:
    """Stats a distribution rule is evaluated against."""

    subscriber_id: UUID
    rank: int
    score: int
    referral_count: int


@dataclass(slots=True)
class RewardResolutionSummary:
    waitlist_id: UUID
    campaign_id: UUID
    subscribers_evaluated: int = 0
    unlocked: int = 0
    capacity_skipped: int = 0
    unlocked_by_reward: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "waitlist_id": str(self.waitlist_id),
            "campaign_id": str(self.campaign_id),
            "subscribers_evaluated": self.subscribers_evaluated,
            "unlocked": self.unlocked,
            "capacity_skipped": self.capacity_skipped,
            "unlocked_by_reward": dict(self.unlocked_by_reward),
        }


def reward_qualifies(reward: Reward, candidate: RewardCandidate) -> bool:
    """Evaluate a reward's distribution rule. MANUAL rewards never auto-qualify."""

    params = RewardRuleParams.model_validate(reward.rule_params or {})
    rule = reward.distribution_rule
    if rule == RewardDistributionRule.TOP_N:
        return params.top_n is not None and candidate.rank <= params.top_n
    if rule == RewardDistributionRule.MIN_SCORE:
        return params.min_score is not None and candidate.score >= params.min_score
    if rule == RewardDistributionRule.MIN_REFERRALS:
        return params.min_referrals is not None and candidate.referral_count >= params.min_referrals
    return False


class RewardResolutionEngine:
    """Materializes reward unlocks for one subscriber or a whole campaign."""

    def __init__(self, db_session: AsyncSession, *, ranker: LeaderboardRanker | None = None) -> None:
        self._db = db_session
        self._ranker = ranker or LeaderboardRanker(db_session)

    async def resolve_for_subscriber(
        self,
        *,
        waitlist_id: UUID,
        subscriber_id: UUID,
        campaign_id: UUID,
    ) -> list[SubscriberReward]:
        """Create unlock records for every reward the subscriber newly qualifies for."""

        subscriber = await self._load_subscriber(waitlist_id, subscriber_id)
        rewards = await self._campaign_rewards(campaign_id)
        if not rewards:
            return []

        already_unlocked = await self._unlocked_reward_ids(subscriber.id, [reward.id for reward in rewards])
        pending = [
            reward
            for reward in rewards
            if reward.id not in already_unlocked and reward.distribution_rule != RewardDistributionRule.MANUAL
        ]
        if not pending:
            return []

        rank = 0
        if any(reward.distribution_rule == RewardDistributionRule.TOP_N for reward in pending):
            rank = await self._ranker.compute_rank(waitlist_id, subscriber.id)
        candidate = RewardCandidate(
            subscriber_id=subscriber.id,
            rank=rank,
            score=int(subscriber.score or 0),
            referral_count=await self._referral_count(waitlist_id, subscriber.id),
        )
        recipients = await self._recipient_counts([reward.id for reward in pending])

        unlocked: list[SubscriberReward] = []
        for reward in pending:
            if not reward_qualifies(reward, candidate):
                continue
            if self._at_capacity(reward, recipients[reward.id]):
                self._record_capacity_reached(reward)
                continue
            record = await self._create_unlock(reward, subscriber.id, source="auto")
            if record is not None:
                recipients[reward.id] += 1
                unlocked.append(record)
        return unlocked

    async def resolve_all(self, *, waitlist_id: UUID, campaign_id: UUID) -> RewardResolutionSummary:
        """Re-evaluate every subscriber of the waitlist against every campaign reward.

        The live ordering is computed once and walked in rank order, so capacity
        goes to the highest-ranked qualifying subscribers first.
        """

        summary = RewardResolutionSummary(waitlist_id=waitlist_id, campaign_id=campaign_id)
        rewards = [
            reward
            for reward in await self._campaign_rewards(campaign_id)
            if reward.distribution_rule != RewardDistributionRule.MANUAL
        ]
        if not rewards:
            return summary

        entries = await self._ranker.ordered_entries(waitlist_id)
        existing = await self._existing_pairs([reward.id for reward in rewards])
        recipients: dict[UUID, int] = defaultdict(int)
        for _subscriber_id, reward_id in existing:
            recipients[reward_id] += 1
        capped: set[UUID] = set()

        for entry in entries:
            summary.subscribers_evaluated += 1
            candidate = RewardCandidate(
                subscriber_id=entry.subscriber_id,
                rank=entry.rank,
                score=entry.score,
                referral_count=entry.referral_count,
            )
            for reward in rewards:
                if (entry.subscriber_id, reward.id) in existing:
                    continue
                if not reward_qualifies(reward, candidate):
                    continue
                if self._at_capacity(reward, recipients[reward.id]):
                    summary.capacity_skipped += 1
                    if reward.id not in capped:
                        capped.add(reward.id)
                        self._record_capacity_reached(reward)
                    continue
                record = await self._create_unlock(reward, entry.subscriber_id, source="batch")
                if record is None:
                    continue
                existing.add((entry.subscriber_id, reward.id))
                recipients[reward.id] += 1
                summary.unlocked += 1
                key = str(reward.id)
                summary.unlocked_by_reward[key] = summary.unlocked_by_reward.get(key, 0) + 1

        logger.info(
            "Resolved campaign rewards",
            waitlist_id=str(waitlist_id),
            campaign_id=str(campaign_id),
            subscribers=summary.subscribers_evaluated,
            unlocked=summary.unlocked,
            capacity_skipped=summary.capacity_skipped,
        )
        return summary

    async def grant_manual_reward(
        self,
        *,
        waitlist_id: UUID,
        subscriber_id: UUID,
        reward_id: UUID,
        actor: str | None = None,
        note: str | None = None,
    ) -> SubscriberReward:
        """Admin grant that bypasses the distribution rule but not the capacity."""

        reward = await self._load_reward(waitlist_id, reward_id)
        subscriber = await self._load_subscriber(waitlist_id, subscriber_id)

        existing = await self._find_unlock(subscriber.id, reward.id)
        if existing is not None:
            return existing

        recipients = await self._recipient_counts([reward.id])
        if self._at_capacity(reward, recipients[reward.id]):
            self._record_capacity_reached(reward)
            raise RewardCapacityReachedError(f"Reward {reward.id} has reached its recipient limit")

        record = await self._create_unlock(
            reward,
            subscriber.id,
            source="manual",
            metadata={"actor": actor, "note": note},
        )
        if record is None:
            existing = await self._find_unlock(subscriber.id, reward.id)
            if existing is None:
                raise SubscriberRewardNotFoundError(f"Unlock for reward {reward.id} vanished after a conflict")
            return existing
        return record

    async def mark_claimed(self, *, subscriber_id: UUID, reward_id: UUID) -> SubscriberReward:
        record = await self._find_unlock(subscriber_id, reward_id)
        if record is None:
            raise SubscriberRewardNotFoundError(
                f"Subscriber {subscriber_id} has not unlocked reward {reward_id}"
            )
        if record.status != SubscriberRewardStatus.UNLOCKED:
            raise InvalidRewardTransitionError(
                f"Cannot claim reward {reward_id} from status {record.status.value}"
            )
        record.status = SubscriberRewardStatus.CLAIMED
        record.claimed_at = utcnow()
        await self._db.flush()
        logger.info("Reward claimed", subscriber_id=str(subscriber_id), reward_id=str(reward_id))
        return record

    async def list_subscriber_rewards(self, subscriber_id: UUID) -> list[SubscriberReward]:
        stmt = (
            select(SubscriberReward)
            .options(selectinload(SubscriberReward.reward))
            .where(SubscriberReward.subscriber_id == subscriber_id)
            .order_by(SubscriberReward.unlocked_at.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _create_unlock(
        self,
        reward: Reward,
        subscriber_id: UUID,
        *,
        source: str,
        metadata: dict[str, Any] | None = None,
    ) -> SubscriberReward | None:
        record = SubscriberReward(
            subscriber_id=subscriber_id,
            reward_id=reward.id,
            status=SubscriberRewardStatus.UNLOCKED,
            unlocked_at=utcnow(),
            metadata_json={"source": source, **(metadata or {})},
        )
        try:
            async with self._db.begin_nested():
                self._db.add(record)
                await self._db.flush()
        except IntegrityError:
            logger.debug(
                "Reward already unlocked by a concurrent resolution",
                subscriber_id=str(subscriber_id),
                reward_id=str(reward.id),
            )
            return None

        logger.info(
            "Reward unlocked",
            subscriber_id=str(subscriber_id),
            reward_id=str(reward.id),
            distribution_rule=reward.distribution_rule.value,
            source=source,
        )
        get_referral_store().record_reward_unlocked(reward.distribution_rule.value)
        return record

    @staticmethod
    def _at_capacity(reward: Reward, recipients: int) -> bool:
        return reward.max_recipients is not None and recipients >= reward.max_recipients

    @staticmethod
    def _record_capacity_reached(reward: Reward) -> None:
        logger.info(
            "Reward capacity reached",
            reward_id=str(reward.id),
            max_recipients=reward.max_recipients,
        )
        get_referral_store().record_reward_capacity_reached()

    async def _campaign_rewards(self, campaign_id: UUID) -> Sequence[Reward]:
        stmt = select(Reward).where(Reward.campaign_id == campaign_id).order_by(Reward.created_at.asc(), Reward.id.asc())
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def _unlocked_reward_ids(self, subscriber_id: UUID, reward_ids: Iterable[UUID]) -> set[UUID]:
        stmt = select(SubscriberReward.reward_id).where(
            SubscriberReward.subscriber_id == subscriber_id,
            SubscriberReward.reward_id.in_(list(reward_ids)),
        )
        result = await self._db.execute(stmt)
        return set(result.scalars().all())

    async def _recipient_counts(self, reward_ids: Iterable[UUID]) -> dict[UUID, int]:
        stmt = (
            select(SubscriberReward.reward_id, func.count(SubscriberReward.id))
            .where(
                SubscriberReward.reward_id.in_(list(reward_ids)),
                SubscriberReward.status.in_((SubscriberRewardStatus.UNLOCKED, SubscriberRewardStatus.CLAIMED)),
            )
            .group_by(SubscriberReward.reward_id)
        )
        result = await self._db.execute(stmt)
        counts: dict[UUID, int] = defaultdict(int)
        for reward_id, count in result.all():
            counts[reward_id] = int(count)
        return counts

    async def _existing_pairs(self, reward_ids: Iterable[UUID]) -> set[tuple[UUID, UUID]]:
        stmt = select(SubscriberReward.subscriber_id, SubscriberReward.reward_id).where(
            SubscriberReward.reward_id.in_(list(reward_ids))
        )
        result = await self._db.execute(stmt)
        return {(subscriber_id, reward_id) for subscriber_id, reward_id in result.all()}

    async def _referral_count(self, waitlist_id: UUID, subscriber_id: UUID) -> int:
        counts = confirmed_referral_counts(waitlist_id)
        stmt = select(counts.c.referral_count).where(counts.c.referrer_id == subscriber_id)
        result = await self._db.execute(stmt)
        return int(result.scalar_one_or_none() or 0)

    async def _find_unlock(self, subscriber_id: UUID, reward_id: UUID) -> SubscriberReward | None:
        stmt = select(SubscriberReward).where(
            SubscriberReward.subscriber_id == subscriber_id,
            SubscriberReward.reward_id == reward_id,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _load_reward(self, waitlist_id: UUID, reward_id: UUID) -> Reward:
        stmt = (
            select(Reward)
            .join(ReferralCampaign, ReferralCampaign.id == Reward.campaign_id)
            .where(Reward.id == reward_id, ReferralCampaign.waitlist_id == waitlist_id)
        )
        result = await self._db.execute(stmt)
        reward = result.scalar_one_or_none()
        if reward is None:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return reward

    async def _load_subscriber(self, waitlist_id: UUID, subscriber_id: UUID) -> Subscriber:
        stmt = (
            select(Subscriber)
            .where(Subscriber.id == subscriber_id, Subscriber.waitlist_id == waitlist_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        subscriber = result.scalar_one_or_none()
        if subscriber is None:
            raise SubscriberNotFoundError(subscriber_id)
        return subscriber


__all__ = [
    "RewardCandidate",
    "RewardResolutionEngine",
    "RewardResolutionSummary",
    "reward_qualifies",
]
