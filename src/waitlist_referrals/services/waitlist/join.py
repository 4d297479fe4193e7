"""Waitlist join, email verification and public progress lookups."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from waitlist_referrals.core.settings import settings
from waitlist_referrals.models import CampaignStatus, PointEvent, ReferralCampaign, Subscriber
from waitlist_referrals.observability.referrals import get_referral_store
from waitlist_referrals.services.errors import RewardsDomainError, SubscriberNotFoundError
from waitlist_referrals.services.leaderboard import LeaderboardRanker
from waitlist_referrals.services.referrals import (
    ReferralAttributionFlow,
    ReferralCodeExhaustedError,
    ReferralOutcome,
    generate_unique_referral_code,
)
from waitlist_referrals.services.rewards import RewardResolutionEngine
from waitlist_referrals.services.scoring import ScoringEngine


@dataclass(slots=True)
class JoinResult:
    subscriber: Subscriber
    rank: int
    created: bool
    referral: ReferralOutcome | None = None
    signup_points: int = 0


@dataclass(slots=True)
class VerificationResult:
    subscriber: Subscriber
    already_verified: bool
    points_awarded: int = 0


@dataclass(slots=True)
class UnlockedRewardView:
    reward_id: UUID
    name: str
    status: str
    unlocked_at: datetime | None


@dataclass(slots=True)
class SubscriberProgress:
    subscriber_id: UUID
    email: str
    referral_code: str
    score: int
    rank: int
    referral_count: int
    rewards: list[UnlockedRewardView] = field(default_factory=list)


def normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if not normalized or "@" not in normalized:
        raise ValueError("Please enter a valid email.")
    return normalized


class WaitlistJoinService:
    """Entry point used by the public waitlist page."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        ranker: LeaderboardRanker | None = None,
        scoring: ScoringEngine | None = None,
        referrals: ReferralAttributionFlow | None = None,
        rewards: RewardResolutionEngine | None = None,
    ) -> None:
        self._session = session
        self._ranker = ranker or LeaderboardRanker(session)
        self._scoring = scoring or ScoringEngine(session, ranker=self._ranker)
        self._rewards = rewards or RewardResolutionEngine(session, ranker=self._ranker)
        self._referrals = referrals or ReferralAttributionFlow(
            session,
            scoring=self._scoring,
            ranker=self._ranker,
            rewards=self._rewards,
        )

    async def join_waitlist(
        self,
        email: str,
        waitlist_id: UUID,
        referral_code: str | None = None,
        *,
        source: str | None = None,
    ) -> JoinResult:
        """Add ``email`` to the waitlist, attributing it to ``referral_code`` when valid.

        Joining twice returns the existing subscriber. A bad referral code or a
        failing referral side effect never fails the join itself.
        """

        normalized = normalize_email(email)
        existing = await self._find_subscriber(waitlist_id, normalized)
        if existing is not None:
            return await self._existing_result(existing)

        subscriber, created = await self._insert_subscriber(waitlist_id, normalized)
        if not created:
            return await self._existing_result(subscriber)

        outcome = await self._attribute_referral(subscriber, referral_code, source=source)
        signup_points = await self._award_best_effort(subscriber, PointEvent.SIGNUP, metadata={"action": "join_waitlist"})
        rank = await self._ranker.recompute_rank(waitlist_id, subscriber.id)
        await self._session.commit()

        logger.info(
            "Subscriber joined waitlist",
            waitlist_id=str(waitlist_id),
            subscriber_id=str(subscriber.id),
            referred=bool(outcome and outcome.success and outcome.referrer_id),
            signup_points=signup_points,
            rank=rank,
        )
        return JoinResult(
            subscriber=subscriber,
            rank=rank,
            created=True,
            referral=outcome,
            signup_points=signup_points,
        )

    async def verify_email(self, waitlist_id: UUID, subscriber_id: UUID) -> VerificationResult:
        """Mark the subscriber verified and award EMAIL_VERIFIED points once."""

        subscriber = await self._get_subscriber(waitlist_id, subscriber_id)
        if subscriber.verified:
            return VerificationResult(subscriber=subscriber, already_verified=True)

        subscriber.verified = True
        await self._session.flush()
        points = await self._award_best_effort(subscriber, PointEvent.EMAIL_VERIFIED, metadata={"action": "verify_email"})
        await self._session.commit()
        await self._session.refresh(subscriber)
        logger.info(
            "Subscriber email verified",
            waitlist_id=str(waitlist_id),
            subscriber_id=str(subscriber_id),
            points=points,
        )
        return VerificationResult(subscriber=subscriber, already_verified=False, points_awarded=points)

    async def get_subscriber_progress(self, waitlist_id: UUID, email: str) -> SubscriberProgress | None:
        subscriber = await self._find_subscriber(waitlist_id, normalize_email(email))
        if subscriber is None:
            return None

        rank = subscriber.rank
        if rank is None:
            rank = await self._ranker.compute_rank(waitlist_id, subscriber.id)
        stats = await self._scoring.load_stats(subscriber)
        unlocks = await self._rewards.list_subscriber_rewards(subscriber.id)
        return SubscriberProgress(
            subscriber_id=subscriber.id,
            email=subscriber.email,
            referral_code=subscriber.referral_code,
            score=int(subscriber.score or 0),
            rank=int(rank),
            referral_count=stats.referral_count,
            rewards=[
                UnlockedRewardView(
                    reward_id=unlock.reward_id,
                    name=unlock.reward.name,
                    status=unlock.status.value,
                    unlocked_at=unlock.unlocked_at,
                )
                for unlock in unlocks
            ],
        )

    async def _insert_subscriber(self, waitlist_id: UUID, email: str) -> tuple[Subscriber, bool]:
        """Insert the subscriber; a concurrent join of the same email returns the winner."""

        for _ in range(settings.referral_code_max_attempts):
            code = await generate_unique_referral_code(self._session)
            subscriber = Subscriber(waitlist_id=waitlist_id, email=email, referral_code=code, score=0)
            try:
                async with self._session.begin_nested():
                    self._session.add(subscriber)
                    await self._session.flush()
            except IntegrityError:
                winner = await self._find_subscriber(waitlist_id, email)
                if winner is not None:
                    logger.warning(
                        "Detected race when joining waitlist",
                        waitlist_id=str(waitlist_id),
                        subscriber_id=str(winner.id),
                    )
                    return winner, False
                # Referral code taken between the check and the insert.
                continue
            return subscriber, True
        raise ReferralCodeExhaustedError(f"Unable to insert subscriber for waitlist {waitlist_id}")

    async def _existing_result(self, subscriber: Subscriber) -> JoinResult:
        rank = await self._ranker.get_rank(subscriber.waitlist_id, subscriber.id)
        await self._session.commit()
        return JoinResult(subscriber=subscriber, rank=rank, created=False)

    async def _attribute_referral(
        self,
        subscriber: Subscriber,
        referral_code: str | None,
        *,
        source: str | None,
    ) -> ReferralOutcome | None:
        try:
            return await self._referrals.process_referral(
                subscriber_id=subscriber.id,
                waitlist_id=subscriber.waitlist_id,
                email=subscriber.email,
                referral_code=referral_code,
                source=source,
            )
        except (SQLAlchemyError, RewardsDomainError, ValueError):
            logger.opt(exception=True).warning(
                "Referral processing failed during join",
                waitlist_id=str(subscriber.waitlist_id),
                subscriber_id=str(subscriber.id),
            )
            get_referral_store().record_side_effect_failure("referral_flow")
            return None

    async def _award_best_effort(
        self,
        subscriber: Subscriber,
        event: PointEvent,
        *,
        metadata: dict[str, str],
    ) -> int:
        campaign = await self._active_campaign(subscriber.waitlist_id)
        if campaign is None:
            return 0
        try:
            async with self._session.begin_nested():
                award = await self._scoring.award_points(
                    waitlist_id=subscriber.waitlist_id,
                    campaign_id=campaign.id,
                    subscriber_id=subscriber.id,
                    event=event,
                    metadata=metadata,
                )
        except (SQLAlchemyError, RewardsDomainError, ValueError):
            logger.opt(exception=True).warning(
                "Point evaluation failed",
                waitlist_id=str(subscriber.waitlist_id),
                subscriber_id=str(subscriber.id),
                point_event=event.value,
            )
            get_referral_store().record_side_effect_failure("point_award")
            return 0
        return award.points_awarded

    async def _active_campaign(self, waitlist_id: UUID) -> ReferralCampaign | None:
        stmt = (
            select(ReferralCampaign)
            .where(
                ReferralCampaign.waitlist_id == waitlist_id,
                ReferralCampaign.status == CampaignStatus.ACTIVE,
            )
            .order_by(ReferralCampaign.created_at.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_subscriber(self, waitlist_id: UUID, email: str) -> Subscriber | None:
        stmt = (
            select(Subscriber)
            .where(Subscriber.waitlist_id == waitlist_id, Subscriber.email == email)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_subscriber(self, waitlist_id: UUID, subscriber_id: UUID) -> Subscriber:
        stmt = select(Subscriber).where(Subscriber.id == subscriber_id, Subscriber.waitlist_id == waitlist_id)
        result = await self._session.execute(stmt)
        subscriber = result.scalar_one_or_none()
        if subscriber is None:
            raise SubscriberNotFoundError(subscriber_id)
        return subscriber


__all__ = [
    "JoinResult",
    "SubscriberProgress",
    "UnlockedRewardView",
    "VerificationResult",
    "WaitlistJoinService",
    "normalize_email",
]
