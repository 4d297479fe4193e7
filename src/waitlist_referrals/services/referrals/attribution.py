"""Referral attribution: validate a referral code and credit the referrer.

The whole attempt runs inside a SAVEPOINT on the caller's session. A policy
rejection rolls back only that savepoint and is reported as a
:class:`ReferralOutcome`, so the caller's join keeps going. Store failures
propagate. Nothing here commits; the caller owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from waitlist_referrals.models import (
    CONFIRMED_REFERRAL_STATUSES,
    CampaignStatus,
    PointEvent,
    Referral,
    ReferralCampaign,
    ReferralStatus,
    Subscriber,
)
from waitlist_referrals.models._common import utcnow
from waitlist_referrals.observability.referrals import get_referral_store
from waitlist_referrals.schemas.campaign import CampaignSettings
from waitlist_referrals.services.leaderboard import LeaderboardRanker
from waitlist_referrals.services.referrals.codes import normalize_referral_code
from waitlist_referrals.services.rewards import RewardResolutionEngine
from waitlist_referrals.services.scoring import ScoringEngine


class ReferralRejection(str, Enum):
    """Typed reasons a referral attempt was refused."""

    INVALID_CODE = "invalid_code"
    CROSS_WAITLIST = "cross_waitlist"
    SELF_REFERRAL = "self_referral"
    NO_ACTIVE_CAMPAIGN = "no_active_campaign"
    REFERRALS_DISABLED = "referrals_disabled"
    SUBSCRIBER_NOT_FOUND = "subscriber_not_found"
    ALREADY_ATTRIBUTED = "already_attributed"


@dataclass(slots=True)
class ReferralOutcome:
    success: bool
    referrer_id: UUID | None = None
    referral_id: UUID | None = None
    points_awarded: int = 0
    rejection: ReferralRejection | None = None
    duplicate: bool = False
    rank: int | None = None
    rewards_unlocked: list[UUID] = field(default_factory=list)

    @classmethod
    def rejected(cls, reason: ReferralRejection, *, referrer_id: UUID | None = None) -> "ReferralOutcome":
        return cls(success=False, rejection=reason, referrer_id=referrer_id)


@dataclass(slots=True)
class CodeValidation:
    valid: bool
    referrer_id: UUID | None = None
    rejection: ReferralRejection | None = None


class _ReferralRejected(Exception):
    def __init__(self, reason: ReferralRejection, referrer_id: UUID | None = None) -> None:
        super().__init__(reason.value)
        self.reason = reason
        self.referrer_id = referrer_id


class ReferralAttributionFlow:
    """Composes scoring, ranking and reward resolution for one referral attempt."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        scoring: ScoringEngine | None = None,
        ranker: LeaderboardRanker | None = None,
        rewards: RewardResolutionEngine | None = None,
    ) -> None:
        self._db = db_session
        self._ranker = ranker or LeaderboardRanker(db_session)
        self._scoring = scoring or ScoringEngine(db_session, ranker=self._ranker)
        self._rewards = rewards or RewardResolutionEngine(db_session, ranker=self._ranker)

    async def process_referral(
        self,
        *,
        subscriber_id: UUID,
        waitlist_id: UUID,
        email: str,
        referral_code: str | None,
        source: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ReferralOutcome:
        """Attribute ``subscriber_id`` (who joined with ``email``) to the owner of ``referral_code``."""

        code = normalize_referral_code(referral_code)
        if code is None:
            return ReferralOutcome(success=True)

        referred_email = email.strip().lower()
        try:
            async with self._db.begin_nested():
                outcome = await self._attribute(
                    subscriber_id=subscriber_id,
                    waitlist_id=waitlist_id,
                    referred_email=referred_email,
                    code=code,
                    source=source,
                    metadata=metadata,
                )
        except _ReferralRejected as rejected:
            logger.info(
                "Referral rejected",
                waitlist_id=str(waitlist_id),
                subscriber_id=str(subscriber_id),
                referral_code=code,
                reason=rejected.reason.value,
            )
            get_referral_store().record_referral_outcome(rejected.reason.value)
            return ReferralOutcome.rejected(rejected.reason, referrer_id=rejected.referrer_id)

        if outcome.duplicate:
            logger.info(
                "Duplicate referral ignored",
                waitlist_id=str(waitlist_id),
                referrer_id=str(outcome.referrer_id),
                referral_id=str(outcome.referral_id) if outcome.referral_id else None,
            )
            get_referral_store().record_referral_outcome("duplicate")
            return outcome.result

        outcome.rewards_unlocked = await self._resolve_rewards_best_effort(
            waitlist_id=waitlist_id,
            referrer_id=outcome.referrer_id,
            campaign_id=outcome.campaign_id,
        )
        logger.info(
            "Referral attributed",
            waitlist_id=str(waitlist_id),
            referrer_id=str(outcome.referrer_id),
            subscriber_id=str(subscriber_id),
            referral_id=str(outcome.referral_id),
            points=outcome.points_awarded,
            rank=outcome.rank,
            rewards_unlocked=len(outcome.rewards_unlocked),
        )
        get_referral_store().record_referral_outcome("attributed")
        return outcome.result

    async def validate_code(self, code: str | None, waitlist_id: UUID) -> CodeValidation:
        """Read-only pre-check used to give early feedback on a pasted code."""

        normalized = normalize_referral_code(code)
        if normalized is None:
            return CodeValidation(valid=False, rejection=ReferralRejection.INVALID_CODE)
        referrer = await self._find_referrer(normalized)
        if referrer is None:
            return CodeValidation(valid=False, rejection=ReferralRejection.INVALID_CODE)
        if referrer.waitlist_id != waitlist_id:
            return CodeValidation(valid=False, rejection=ReferralRejection.CROSS_WAITLIST)
        campaign = await self._active_campaign(waitlist_id)
        if campaign is None:
            return CodeValidation(valid=False, referrer_id=referrer.id, rejection=ReferralRejection.NO_ACTIVE_CAMPAIGN)
        if not CampaignSettings.from_stored(campaign.settings).referrals_enabled:
            return CodeValidation(valid=False, referrer_id=referrer.id, rejection=ReferralRejection.REFERRALS_DISABLED)
        return CodeValidation(valid=True, referrer_id=referrer.id)

    async def _attribute(
        self,
        *,
        subscriber_id: UUID,
        waitlist_id: UUID,
        referred_email: str,
        code: str,
        source: str | None,
        metadata: dict[str, Any] | None,
    ) -> "_Attribution":
        referrer = await self._find_referrer(code)
        if referrer is None:
            raise _ReferralRejected(ReferralRejection.INVALID_CODE)
        if referrer.waitlist_id != waitlist_id:
            raise _ReferralRejected(ReferralRejection.CROSS_WAITLIST)

        subscriber = await self._load_subscriber(waitlist_id, subscriber_id)
        if subscriber is None:
            raise _ReferralRejected(ReferralRejection.SUBSCRIBER_NOT_FOUND, referrer.id)

        # Self-referral is refused even when the campaign allows it.
        if referrer.id == subscriber.id or referrer.email == referred_email:
            raise _ReferralRejected(ReferralRejection.SELF_REFERRAL, referrer.id)

        campaign = await self._active_campaign(waitlist_id)
        if campaign is None:
            raise _ReferralRejected(ReferralRejection.NO_ACTIVE_CAMPAIGN, referrer.id)
        if not CampaignSettings.from_stored(campaign.settings).referrals_enabled:
            raise _ReferralRejected(ReferralRejection.REFERRALS_DISABLED, referrer.id)

        existing = await self._find_referral(waitlist_id, referrer.id, referred_email)
        if existing is not None and existing.status in CONFIRMED_REFERRAL_STATUSES:
            return _Attribution.duplicate_of(existing, campaign_id=campaign.id)

        if subscriber.referred_by_id is not None and subscriber.referred_by_id != referrer.id:
            raise _ReferralRejected(ReferralRejection.ALREADY_ATTRIBUTED, referrer.id)

        now = utcnow()
        if existing is not None:
            existing.status = ReferralStatus.COMPLETED
            existing.referred_id = subscriber.id
            existing.completed_at = now
            if source and not existing.source:
                existing.source = source
            referral = existing
            await self._db.flush()
        else:
            referral = Referral(
                waitlist_id=waitlist_id,
                referrer_id=referrer.id,
                referred_email=referred_email,
                referred_id=subscriber.id,
                status=ReferralStatus.COMPLETED,
                source=source,
                metadata_json=metadata or {},
                completed_at=now,
            )
            try:
                async with self._db.begin_nested():
                    self._db.add(referral)
                    await self._db.flush()
            except IntegrityError:
                # A concurrent attempt created the same edge first.
                winner = await self._find_referral(waitlist_id, referrer.id, referred_email)
                return _Attribution(
                    referrer_id=referrer.id,
                    referral_id=winner.id if winner else None,
                    campaign_id=campaign.id,
                    duplicate=True,
                )

        subscriber.referred_by_id = referrer.id
        await self._db.flush()

        award = await self._scoring.award_points(
            waitlist_id=waitlist_id,
            campaign_id=campaign.id,
            subscriber_id=referrer.id,
            event=PointEvent.REFERRAL_CONFIRMED,
            reference_id=str(referral.id),
            metadata={"referredEmail": referred_email, "referredId": str(subscriber.id)},
        )
        rank = award.rank if award.rank_refreshed else await self._scoring.refresh_rank(waitlist_id, referrer.id)

        return _Attribution(
            referrer_id=referrer.id,
            referral_id=referral.id,
            campaign_id=campaign.id,
            points_awarded=award.points_awarded,
            rank=rank,
        )

    async def _resolve_rewards_best_effort(
        self,
        *,
        waitlist_id: UUID,
        referrer_id: UUID,
        campaign_id: UUID,
    ) -> list[UUID]:
        try:
            async with self._db.begin_nested():
                unlocked = await self._rewards.resolve_for_subscriber(
                    waitlist_id=waitlist_id,
                    subscriber_id=referrer_id,
                    campaign_id=campaign_id,
                )
        except Exception:
            logger.opt(exception=True).warning(
                "Reward resolution failed after referral",
                waitlist_id=str(waitlist_id),
                subscriber_id=str(referrer_id),
                campaign_id=str(campaign_id),
            )
            get_referral_store().record_side_effect_failure("reward_resolution")
            return []
        return [record.reward_id for record in unlocked]

    async def _find_referrer(self, code: str) -> Subscriber | None:
        stmt = select(Subscriber).where(Subscriber.referral_code == code)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _load_subscriber(self, waitlist_id: UUID, subscriber_id: UUID) -> Subscriber | None:
        stmt = select(Subscriber).where(Subscriber.id == subscriber_id, Subscriber.waitlist_id == waitlist_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

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
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_referral(self, waitlist_id: UUID, referrer_id: UUID, referred_email: str) -> Referral | None:
        stmt = select(Referral).where(
            Referral.waitlist_id == waitlist_id,
            Referral.referrer_id == referrer_id,
            Referral.referred_email == referred_email,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()


@dataclass(slots=True)
class _Attribution:
    referrer_id: UUID
    referral_id: UUID | None
    campaign_id: UUID
    points_awarded: int = 0
    rank: int | None = None
    duplicate: bool = False
    rewards_unlocked: list[UUID] = field(default_factory=list)

    @classmethod
    def duplicate_of(cls, referral: Referral, *, campaign_id: UUID) -> "_Attribution":
        return cls(
            referrer_id=referral.referrer_id,
            referral_id=referral.id,
            campaign_id=campaign_id,
            duplicate=True,
        )

    @property
    def result(self) -> ReferralOutcome:
        return ReferralOutcome(
            success=True,
            referrer_id=self.referrer_id,
            referral_id=self.referral_id,
            points_awarded=self.points_awarded,
            duplicate=self.duplicate,
            rank=self.rank,
            rewards_unlocked=list(self.rewards_unlocked),
        )


__all__ = [
    "CodeValidation",
    "ReferralAttributionFlow",
    "ReferralOutcome",
    "ReferralRejection",
]
