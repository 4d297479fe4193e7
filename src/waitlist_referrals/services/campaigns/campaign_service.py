"""Referral campaign lifecycle and rule/reward administration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waitlist_referrals.core.settings import settings as app_settings
from waitlist_referrals.models import CampaignStatus, PointRule, ReferralCampaign, Reward
from waitlist_referrals.models._common import utcnow
from waitlist_referrals.schemas.campaign import (
    CampaignCreate,
    CampaignSettings,
    PointRuleCreate,
    PointRuleUpdate,
    RewardCreate,
    RewardUpdate,
)
from waitlist_referrals.services.campaigns.defaults import default_point_rules, default_rewards
from waitlist_referrals.services.errors import (
    CampaignConflictError,
    CampaignNotFoundError,
    InvalidCampaignTransitionError,
    PointRuleNotFoundError,
    RewardNotFoundError,
)
from waitlist_referrals.services.leaderboard import LeaderboardRanker, SnapshotSummary
from waitlist_referrals.services.rewards import RewardResolutionEngine, RewardResolutionSummary
from waitlist_referrals.services.scoring.conditions import parse_conditions


@dataclass(slots=True)
class CampaignTransition:
    campaign: ReferralCampaign
    from_status: CampaignStatus
    to_status: CampaignStatus
    snapshot: SnapshotSummary | None = None
    rewards: RewardResolutionSummary | None = None


class CampaignService:
    """Creates campaigns, drives their status machine and manages rules and rewards."""

    _ALLOWED_TRANSITIONS: dict[CampaignStatus, set[CampaignStatus]] = {
        CampaignStatus.DRAFT: {CampaignStatus.ACTIVE},
        CampaignStatus.ACTIVE: {CampaignStatus.PAUSED, CampaignStatus.ENDED},
        CampaignStatus.PAUSED: {CampaignStatus.ACTIVE, CampaignStatus.ENDED},
        CampaignStatus.ENDED: set(),
    }

    def __init__(
        self,
        session: AsyncSession,
        *,
        ranker: LeaderboardRanker | None = None,
        rewards: RewardResolutionEngine | None = None,
    ) -> None:
        self._session = session
        self._ranker = ranker or LeaderboardRanker(session)
        self._rewards = rewards or RewardResolutionEngine(session, ranker=self._ranker)

    async def create_campaign(
        self,
        waitlist_id: UUID,
        payload: CampaignCreate,
        *,
        seed_defaults: bool | None = None,
    ) -> ReferralCampaign:
        """Create a DRAFT campaign, seeding default rules and rewards when enabled."""

        if await self.get_active_campaign(waitlist_id) is not None:
            raise CampaignConflictError(
                f"Waitlist {waitlist_id} already has an active campaign; pause or end it first"
            )

        campaign = ReferralCampaign(
            waitlist_id=waitlist_id,
            name=payload.name.strip(),
            status=CampaignStatus.DRAFT,
            settings=payload.settings.to_stored(),
            starts_at=payload.starts_at,
            ends_at=payload.ends_at,
        )
        self._session.add(campaign)
        await self._session.flush()

        should_seed = app_settings.seed_default_campaign_content if seed_defaults is None else seed_defaults
        if should_seed:
            # Point rules belong to the waitlist, so a later campaign reuses them.
            if not await self.list_point_rules(waitlist_id):
                for rule in default_point_rules():
                    self._session.add(self._build_point_rule(waitlist_id, rule))
            for reward in default_rewards():
                self._session.add(self._build_reward(campaign.id, reward))

        await self._session.commit()
        await self._session.refresh(campaign)
        logger.info(
            "Created referral campaign",
            waitlist_id=str(waitlist_id),
            campaign_id=str(campaign.id),
            seeded_defaults=should_seed,
        )
        return campaign

    async def get_campaign(self, campaign_id: UUID) -> ReferralCampaign:
        campaign = await self._session.get(ReferralCampaign, campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def get_active_campaign(self, waitlist_id: UUID) -> ReferralCampaign | None:
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

    async def get_latest_campaign(self, waitlist_id: UUID) -> ReferralCampaign | None:
        stmt = (
            select(ReferralCampaign)
            .where(ReferralCampaign.waitlist_id == waitlist_id)
            .order_by(ReferralCampaign.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_settings(
        self,
        campaign_id: UUID,
        campaign_settings: CampaignSettings,
        *,
        name: str | None = None,
    ) -> ReferralCampaign:
        campaign = await self.get_campaign(campaign_id)
        campaign.settings = campaign_settings.to_stored()
        if name:
            campaign.name = name.strip()
        await self._session.commit()
        await self._session.refresh(campaign)
        logger.info("Updated referral campaign settings", campaign_id=str(campaign_id))
        return campaign

    async def transition_status(self, campaign_id: UUID, target_status: CampaignStatus) -> CampaignTransition:
        """Move a campaign through DRAFT -> ACTIVE <-> PAUSED -> ENDED.

        Ending a campaign materializes a final leaderboard snapshot when the
        campaign asks for one and re-resolves every reward, in the same commit.
        """

        campaign = await self.get_campaign(campaign_id)
        current_status = CampaignStatus(campaign.status)
        if target_status == current_status:
            raise InvalidCampaignTransitionError(current_status, target_status)
        if target_status not in self._ALLOWED_TRANSITIONS.get(current_status, set()):
            raise InvalidCampaignTransitionError(current_status, target_status)

        if target_status == CampaignStatus.ACTIVE:
            active = await self.get_active_campaign(campaign.waitlist_id)
            if active is not None and active.id != campaign.id:
                raise CampaignConflictError(
                    f"Campaign {active.id} is already active for waitlist {campaign.waitlist_id}"
                )
            if campaign.starts_at is None:
                campaign.starts_at = utcnow()

        campaign.status = target_status
        transition = CampaignTransition(campaign=campaign, from_status=current_status, to_status=target_status)

        if target_status == CampaignStatus.ENDED:
            if campaign.ends_at is None:
                campaign.ends_at = utcnow()
            await self._session.flush()
            if CampaignSettings.from_stored(campaign.settings).snapshot_leaderboard:
                transition.snapshot = await self._ranker.create_snapshot(campaign.waitlist_id, is_final=True)
            transition.rewards = await self._rewards.resolve_all(
                waitlist_id=campaign.waitlist_id,
                campaign_id=campaign.id,
            )

        await self._session.commit()
        await self._session.refresh(campaign)
        logger.info(
            "Referral campaign transitioned",
            campaign_id=str(campaign.id),
            waitlist_id=str(campaign.waitlist_id),
            from_status=current_status.value,
            to_status=target_status.value,
        )
        return transition

    async def list_point_rules(self, waitlist_id: UUID) -> Sequence[PointRule]:
        stmt = (
            select(PointRule)
            .where(PointRule.waitlist_id == waitlist_id)
            .order_by(PointRule.priority.asc(), PointRule.created_at.asc(), PointRule.id.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create_point_rule(self, waitlist_id: UUID, payload: PointRuleCreate) -> PointRule:
        rule = self._build_point_rule(waitlist_id, payload)
        self._session.add(rule)
        await self._session.commit()
        await self._session.refresh(rule)
        logger.info("Created point rule", waitlist_id=str(waitlist_id), rule_id=str(rule.id), point_event=rule.event.value)
        return rule

    async def update_point_rule(self, rule_id: UUID, payload: PointRuleUpdate) -> PointRule:
        rule = await self._get_point_rule(rule_id)
        changes = payload.model_dump(exclude_unset=True)
        if "conditions" in changes:
            parse_conditions(changes["conditions"])
        for attribute, value in changes.items():
            setattr(rule, attribute, value)
        await self._session.commit()
        await self._session.refresh(rule)
        logger.info("Updated point rule", rule_id=str(rule_id), fields=sorted(changes))
        return rule

    async def delete_point_rule(self, rule_id: UUID) -> None:
        rule = await self._get_point_rule(rule_id)
        await self._session.delete(rule)
        await self._session.commit()
        logger.info("Deleted point rule", rule_id=str(rule_id))

    async def reorder_point_rules(self, waitlist_id: UUID, rule_ids: Sequence[UUID]) -> Sequence[PointRule]:
        """Assign ``priority`` from the position of each rule id in ``rule_ids``."""

        rules = {rule.id: rule for rule in await self.list_point_rules(waitlist_id)}
        for position, rule_id in enumerate(rule_ids):
            rule = rules.get(rule_id)
            if rule is None:
                raise PointRuleNotFoundError(f"Point rule {rule_id} not found for waitlist {waitlist_id}")
            rule.priority = position
        await self._session.commit()
        return await self.list_point_rules(waitlist_id)

    async def list_rewards(self, campaign_id: UUID) -> Sequence[Reward]:
        stmt = select(Reward).where(Reward.campaign_id == campaign_id).order_by(Reward.created_at.asc(), Reward.id.asc())
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create_reward(self, campaign_id: UUID, payload: RewardCreate) -> Reward:
        await self.get_campaign(campaign_id)
        reward = self._build_reward(campaign_id, payload)
        self._session.add(reward)
        await self._session.commit()
        await self._session.refresh(reward)
        logger.info(
            "Created campaign reward",
            campaign_id=str(campaign_id),
            reward_id=str(reward.id),
            distribution_rule=reward.distribution_rule.value,
        )
        return reward

    async def update_reward(self, reward_id: UUID, payload: RewardUpdate) -> Reward:
        reward = await self._get_reward(reward_id)
        changes = payload.model_dump(exclude_unset=True)

        # Re-validate the merged reward so the rule keeps its required parameter.
        merged = RewardCreate(
            name=changes.get("name", reward.name),
            description=changes.get("description", reward.description),
            reward_type=changes.get("reward_type", reward.reward_type),
            distribution_rule=changes.get("distribution_rule", reward.distribution_rule),
            rule_params=payload.rule_params if payload.rule_params is not None else (reward.rule_params or {}),
            payload=changes.get("payload", reward.payload or {}),
            max_recipients=changes.get("max_recipients", reward.max_recipients),
        )
        reward.name = merged.name
        reward.description = merged.description
        reward.reward_type = merged.reward_type
        reward.distribution_rule = merged.distribution_rule
        reward.rule_params = merged.rule_params.to_stored()
        reward.payload = merged.payload
        reward.max_recipients = merged.max_recipients
        await self._session.commit()
        await self._session.refresh(reward)
        logger.info("Updated campaign reward", reward_id=str(reward_id), fields=sorted(changes))
        return reward

    async def delete_reward(self, reward_id: UUID) -> None:
        reward = await self._get_reward(reward_id)
        await self._session.delete(reward)
        await self._session.commit()
        logger.info("Deleted campaign reward", reward_id=str(reward_id))

    async def _get_point_rule(self, rule_id: UUID) -> PointRule:
        rule = await self._session.get(PointRule, rule_id)
        if rule is None:
            raise PointRuleNotFoundError(f"Point rule {rule_id} not found")
        return rule

    async def _get_reward(self, reward_id: UUID) -> Reward:
        reward = await self._session.get(Reward, reward_id)
        if reward is None:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return reward

    @staticmethod
    def _build_point_rule(waitlist_id: UUID, payload: PointRuleCreate) -> PointRule:
        parse_conditions(payload.conditions)
        return PointRule(
            waitlist_id=waitlist_id,
            event=payload.event,
            points=payload.points,
            conditions=payload.conditions,
            name=payload.name,
            description=payload.description,
            is_active=payload.is_active,
            priority=payload.priority,
        )

    @staticmethod
    def _build_reward(campaign_id: UUID, payload: RewardCreate) -> Reward:
        return Reward(
            campaign_id=campaign_id,
            name=payload.name.strip(),
            description=payload.description,
            reward_type=payload.reward_type,
            distribution_rule=payload.distribution_rule,
            rule_params=payload.rule_params.to_stored(),
            payload=payload.payload,
            max_recipients=payload.max_recipients,
        )


__all__ = ["CampaignService", "CampaignTransition"]
