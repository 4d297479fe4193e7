"""Batch job that re-resolves rewards for every active campaign."""

# meta: job: reward-resolution

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waitlist_referrals.models import CampaignStatus, ReferralCampaign
from waitlist_referrals.services.rewards import RewardResolutionEngine

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def run_reward_resolution(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Unlock rewards that subscribers qualify for but did not receive inline."""

    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    async with session as managed_session:
        stmt = select(ReferralCampaign).where(ReferralCampaign.status == CampaignStatus.ACTIVE)
        result = await managed_session.execute(stmt)
        campaigns = result.scalars().all()

        engine = RewardResolutionEngine(managed_session)
        campaign_summaries: List[Dict[str, Any]] = []
        for campaign in campaigns:
            resolution = await engine.resolve_all(waitlist_id=campaign.waitlist_id, campaign_id=campaign.id)
            campaign_summaries.append(resolution.as_dict())
        await managed_session.commit()

        summary = {
            "campaigns": len(campaign_summaries),
            "unlocked": sum(item["unlocked"] for item in campaign_summaries),
            "capacity_skipped": sum(item["capacity_skipped"] for item in campaign_summaries),
        }
        logger.bind(summary=summary, campaigns=campaign_summaries).info("Reward resolution sweep completed")
        return summary


__all__ = ["run_reward_resolution"]
