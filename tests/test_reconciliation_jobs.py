"""Tests for the leaderboard and reward repair jobs."""

import pytest
from sqlalchemy import select, update

from waitlist_referrals.jobs.leaderboard import run_leaderboard_reconciliation
from waitlist_referrals.jobs.rewards import run_reward_resolution
from waitlist_referrals.models import (
    CampaignStatus,
    PointEvent,
    PointLedgerEntry,
    RewardDistributionRule,
    Subscriber,
    SubscriberReward,
)


async def _seed_drift(session_factory, waitlist_id, make_subscriber, make_campaign):
    async with session_factory() as session:
        campaign = await make_campaign(session, waitlist_id)
        leader = await make_subscriber(session, waitlist_id, score=0)
        runner_up = await make_subscriber(session, waitlist_id, score=0)
        session.add_all(
            [
                PointLedgerEntry(subscriber_id=leader.id, campaign_id=campaign.id, event=PointEvent.SIGNUP, points=5),
                PointLedgerEntry(
                    subscriber_id=leader.id,
                    campaign_id=campaign.id,
                    event=PointEvent.REFERRAL_CONFIRMED,
                    points=75,
                ),
                PointLedgerEntry(subscriber_id=runner_up.id, campaign_id=campaign.id, event=PointEvent.SIGNUP, points=5),
            ]
        )
        # The runner-up's cached score is correct; the leader's increment was lost.
        await session.flush()
        await session.execute(update(Subscriber).where(Subscriber.id == runner_up.id).values(score=5, rank=1))
        await session.execute(update(Subscriber).where(Subscriber.id == leader.id).values(score=5, rank=2))
        await session.commit()
        return campaign, leader, runner_up


@pytest.mark.asyncio
async def test_reconciliation_repairs_scores_and_ranks(
    session_factory, waitlist_id, make_subscriber, make_campaign
) -> None:
    _, leader, runner_up = await _seed_drift(session_factory, waitlist_id, make_subscriber, make_campaign)

    summary = await run_leaderboard_reconciliation(session_factory=session_factory, waitlist_id=str(waitlist_id))

    assert summary == {
        "waitlists": 1,
        "subscribers": 2,
        "scores_drifted": 1,
        "ranks_updated": 2,
        "repaired": True,
    }

    async with session_factory() as session:
        stored = {
            subscriber.id: (subscriber.score, subscriber.rank)
            for subscriber in (await session.execute(select(Subscriber))).scalars().all()
        }
    assert stored == {leader.id: (80, 1), runner_up.id: (5, 2)}


@pytest.mark.asyncio
async def test_reconciliation_dry_run_leaves_rows_untouched(
    session_factory, waitlist_id, make_subscriber, make_campaign
) -> None:
    _, leader, _ = await _seed_drift(session_factory, waitlist_id, make_subscriber, make_campaign)

    summary = await run_leaderboard_reconciliation(session_factory=session_factory, repair=False)

    assert summary["waitlists"] == 1
    assert summary["scores_drifted"] == 1
    assert summary["repaired"] is False

    async with session_factory() as session:
        stored = await session.get(Subscriber, leader.id)
        assert stored.score == 5
        assert stored.rank == 2


@pytest.mark.asyncio
async def test_reward_sweep_only_touches_active_campaigns(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_reward
) -> None:
    async with session_factory() as session:
        active = await make_campaign(session, waitlist_id)
        paused = await make_campaign(session, waitlist_id, status=CampaignStatus.PAUSED, name="Old")
        live_reward = await make_reward(session, active.id, RewardDistributionRule.MIN_SCORE, {"minScore": 10})
        await make_reward(session, paused.id, RewardDistributionRule.MIN_SCORE, {"minScore": 10})
        member = await make_subscriber(session, waitlist_id, score=25)
        await make_subscriber(session, waitlist_id, score=3)
        await session.commit()

    summary = await run_reward_resolution(session_factory=session_factory)
    assert summary == {"campaigns": 1, "unlocked": 1, "capacity_skipped": 0}

    async with session_factory() as session:
        unlocks = (await session.execute(select(SubscriberReward))).scalars().all()
    assert [(unlock.subscriber_id, unlock.reward_id) for unlock in unlocks] == [(member.id, live_reward.id)]

    rerun = await run_reward_resolution(session_factory=session_factory)
    assert rerun["unlocked"] == 0
