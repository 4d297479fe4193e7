import datetime as dt
import itertools
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import waitlist_referrals.models  # noqa: F401
from waitlist_referrals.db.base import Base
from waitlist_referrals.db.session import enable_sqlite_savepoints
from waitlist_referrals.models import (
    CampaignStatus,
    PointEvent,
    PointRule,
    ReferralCampaign,
    Reward,
    RewardDistributionRule,
    RewardType,
    Subscriber,
)
from waitlist_referrals.observability.referrals import get_referral_store
from waitlist_referrals.observability.scheduler import get_rewards_scheduler_store

BASE_TIME = dt.datetime(2026, 1, 1, 12, 0, tzinfo=dt.timezone.utc)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def reset_observability_stores():
    get_referral_store().reset()
    get_rewards_scheduler_store().reset()
    yield
    get_referral_store().reset()
    get_rewards_scheduler_store().reset()


@pytest.fixture
def waitlist_id() -> UUID:
    return uuid4()


@pytest.fixture
def make_subscriber():
    """Insert a subscriber; signup times increase by one minute per call unless given."""

    counter = itertools.count(1)

    async def _make(
        session: AsyncSession,
        waitlist_id: UUID,
        email: str | None = None,
        *,
        score: int = 0,
        created_at: dt.datetime | None = None,
        verified: bool = False,
        referral_code: str | None = None,
    ) -> Subscriber:
        index = next(counter)
        subscriber = Subscriber(
            waitlist_id=waitlist_id,
            email=email or f"member{index}@example.com",
            referral_code=referral_code or f"REF{index:05d}",
            score=score,
            verified=verified,
            created_at=created_at or BASE_TIME + dt.timedelta(minutes=index),
        )
        session.add(subscriber)
        await session.flush()
        return subscriber

    return _make


@pytest.fixture
def make_campaign():
    async def _make(
        session: AsyncSession,
        waitlist_id: UUID,
        *,
        status: CampaignStatus = CampaignStatus.ACTIVE,
        settings: dict[str, Any] | None = None,
        name: str = "Launch",
    ) -> ReferralCampaign:
        campaign = ReferralCampaign(
            waitlist_id=waitlist_id,
            name=name,
            status=status,
            settings=settings or {},
        )
        session.add(campaign)
        await session.flush()
        return campaign

    return _make


@pytest.fixture
def make_rule():
    async def _make(
        session: AsyncSession,
        waitlist_id: UUID,
        event: PointEvent,
        points: int,
        *,
        conditions: dict[str, Any] | None = None,
        priority: int = 0,
        is_active: bool = True,
        name: str | None = None,
    ) -> PointRule:
        rule = PointRule(
            waitlist_id=waitlist_id,
            event=event,
            points=points,
            conditions=conditions,
            priority=priority,
            is_active=is_active,
            name=name or f"{event.value} +{points}",
        )
        session.add(rule)
        await session.flush()
        return rule

    return _make


@pytest.fixture
def make_reward():
    async def _make(
        session: AsyncSession,
        campaign_id: UUID,
        distribution_rule: RewardDistributionRule,
        rule_params: dict[str, Any] | None = None,
        *,
        max_recipients: int | None = None,
        name: str | None = None,
    ) -> Reward:
        reward = Reward(
            campaign_id=campaign_id,
            name=name or f"{distribution_rule.value} reward",
            reward_type=RewardType.CUSTOM,
            distribution_rule=distribution_rule,
            rule_params=rule_params or {},
            payload={},
            max_recipients=max_recipients,
        )
        session.add(reward)
        await session.flush()
        return reward

    return _make
