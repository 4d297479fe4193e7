from uuid import uuid4

import pytest
from sqlalchemy import func, select

from waitlist_referrals.models import (
    CampaignStatus,
    PointEvent,
    PointLedgerEntry,
    Referral,
    ReferralStatus,
    RewardDistributionRule,
    Subscriber,
)
from waitlist_referrals.observability.referrals import get_referral_store
from waitlist_referrals.services.referrals import ReferralAttributionFlow, ReferralRejection
from waitlist_referrals.services.rewards import RewardResolutionEngine


async def _launch(session, waitlist_id, make_campaign, make_rule, **campaign_kwargs):
    campaign = await make_campaign(session, waitlist_id, **campaign_kwargs)
    await make_rule(session, waitlist_id, PointEvent.REFERRAL_CONFIRMED, 25, priority=1)
    await make_rule(
        session,
        waitlist_id,
        PointEvent.REFERRAL_CONFIRMED,
        50,
        conditions={"firstReferralOnly": True},
        priority=2,
    )
    return campaign


async def _referral_count(session) -> int:
    return (await session.execute(select(func.count(Referral.id)))).scalar_one()


@pytest.mark.asyncio
async def test_referral_credits_referrer_only(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule)
        alice = await make_subscriber(session, waitlist_id, "alice@example.com", referral_code="ALICE123")
        bob = await make_subscriber(session, waitlist_id, "bob@example.com")
        carol = await make_subscriber(session, waitlist_id, "carol@example.com")

        outcome = await ReferralAttributionFlow(session).process_referral(
            subscriber_id=carol.id,
            waitlist_id=waitlist_id,
            email=carol.email,
            referral_code="ALICE123",
            source="twitter",
        )
        await session.commit()

        assert outcome.success is True
        assert outcome.duplicate is False
        assert outcome.referrer_id == alice.id
        assert outcome.points_awarded == 75
        assert outcome.rank == 1

        await session.refresh(alice)
        await session.refresh(bob)
        await session.refresh(carol)
        assert alice.score == 75
        assert bob.score == 0
        assert carol.score == 0
        assert carol.referred_by_id == alice.id

        referral = (await session.execute(select(Referral))).scalar_one()
        assert referral.id == outcome.referral_id
        assert referral.status == ReferralStatus.COMPLETED
        assert referral.referred_id == carol.id
        assert referral.source == "twitter"
        assert referral.completed_at is not None

        entries = (await session.execute(select(PointLedgerEntry))).scalars().all()
        assert {entry.reference_id for entry in entries} == {str(referral.id)}

    assert get_referral_store().snapshot().referrals == {"attributed": 1}


@pytest.mark.asyncio
async def test_repeating_a_referral_is_a_no_op(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule)
        alice = await make_subscriber(session, waitlist_id, "alice@example.com", referral_code="ALICE123")
        carol = await make_subscriber(session, waitlist_id, "carol@example.com")
        flow = ReferralAttributionFlow(session)

        first = await flow.process_referral(
            subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code="ALICE123"
        )
        again = await flow.process_referral(
            subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code="alice123"
        )
        await session.commit()

        assert again.success is True
        assert again.duplicate is True
        assert again.points_awarded == 0
        assert again.referral_id == first.referral_id
        assert await _referral_count(session) == 1
        await session.refresh(alice)
        assert alice.score == 75

    assert get_referral_store().snapshot().referrals == {"attributed": 1, "duplicate": 1}


@pytest.mark.asyncio
async def test_concurrent_referral_insert_is_a_duplicate(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule, monkeypatch
) -> None:
    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule)
        alice = await make_subscriber(session, waitlist_id, "alice@example.com", referral_code="ALICE123")
        carol = await make_subscriber(session, waitlist_id, "carol@example.com")
        winner = Referral(
            waitlist_id=waitlist_id,
            referrer_id=alice.id,
            referred_email=carol.email,
            status=ReferralStatus.COMPLETED,
        )
        session.add(winner)
        await session.flush()

        # The first lookup misses the row, as if the other attempt had not committed yet.
        original_find = ReferralAttributionFlow._find_referral
        calls = 0

        async def racing_find(self, *args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                return None
            return await original_find(self, *args, **kwargs)

        monkeypatch.setattr(ReferralAttributionFlow, "_find_referral", racing_find)

        outcome = await ReferralAttributionFlow(session).process_referral(
            subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code="ALICE123"
        )
        await session.commit()

        assert outcome.success is True
        assert outcome.duplicate is True
        assert outcome.points_awarded == 0
        assert outcome.referral_id == winner.id
        assert await _referral_count(session) == 1
        ledger_rows = (await session.execute(select(func.count(PointLedgerEntry.id)))).scalar_one()
        assert ledger_rows == 0
        await session.refresh(alice)
        assert alice.score == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("campaign_kwargs", "expected"),
    [
        ({"status": CampaignStatus.PAUSED}, ReferralRejection.NO_ACTIVE_CAMPAIGN),
        ({"status": CampaignStatus.DRAFT}, ReferralRejection.NO_ACTIVE_CAMPAIGN),
        ({"status": CampaignStatus.ENDED}, ReferralRejection.NO_ACTIVE_CAMPAIGN),
        ({"settings": {"referralsEnabled": False}}, ReferralRejection.REFERRALS_DISABLED),
    ],
)
async def test_inactive_campaign_rejects_without_side_effects(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule, campaign_kwargs, expected
) -> None:
    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule, **campaign_kwargs)
        alice = await make_subscriber(session, waitlist_id, "alice@example.com", referral_code="ALICE123")
        carol = await make_subscriber(session, waitlist_id, "carol@example.com")

        outcome = await ReferralAttributionFlow(session).process_referral(
            subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code="ALICE123"
        )
        await session.commit()

        assert outcome.success is False
        assert outcome.rejection == expected
        assert outcome.points_awarded == 0
        assert outcome.referrer_id == alice.id
        assert await _referral_count(session) == 0
        await session.refresh(alice)
        await session.refresh(carol)
        assert alice.score == 0
        assert carol.referred_by_id is None

    assert get_referral_store().snapshot().referrals == {expected.value: 1}


@pytest.mark.asyncio
async def test_unknown_or_blank_code(session_factory, waitlist_id, make_subscriber, make_campaign, make_rule) -> None:
    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule)
        carol = await make_subscriber(session, waitlist_id, "carol@example.com")
        flow = ReferralAttributionFlow(session)

        unknown = await flow.process_referral(
            subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code="NOPE9999"
        )
        assert unknown.success is False
        assert unknown.rejection == ReferralRejection.INVALID_CODE

        for blank in (None, "", "   "):
            outcome = await flow.process_referral(
                subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code=blank
            )
            assert outcome.success is True
            assert outcome.referrer_id is None
            assert outcome.points_awarded == 0


@pytest.mark.asyncio
async def test_code_from_another_waitlist_is_rejected(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    other_waitlist = uuid4()
    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule)
        await _launch(session, other_waitlist, make_campaign, make_rule)
        outsider = await make_subscriber(session, other_waitlist, "alice@example.com", referral_code="OTHER123")
        carol = await make_subscriber(session, waitlist_id, "carol@example.com")

        outcome = await ReferralAttributionFlow(session).process_referral(
            subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code="OTHER123"
        )
        await session.commit()

        assert outcome.rejection == ReferralRejection.CROSS_WAITLIST
        await session.refresh(outsider)
        assert outsider.score == 0


@pytest.mark.asyncio
async def test_self_referral_is_rejected_even_when_allowed(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule, settings={"allowSelfReferrals": True})
        alice = await make_subscriber(session, waitlist_id, "alice@example.com", referral_code="ALICE123")

        outcome = await ReferralAttributionFlow(session).process_referral(
            subscriber_id=alice.id, waitlist_id=waitlist_id, email=alice.email, referral_code="ALICE123"
        )

        assert outcome.rejection == ReferralRejection.SELF_REFERRAL
        assert await _referral_count(session) == 0


@pytest.mark.asyncio
async def test_subscriber_attributed_once(session_factory, waitlist_id, make_subscriber, make_campaign, make_rule) -> None:
    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule)
        alice = await make_subscriber(session, waitlist_id, "alice@example.com", referral_code="ALICE123")
        await make_subscriber(session, waitlist_id, "bob@example.com", referral_code="BOBB1234")
        carol = await make_subscriber(session, waitlist_id, "carol@example.com")
        flow = ReferralAttributionFlow(session)

        await flow.process_referral(
            subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code="ALICE123"
        )
        second = await flow.process_referral(
            subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code="BOBB1234"
        )
        await session.commit()

        assert second.rejection == ReferralRejection.ALREADY_ATTRIBUTED
        await session.refresh(carol)
        assert carol.referred_by_id == alice.id
        assert await _referral_count(session) == 1


@pytest.mark.asyncio
async def test_pending_referral_is_completed(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule)
        alice = await make_subscriber(session, waitlist_id, "alice@example.com", referral_code="ALICE123")
        invite = Referral(
            waitlist_id=waitlist_id,
            referrer_id=alice.id,
            referred_email="carol@example.com",
            status=ReferralStatus.PENDING,
            source="email-invite",
        )
        session.add(invite)
        carol = await make_subscriber(session, waitlist_id, "carol@example.com")

        outcome = await ReferralAttributionFlow(session).process_referral(
            subscriber_id=carol.id,
            waitlist_id=waitlist_id,
            email="Carol@Example.com",
            referral_code="ALICE123",
            source="direct",
        )
        await session.commit()

        assert outcome.referral_id == invite.id
        assert outcome.points_awarded == 75
        await session.refresh(invite)
        assert invite.status == ReferralStatus.COMPLETED
        assert invite.referred_id == carol.id
        assert invite.source == "email-invite"
        assert await _referral_count(session) == 1


@pytest.mark.asyncio
async def test_referral_unlocks_rewards_for_referrer(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule, make_reward
) -> None:
    async with session_factory() as session:
        campaign = await _launch(session, waitlist_id, make_campaign, make_rule)
        reward = await make_reward(
            session, campaign.id, RewardDistributionRule.MIN_REFERRALS, {"minReferrals": 1}
        )
        await make_reward(session, campaign.id, RewardDistributionRule.MIN_SCORE, {"minScore": 1000})
        await make_subscriber(session, waitlist_id, "alice@example.com", referral_code="ALICE123")
        carol = await make_subscriber(session, waitlist_id, "carol@example.com")

        outcome = await ReferralAttributionFlow(session).process_referral(
            subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code="ALICE123"
        )

        assert outcome.rewards_unlocked == [reward.id]


@pytest.mark.asyncio
async def test_reward_failure_does_not_undo_referral(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule, monkeypatch
) -> None:
    async def broken_resolution(self, **kwargs):
        raise RuntimeError("reward store offline")

    monkeypatch.setattr(RewardResolutionEngine, "resolve_for_subscriber", broken_resolution)

    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule)
        alice = await make_subscriber(session, waitlist_id, "alice@example.com", referral_code="ALICE123")
        carol = await make_subscriber(session, waitlist_id, "carol@example.com")

        outcome = await ReferralAttributionFlow(session).process_referral(
            subscriber_id=carol.id, waitlist_id=waitlist_id, email=carol.email, referral_code="ALICE123"
        )
        await session.commit()

        assert outcome.success is True
        assert outcome.points_awarded == 75
        assert outcome.rewards_unlocked == []

    async with session_factory() as session:
        stored = await session.get(Subscriber, alice.id)
        assert stored.score == 75

    assert get_referral_store().snapshot().side_effects == {"reward_resolution": 1}


@pytest.mark.asyncio
async def test_validate_code(session_factory, waitlist_id, make_subscriber, make_campaign, make_rule) -> None:
    async with session_factory() as session:
        await _launch(session, waitlist_id, make_campaign, make_rule)
        alice = await make_subscriber(session, waitlist_id, "alice@example.com", referral_code="ALICE123")
        flow = ReferralAttributionFlow(session)

        valid = await flow.validate_code(" alice123 ", waitlist_id)
        assert valid.valid is True
        assert valid.referrer_id == alice.id

        assert (await flow.validate_code("MISSING1", waitlist_id)).rejection == ReferralRejection.INVALID_CODE
        assert (await flow.validate_code("ALICE123", uuid4())).rejection == ReferralRejection.CROSS_WAITLIST
