from uuid import uuid4

import pytest
from sqlalchemy import event, select, update
from sqlalchemy.dialects import postgresql

from waitlist_referrals.models import PointEvent, PointLedgerEntry, Referral, ReferralStatus, Subscriber
from waitlist_referrals.observability.referrals import get_referral_store
from waitlist_referrals.services.errors import SubscriberNotFoundError
from waitlist_referrals.services.leaderboard import LeaderboardRanker
from waitlist_referrals.services.scoring import ScoringEngine, subscribers_for_reconciliation


async def _confirmed_referral(session, referrer: Subscriber, email: str) -> Referral:
    referral = Referral(
        waitlist_id=referrer.waitlist_id,
        referrer_id=referrer.id,
        referred_email=email,
        status=ReferralStatus.COMPLETED,
    )
    session.add(referral)
    await session.flush()
    return referral


@pytest.mark.asyncio
async def test_first_referral_applies_every_matching_rule(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    async with session_factory() as session:
        campaign = await make_campaign(session, waitlist_id)
        await make_rule(session, waitlist_id, PointEvent.REFERRAL_CONFIRMED, 25, priority=1)
        await make_rule(
            session,
            waitlist_id,
            PointEvent.REFERRAL_CONFIRMED,
            50,
            conditions={"firstReferralOnly": True},
            priority=2,
        )
        referrer = await make_subscriber(session, waitlist_id, "alice@example.com")
        bystander = await make_subscriber(session, waitlist_id, "bob@example.com")
        await _confirmed_referral(session, referrer, "carol@example.com")

        engine = ScoringEngine(session)
        award = await engine.award_points(
            waitlist_id=waitlist_id,
            campaign_id=campaign.id,
            subscriber_id=referrer.id,
            event=PointEvent.REFERRAL_CONFIRMED,
            reference_id="ref-1",
        )
        await session.commit()

        assert award.points_awarded == 75
        assert len(award.rules_applied) == 2
        assert len(award.ledger_entry_ids) == 2
        assert award.rank == 1
        assert award.rank_refreshed is True

        await session.refresh(referrer)
        await session.refresh(bystander)
        assert referrer.score == 75
        assert referrer.rank == 1
        assert bystander.score == 0

        entries = (
            await session.execute(select(PointLedgerEntry).where(PointLedgerEntry.subscriber_id == referrer.id))
        ).scalars().all()
        assert sorted(entry.points for entry in entries) == [25, 50]
        assert {entry.reference_id for entry in entries} == {"ref-1"}
        assert all(entry.metadata_json["ruleId"] for entry in entries)

        # The second referral no longer satisfies the first-referral condition.
        await _confirmed_referral(session, referrer, "dave@example.com")
        second = await engine.award_points(
            waitlist_id=waitlist_id,
            campaign_id=campaign.id,
            subscriber_id=referrer.id,
            event=PointEvent.REFERRAL_CONFIRMED,
        )
        assert second.points_awarded == 25
        await session.refresh(referrer)
        assert referrer.score == 100

    snapshot = get_referral_store().snapshot()
    assert snapshot.points["awards:referral_confirmed"] == 2
    assert snapshot.points["points:referral_confirmed"] == 100


@pytest.mark.asyncio
async def test_no_matching_rule_awards_nothing(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    async with session_factory() as session:
        campaign = await make_campaign(session, waitlist_id)
        await make_rule(session, waitlist_id, PointEvent.SIGNUP, 5, is_active=False)
        await make_rule(session, waitlist_id, PointEvent.EMAIL_VERIFIED, 10)
        subscriber = await make_subscriber(session, waitlist_id)

        award = await ScoringEngine(session).award_points(
            waitlist_id=waitlist_id,
            campaign_id=campaign.id,
            subscriber_id=subscriber.id,
            event=PointEvent.SIGNUP,
        )

        assert award.points_awarded == 0
        assert award.rules_applied == []
        assert award.rank_refreshed is False
        ledger = (await session.execute(select(PointLedgerEntry))).scalars().all()
        assert ledger == []


@pytest.mark.asyncio
async def test_rules_of_another_waitlist_are_ignored(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    other_waitlist = uuid4()
    async with session_factory() as session:
        campaign = await make_campaign(session, waitlist_id)
        await make_rule(session, other_waitlist, PointEvent.SIGNUP, 500)
        await make_rule(session, waitlist_id, PointEvent.SIGNUP, 5)
        subscriber = await make_subscriber(session, waitlist_id)

        award = await ScoringEngine(session).award_points(
            waitlist_id=waitlist_id,
            campaign_id=campaign.id,
            subscriber_id=subscriber.id,
            event=PointEvent.SIGNUP,
        )

        assert award.points_awarded == 5


@pytest.mark.asyncio
async def test_award_for_unknown_subscriber_raises(session_factory, waitlist_id, make_campaign) -> None:
    async with session_factory() as session:
        campaign = await make_campaign(session, waitlist_id)
        with pytest.raises(SubscriberNotFoundError):
            await ScoringEngine(session).award_points(
                waitlist_id=waitlist_id,
                campaign_id=campaign.id,
                subscriber_id=waitlist_id,
                event=PointEvent.SIGNUP,
            )


@pytest.mark.asyncio
async def test_rank_refresh_failure_keeps_points(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule, monkeypatch
) -> None:
    async def broken_recompute(self, waitlist_id, subscriber_id):
        raise RuntimeError("ranking unavailable")

    monkeypatch.setattr(LeaderboardRanker, "recompute_rank", broken_recompute)

    async with session_factory() as session:
        campaign = await make_campaign(session, waitlist_id)
        await make_rule(session, waitlist_id, PointEvent.SIGNUP, 5)
        subscriber = await make_subscriber(session, waitlist_id)

        award = await ScoringEngine(session).award_points(
            waitlist_id=waitlist_id,
            campaign_id=campaign.id,
            subscriber_id=subscriber.id,
            event=PointEvent.SIGNUP,
        )
        await session.commit()

        assert award.points_awarded == 5
        assert award.rank is None
        assert award.rank_refreshed is False

    async with session_factory() as session:
        stored = await session.get(Subscriber, subscriber.id)
        assert stored.score == 5
        assert stored.rank is None

    assert get_referral_store().snapshot().side_effects == {"rank_refresh": 1}


@pytest.mark.asyncio
async def test_cached_score_matches_ledger_after_adjustments(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    async with session_factory() as session:
        campaign = await make_campaign(session, waitlist_id)
        await make_rule(session, waitlist_id, PointEvent.SIGNUP, 5)
        await make_rule(session, waitlist_id, PointEvent.EMAIL_VERIFIED, 10)
        subscriber = await make_subscriber(session, waitlist_id)
        engine = ScoringEngine(session)

        for event in (PointEvent.SIGNUP, PointEvent.EMAIL_VERIFIED):
            await engine.award_points(
                waitlist_id=waitlist_id,
                campaign_id=campaign.id,
                subscriber_id=subscriber.id,
                event=event,
            )
        adjustment = await engine.adjust_points(
            waitlist_id=waitlist_id,
            campaign_id=campaign.id,
            subscriber_id=subscriber.id,
            points=-3,
            reason="duplicate signup",
            actor="ops@example.com",
        )
        await session.commit()

        assert adjustment.points_awarded == -3
        await session.refresh(subscriber)
        assert subscriber.score == 12
        assert await engine.ledger_total(subscriber.id) == 12
        assert await engine.ledger_total(subscriber.id, campaign_id=campaign.id) == 12
        assert await engine.reconcile_scores(waitlist_id) == []

        history = await engine.point_history(subscriber.id)
        assert len(history) == 3
        manual = next(record for record in history if record.event == PointEvent.MANUAL)
        assert manual.metadata == {"reason": "duplicate signup", "actor": "ops@example.com"}


@pytest.mark.asyncio
async def test_reconcile_scores_repairs_drift(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    async with session_factory() as session:
        campaign = await make_campaign(session, waitlist_id)
        await make_rule(session, waitlist_id, PointEvent.SIGNUP, 5)
        drifted = await make_subscriber(session, waitlist_id)
        untouched = await make_subscriber(session, waitlist_id)
        engine = ScoringEngine(session)
        await engine.award_points(
            waitlist_id=waitlist_id,
            campaign_id=campaign.id,
            subscriber_id=drifted.id,
            event=PointEvent.SIGNUP,
        )
        await session.execute(update(Subscriber).where(Subscriber.id == drifted.id).values(score=40))
        await session.commit()

        report = await engine.reconcile_scores(waitlist_id, repair=False)
        assert [(item.subscriber_id, item.cached_score, item.ledger_score) for item in report] == [
            (drifted.id, 40, 5)
        ]
        assert report[0].delta == -35

        repaired = await engine.reconcile_scores(waitlist_id)
        await session.commit()
        assert len(repaired) == 1

        await session.refresh(drifted)
        await session.refresh(untouched)
        assert drifted.score == 5
        assert untouched.score == 0


def test_repair_locks_subscriber_rows() -> None:
    dialect = postgresql.dialect()
    waitlist = uuid4()

    locked = str(subscribers_for_reconciliation(waitlist, lock=True).compile(dialect=dialect))
    unlocked = str(subscribers_for_reconciliation(waitlist, lock=False).compile(dialect=dialect))

    assert locked.rstrip().endswith("FOR UPDATE")
    assert "FOR UPDATE" not in unlocked


@pytest.mark.asyncio
async def test_repair_reads_ledger_after_locking_subscribers(
    session_factory, waitlist_id, make_subscriber, make_campaign, make_rule
) -> None:
    async with session_factory() as session:
        campaign = await make_campaign(session, waitlist_id)
        await make_rule(session, waitlist_id, PointEvent.SIGNUP, 5)
        subscriber = await make_subscriber(session, waitlist_id)
        engine = ScoringEngine(session)
        await engine.award_points(
            waitlist_id=waitlist_id,
            campaign_id=campaign.id,
            subscriber_id=subscriber.id,
            event=PointEvent.SIGNUP,
        )
        await session.execute(update(Subscriber).where(Subscriber.id == subscriber.id).values(score=0))
        await session.commit()

        statements: list[str] = []

        def record(conn, cursor, statement, parameters, context, executemany) -> None:
            statements.append(statement)

        sync_engine = session.bind.sync_engine
        event.listen(sync_engine, "before_cursor_execute", record)
        try:
            drift = await engine.reconcile_scores(waitlist_id)
        finally:
            event.remove(sync_engine, "before_cursor_execute", record)

        assert [(item.cached_score, item.ledger_score) for item in drift] == [(0, 5)]
        subscriber_read = next(
            index for index, sql in enumerate(statements) if sql.lstrip().startswith("SELECT waitlist_subscribers.")
        )
        ledger_read = next(index for index, sql in enumerate(statements) if "sum(point_ledger_entries.points)" in sql)
        assert subscriber_read < ledger_read
