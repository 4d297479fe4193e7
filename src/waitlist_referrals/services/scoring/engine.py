"""Point rule evaluation and the append-only point ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from waitlist_referrals.models import (
    CONFIRMED_REFERRAL_STATUSES,
    PointEvent,
    PointLedgerEntry,
    PointRule,
    Referral,
    Subscriber,
)
from waitlist_referrals.observability.referrals import get_referral_store
from waitlist_referrals.services.errors import SubscriberNotFoundError
from waitlist_referrals.services.leaderboard import LeaderboardRanker
from waitlist_referrals.services.scoring.conditions import (
    RuleCondition,
    SubscriberStats,
    conditions_match,
    parse_conditions,
)


@dataclass(slots=True)
class PointAward:
    """Result of a single ``award_points`` call.

    ``points_awarded`` is the primary effect and is always accurate. ``rank`` is
    the refreshed leaderboard position when the best-effort refresh succeeded;
    ``rank_refreshed`` is False when it failed or was not needed.
    """

    points_awarded: int
    rules_applied: list[UUID] = field(default_factory=list)
    ledger_entry_ids: list[UUID] = field(default_factory=list)
    rank: int | None = None
    rank_refreshed: bool = False


@dataclass(slots=True)
class LedgerRecord:
    id: UUID
    event: PointEvent
    points: int
    reference_id: str | None
    metadata: dict[str, Any]
    created_at: datetime | None


@dataclass(slots=True)
class ScoreDrift:
    subscriber_id: UUID
    cached_score: int
    ledger_score: int

    @property
    def delta(self) -> int:
        return self.ledger_score - self.cached_score


@dataclass(slots=True)
class _LoadedRule:
    rule: PointRule
    conditions: tuple[RuleCondition, ...]


def subscribers_for_reconciliation(waitlist_id: UUID, *, lock: bool) -> Select:
    """Subscribers of a waitlist in id order, row-locked when ``lock`` is set."""

    stmt = (
        select(Subscriber)
        .where(Subscriber.waitlist_id == waitlist_id)
        .order_by(Subscriber.id.asc())
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    return stmt


class ScoringEngine:
    """Awards points for subscriber events according to the waitlist's point rules."""

    def __init__(self, db_session: AsyncSession, *, ranker: LeaderboardRanker | None = None) -> None:
        self._db = db_session
        self._ranker = ranker or LeaderboardRanker(db_session)

    async def award_points(
        self,
        *,
        waitlist_id: UUID,
        campaign_id: UUID,
        subscriber_id: UUID,
        event: PointEvent,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PointAward:
        """Apply every active rule for ``event`` whose conditions match.

        Rules are independent: several may fire for one event and each gets its
        own ledger entry. No matching rule is not an error and awards zero.
        """

        subscriber = await self._load_subscriber(waitlist_id, subscriber_id)
        rules = await self._load_rules(waitlist_id, event)
        stats = await self.load_stats(subscriber)

        award = PointAward(points_awarded=0)
        entries: list[PointLedgerEntry] = []
        for loaded in rules:
            if not conditions_match(loaded.conditions, stats):
                continue
            rule = loaded.rule
            entry = PointLedgerEntry(
                subscriber_id=subscriber.id,
                campaign_id=campaign_id,
                event=event,
                points=int(rule.points),
                reference_id=reference_id,
                metadata_json={
                    **(metadata or {}),
                    "ruleId": str(rule.id),
                    "ruleName": rule.name,
                },
            )
            self._db.add(entry)
            entries.append(entry)
            award.points_awarded += int(rule.points)
            award.rules_applied.append(rule.id)

        if not award.rules_applied:
            logger.debug(
                "No point rules matched",
                waitlist_id=str(waitlist_id),
                subscriber_id=str(subscriber_id),
                point_event=event.value,
            )
            return award

        await self._db.flush()
        award.ledger_entry_ids = [entry.id for entry in entries]
        await self._increment_score(subscriber, award.points_awarded)

        logger.info(
            "Awarded points",
            waitlist_id=str(waitlist_id),
            subscriber_id=str(subscriber_id),
            point_event=event.value,
            points=award.points_awarded,
            rules=len(award.rules_applied),
            reference_id=reference_id,
        )
        get_referral_store().record_points_awarded(event.value, award.points_awarded)

        if award.points_awarded != 0:
            award.rank = await self.refresh_rank(waitlist_id, subscriber_id)
            award.rank_refreshed = award.rank is not None
        return award

    async def adjust_points(
        self,
        *,
        waitlist_id: UUID,
        campaign_id: UUID,
        subscriber_id: UUID,
        points: int,
        reason: str,
        actor: str | None = None,
    ) -> PointAward:
        """Record an admin correction. ``points`` may be negative."""

        subscriber = await self._load_subscriber(waitlist_id, subscriber_id)
        entry = PointLedgerEntry(
            subscriber_id=subscriber.id,
            campaign_id=campaign_id,
            event=PointEvent.MANUAL,
            points=int(points),
            metadata_json={"reason": reason, "actor": actor},
        )
        self._db.add(entry)
        await self._db.flush()
        await self._increment_score(subscriber, int(points))

        logger.info(
            "Applied manual point adjustment",
            waitlist_id=str(waitlist_id),
            subscriber_id=str(subscriber_id),
            points=int(points),
            reason=reason,
            actor=actor,
        )
        rank = await self.refresh_rank(waitlist_id, subscriber_id)
        return PointAward(
            points_awarded=int(points),
            ledger_entry_ids=[entry.id],
            rank=rank,
            rank_refreshed=rank is not None,
        )

    async def refresh_rank(self, waitlist_id: UUID, subscriber_id: UUID) -> int | None:
        """Refresh the cached rank inside a savepoint; failures never undo the award."""

        try:
            async with self._db.begin_nested():
                return await self._ranker.recompute_rank(waitlist_id, subscriber_id)
        except Exception:
            logger.opt(exception=True).warning(
                "Rank refresh failed after point award",
                waitlist_id=str(waitlist_id),
                subscriber_id=str(subscriber_id),
            )
            get_referral_store().record_side_effect_failure("rank_refresh")
            return None

    async def load_stats(self, subscriber: Subscriber) -> SubscriberStats:
        """Facts consulted by rule conditions, read once per evaluation."""

        stmt = select(func.count(Referral.id)).where(
            Referral.waitlist_id == subscriber.waitlist_id,
            Referral.referrer_id == subscriber.id,
            Referral.status.in_(CONFIRMED_REFERRAL_STATUSES),
        )
        result = await self._db.execute(stmt)
        return SubscriberStats(
            subscriber_id=subscriber.id,
            score=int(subscriber.score or 0),
            verified=bool(subscriber.verified),
            referral_count=int(result.scalar_one() or 0),
        )

    async def point_history(
        self,
        subscriber_id: UUID,
        *,
        campaign_id: UUID | None = None,
        limit: int = 50,
    ) -> list[LedgerRecord]:
        stmt = select(PointLedgerEntry).where(PointLedgerEntry.subscriber_id == subscriber_id)
        if campaign_id is not None:
            stmt = stmt.where(PointLedgerEntry.campaign_id == campaign_id)
        stmt = stmt.order_by(PointLedgerEntry.created_at.desc(), PointLedgerEntry.id.desc()).limit(limit)
        result = await self._db.execute(stmt)
        return [
            LedgerRecord(
                id=entry.id,
                event=entry.event,
                points=int(entry.points),
                reference_id=entry.reference_id,
                metadata=dict(entry.metadata_json or {}),
                created_at=entry.created_at,
            )
            for entry in result.scalars().all()
        ]

    async def ledger_total(self, subscriber_id: UUID, *, campaign_id: UUID | None = None) -> int:
        stmt = select(func.coalesce(func.sum(PointLedgerEntry.points), 0)).where(
            PointLedgerEntry.subscriber_id == subscriber_id
        )
        if campaign_id is not None:
            stmt = stmt.where(PointLedgerEntry.campaign_id == campaign_id)
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    async def reconcile_scores(self, waitlist_id: UUID, *, repair: bool = True) -> list[ScoreDrift]:
        """Compare every cached score of a waitlist with its ledger sum.

        Drifted rows are reported and, when ``repair`` is set, overwritten with
        the ledger value. A repair locks the subscriber rows before summing the
        ledger, so an award that commits meanwhile is either included in the sum
        or applies its increment after the repair.
        """

        subscribers_stmt = subscribers_for_reconciliation(waitlist_id, lock=repair)
        subscribers = (await self._db.execute(subscribers_stmt)).scalars().all()
        if not subscribers:
            return []

        totals_stmt = (
            select(PointLedgerEntry.subscriber_id, func.sum(PointLedgerEntry.points))
            .join(Subscriber, Subscriber.id == PointLedgerEntry.subscriber_id)
            .where(Subscriber.waitlist_id == waitlist_id)
            .group_by(PointLedgerEntry.subscriber_id)
        )
        totals = {subscriber_id: int(total or 0) for subscriber_id, total in await self._db.execute(totals_stmt)}

        drift: list[ScoreDrift] = []
        for subscriber in subscribers:
            ledger_score = totals.get(subscriber.id, 0)
            cached_score = int(subscriber.score or 0)
            if ledger_score == cached_score:
                continue
            drift.append(
                ScoreDrift(subscriber_id=subscriber.id, cached_score=cached_score, ledger_score=ledger_score)
            )
            logger.warning(
                "Score drift detected",
                waitlist_id=str(waitlist_id),
                subscriber_id=str(subscriber.id),
                cached_score=cached_score,
                ledger_score=ledger_score,
                repaired=repair,
            )
            if repair:
                subscriber.score = ledger_score

        if repair and drift:
            await self._db.flush()
        return drift

    async def _increment_score(self, subscriber: Subscriber, points: int) -> None:
        await self._db.execute(
            update(Subscriber)
            .where(Subscriber.id == subscriber.id)
            .values(score=Subscriber.score + points)
            .execution_options(synchronize_session=False)
        )
        await self._db.refresh(subscriber, attribute_names=["score"])

    async def _load_rules(self, waitlist_id: UUID, event: PointEvent) -> Sequence[_LoadedRule]:
        stmt = (
            select(PointRule)
            .where(
                PointRule.waitlist_id == waitlist_id,
                PointRule.event == event,
                PointRule.is_active.is_(True),
            )
            .order_by(PointRule.priority.asc(), PointRule.created_at.asc(), PointRule.id.asc())
        )
        result = await self._db.execute(stmt)
        return [
            _LoadedRule(rule=rule, conditions=parse_conditions(rule.conditions))
            for rule in result.scalars().all()
        ]

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


__all__ = ["LedgerRecord", "PointAward", "ScoreDrift", "ScoringEngine", "subscribers_for_reconciliation"]
