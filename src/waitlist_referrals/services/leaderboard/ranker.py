"""Leaderboard ranking, pagination and snapshots.

Ranking order is ``score`` descending, then ``created_at`` ascending (earlier
signups win ties), then subscriber id so that two rows never share a rank.
``Subscriber.rank`` is a best-effort cache: it is rewritten only by
:meth:`LeaderboardRanker.recompute_rank` and :meth:`LeaderboardRanker.reconcile_ranks`,
and can lag behind other subscribers' score changes until the next refresh.
Page reads never trust the cache; they order live.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from waitlist_referrals.core.settings import settings
from waitlist_referrals.models import (
    CONFIRMED_REFERRAL_STATUSES,
    RankingSnapshot,
    Referral,
    Subscriber,
)
from waitlist_referrals.models._common import utcnow
from waitlist_referrals.services.errors import SubscriberNotFoundError

RANKING_ORDER = (Subscriber.score.desc(), Subscriber.created_at.asc(), Subscriber.id.asc())


@dataclass(slots=True)
class LeaderboardEntry:
    """Serializable leaderboard row."""

    subscriber_id: UUID
    email: str
    score: int
    rank: int
    referral_count: int
    joined_at: datetime | None


@dataclass(slots=True)
class SnapshotSummary:
    generation_id: UUID
    waitlist_id: UUID
    is_final: bool
    calculated_at: datetime
    entries: int


@dataclass(slots=True)
class RankReconciliation:
    waitlist_id: UUID
    subscribers: int
    updated: int


def confirmed_referral_counts(waitlist_id: UUID | None = None) -> Any:
    """Subquery of confirmed referral counts keyed by referrer id."""

    stmt = select(
        Referral.referrer_id.label("referrer_id"),
        func.count(Referral.id).label("referral_count"),
    ).where(Referral.status.in_(CONFIRMED_REFERRAL_STATUSES))
    if waitlist_id is not None:
        stmt = stmt.where(Referral.waitlist_id == waitlist_id)
    return stmt.group_by(Referral.referrer_id).subquery()


class LeaderboardRanker:
    """Computes live ranks, serves leaderboard pages and materializes snapshots."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def compute_rank(self, waitlist_id: UUID, subscriber_id: UUID) -> int:
        """Return the live rank without touching the cache."""

        subscriber = await self._load_subscriber(waitlist_id, subscriber_id)
        return await self._count_outranking(subscriber) + 1

    async def recompute_rank(self, waitlist_id: UUID, subscriber_id: UUID) -> int:
        """Compute the live rank and store it on the subscriber row."""

        subscriber = await self._load_subscriber(waitlist_id, subscriber_id)
        rank = await self._count_outranking(subscriber) + 1
        if subscriber.rank != rank:
            subscriber.rank = rank
            await self._db.flush()
        logger.debug(
            "Recomputed leaderboard rank",
            waitlist_id=str(waitlist_id),
            subscriber_id=str(subscriber_id),
            rank=rank,
        )
        return rank

    async def get_rank(
        self,
        waitlist_id: UUID,
        subscriber_id: UUID,
        *,
        force_recalculate: bool = False,
    ) -> int:
        """Return the cached rank, recomputing it when missing or when forced."""

        if not force_recalculate:
            subscriber = await self._load_subscriber(waitlist_id, subscriber_id)
            if subscriber.rank is not None:
                return int(subscriber.rank)
        return await self.recompute_rank(waitlist_id, subscriber_id)

    async def get_leaderboard(
        self,
        waitlist_id: UUID,
        *,
        limit: int | None = None,
        offset: int = 0,
        as_of: datetime | None = None,
        generation_id: UUID | None = None,
        final_only: bool = False,
    ) -> list[LeaderboardEntry]:
        """Return a leaderboard page.

        Without ``as_of``/``generation_id`` the page is ordered live from score and
        signup time. With either, rows come from the newest snapshot generation
        calculated at or before ``as_of`` (or the named generation) and keep the
        rank stored at snapshot time.
        """

        page_limit = self._clamp_limit(limit)
        page_offset = max(int(offset), 0)

        if as_of is None and generation_id is None:
            return await self._live_page(waitlist_id, limit=page_limit, offset=page_offset)

        if generation_id is None:
            generation_id = await self._resolve_generation(waitlist_id, as_of=as_of, final_only=final_only)
            if generation_id is None:
                return []

        stmt = (
            select(RankingSnapshot, Subscriber.email, Subscriber.created_at)
            .join(Subscriber, Subscriber.id == RankingSnapshot.subscriber_id)
            .where(
                RankingSnapshot.waitlist_id == waitlist_id,
                RankingSnapshot.generation_id == generation_id,
            )
            .order_by(RankingSnapshot.rank.asc())
            .limit(page_limit)
            .offset(page_offset)
        )
        result = await self._db.execute(stmt)
        return [
            LeaderboardEntry(
                subscriber_id=snapshot.subscriber_id,
                email=email,
                score=int(snapshot.score),
                rank=int(snapshot.rank),
                referral_count=int(snapshot.referral_count or 0),
                joined_at=created_at,
            )
            for snapshot, email, created_at in result.all()
        ]

    async def get_top(self, waitlist_id: UUID, top_n: int = 10) -> list[LeaderboardEntry]:
        return await self.get_leaderboard(waitlist_id, limit=top_n, offset=0)

    async def ordered_entries(self, waitlist_id: UUID) -> list[LeaderboardEntry]:
        """Full live ordering for batch consumers (snapshots, reward sweeps)."""

        rows = await self._ranked_rows(waitlist_id)
        return [self._to_entry(subscriber, count, index + 1) for index, (subscriber, count) in enumerate(rows)]

    async def create_snapshot(self, waitlist_id: UUID, *, is_final: bool = False) -> SnapshotSummary:
        """Materialize the live ordering as a new, immutable snapshot generation."""

        generation_id = uuid4()
        calculated_at = utcnow()
        entries = await self.ordered_entries(waitlist_id)
        self._db.add_all(
            [
                RankingSnapshot(
                    waitlist_id=waitlist_id,
                    generation_id=generation_id,
                    subscriber_id=entry.subscriber_id,
                    rank=entry.rank,
                    score=entry.score,
                    referral_count=entry.referral_count,
                    is_final=is_final,
                    calculated_at=calculated_at,
                )
                for entry in entries
            ]
        )
        await self._db.flush()
        logger.info(
            "Created leaderboard snapshot",
            waitlist_id=str(waitlist_id),
            generation_id=str(generation_id),
            is_final=is_final,
            entries=len(entries),
        )
        return SnapshotSummary(
            generation_id=generation_id,
            waitlist_id=waitlist_id,
            is_final=is_final,
            calculated_at=calculated_at,
            entries=len(entries),
        )

    async def reconcile_ranks(self, waitlist_id: UUID) -> RankReconciliation:
        """Rewrite every cached rank of a waitlist from the live ordering."""

        rows = await self._ranked_rows(waitlist_id)
        updated = 0
        for index, (subscriber, _count) in enumerate(rows):
            rank = index + 1
            if subscriber.rank != rank:
                subscriber.rank = rank
                updated += 1
        await self._db.flush()
        if updated:
            logger.info(
                "Reconciled cached leaderboard ranks",
                waitlist_id=str(waitlist_id),
                subscribers=len(rows),
                updated=updated,
            )
        return RankReconciliation(waitlist_id=waitlist_id, subscribers=len(rows), updated=updated)

    async def _live_page(self, waitlist_id: UUID, *, limit: int, offset: int) -> list[LeaderboardEntry]:
        rows = await self._ranked_rows(waitlist_id, limit=limit, offset=offset)
        return [
            self._to_entry(subscriber, count, offset + index + 1)
            for index, (subscriber, count) in enumerate(rows)
        ]

    async def _ranked_rows(
        self,
        waitlist_id: UUID,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> Sequence[tuple[Subscriber, int]]:
        counts = confirmed_referral_counts(waitlist_id)
        stmt = (
            select(Subscriber, func.coalesce(counts.c.referral_count, 0))
            .outerjoin(counts, counts.c.referrer_id == Subscriber.id)
            .where(Subscriber.waitlist_id == waitlist_id)
            .order_by(*RANKING_ORDER)
            .execution_options(populate_existing=True)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)
        result = await self._db.execute(stmt)
        return [(subscriber, int(count or 0)) for subscriber, count in result.all()]

    async def _resolve_generation(
        self,
        waitlist_id: UUID,
        *,
        as_of: datetime | None,
        final_only: bool,
    ) -> UUID | None:
        stmt = select(RankingSnapshot.generation_id).where(RankingSnapshot.waitlist_id == waitlist_id)
        if as_of is not None:
            stmt = stmt.where(RankingSnapshot.calculated_at <= as_of)
        if final_only:
            stmt = stmt.where(RankingSnapshot.is_final.is_(True))
        stmt = stmt.order_by(RankingSnapshot.calculated_at.desc()).limit(1)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

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

    async def _count_outranking(self, subscriber: Subscriber) -> int:
        stmt = select(func.count(Subscriber.id)).where(
            Subscriber.waitlist_id == subscriber.waitlist_id,
            or_(
                Subscriber.score > subscriber.score,
                and_(Subscriber.score == subscriber.score, Subscriber.created_at < subscriber.created_at),
                and_(
                    Subscriber.score == subscriber.score,
                    Subscriber.created_at == subscriber.created_at,
                    Subscriber.id < subscriber.id,
                ),
            ),
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    @staticmethod
    def _clamp_limit(limit: int | None) -> int:
        if limit is None:
            return settings.leaderboard_default_limit
        return max(1, min(int(limit), settings.leaderboard_max_limit))

    @staticmethod
    def _to_entry(subscriber: Subscriber, referral_count: int, rank: int) -> LeaderboardEntry:
        return LeaderboardEntry(
            subscriber_id=subscriber.id,
            email=subscriber.email,
            score=int(subscriber.score or 0),
            rank=rank,
            referral_count=referral_count,
            joined_at=subscriber.created_at,
        )


__all__ = [
    "LeaderboardEntry",
    "LeaderboardRanker",
    "RANKING_ORDER",
    "RankReconciliation",
    "SnapshotSummary",
    "confirmed_referral_counts",
]
