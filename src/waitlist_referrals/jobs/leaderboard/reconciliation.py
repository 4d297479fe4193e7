"""Repair job that rebuilds cached scores and ranks from the point ledger."""

# meta: job: leaderboard-reconciliation

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waitlist_referrals.models import Subscriber
from waitlist_referrals.services.leaderboard import LeaderboardRanker
from waitlist_referrals.services.scoring import ScoringEngine

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def run_leaderboard_reconciliation(
    *,
    session_factory: SessionFactory,
    waitlist_id: UUID | str | None = None,
    repair: bool = True,
) -> Dict[str, Any]:
    """Reconcile ``Subscriber.score`` against the ledger, then rewrite cached ranks.

    With ``repair=False`` the drift is reported and the transaction rolled back.
    """

    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    async with session as managed_session:
        scoring = ScoringEngine(managed_session)
        ranker = LeaderboardRanker(managed_session)

        waitlist_ids = await _target_waitlists(managed_session, waitlist_id)
        drifted: List[Dict[str, Any]] = []
        ranks_updated = 0
        subscribers = 0
        for target in waitlist_ids:
            drift = await scoring.reconcile_scores(target, repair=repair)
            drifted.extend(
                {
                    "waitlist_id": str(target),
                    "subscriber_id": str(record.subscriber_id),
                    "cached_score": record.cached_score,
                    "ledger_score": record.ledger_score,
                }
                for record in drift
            )
            reconciliation = await ranker.reconcile_ranks(target)
            ranks_updated += reconciliation.updated
            subscribers += reconciliation.subscribers

        if repair:
            await managed_session.commit()
        else:
            await managed_session.rollback()

        summary = {
            "waitlists": len(waitlist_ids),
            "subscribers": subscribers,
            "scores_drifted": len(drifted),
            "ranks_updated": ranks_updated,
            "repaired": repair,
        }
        logger.bind(summary=summary, drift=drifted).info("Leaderboard reconciliation completed")
        return summary


async def _target_waitlists(session: AsyncSession, waitlist_id: UUID | str | None) -> List[UUID]:
    if waitlist_id is not None:
        return [waitlist_id if isinstance(waitlist_id, UUID) else UUID(str(waitlist_id))]
    result = await session.execute(select(Subscriber.waitlist_id).distinct())
    return list(result.scalars().all())


__all__ = ["run_leaderboard_reconciliation"]
