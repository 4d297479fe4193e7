"""Leaderboard service exports."""

from .ranker import (  # noqa: F401
    LeaderboardEntry,
    LeaderboardRanker,
    RankReconciliation,
    SnapshotSummary,
)
