"""Recurring repair and batch jobs for referral scoring."""

__all__ = [
    "leaderboard",
    "rewards",
]
