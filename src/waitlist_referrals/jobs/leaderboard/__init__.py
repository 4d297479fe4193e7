"""Leaderboard job exports."""

from .reconciliation import run_leaderboard_reconciliation  # noqa: F401

__all__ = ["run_leaderboard_reconciliation"]
