"""Reward service exports."""

from .resolution import (  # noqa: F401
    RewardCandidate,
    RewardResolutionEngine,
    RewardResolutionSummary,
    reward_qualifies,
)
