"""Reward job exports."""

from .resolution import run_reward_resolution  # noqa: F401

__all__ = ["run_reward_resolution"]
