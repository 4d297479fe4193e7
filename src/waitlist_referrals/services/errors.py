"""Exceptions shared by the scoring, leaderboard, referral and reward services."""

from __future__ import annotations

from uuid import UUID

from waitlist_referrals.models import CampaignStatus


class RewardsDomainError(RuntimeError):
    """Base exception for referral and gamification failures."""


class SubscriberNotFoundError(RewardsDomainError):
    def __init__(self, subscriber_id: UUID) -> None:
        super().__init__(f"Subscriber {subscriber_id} not found")
        self.subscriber_id = subscriber_id


class CampaignNotFoundError(RewardsDomainError):
    """Raised when a referral campaign lookup fails."""


class PointRuleNotFoundError(RewardsDomainError):
    """Raised when a point rule lookup fails."""


class RewardNotFoundError(RewardsDomainError):
    """Raised when a reward lookup fails."""


class SubscriberRewardNotFoundError(RewardsDomainError):
    """Raised when an unlock record lookup fails."""


class CampaignConflictError(RewardsDomainError):
    """Raised when a waitlist would end up with more than one active campaign."""


class InvalidCampaignTransitionError(RewardsDomainError):
    """Raised when a status change violates the campaign state machine."""

    def __init__(self, current_status: CampaignStatus, requested_status: CampaignStatus) -> None:
        message = f"Cannot transition campaign from {current_status.value} to {requested_status.value}"
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class InvalidRuleConditionError(ValueError):
    """Raised when a point rule condition blob cannot be parsed."""


class RewardCapacityReachedError(RewardsDomainError):
    """Raised when a manual grant targets a reward whose capacity is exhausted."""


class InvalidRewardTransitionError(RewardsDomainError):
    """Raised when an unlock record cannot move to the requested status."""


__all__ = [
    "CampaignConflictError",
    "CampaignNotFoundError",
    "InvalidCampaignTransitionError",
    "InvalidRewardTransitionError",
    "InvalidRuleConditionError",
    "PointRuleNotFoundError",
    "RewardCapacityReachedError",
    "RewardNotFoundError",
    "RewardsDomainError",
    "SubscriberNotFoundError",
    "SubscriberRewardNotFoundError",
]
