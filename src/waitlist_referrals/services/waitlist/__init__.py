"""Waitlist join service exports."""

from .join import (  # noqa: F401
    JoinResult,
    SubscriberProgress,
    UnlockedRewardView,
    VerificationResult,
    WaitlistJoinService,
    normalize_email,
)
