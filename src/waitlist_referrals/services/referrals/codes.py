"""Referral code generation."""

from __future__ import annotations

import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waitlist_referrals.core.settings import settings
from waitlist_referrals.models import Subscriber
from waitlist_referrals.services.errors import RewardsDomainError

# No 0/O or 1/I so codes survive being read aloud or retyped.
REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class ReferralCodeExhaustedError(RewardsDomainError):
    """Raised when no unused referral code was found within the attempt budget."""


def generate_referral_code(length: int | None = None) -> str:
    size = length or settings.referral_code_length
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(size))


def normalize_referral_code(code: str | None) -> str | None:
    if code is None:
        return None
    cleaned = code.strip().upper()
    return cleaned or None


async def generate_unique_referral_code(db_session: AsyncSession) -> str:
    """Generate a code not yet held by any subscriber.

    The unique constraint on ``referral_code`` still guards the insert; this
    check only keeps collisions from reaching it in the common case.
    """

    for _ in range(settings.referral_code_max_attempts):
        candidate = generate_referral_code()
        stmt = select(Subscriber.id).where(Subscriber.referral_code == candidate)
        result = await db_session.execute(stmt)
        if result.scalar_one_or_none() is None:
            return candidate
    raise ReferralCodeExhaustedError(
        f"Unable to generate a unique referral code after {settings.referral_code_max_attempts} attempts"
    )


__all__ = [
    "REFERRAL_CODE_ALPHABET",
    "ReferralCodeExhaustedError",
    "generate_referral_code",
    "generate_unique_referral_code",
    "normalize_referral_code",
]
