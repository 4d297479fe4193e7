"""Referral service exports."""

from .attribution import (  # noqa: F401
    CodeValidation,
    ReferralAttributionFlow,
    ReferralOutcome,
    ReferralRejection,
)
from .codes import (  # noqa: F401
    REFERRAL_CODE_ALPHABET,
    ReferralCodeExhaustedError,
    generate_referral_code,
    generate_unique_referral_code,
    normalize_referral_code,
)
