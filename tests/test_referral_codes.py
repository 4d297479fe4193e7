import pytest

from waitlist_referrals.core.settings import settings
from waitlist_referrals.services.referrals import (
    REFERRAL_CODE_ALPHABET,
    ReferralCodeExhaustedError,
    generate_referral_code,
    generate_unique_referral_code,
    normalize_referral_code,
)
from waitlist_referrals.services.referrals import codes


def test_generated_codes_use_unambiguous_alphabet() -> None:
    code = generate_referral_code()

    assert len(code) == settings.referral_code_length
    assert set(code) <= set(REFERRAL_CODE_ALPHABET)
    assert not set("01IO") & set(REFERRAL_CODE_ALPHABET)
    assert len(generate_referral_code(12)) == 12


def test_normalize_referral_code() -> None:
    assert normalize_referral_code("  ab12cd34 ") == "AB12CD34"
    assert normalize_referral_code("   ") is None
    assert normalize_referral_code(None) is None


@pytest.mark.asyncio
async def test_unique_code_skips_taken_codes(session_factory, waitlist_id, make_subscriber, monkeypatch) -> None:
    candidates = iter(["TAKEN234", "FRESH234"])
    monkeypatch.setattr(codes, "generate_referral_code", lambda: next(candidates))

    async with session_factory() as session:
        await make_subscriber(session, waitlist_id, referral_code="TAKEN234")

        assert await generate_unique_referral_code(session) == "FRESH234"


@pytest.mark.asyncio
async def test_unique_code_gives_up_after_budget(session_factory, waitlist_id, make_subscriber, monkeypatch) -> None:
    monkeypatch.setattr(codes, "generate_referral_code", lambda: "TAKEN234")

    async with session_factory() as session:
        await make_subscriber(session, waitlist_id, referral_code="TAKEN234")

        with pytest.raises(ReferralCodeExhaustedError):
            await generate_unique_referral_code(session)
