from uuid import uuid4

import pytest

from waitlist_referrals.services.errors import InvalidRuleConditionError
from waitlist_referrals.services.scoring.conditions import (
    FirstReferralOnly,
    MinScore,
    ReferralCountAtLeast,
    ReferralCountEquals,
    ReferralCountLessThan,
    RequiresVerifiedEmail,
    SubscriberStats,
    conditions_match,
    parse_conditions,
)


def _stats(*, referral_count: int = 0, score: int = 0, verified: bool = False) -> SubscriberStats:
    return SubscriberStats(subscriber_id=uuid4(), score=score, verified=verified, referral_count=referral_count)


def test_empty_conditions_are_unconditional() -> None:
    assert parse_conditions(None) == ()
    assert parse_conditions({}) == ()
    assert conditions_match((), _stats())


def test_parse_referral_count_operators() -> None:
    conditions = parse_conditions({"referralCount": {"gte": 2, "lt": 5}})

    assert conditions == (ReferralCountAtLeast(2), ReferralCountLessThan(5))
    assert not conditions_match(conditions, _stats(referral_count=1))
    assert conditions_match(conditions, _stats(referral_count=4))
    assert not conditions_match(conditions, _stats(referral_count=5))


def test_bare_referral_count_means_equality() -> None:
    assert parse_conditions({"referralCount": 5}) == (ReferralCountEquals(5),)


def test_milestone_condition_fires_only_on_exact_count() -> None:
    conditions = parse_conditions({"referralCount": {"equals": 5}})

    assert [conditions_match(conditions, _stats(referral_count=count)) for count in (4, 5, 6)] == [
        False,
        True,
        False,
    ]


def test_first_referral_only() -> None:
    conditions = parse_conditions({"firstReferralOnly": True})

    assert conditions == (FirstReferralOnly(),)
    assert conditions_match(conditions, _stats(referral_count=1))
    assert not conditions_match(conditions, _stats(referral_count=2))
    assert parse_conditions({"firstReferralOnly": False}) == ()


def test_conditions_are_combined_with_and() -> None:
    conditions = parse_conditions({"minScore": 50, "requireEmailVerification": True})

    assert conditions == (MinScore(50), RequiresVerifiedEmail())
    assert not conditions_match(conditions, _stats(score=80, verified=False))
    assert not conditions_match(conditions, _stats(score=20, verified=True))
    assert conditions_match(conditions, _stats(score=50, verified=True))


@pytest.mark.parametrize(
    "raw",
    [
        {"referralCount": {"between": [1, 3]}},
        {"referralCount": True},
        {"referralCount": "5"},
        {"firstReferralOnly": "yes"},
        {"minScore": 2.5},
        {"tierName": "gold"},
        ["referralCount"],
    ],
)
def test_invalid_conditions_raise(raw) -> None:
    with pytest.raises(InvalidRuleConditionError):
        parse_conditions(raw)
