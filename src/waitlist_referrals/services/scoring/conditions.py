"""Point rule conditions.

Stored rules carry a JSON blob such as ``{"referralCount": {"equals": 5}}`` or
``{"firstReferralOnly": true}``. The blob is parsed once into a tuple of
condition objects; a rule fires only when every condition matches.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from waitlist_referrals.services.errors import InvalidRuleConditionError


@dataclass(frozen=True, slots=True)
class SubscriberStats:
    """Subscriber facts consulted by rule conditions."""

    subscriber_id: UUID
    score: int
    verified: bool
    referral_count: int


@dataclass(frozen=True, slots=True)
class ReferralCountEquals:
    value: int

    def matches(self, stats: SubscriberStats) -> bool:
        return stats.referral_count == self.value


@dataclass(frozen=True, slots=True)
class ReferralCountAtLeast:
    value: int

    def matches(self, stats: SubscriberStats) -> bool:
        return stats.referral_count >= self.value


@dataclass(frozen=True, slots=True)
class ReferralCountAtMost:
    value: int

    def matches(self, stats: SubscriberStats) -> bool:
        return stats.referral_count <= self.value


@dataclass(frozen=True, slots=True)
class ReferralCountGreaterThan:
    value: int

    def matches(self, stats: SubscriberStats) -> bool:
        return stats.referral_count > self.value


@dataclass(frozen=True, slots=True)
class ReferralCountLessThan:
    value: int

    def matches(self, stats: SubscriberStats) -> bool:
        return stats.referral_count < self.value


@dataclass(frozen=True, slots=True)
class FirstReferralOnly:
    def matches(self, stats: SubscriberStats) -> bool:
        return stats.referral_count == 1


@dataclass(frozen=True, slots=True)
class MinScore:
    value: int

    def matches(self, stats: SubscriberStats) -> bool:
        return stats.score >= self.value


@dataclass(frozen=True, slots=True)
class RequiresVerifiedEmail:
    def matches(self, stats: SubscriberStats) -> bool:
        return stats.verified


RuleCondition = (
    ReferralCountEquals
    | ReferralCountAtLeast
    | ReferralCountAtMost
    | ReferralCountGreaterThan
    | ReferralCountLessThan
    | FirstReferralOnly
    | MinScore
    | RequiresVerifiedEmail
)

_REFERRAL_COUNT_OPERATORS: dict[str, type] = {
    "equals": ReferralCountEquals,
    "gte": ReferralCountAtLeast,
    "lte": ReferralCountAtMost,
    "gt": ReferralCountGreaterThan,
    "lt": ReferralCountLessThan,
}

_KNOWN_KEYS = {"referralCount", "firstReferralOnly", "minScore", "requireEmailVerification"}


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise InvalidRuleConditionError(f"Condition '{key}' expects an integer, got {value!r}")
    return int(value)


def _as_flag(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise InvalidRuleConditionError(f"Condition '{key}' expects a boolean, got {value!r}")
    return value


def parse_conditions(raw: Mapping[str, Any] | None) -> tuple[RuleCondition, ...]:
    """Parse a stored condition blob; ``None`` or ``{}`` means unconditional."""

    if raw is None:
        return ()
    if not isinstance(raw, Mapping):
        raise InvalidRuleConditionError(f"Conditions must be an object, got {type(raw).__name__}")

    unknown = set(raw) - _KNOWN_KEYS
    if unknown:
        raise InvalidRuleConditionError(f"Unsupported condition keys: {', '.join(sorted(unknown))}")

    parsed: list[RuleCondition] = []

    referral_count = raw.get("referralCount")
    if referral_count is not None:
        if isinstance(referral_count, Mapping):
            unknown_ops = set(referral_count) - set(_REFERRAL_COUNT_OPERATORS)
            if unknown_ops:
                raise InvalidRuleConditionError(
                    f"Unsupported referralCount operators: {', '.join(sorted(unknown_ops))}"
                )
            for operator, condition_cls in _REFERRAL_COUNT_OPERATORS.items():
                if operator in referral_count:
                    value = _as_int(f"referralCount.{operator}", referral_count[operator])
                    parsed.append(condition_cls(value))
        else:
            # Bare number is shorthand for equality.
            parsed.append(ReferralCountEquals(_as_int("referralCount", referral_count)))

    if "firstReferralOnly" in raw and _as_flag("firstReferralOnly", raw["firstReferralOnly"]):
        parsed.append(FirstReferralOnly())

    if raw.get("minScore") is not None:
        parsed.append(MinScore(_as_int("minScore", raw["minScore"])))

    if "requireEmailVerification" in raw and _as_flag(
        "requireEmailVerification", raw["requireEmailVerification"]
    ):
        parsed.append(RequiresVerifiedEmail())

    return tuple(parsed)


def conditions_match(conditions: tuple[RuleCondition, ...], stats: SubscriberStats) -> bool:
    return all(condition.matches(stats) for condition in conditions)


__all__ = [
    "FirstReferralOnly",
    "MinScore",
    "ReferralCountAtLeast",
    "ReferralCountAtMost",
    "ReferralCountEquals",
    "ReferralCountGreaterThan",
    "ReferralCountLessThan",
    "RequiresVerifiedEmail",
    "RuleCondition",
    "SubscriberStats",
    "conditions_match",
    "parse_conditions",
]
