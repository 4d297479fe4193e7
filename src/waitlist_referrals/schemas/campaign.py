from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from waitlist_referrals.models import PointEvent, RewardDistributionRule, RewardType

# meta: schema: referral-campaign


class CampaignSettings(BaseModel):
    """Settings bag stored on ``ReferralCampaign.settings``.

    Accepts both the snake_case attribute names and the camelCase keys used by
    the dashboard.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    referrals_enabled: bool = Field(True, alias="referralsEnabled")
    leaderboard_enabled: bool = Field(True, alias="leaderboardEnabled")
    allow_self_referrals: bool = Field(False, alias="allowSelfReferrals")
    require_email_verification: bool = Field(False, alias="requireEmailVerification")
    scoring_mode: Literal["POINTS", "REFERRALS_ONLY"] = Field("POINTS", alias="scoringMode")
    tie_breaker: Literal["EARLIEST_SIGNUP", "LATEST_SIGNUP"] = Field("EARLIEST_SIGNUP", alias="tieBreaker")
    max_winners: int | None = Field(None, alias="maxWinners", gt=0)
    snapshot_leaderboard: bool = Field(False, alias="snapshotLeaderboard")

    @classmethod
    def from_stored(cls, raw: dict[str, Any] | None) -> "CampaignSettings":
        return cls.model_validate(raw or {})

    def to_stored(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class CampaignCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    settings: CampaignSettings = Field(default_factory=CampaignSettings)
    starts_at: datetime | None = Field(None, alias="startsAt")
    ends_at: datetime | None = Field(None, alias="endsAt")


class PointRuleCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event: PointEvent
    points: int
    conditions: dict[str, Any] | None = None
    name: str | None = Field(None, min_length=1)
    description: str | None = None
    is_active: bool = Field(True, alias="isActive")
    priority: int = 0


class PointRuleUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event: PointEvent | None = None
    points: int | None = None
    conditions: dict[str, Any] | None = None
    name: str | None = Field(None, min_length=1)
    description: str | None = None
    is_active: bool | None = Field(None, alias="isActive")
    priority: int | None = None


class RewardRuleParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    top_n: int | None = Field(None, alias="topN", gt=0)
    min_score: int | None = Field(None, alias="minScore")
    min_referrals: int | None = Field(None, alias="minReferrals", gt=0)

    def to_stored(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


_REQUIRED_RULE_PARAM: dict[RewardDistributionRule, str] = {
    RewardDistributionRule.TOP_N: "top_n",
    RewardDistributionRule.MIN_SCORE: "min_score",
    RewardDistributionRule.MIN_REFERRALS: "min_referrals",
}


class RewardCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    description: str | None = None
    reward_type: RewardType = Field(RewardType.CUSTOM, alias="type")
    distribution_rule: RewardDistributionRule = Field(..., alias="distributionRule")
    rule_params: RewardRuleParams = Field(default_factory=RewardRuleParams, alias="ruleParams")
    payload: dict[str, Any] = Field(default_factory=dict)
    max_recipients: int | None = Field(None, alias="maxRecipients", gt=0)

    @model_validator(mode="after")
    def _require_rule_param(self) -> "RewardCreate":
        required = _REQUIRED_RULE_PARAM.get(self.distribution_rule)
        if required and getattr(self.rule_params, required) is None:
            raise ValueError(f"{self.distribution_rule.value} rewards require rule parameter '{required}'")
        return self


class RewardUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(None, min_length=1)
    description: str | None = None
    reward_type: RewardType | None = Field(None, alias="type")
    distribution_rule: RewardDistributionRule | None = Field(None, alias="distributionRule")
    rule_params: RewardRuleParams | None = Field(None, alias="ruleParams")
    payload: dict[str, Any] | None = None
    max_recipients: int | None = Field(None, alias="maxRecipients", gt=0)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str | None) -> str | None:
        return value.strip() if value else value


__all__ = [
    "CampaignCreate",
    "CampaignSettings",
    "PointRuleCreate",
    "PointRuleUpdate",
    "RewardCreate",
    "RewardRuleParams",
    "RewardUpdate",
]
