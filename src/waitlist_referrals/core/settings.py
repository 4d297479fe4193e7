from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    service_name: str = "waitlist-referrals"
    service_version: str = "0.1.0"
    database_url: str = "sqlite+aiosqlite:///./waitlist_referrals.db"

    # Referral codes
    referral_code_length: int = 8
    referral_code_max_attempts: int = 10

    # Leaderboard pagination
    leaderboard_default_limit: int = 100
    leaderboard_max_limit: int = 500

    # Campaign bootstrap
    seed_default_campaign_content: bool = True

    # Scheduled repair jobs
    rewards_job_scheduler_enabled: bool = False
    rewards_job_schedule_path: str = "config/schedules.toml"

    @field_validator("referral_code_length", "referral_code_max_attempts", mode="after")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
