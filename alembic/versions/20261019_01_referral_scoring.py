"""Create referral, scoring, reward and leaderboard snapshot tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)

campaign_status = sa.Enum("draft", "active", "paused", "ended", name="referral_campaign_status")
referral_status = sa.Enum("pending", "completed", "confirmed", "verified", "cancelled", name="referral_status")
point_event = sa.Enum("signup", "referral_confirmed", "email_verified", "milestone", "manual", name="point_event")
# Created with point_rules; the ledger table reuses the existing type.
ledger_point_event = postgresql.ENUM(
    "signup", "referral_confirmed", "email_verified", "milestone", "manual", name="point_event", create_type=False
)
reward_type = sa.Enum("feature", "access", "discount", "custom", name="reward_type")
distribution_rule = sa.Enum("top_n", "min_score", "min_referrals", "manual", name="reward_distribution_rule")
subscriber_reward_status = sa.Enum("unlocked", "claimed", name="subscriber_reward_status")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "waitlist_subscribers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("waitlist_id", UUID, nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("referral_code", sa.String(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rank", sa.Integer(), nullable=True),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "referred_by_id",
            UUID,
            sa.ForeignKey("waitlist_subscribers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
        sa.UniqueConstraint("waitlist_id", "email", name="uq_waitlist_subscribers_waitlist_email"),
    )
    op.create_index("ix_waitlist_subscribers_waitlist_id", "waitlist_subscribers", ["waitlist_id"])
    op.create_index("ix_waitlist_subscribers_referral_code", "waitlist_subscribers", ["referral_code"], unique=True)
    op.create_index(
        "ix_waitlist_subscribers_ranking",
        "waitlist_subscribers",
        ["waitlist_id", "score", "created_at"],
    )

    op.create_table(
        "referral_campaigns",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("waitlist_id", UUID, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", campaign_status, nullable=False, server_default="draft"),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_referral_campaigns_waitlist_id", "referral_campaigns", ["waitlist_id"])

    op.create_table(
        "referrals",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("waitlist_id", UUID, nullable=False),
        sa.Column(
            "referrer_id",
            UUID,
            sa.ForeignKey("waitlist_subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("referred_email", sa.String(), nullable=False),
        sa.Column(
            "referred_id",
            UUID,
            sa.ForeignKey("waitlist_subscribers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", referral_status, nullable=False, server_default="pending"),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "waitlist_id",
            "referrer_id",
            "referred_email",
            name="uq_referrals_waitlist_referrer_email",
        ),
    )
    op.create_index("ix_referrals_waitlist_id", "referrals", ["waitlist_id"])
    op.create_index("ix_referrals_referrer_id", "referrals", ["referrer_id"])

    op.create_table(
        "point_rules",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("waitlist_id", UUID, nullable=False),
        sa.Column("event", point_event, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index(
        "ix_point_rules_waitlist_event_priority",
        "point_rules",
        ["waitlist_id", "event", "priority"],
    )

    op.create_table(
        "point_ledger_entries",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "subscriber_id",
            UUID,
            sa.ForeignKey("waitlist_subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "campaign_id",
            UUID,
            sa.ForeignKey("referral_campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event", ledger_point_event, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_point_ledger_entries_subscriber_campaign",
        "point_ledger_entries",
        ["subscriber_id", "campaign_id"],
    )

    op.create_table(
        "campaign_rewards",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "campaign_id",
            UUID,
            sa.ForeignKey("referral_campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reward_type", reward_type, nullable=False),
        sa.Column("distribution_rule", distribution_rule, nullable=False),
        sa.Column("rule_params", sa.JSON(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("max_recipients", sa.Integer(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_campaign_rewards_campaign_id", "campaign_rewards", ["campaign_id"])

    op.create_table(
        "subscriber_rewards",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "subscriber_id",
            UUID,
            sa.ForeignKey("waitlist_subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "reward_id",
            UUID,
            sa.ForeignKey("campaign_rewards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", subscriber_reward_status, nullable=False, server_default="unlocked"),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.UniqueConstraint("subscriber_id", "reward_id", name="uq_subscriber_rewards_subscriber_reward"),
    )
    op.create_index("ix_subscriber_rewards_reward_id", "subscriber_rewards", ["reward_id"])

    op.create_table(
        "ranking_snapshots",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("waitlist_id", UUID, nullable=False),
        sa.Column("generation_id", UUID, nullable=False),
        sa.Column(
            "subscriber_id",
            UUID,
            sa.ForeignKey("waitlist_subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("referral_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_final", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_ranking_snapshots_generation_rank", "ranking_snapshots", ["generation_id", "rank"])
    op.create_index(
        "ix_ranking_snapshots_waitlist_calculated",
        "ranking_snapshots",
        ["waitlist_id", "calculated_at"],
    )


def downgrade() -> None:
    op.drop_table("ranking_snapshots")
    op.drop_table("subscriber_rewards")
    op.drop_table("campaign_rewards")
    op.drop_table("point_ledger_entries")
    op.drop_table("point_rules")
    op.drop_table("referrals")
    op.drop_table("referral_campaigns")
    op.drop_table("waitlist_subscribers")

    bind = op.get_bind()
    for enum_type in (
        subscriber_reward_status,
        distribution_rule,
        reward_type,
        point_event,
        referral_status,
        campaign_status,
    ):
        enum_type.drop(bind, checkfirst=True)
