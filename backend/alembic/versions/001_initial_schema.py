"""Initial ads engine schema: users, credentials, settings, creatives, campaigns and the run ledger.

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)


def _timestamps(*names: str) -> list[sa.Column]:
    return [sa.Column(n, sa.DateTime(), nullable=True, server_default=sa.text("now()")) for n in names]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID, nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        *_timestamps("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "ad_platform_credentials",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("ad_account_id", sa.String(255), nullable=False),
        sa.Column("page_id", sa.String(255), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("token_expires_at", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(20), nullable=True, server_default="active"),
        *_timestamps("created_at", "updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_credential_per_user"),
    )
    op.create_index("ix_ad_platform_credentials_status", "ad_platform_credentials", ["status"])

    op.create_table(
        "user_ads_settings",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("ads_enabled", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("ads_mode", sa.String(20), nullable=True, server_default="pulse"),
        sa.Column("pulse_settings", sa.JSON(), nullable=True),
        sa.Column("momentum_settings", sa.JSON(), nullable=True),
        sa.Column("auto_pause_losers", sa.Boolean(), nullable=True, server_default=sa.true()),
        *_timestamps("updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_ads_settings_per_user"),
    )
    op.create_index("ix_user_ads_settings_enabled", "user_ads_settings", ["ads_enabled"])

    op.create_table(
        "goal_settings",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("goal_key", sa.String(64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("priority", sa.Integer(), nullable=True, server_default="3"),
        sa.Column("budget_hint", sa.Float(), nullable=True),
        sa.Column("auto_scale", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("testing_enabled", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("scaling_enabled", sa.Boolean(), nullable=True, server_default=sa.true()),
        *_timestamps("updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "goal_key", name="uq_goal_setting_per_user"),
    )
    op.create_index("ix_goal_settings_user_active", "goal_settings", ["user_id", "is_active"])

    op.create_table(
        "creatives",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("goal_key", sa.String(64), nullable=False),
        sa.Column("creative_type", sa.String(20), nullable=True, server_default="image"),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("destination_url", sa.Text(), nullable=True),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=True, server_default="ready"),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_creatives_user_goal_status", "creatives", ["user_id", "goal_key", "status"])

    op.create_table(
        "ad_campaigns",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("goal_key", sa.String(64), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("platform_campaign_id", sa.String(255), nullable=False),
        sa.Column("daily_budget", sa.Float(), nullable=False),
        sa.Column("status", sa.String(20), nullable=True, server_default="active"),
        sa.Column("winner_creative_id", UUID, nullable=True),
        sa.Column("last_scaled_at", sa.DateTime(), nullable=True),
        sa.Column("last_promoted_at", sa.DateTime(), nullable=True),
        sa.Column("last_rotated_at", sa.DateTime(), nullable=True),
        *_timestamps("created_at", "updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "goal_key", "role", name="uq_campaign_per_goal_role"),
    )
    op.create_index("ix_ad_campaigns_user_id", "ad_campaigns", ["user_id"])
    op.create_index("ix_ad_campaigns_platform_id", "ad_campaigns", ["platform_campaign_id"])

    op.create_table(
        "ad_sets",
        sa.Column("id", UUID, nullable=False),
        sa.Column("campaign_id", UUID, nullable=False),
        sa.Column("creative_id", UUID, nullable=False),
        sa.Column("platform_adset_id", sa.String(255), nullable=False),
        sa.Column("platform_ad_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=True, server_default="active"),
        sa.Column("last_metrics", sa.JSON(), nullable=True),
        sa.Column("metrics_synced_at", sa.DateTime(), nullable=True),
        *_timestamps("created_at", "updated_at"),
        sa.ForeignKeyConstraint(["campaign_id"], ["ad_campaigns.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["creative_id"], ["creatives.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("platform_adset_id", name="uq_ad_sets_platform_id"),
    )
    op.create_index("ix_ad_sets_campaign_id", "ad_sets", ["campaign_id"])
    op.create_index("ix_ad_sets_creative_id", "ad_sets", ["creative_id"])

    op.create_table(
        "orchestrator_runs",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("run_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(30), nullable=True, server_default="running"),
        sa.Column("ads_mode", sa.String(20), nullable=True),
        sa.Column("campaigns_created", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("winners_promoted", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("budgets_scaled", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("adsets_paused", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("errors_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps("started_at"),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    # The run lock: at most one running run per user
    op.create_index(
        "uq_orchestrator_runs_one_running", "orchestrator_runs", ["user_id"],
        unique=True, postgresql_where=sa.text("status = 'running'"),
    )
    op.create_index("ix_orchestrator_runs_user_started", "orchestrator_runs", ["user_id", "started_at"])
    op.create_index("ix_orchestrator_runs_status", "orchestrator_runs", ["status"])

    op.create_table(
        "orchestrator_actions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("run_id", UUID, nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(40), nullable=False),
        sa.Column("goal_key", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["run_id"], ["orchestrator_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "seq", name="uq_action_seq_per_run"),
    )
    op.create_index("ix_orchestrator_actions_run_id", "orchestrator_actions", ["run_id"])
    op.create_index("ix_orchestrator_actions_type", "orchestrator_actions", ["action_type"])


def downgrade() -> None:
    op.drop_table("orchestrator_actions")
    op.drop_index("uq_orchestrator_runs_one_running", table_name="orchestrator_runs")
    op.drop_table("orchestrator_runs")
    op.drop_table("ad_sets")
    op.drop_table("ad_campaigns")
    op.drop_table("creatives")
    op.drop_table("goal_settings")
    op.drop_table("user_ads_settings")
    op.drop_table("ad_platform_credentials")
    op.drop_table("users")
