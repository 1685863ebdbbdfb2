"""initial schema: users, meta credentials, ad hierarchy, metrics, sync jobs, tavus

Revision ID: 001
Revises:
Create Date: 2026-10-17

Creates:
- users, meta_credentials, ad_accounts
- campaigns, adsets, ads and their daily metric tables
- sync_jobs
- tavus_connections, tavus_replicas, tavus_personas, tavus_videos
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _user_fk(**kwargs) -> sa.Column:
    return sa.Column(
        "user_id", postgresql.UUID(as_uuid=True),
        sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True, **kwargs,
    )


def _metric_columns() -> list[sa.Column]:
    return [
        sa.Column("date", sa.Date, nullable=False, index=True),
        sa.Column("impressions", sa.BigInteger, server_default="0"),
        sa.Column("clicks", sa.BigInteger, server_default="0"),
        sa.Column("unique_clicks", sa.BigInteger, server_default="0"),
        sa.Column("reach", sa.BigInteger, server_default="0"),
        sa.Column("frequency", sa.Numeric(10, 4), server_default="0"),
        sa.Column("spend", sa.Numeric(14, 2), server_default="0"),
        sa.Column("conversions", sa.Integer, server_default="0"),
        sa.Column("actions", postgresql.JSONB, server_default="[]"),
        sa.Column("action_values", postgresql.JSONB, server_default="[]"),
        sa.Column("synced_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # ---- Users & credentials ----

    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("email", sa.String(255), nullable=False, unique=True, index=True),
        sa.Column("full_name", sa.String(255)),
        sa.Column("is_active", sa.Boolean, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "meta_credentials",
        _uuid_pk(),
        _user_fk(unique=True),
        sa.Column("access_token_encrypted", sa.Text, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("has_ad_permissions", sa.Boolean, server_default="false"),
        sa.Column("fb_user_id", sa.String(50)),
        sa.Column("fb_user_name", sa.String(200)),
        sa.Column("scopes", postgresql.JSONB, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "ad_accounts",
        _uuid_pk(),
        _user_fk(),
        sa.Column("account_id", sa.String(50), nullable=False, index=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("currency", sa.String(10), server_default="USD"),
        sa.Column("timezone_name", sa.String(100), server_default="UTC"),
        sa.Column("account_status", sa.String(30), server_default="ACTIVE"),
        sa.Column("amount_spent", sa.String(50)),
        sa.Column("business_country_code", sa.String(10)),
        sa.Column("is_active", sa.Boolean, server_default="true"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "account_id", name="uq_ad_account_user_account"),
    )

    # ---- Hierarchy ----

    op.create_table(
        "campaigns",
        _uuid_pk(),
        sa.Column("ad_account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("campaign_id", sa.String(50), nullable=False, index=True),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("objective", sa.String(50)),
        sa.Column("status", sa.String(30), server_default="PAUSED"),
        sa.Column("daily_budget", sa.BigInteger),
        sa.Column("lifetime_budget", sa.BigInteger),
        sa.Column("special_ad_categories", postgresql.JSONB, server_default="[]"),
        sa.Column("buying_type", sa.String(30), server_default="AUCTION"),
        sa.Column("raw_data", postgresql.JSONB, server_default="{}"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("ad_account_id", "campaign_id", name="uq_campaign_account_campaign"),
    )

    op.create_table(
        "adsets",
        _uuid_pk(),
        sa.Column("campaign_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("adset_id", sa.String(50), nullable=False, index=True),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("status", sa.String(30), server_default="PAUSED"),
        sa.Column("daily_budget", sa.BigInteger),
        sa.Column("lifetime_budget", sa.BigInteger),
        sa.Column("targeting", postgresql.JSONB, server_default="{}"),
        sa.Column("optimization_goal", sa.String(50)),
        sa.Column("billing_event", sa.String(50)),
        sa.Column("bid_strategy", sa.String(50)),
        sa.Column("bid_amount", sa.BigInteger),
        sa.Column("start_time", sa.DateTime(timezone=True)),
        sa.Column("end_time", sa.DateTime(timezone=True)),
        sa.Column("raw_data", postgresql.JSONB, server_default="{}"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("campaign_id", "adset_id", name="uq_adset_campaign_adset"),
    )

    op.create_table(
        "ads",
        _uuid_pk(),
        sa.Column("adset_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("adsets.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("ad_id", sa.String(50), nullable=False, index=True),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("status", sa.String(30), server_default="PAUSED"),
        sa.Column("creative_id", sa.String(50)),
        sa.Column("creative_data", postgresql.JSONB, server_default="{}"),
        sa.Column("raw_data", postgresql.JSONB, server_default="{}"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("adset_id", "ad_id", name="uq_ad_adset_ad"),
    )

    # ---- Daily metrics ----

    for table, parent, parent_table, constraint in (
        ("campaign_metrics", "campaign_id", "campaigns", "uq_campaign_metric_day"),
        ("adset_metrics", "adset_id", "adsets", "uq_adset_metric_day"),
        ("ad_metrics", "ad_id", "ads", "uq_ad_metric_day"),
    ):
        op.create_table(
            table,
            _uuid_pk(),
            sa.Column(parent, postgresql.UUID(as_uuid=True), sa.ForeignKey(f"{parent_table}.id", ondelete="CASCADE"), nullable=False, index=True),
            *_metric_columns(),
            sa.UniqueConstraint(parent, "date", name=constraint),
        )

    # ---- Sync jobs ----

    op.create_table(
        "sync_jobs",
        _uuid_pk(),
        _user_fk(),
        sa.Column("ad_account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("job_type", sa.String(30), server_default="metrics"),
        sa.Column("trigger", sa.String(30), server_default="manual"),
        sa.Column("status", sa.String(30), server_default="pending", index=True),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("error_message", sa.Text),
        sa.Column("details", postgresql.JSONB, server_default="{}"),
        sa.Column("celery_task_id", sa.String(255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ---- Tavus ----

    op.create_table(
        "tavus_connections",
        _uuid_pk(),
        _user_fk(unique=True),
        sa.Column("api_key_encrypted", sa.Text, nullable=False),
        sa.Column("is_connected", sa.Boolean, server_default="true"),
        sa.Column("connection_status", sa.String(30), server_default="connected"),
        sa.Column("last_connected_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "tavus_replicas",
        _uuid_pk(),
        _user_fk(),
        sa.Column("replica_id", sa.String(100), nullable=False),
        sa.Column("replica_name", sa.String(300), nullable=False),
        sa.Column("status", sa.String(30), server_default="training"),
        sa.Column("train_video_url", sa.Text),
        sa.Column("thumbnail_url", sa.Text),
        sa.Column("raw_data", postgresql.JSONB, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "replica_id", name="uq_tavus_replica_user"),
    )

    op.create_table(
        "tavus_personas",
        _uuid_pk(),
        _user_fk(),
        sa.Column("persona_id", sa.String(100), nullable=False),
        sa.Column("persona_name", sa.String(300), nullable=False),
        sa.Column("system_prompt", sa.Text),
        sa.Column("context", sa.Text),
        sa.Column("default_replica_id", sa.String(100)),
        sa.Column("raw_data", postgresql.JSONB, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "persona_id", name="uq_tavus_persona_user"),
    )

    op.create_table(
        "tavus_videos",
        _uuid_pk(),
        _user_fk(),
        sa.Column("video_id", sa.String(100), nullable=False),
        sa.Column("video_name", sa.String(300), nullable=False),
        sa.Column("replica_id", sa.String(100)),
        sa.Column("script", sa.Text, nullable=False),
        sa.Column("background_url", sa.Text),
        sa.Column("status", sa.String(30), server_default="queued"),
        sa.Column("download_url", sa.Text),
        sa.Column("hosted_url", sa.Text),
        sa.Column("raw_data", postgresql.JSONB, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "video_id", name="uq_tavus_video_user"),
    )


def downgrade() -> None:
    op.drop_table("tavus_videos")
    op.drop_table("tavus_personas")
    op.drop_table("tavus_replicas")
    op.drop_table("tavus_connections")
    op.drop_table("sync_jobs")
    op.drop_table("ad_metrics")
    op.drop_table("adset_metrics")
    op.drop_table("campaign_metrics")
    op.drop_table("ads")
    op.drop_table("adsets")
    op.drop_table("campaigns")
    op.drop_table("ad_accounts")
    op.drop_table("meta_credentials")
    op.drop_table("users")
