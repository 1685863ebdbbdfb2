"""Facebook Ads models: provider credential, ad accounts, the campaign / ad set /
ad hierarchy mirrored from the Marketing API, and per-level daily metric rows."""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


# ---------------------------------------------------------------------------
# Credential & ad accounts
# ---------------------------------------------------------------------------

class MetaCredential(Base):
    """One OAuth credential per user. The token is Fernet-encrypted at rest."""

    __tablename__ = "meta_credentials"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )

    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    has_ad_permissions: Mapped[bool] = mapped_column(Boolean, default=False)
    fb_user_id: Mapped[str | None] = mapped_column(String(50))
    fb_user_name: Mapped[str | None] = mapped_column(String(200))
    scopes: Mapped[list] = mapped_column(JSONB, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    user = relationship("User", back_populates="meta_credential")


class AdAccount(Base):
    """A provider ad account the user has connected."""

    __tablename__ = "ad_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "account_id", name="uq_ad_account_user_account"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # act_123456789
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    timezone_name: Mapped[str] = mapped_column(String(100), default="UTC")
    account_status: Mapped[str] = mapped_column(String(30), default="ACTIVE")
    amount_spent: Mapped[str | None] = mapped_column(String(50))
    business_country_code: Mapped[str | None] = mapped_column(String(10))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    user = relationship("User", back_populates="ad_accounts")
    campaigns = relationship("Campaign", back_populates="ad_account", passive_deletes=True)


# ---------------------------------------------------------------------------
# Campaigns, Ad Sets, Ads
# ---------------------------------------------------------------------------

class Campaign(Base):
    __tablename__ = "campaigns"
    __table_args__ = (
        UniqueConstraint("ad_account_id", "campaign_id", name="uq_campaign_account_campaign"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ad_account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    campaign_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    objective: Mapped[str | None] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(30), default="PAUSED")
    # Budgets are in the account currency's minor unit, as the provider reports them.
    daily_budget: Mapped[int | None] = mapped_column(BigInteger)
    lifetime_budget: Mapped[int | None] = mapped_column(BigInteger)
    special_ad_categories: Mapped[list] = mapped_column(JSONB, default=list)
    buying_type: Mapped[str | None] = mapped_column(String(30), default="AUCTION")
    raw_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    ad_account = relationship("AdAccount", back_populates="campaigns")
    adsets = relationship("AdSet", back_populates="campaign", passive_deletes=True)

    @property
    def is_cbo(self) -> bool:
        """Campaign Budget Optimization is on iff the campaign owns a budget."""
        return self.daily_budget is not None or self.lifetime_budget is not None


class AdSet(Base):
    __tablename__ = "adsets"
    __table_args__ = (
        UniqueConstraint("campaign_id", "adset_id", name="uq_adset_campaign_adset"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    adset_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="PAUSED")
    daily_budget: Mapped[int | None] = mapped_column(BigInteger)
    lifetime_budget: Mapped[int | None] = mapped_column(BigInteger)
    targeting: Mapped[dict] = mapped_column(JSONB, default=dict)
    optimization_goal: Mapped[str | None] = mapped_column(String(50))
    billing_event: Mapped[str | None] = mapped_column(String(50))
    bid_strategy: Mapped[str | None] = mapped_column(String(50))
    bid_amount: Mapped[int | None] = mapped_column(BigInteger)
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    raw_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    campaign = relationship("Campaign", back_populates="adsets")
    ads = relationship("Ad", back_populates="adset", passive_deletes=True)


class Ad(Base):
    __tablename__ = "ads"
    __table_args__ = (
        UniqueConstraint("adset_id", "ad_id", name="uq_ad_adset_ad"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    adset_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("adsets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ad_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="PAUSED")
    creative_id: Mapped[str | None] = mapped_column(String(50))
    creative_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    raw_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    adset = relationship("AdSet", back_populates="ads")


# ---------------------------------------------------------------------------
# Daily metric rows, one per entity per calendar day. Derived rates
# (CTR, CPC, CPM, conversion rate) are computed on read, never stored.
# ---------------------------------------------------------------------------

class MetricCounters:
    """Raw counters shared by every metric level."""

    date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(BigInteger, default=0)
    unique_clicks: Mapped[int] = mapped_column(BigInteger, default=0)
    reach: Mapped[int] = mapped_column(BigInteger, default=0)
    frequency: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=0)
    spend: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    conversions: Mapped[int] = mapped_column(Integer, default=0)
    actions: Mapped[list] = mapped_column(JSONB, default=list)
    action_values: Mapped[list] = mapped_column(JSONB, default=list)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class CampaignMetric(MetricCounters, Base):
    __tablename__ = "campaign_metrics"
    __table_args__ = (
        UniqueConstraint("campaign_id", "date", name="uq_campaign_metric_day"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )


class AdSetMetric(MetricCounters, Base):
    __tablename__ = "adset_metrics"
    __table_args__ = (
        UniqueConstraint("adset_id", "date", name="uq_adset_metric_day"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    adset_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("adsets.id", ondelete="CASCADE"), nullable=False, index=True
    )


class AdMetric(MetricCounters, Base):
    __tablename__ = "ad_metrics"
    __table_args__ = (
        UniqueConstraint("ad_id", "date", name="uq_ad_metric_day"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ad_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("ads.id", ondelete="CASCADE"), nullable=False, index=True
    )
