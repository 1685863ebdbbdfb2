from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Connection & accounts
# ---------------------------------------------------------------------------

class OAuthUrlResponse(BaseModel):
    url: str


class ConnectionResponse(BaseModel):
    connected: bool
    expired: bool = False
    has_ad_permissions: bool = False
    fb_user_id: str | None = None
    fb_user_name: str | None = None
    expires_at: datetime | None = None


class DisconnectResponse(BaseModel):
    success: bool
    errors: list[dict] = []


class AvailableAdAccount(BaseModel):
    account_id: str
    name: str
    currency: str
    timezone_name: str
    account_status: str
    amount_spent: str | None = None
    business_country_code: str | None = None
    is_connected: bool = False


class ConnectAdAccountRequest(BaseModel):
    ad_account_id: str = Field(min_length=1)


class AdAccountResponse(BaseModel):
    id: UUID
    account_id: str
    name: str
    currency: str
    timezone_name: str
    account_status: str
    last_synced_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ConnectAdAccountResponse(BaseModel):
    ad_account: AdAccountResponse
    campaigns_imported: int
    adsets_imported: int
    ads_imported: int
    sync_job_id: UUID | None = None
    errors: list[dict] = []


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------

class CampaignResponse(BaseModel):
    id: UUID
    ad_account_id: UUID
    campaign_id: str
    name: str
    objective: str | None = None
    status: str
    daily_budget: int | None = None
    lifetime_budget: int | None = None
    buying_type: str | None = None
    special_ad_categories: list = []
    is_cbo: bool
    last_synced_at: datetime | None = None

    model_config = {"from_attributes": True}


class AdSetResponse(BaseModel):
    id: UUID
    campaign_id: UUID
    adset_id: str
    name: str
    status: str
    daily_budget: int | None = None
    lifetime_budget: int | None = None
    targeting: dict = {}
    optimization_goal: str | None = None
    billing_event: str | None = None
    bid_strategy: str | None = None
    bid_amount: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    last_synced_at: datetime | None = None

    model_config = {"from_attributes": True}


class AdResponse(BaseModel):
    id: UUID
    adset_id: UUID
    ad_id: str
    name: str
    status: str
    creative_id: str | None = None
    creative_data: dict = {}
    last_synced_at: datetime | None = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Creates. Required fields are optional here so the service can answer with a
# field-level 400 instead of a generic 422.
# ---------------------------------------------------------------------------

class CampaignCreateRequest(BaseModel):
    name: str | None = None
    objective: str | None = None
    status: str = "PAUSED"
    daily_budget: int | None = Field(default=None, description="Minor currency units")
    lifetime_budget: int | None = None
    special_ad_categories: list[str] = Field(default_factory=list)
    buying_type: str | None = None


class TargetingSpec(BaseModel):
    countries: list[str] = Field(default_factory=list)
    age_min: int = 18
    age_max: int = 65
    publisher_platforms: list[str] | None = None
    facebook_positions: list[str] | None = None

    def to_graph(self) -> dict:
        targeting: dict = {
            "geo_locations": {"countries": self.countries},
            "age_min": self.age_min,
            "age_max": self.age_max,
            "targeting_automation": {"advantage_audience": 0},
        }
        if self.publisher_platforms:
            targeting["publisher_platforms"] = self.publisher_platforms
        if self.facebook_positions:
            targeting["facebook_positions"] = self.facebook_positions
        return targeting


class AdSetCreateRequest(BaseModel):
    name: str | None = None
    optimization_goal: str | None = None
    billing_event: str | None = None
    bid_strategy: str | None = None
    bid_amount: int | None = None
    daily_budget: int | None = None
    lifetime_budget: int | None = None
    targeting: TargetingSpec | None = None
    status: str = "PAUSED"
    start_time: datetime | None = None
    end_time: datetime | None = None


class AdCreativeSpec(BaseModel):
    name: str | None = None
    page_id: str | None = None
    media_type: Literal["image", "video"] = "image"
    image_hash: str | None = None
    video_id: str | None = None
    thumbnail_url: str | None = None
    message: str | None = None
    headline: str | None = None
    description: str | None = None
    link_url: str | None = None
    call_to_action_type: str = "LEARN_MORE"
    degrees_of_freedom_spec: dict | None = None

    def object_story_spec(self) -> dict:
        call_to_action = {"type": self.call_to_action_type}
        if self.link_url:
            call_to_action["value"] = {"link": self.link_url}
        if self.media_type == "video":
            video_data = {
                "video_id": self.video_id,
                "message": self.message,
                "title": self.headline,
                "link_description": self.description,
                "call_to_action": call_to_action,
            }
            if self.thumbnail_url:
                video_data["image_url"] = self.thumbnail_url
            if self.image_hash:
                video_data["image_hash"] = self.image_hash
            return {"page_id": self.page_id, "video_data": _compact(video_data)}
        link_data = {
            "image_hash": self.image_hash,
            "link": self.link_url,
            "message": self.message,
            "name": self.headline,
            "description": self.description,
            "call_to_action": call_to_action,
        }
        return {"page_id": self.page_id, "link_data": _compact(link_data)}


def _compact(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


class AdCreateRequest(BaseModel):
    name: str | None = None
    status: str = "PAUSED"
    creative: AdCreativeSpec | None = None
    tracking_specs: list[dict] | None = None


class MutationResponse(BaseModel):
    id: str
    level: str
    local_id: UUID | None = None
    mirrored: bool
    creative_id: str | None = None
    warning: str | None = None


class MediaUploadResponse(BaseModel):
    media_type: str
    handle: str
    filename: str
    size: int


# ---------------------------------------------------------------------------
# Sync jobs & metrics
# ---------------------------------------------------------------------------

class SyncTriggerResponse(BaseModel):
    job_id: UUID
    status: str
    has_ad_permissions: bool
    warning: str | None = None


class SyncJobResponse(BaseModel):
    id: UUID
    user_id: UUID
    ad_account_id: UUID
    job_type: str
    trigger: str
    status: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    details: dict = {}
    created_at: datetime

    model_config = {"from_attributes": True}


class MetricRowResponse(BaseModel):
    date: date
    impressions: int
    clicks: int
    unique_clicks: int
    reach: int
    frequency: Decimal
    spend: Decimal
    conversions: int

    model_config = {"from_attributes": True}


class MetricsSummaryResponse(BaseModel):
    entity_type: str
    entity_id: UUID
    days: int
    date_from: date
    date_to: date
    days_with_data: int
    impressions: int
    clicks: int
    reach: int
    spend: Decimal
    conversions: int
    ctr: float
    cpc: float
    cpm: float
    avg_frequency: float
    conversion_rate: float


class CronSyncResponse(BaseModel):
    total_users: int
    successful_users: int
    failed_users: int
    total_ad_accounts_synced: int
    total_ad_accounts_failed: int
    results: list[dict]
