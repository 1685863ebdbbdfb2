"""Entity levels of the ad hierarchy and where each one lives.

Everything that used to dispatch on ``'campaign' | 'adset' | 'ad'`` strings
looks up a ``LevelDescriptor`` instead.
"""

import uuid
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NotFound, ValidationError
from app.models.fb_ads import Ad, AdAccount, AdMetric, AdSet, AdSetMetric, Campaign, CampaignMetric


class EntityLevel(str, Enum):
    CAMPAIGN = "campaign"
    ADSET = "adset"
    AD = "ad"


@dataclass(frozen=True)
class LevelDescriptor:
    level: EntityLevel
    model: type
    parent_column: str        # FK on ``model`` pointing at the parent's local id
    provider_id_column: str   # column on ``model`` holding the provider-side id
    metrics_model: type
    metrics_key: str          # FK on ``metrics_model`` pointing at ``model.id``
    graph_edge: str           # edge under the parent node, e.g. /{campaign}/adsets
    graph_fields: str
    child: EntityLevel | None


CAMPAIGN_FIELDS = (
    "id,name,objective,status,daily_budget,lifetime_budget,buying_type,"
    "special_ad_categories,created_time,updated_time"
)
ADSET_FIELDS = (
    "id,name,status,daily_budget,lifetime_budget,targeting,optimization_goal,"
    "billing_event,bid_strategy,bid_amount,start_time,end_time"
)
AD_FIELDS = "id,name,status,creative{id,name,title,body,image_hash,video_id,call_to_action_type}"


LEVELS: dict[EntityLevel, LevelDescriptor] = {
    EntityLevel.CAMPAIGN: LevelDescriptor(
        level=EntityLevel.CAMPAIGN,
        model=Campaign,
        parent_column="ad_account_id",
        provider_id_column="campaign_id",
        metrics_model=CampaignMetric,
        metrics_key="campaign_id",
        graph_edge="campaigns",
        graph_fields=CAMPAIGN_FIELDS,
        child=EntityLevel.ADSET,
    ),
    EntityLevel.ADSET: LevelDescriptor(
        level=EntityLevel.ADSET,
        model=AdSet,
        parent_column="campaign_id",
        provider_id_column="adset_id",
        metrics_model=AdSetMetric,
        metrics_key="adset_id",
        graph_edge="adsets",
        graph_fields=ADSET_FIELDS,
        child=EntityLevel.AD,
    ),
    EntityLevel.AD: LevelDescriptor(
        level=EntityLevel.AD,
        model=Ad,
        parent_column="adset_id",
        provider_id_column="ad_id",
        metrics_model=AdMetric,
        metrics_key="ad_id",
        graph_edge="ads",
        graph_fields=AD_FIELDS,
        child=None,
    ),
}

# Accepted spellings from URLs and older clients
_ALIASES = {
    "campaign": EntityLevel.CAMPAIGN,
    "campaigns": EntityLevel.CAMPAIGN,
    "adset": EntityLevel.ADSET,
    "adsets": EntityLevel.ADSET,
    "ad_set": EntityLevel.ADSET,
    "ad": EntityLevel.AD,
    "ads": EntityLevel.AD,
}


def describe(level: EntityLevel) -> LevelDescriptor:
    return LEVELS[level]


def parse_level(value: str | EntityLevel) -> EntityLevel:
    if isinstance(value, EntityLevel):
        return value
    level = _ALIASES.get((value or "").strip().lower())
    if level is None:
        raise ValidationError(
            f"Unknown entity type '{value}'. Expected campaign, adset or ad.", field="type"
        )
    return level


async def load_owned_account(db: AsyncSession, account_id: uuid.UUID, user_id: uuid.UUID) -> AdAccount:
    result = await db.execute(
        select(AdAccount).where(AdAccount.id == account_id, AdAccount.user_id == user_id)
    )
    account = result.scalar_one_or_none()
    if not account:
        raise NotFound("Ad account not found")
    return account


async def load_owned_entity(db: AsyncSession, level: EntityLevel, entity_id: uuid.UUID, user_id: uuid.UUID):
    """Load a campaign / ad set / ad, joining up to the ad account to check the owner."""
    stmt = select(describe(level).model).where(describe(level).model.id == entity_id)
    if level is EntityLevel.AD:
        stmt = stmt.join(AdSet, Ad.adset_id == AdSet.id)
    if level in (EntityLevel.AD, EntityLevel.ADSET):
        stmt = stmt.join(Campaign, AdSet.campaign_id == Campaign.id)
    stmt = stmt.join(AdAccount, Campaign.ad_account_id == AdAccount.id).where(AdAccount.user_id == user_id)

    result = await db.execute(stmt)
    entity = result.scalar_one_or_none()
    if not entity:
        raise NotFound(f"{level.value.capitalize()} not found")
    return entity


async def account_for_entity(db: AsyncSession, level: EntityLevel, entity) -> AdAccount:
    """The ad account an already-loaded entity belongs to."""
    if level is EntityLevel.CAMPAIGN:
        account_id = entity.ad_account_id
    elif level is EntityLevel.ADSET:
        account_id = (await db.execute(
            select(Campaign.ad_account_id).where(Campaign.id == entity.campaign_id)
        )).scalar_one()
    else:
        account_id = (await db.execute(
            select(Campaign.ad_account_id)
            .join(AdSet, AdSet.campaign_id == Campaign.id)
            .where(AdSet.id == entity.adset_id)
        )).scalar_one()
    return await db.get(AdAccount, account_id)
