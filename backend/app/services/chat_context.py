"""Builds the ``ChatContext`` handed to the AI assistant from local storage."""

import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.fb_ads import Ad, AdAccount, AdSet, Campaign
from app.schemas.chat import ChatContext
from app.schemas.fb_ads import AdResponse, AdSetResponse, CampaignResponse
from app.services.entity_levels import EntityLevel
from app.services.metrics_reader import MetricsAggregationReader

SUMMARY_DAYS = 30


async def build_chat_context(db: AsyncSession, user_id: uuid.UUID, current_view: str | None = None) -> ChatContext:
    accounts = (await db.execute(
        select(AdAccount).where(AdAccount.user_id == user_id).order_by(AdAccount.name)
    )).scalars().all()
    account_ids = [a.id for a in accounts]

    campaigns = (await db.execute(
        select(Campaign).where(Campaign.ad_account_id.in_(account_ids)).order_by(Campaign.name)
    )).scalars().all() if account_ids else []
    campaign_ids = [c.id for c in campaigns]

    adsets = (await db.execute(
        select(AdSet).where(AdSet.campaign_id.in_(campaign_ids)).order_by(AdSet.name)
    )).scalars().all() if campaign_ids else []
    adset_ids = [s.id for s in adsets]

    ads = (await db.execute(
        select(Ad).where(Ad.adset_id.in_(adset_ids)).order_by(Ad.name)
    )).scalars().all() if adset_ids else []

    reader = MetricsAggregationReader(db)
    metrics = {}
    for campaign in campaigns:
        summary = await reader.summarize(EntityLevel.CAMPAIGN, campaign.id, SUMMARY_DAYS)
        metrics[str(campaign.id)] = summary.model_dump(mode="json")

    today = datetime.now(timezone.utc).date()
    return ChatContext(
        ad_accounts=[
            {
                "id": str(a.id),
                "account_id": a.account_id,
                "name": a.name,
                "currency": a.currency,
                "account_status": a.account_status,
            }
            for a in accounts
        ],
        campaigns=[CampaignResponse.model_validate(c).model_dump(mode="json") for c in campaigns],
        adsets=[AdSetResponse.model_validate(s).model_dump(mode="json") for s in adsets],
        ads=[AdResponse.model_validate(a).model_dump(mode="json") for a in ads],
        metrics=metrics,
        current_view=current_view,
        date_range={
            "since": (today - timedelta(days=SUMMARY_DAYS)).isoformat(),
            "until": today.isoformat(),
        },
    )
