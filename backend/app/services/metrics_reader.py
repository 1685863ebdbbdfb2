"""Read-side aggregation over stored daily metric rows."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from app.schemas.fb_ads import MetricsSummaryResponse
from app.services.entity_levels import EntityLevel, parse_level
from app.services.metrics_sync import EntitySynchronizer

CENT = Decimal("0.01")


def _rate(numerator: Decimal, denominator: Decimal, scale: int = 1) -> float:
    """``numerator / denominator * scale`` rounded half-up to 2 places; 0 when
    the denominator is 0."""
    if not denominator:
        return 0.0
    return float((numerator / denominator * scale).quantize(CENT, rounding=ROUND_HALF_UP))


def summarize_rows(rows: list) -> dict:
    """Sum the counters of ``rows`` and derive CTR, CPC, CPM, average
    frequency and conversion rate."""
    impressions = sum(r.impressions or 0 for r in rows)
    clicks = sum(r.clicks or 0 for r in rows)
    reach = sum(r.reach or 0 for r in rows)
    conversions = sum(r.conversions or 0 for r in rows)
    spend = sum((Decimal(str(r.spend or 0)) for r in rows), Decimal("0"))
    frequencies = [Decimal(str(r.frequency or 0)) for r in rows]

    impressions_d = Decimal(impressions)
    clicks_d = Decimal(clicks)
    return {
        "days_with_data": len(rows),
        "impressions": impressions,
        "clicks": clicks,
        "reach": reach,
        "spend": spend.quantize(CENT, rounding=ROUND_HALF_UP),
        "conversions": conversions,
        "ctr": _rate(clicks_d, impressions_d, 100),
        "cpc": _rate(spend, clicks_d),
        "cpm": _rate(spend, impressions_d, 1000),
        "avg_frequency": _rate(sum(frequencies, Decimal("0")), Decimal(len(frequencies))),
        "conversion_rate": _rate(Decimal(conversions), clicks_d, 100),
    }


class MetricsAggregationReader:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.synchronizer = EntitySynchronizer(db)

    async def rows(self, level: EntityLevel | str, entity_id: uuid.UUID, days: int = 30) -> list:
        return await self.synchronizer.get_metrics(parse_level(level), entity_id, days)

    async def summarize(self, level: EntityLevel | str, entity_id: uuid.UUID, days: int = 30) -> MetricsSummaryResponse:
        level = parse_level(level)
        rows = await self.rows(level, entity_id, days)
        today = datetime.now(timezone.utc).date()
        return MetricsSummaryResponse(
            entity_type=level.value,
            entity_id=entity_id,
            days=days,
            date_from=today - timedelta(days=days),
            date_to=today,
            **summarize_rows(rows),
        )
