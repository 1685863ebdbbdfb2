"""Scheduled trigger for the daily metrics sweep. Called by an external
scheduler with the shared cron secret."""

import logging
import secrets

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.errors import AuthRequired
from app.schemas.fb_ads import CronSyncResponse
from app.services.scheduled_sync import sync_all_users

logger = logging.getLogger(__name__)
router = APIRouter()


def verify_cron_secret(request: Request, key: str | None = Query(None)) -> None:
    """Accept the secret as ``Authorization: Bearer <secret>`` or ``?key=``."""
    expected = get_settings().cron_secret_key
    if not expected:
        logger.warning("Cron request rejected: CRON_SECRET_KEY is not configured")
        raise AuthRequired("Cron secret not configured")

    provided = key or ""
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        provided = auth_header[7:].strip()

    if not provided or not secrets.compare_digest(provided.encode(), expected.encode()):
        raise AuthRequired("Invalid cron secret")


@router.api_route(
    "/sync-metrics",
    methods=["GET", "POST"],
    response_model=CronSyncResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_sync_metrics(db: AsyncSession = Depends(get_db)):
    """Queue a sync job for every active ad account of every user with a live credential."""
    logger.info("Cron metrics sweep started")
    return await sync_all_users(db)
