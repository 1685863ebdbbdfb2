"""Celery tasks for the metrics synchronizer."""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.celery_app import celery_app
from app.config import get_settings
from app.database import connect_args
from app.services.metrics_sync import EntitySynchronizer
from app.services.scheduled_sync import sync_all_users

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _worker_session():
    # Each task runs on a fresh event loop, so it gets its own engine
    local_engine = create_async_engine(
        get_settings().async_database_url, pool_pre_ping=True, connect_args=connect_args
    )
    local_session = async_sessionmaker(local_engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with local_session() as db:
            yield db
    finally:
        await local_engine.dispose()


async def _run_sync_job(job_id: str) -> dict:
    async with _worker_session() as db:
        job = await EntitySynchronizer(db).run_job(uuid.UUID(job_id))
        return {"job_id": job_id, "status": job.status, "error": job.error_message}


async def _sync_all() -> dict:
    async with _worker_session() as db:
        result = await sync_all_users(db)
        return result.model_dump(mode="json")


@celery_app.task(name="app.tasks.sync_tasks.sync_account_metrics")
def sync_account_metrics(job_id: str):
    """Celery task: walk one ad account's hierarchy for a pending sync job."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_run_sync_job(job_id))
        logger.info("Sync job %s finished: %s", job_id, result["status"])
        return result
    finally:
        loop.close()


@celery_app.task(name="app.tasks.sync_tasks.sync_all_accounts")
def sync_all_accounts():
    """Celery beat task: queue the daily sync of every connected ad account."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_sync_all())
    finally:
        loop.close()

    logger.info(
        "Daily sweep done: %d users, %d ad accounts queued, %d failed",
        result["total_users"], result["total_ad_accounts_synced"], result["total_ad_accounts_failed"],
    )
    return result
