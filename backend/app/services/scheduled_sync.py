"""Sweep that queues a metrics sync for every connected ad account of every
user with a usable credential. Shared by the cron endpoint and the Celery beat
task; the walks themselves run on the worker."""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.fb_ads import AdAccount, MetaCredential
from app.models.job import SYNC_JOB_FAILED
from app.schemas.fb_ads import CronSyncResponse
from app.services.credential_store import as_utc
from app.services.metrics_sync import EntitySynchronizer

logger = logging.getLogger(__name__)


async def sync_all_users(db: AsyncSession) -> CronSyncResponse:
    """Queue one scheduled sync job per active ad account and return the
    job handles. ``total_ad_accounts_synced`` counts jobs that were queued."""
    now = datetime.now(timezone.utc)
    rows = (await db.execute(select(MetaCredential.user_id, MetaCredential.expires_at))).all()
    user_ids = [user_id for user_id, expires_at in rows if as_utc(expires_at) > now]

    results = []
    successful_users = failed_users = accounts_queued = accounts_failed = 0
    for user_id in user_ids:
        accounts = (await db.execute(
            select(AdAccount.id, AdAccount.account_id)
            .where(AdAccount.user_id == user_id, AdAccount.is_active == True)  # noqa: E712
        )).all()

        user_result = {"user_id": str(user_id), "ad_accounts": []}
        user_ok = True
        for account_pk, account_id in accounts:
            try:
                job = await EntitySynchronizer(db).sync_all_metrics(user_id, account_pk, trigger="scheduled")
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error("Could not queue scheduled sync of %s for user %s: %s", account_id, user_id, e)
                user_result["ad_accounts"].append({"account_id": account_id, "status": "failed", "error": str(e)})
                accounts_failed += 1
                user_ok = False
                continue

            user_result["ad_accounts"].append({
                "account_id": account_id,
                "job_id": str(job.id),
                "status": job.status,
                "error": job.error_message,
            })
            if job.status == SYNC_JOB_FAILED:
                accounts_failed += 1
                user_ok = False
            else:
                accounts_queued += 1

        user_result["success"] = user_ok
        results.append(user_result)
        if user_ok:
            successful_users += 1
        else:
            failed_users += 1

    logger.info(
        "Scheduled sweep queued: %d users (%d ok, %d failed), %d ad accounts queued, %d failed",
        len(user_ids), successful_users, failed_users, accounts_queued, accounts_failed,
    )
    return CronSyncResponse(
        total_users=len(user_ids),
        successful_users=successful_users,
        failed_users=failed_users,
        total_ad_accounts_synced=accounts_queued,
        total_ad_accounts_failed=accounts_failed,
        results=results,
    )
