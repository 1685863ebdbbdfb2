"""Entity synchronizer: walks account -> campaigns -> ad sets -> ads and upserts
daily metric rows for every entity over a trailing window.

The walk is breadth-first. At each level the provider calls fan out
concurrently under a semaphore; database writes stay sequential because an
``AsyncSession`` must not be shared between concurrent tasks. A failing
entity is recorded on the job and skipped. Only a failure to fetch the
account's campaigns fails the whole job.
"""

import asyncio
import logging
import re
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import dialect_insert
from app.errors import AppError, NotFound, PermissionDenied
from app.models.fb_ads import AdAccount
from app.models.job import (
    SYNC_JOB_CANCELLED,
    SYNC_JOB_COMPLETED,
    SYNC_JOB_FAILED,
    SYNC_JOB_PENDING,
    SYNC_JOB_RUNNING,
    SyncJob,
)
from app.services.credential_store import CredentialStore
from app.services.entity_levels import EntityLevel, describe
from app.services.meta_api import MetaGraphGateway
from app.utils.outcome import Outcome

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = 10
UPSERT_BATCH_SIZE = 500

METRIC_COLUMNS = (
    "impressions",
    "clicks",
    "unique_clicks",
    "reach",
    "frequency",
    "spend",
    "conversions",
    "actions",
    "action_values",
)

_TZ_NO_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: str | None) -> datetime | None:
    """Graph timestamps look like ``2024-05-01T10:00:00+0000``."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(_TZ_NO_COLON.sub(r"\1:\2", value))
    except ValueError:
        return None


def _int_or_none(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _entity_values(level: EntityLevel, row: dict) -> dict:
    """Map a Graph hierarchy row onto model attributes."""
    if level is EntityLevel.CAMPAIGN:
        return {
            "name": row.get("name", ""),
            "objective": row.get("objective"),
            "status": row.get("status", "UNKNOWN"),
            "daily_budget": _int_or_none(row.get("daily_budget")),
            "lifetime_budget": _int_or_none(row.get("lifetime_budget")),
            "buying_type": row.get("buying_type") or "AUCTION",
            "special_ad_categories": row.get("special_ad_categories") or [],
            "raw_data": row,
        }
    if level is EntityLevel.ADSET:
        return {
            "name": row.get("name", ""),
            "status": row.get("status", "UNKNOWN"),
            "daily_budget": _int_or_none(row.get("daily_budget")),
            "lifetime_budget": _int_or_none(row.get("lifetime_budget")),
            "targeting": row.get("targeting") or {},
            "optimization_goal": row.get("optimization_goal"),
            "billing_event": row.get("billing_event"),
            "bid_strategy": row.get("bid_strategy"),
            "bid_amount": _int_or_none(row.get("bid_amount")),
            "start_time": _parse_ts(row.get("start_time")),
            "end_time": _parse_ts(row.get("end_time")),
            "raw_data": row,
        }
    creative = row.get("creative") or {}
    return {
        "name": row.get("name", ""),
        "status": row.get("status", "UNKNOWN"),
        "creative_id": creative.get("id"),
        "creative_data": creative,
        "raw_data": row,
    }


def dispatch_sync_job(job_id: uuid.UUID) -> str:
    """Queue the hierarchy walk on the Celery worker; returns the task id."""
    from app.tasks.sync_tasks import sync_account_metrics
    task = sync_account_metrics.delay(str(job_id))
    return task.id


class EntitySynchronizer:
    def __init__(
        self,
        db: AsyncSession,
        gateway: MetaGraphGateway | None = None,
        credentials: CredentialStore | None = None,
        *,
        window_days: int | None = None,
        concurrency: int | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.gateway = gateway or MetaGraphGateway()
        self.credentials = credentials or CredentialStore(db)
        self.window_days = window_days or settings.sync_window_days
        self.concurrency = max(1, min(concurrency or settings.sync_concurrency, MAX_CONCURRENCY))

    def window(self) -> tuple[date, date]:
        today = _utcnow().date()
        return today - timedelta(days=self.window_days), today

    # -- Job handle --------------------------------------------------------

    async def create_job(
        self, user_id: uuid.UUID, ad_account_id: uuid.UUID, trigger: str = "manual",
    ) -> SyncJob:
        job = SyncJob(
            user_id=user_id,
            ad_account_id=ad_account_id,
            job_type="metrics",
            trigger=trigger,
            status=SYNC_JOB_PENDING,
            details={},
        )
        self.db.add(job)
        await self.db.flush()
        return job

    async def sync_all_metrics(
        self, user_id: uuid.UUID, ad_account_id: uuid.UUID, trigger: str = "manual",
    ) -> SyncJob:
        """Create a pending job and hand the walk to the worker. Returns at once."""
        job = await self.create_job(user_id, ad_account_id, trigger)
        # The worker must be able to see the row
        await self.db.commit()
        try:
            job.celery_task_id = dispatch_sync_job(job.id)
        except Exception as e:
            logger.error("Could not queue sync job %s: %s", job.id, e)
            self._finish(job, SYNC_JOB_FAILED, error=f"Could not queue sync: {e}")
        await self.db.commit()
        return job

    async def get_job(self, job_id: uuid.UUID, user_id: uuid.UUID) -> SyncJob:
        result = await self.db.execute(
            select(SyncJob).where(SyncJob.id == job_id, SyncJob.user_id == user_id)
        )
        job = result.scalar_one_or_none()
        if not job:
            raise NotFound("Sync job not found")
        return job

    async def cancel_job(self, job_id: uuid.UUID, user_id: uuid.UUID) -> SyncJob:
        """Flag a job as cancelled; a running walk stops before its next batch."""
        job = await self.get_job(job_id, user_id)
        if not job.is_terminal:
            self._finish(job, SYNC_JOB_CANCELLED)
            await self.db.flush()
        return job

    def _finish(self, job: SyncJob, status: str, error: str | None = None, details: dict | None = None) -> None:
        job.status = status
        job.completed_at = _utcnow()
        if error:
            job.error_message = error
        if details is not None:
            job.details = details

    async def _is_cancelled(self, job: SyncJob | None) -> bool:
        if job is None:
            return False
        result = await self.db.execute(select(SyncJob.status).where(SyncJob.id == job.id))
        return result.scalar_one_or_none() == SYNC_JOB_CANCELLED

    # -- Walk --------------------------------------------------------------

    async def run_job(self, job_id: uuid.UUID) -> SyncJob:
        """Execute a pending job to a terminal state."""
        job = await self.db.get(SyncJob, job_id)
        if job is None:
            raise NotFound(f"Sync job {job_id} not found")
        if job.status != SYNC_JOB_PENDING:
            logger.info("Sync job %s is %s, not running it", job.id, job.status)
            return job

        job.status = SYNC_JOB_RUNNING
        job.started_at = _utcnow()
        await self.db.commit()

        outcome = Outcome()
        since, until = self.window()
        logger.info("Sync job %s started for ad account %s", job.id, job.ad_account_id)

        try:
            cred = await self.credentials.require(job.user_id)
            account = await self._load_account(job)
            if not cred.has_ad_permissions:
                outcome.add("permission_issues")
            await self.walk(account, outcome, job=job, metrics_window=(since, until))
        except AppError as e:
            await self.db.rollback()
            job = await self.db.get(SyncJob, job_id)
            logger.warning("Sync job %s failed: %s", job_id, e.message)
            details = {**self._details(outcome, since, until), "error_code": e.code}
            self._finish(job, SYNC_JOB_FAILED, error=e.message, details=details)
            await self.db.commit()
            return job
        except Exception as e:
            logger.exception("Sync job %s crashed", job_id)
            await self.db.rollback()
            job = await self.db.get(SyncJob, job_id)
            self._finish(job, SYNC_JOB_FAILED, error=str(e) or e.__class__.__name__,
                         details=self._details(outcome, since, until))
            await self.db.commit()
            return job

        await self.db.refresh(job)
        if job.status == SYNC_JOB_CANCELLED:
            job.details = self._details(outcome, since, until)
            logger.info("Sync job %s cancelled", job.id)
        else:
            self._finish(job, SYNC_JOB_COMPLETED, details=self._details(outcome, since, until))
            logger.info(
                "Sync job %s completed: %d campaigns, %d adsets, %d ads, %d metric rows, %d errors",
                job.id,
                outcome.counts.get("campaigns_synced", 0),
                outcome.counts.get("adsets_synced", 0),
                outcome.counts.get("ads_synced", 0),
                outcome.counts.get("metric_rows", 0),
                len(outcome.failures),
            )
        await self.db.commit()
        return job

    @staticmethod
    def _details(outcome: Outcome, since: date, until: date) -> dict:
        return {
            "campaigns_synced": outcome.counts.get("campaigns_synced", 0),
            "adsets_synced": outcome.counts.get("adsets_synced", 0),
            "ads_synced": outcome.counts.get("ads_synced", 0),
            "metric_rows": outcome.counts.get("metric_rows", 0),
            "permission_issues": outcome.counts.get("permission_issues", 0),
            "errors": [f.to_dict() for f in outcome.failures],
            "window": {"since": since.isoformat(), "until": until.isoformat()},
        }

    async def _load_account(self, job: SyncJob) -> AdAccount:
        result = await self.db.execute(
            select(AdAccount).where(
                AdAccount.id == job.ad_account_id,
                AdAccount.user_id == job.user_id,
            )
        )
        account = result.scalar_one_or_none()
        if not account:
            raise NotFound("Ad account not found")
        return account

    async def walk(
        self,
        account: AdAccount,
        outcome: Outcome,
        *,
        job: SyncJob | None = None,
        metrics_window: tuple[date, date] | None = None,
    ) -> None:
        """Refresh the account's hierarchy and, when ``metrics_window`` is
        given, the metric rows of every entity in it.

        The credential is re-read from storage before every batch of provider
        calls. Raises when the account's campaign list cannot be fetched or
        the credential is gone or expired.
        """
        access_token = await self._current_token(account.user_id)
        campaign_rows = await self.gateway.list_hierarchy(EntityLevel.CAMPAIGN, account.account_id, access_token)
        entities = await self.upsert_entities(EntityLevel.CAMPAIGN, account.id, campaign_rows)
        outcome.add("campaigns_synced", len(entities))
        await self.db.commit()

        level = EntityLevel.CAMPAIGN
        while True:
            if metrics_window:
                await self._sync_level_metrics(job, account.user_id, level, entities, metrics_window, outcome)
            child = describe(level).child
            if child is None or not entities:
                break
            entities = await self._expand(job, account.user_id, child, entities, outcome)
            level = child

        account.last_synced_at = _utcnow()
        await self.db.commit()

    async def _current_token(self, user_id: uuid.UUID) -> str:
        cred = await self.credentials.require(user_id, fresh=True)
        return cred.access_token

    async def _fan_out(
        self,
        job: SyncJob | None,
        user_id: uuid.UUID,
        items: list,
        fetch: Callable[[Any, str], Awaitable[Any]],
    ) -> list[tuple[Any, Any]]:
        """Run ``fetch(item, access_token)`` for every item with at most
        ``concurrency`` in flight.

        Returns ``(item, result_or_AppError)`` pairs. Cancellation and the
        credential are checked before each batch; a missing or expired
        credential raises.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(item, access_token):
            async with semaphore:
                try:
                    return item, await fetch(item, access_token)
                except AppError as e:
                    return item, e

        results: list[tuple[Any, Any]] = []
        batch = self.concurrency * 4
        for start in range(0, len(items), batch):
            if await self._is_cancelled(job):
                break
            access_token = await self._current_token(user_id)
            results.extend(await asyncio.gather(*(_one(i, access_token) for i in items[start:start + batch])))
        return results

    def _record_failure(self, outcome: Outcome, step: str, exc: AppError, provider_id: str) -> None:
        outcome.fail(step, exc, entity_id=provider_id)
        if isinstance(exc, PermissionDenied):
            outcome.add("permission_issues")
        logger.warning("%s failed for %s: %s", step, provider_id, exc.message)

    async def _expand(
        self,
        job: SyncJob | None,
        user_id: uuid.UUID,
        level: EntityLevel,
        parents: list,
        outcome: Outcome,
    ) -> list:
        parent_id_col = self._parent_provider_column(level)
        results = await self._fan_out(
            job,
            user_id,
            parents,
            lambda p, token: self.gateway.list_hierarchy(level, getattr(p, parent_id_col), token),
        )
        children = []
        for parent, result in results:
            if isinstance(result, AppError):
                self._record_failure(outcome, f"list_{describe(level).graph_edge}", result, getattr(parent, parent_id_col))
                continue
            children.extend(await self.upsert_entities(level, parent.id, result))
        outcome.add(f"{level.value}s_synced", len(children))
        await self.db.commit()
        return children

    @staticmethod
    def _parent_provider_column(level: EntityLevel) -> str:
        for desc in (describe(lv) for lv in EntityLevel):
            if desc.child is level:
                return desc.provider_id_column
        raise ValueError(f"{level.value} has no parent level")

    async def _sync_level_metrics(
        self,
        job: SyncJob | None,
        user_id: uuid.UUID,
        level: EntityLevel,
        entities: list,
        window: tuple[date, date],
        outcome: Outcome,
    ) -> None:
        desc = describe(level)
        since, until = window
        results = await self._fan_out(
            job,
            user_id,
            entities,
            lambda e, token: self.gateway.get_entity_insights(getattr(e, desc.provider_id_column), token, since, until),
        )
        now = _utcnow()
        for entity, result in results:
            if isinstance(result, AppError):
                self._record_failure(outcome, f"{level.value}_metrics", result, getattr(entity, desc.provider_id_column))
                continue
            outcome.add("metric_rows", await self.upsert_metric_rows(level, entity.id, result))
            entity.last_synced_at = now
        await self.db.commit()

    # -- Storage -----------------------------------------------------------

    async def upsert_entities(self, level: EntityLevel, parent_id: uuid.UUID, rows: list[dict]) -> list:
        """Insert or update mirrored entities under ``parent_id``."""
        if not rows:
            return []
        desc = describe(level)
        model = desc.model
        provider_col = getattr(model, desc.provider_id_column)
        ids = [r["id"] for r in rows if r.get("id")]
        existing = await self.db.execute(
            select(model).where(
                getattr(model, desc.parent_column) == parent_id,
                provider_col.in_(ids),
            )
        )
        by_provider_id = {getattr(m, desc.provider_id_column): m for m in existing.scalars().all()}

        entities = []
        for row in rows:
            if not row.get("id"):
                continue
            values = _entity_values(level, row)
            entity = by_provider_id.get(row["id"])
            if entity:
                for key, value in values.items():
                    setattr(entity, key, value)
            else:
                entity = model(**{desc.parent_column: parent_id, desc.provider_id_column: row["id"]}, **values)
                self.db.add(entity)
                by_provider_id[row["id"]] = entity
            entities.append(entity)
        await self.db.flush()
        return entities

    async def upsert_metric_rows(self, level: EntityLevel, entity_id: uuid.UUID, rows: list[dict]) -> int:
        """Upsert daily rows keyed by (entity, date); re-running overwrites."""
        if not rows:
            return 0
        desc = describe(level)
        now = _utcnow()
        by_day: dict[date, dict] = {}
        for row in rows:
            by_day[row["date"]] = {
                "id": uuid.uuid4(),
                desc.metrics_key: entity_id,
                "date": row["date"],
                "synced_at": now,
                **{col: row[col] for col in METRIC_COLUMNS},
            }
        values = list(by_day.values())
        for start in range(0, len(values), UPSERT_BATCH_SIZE):
            stmt = dialect_insert(self.db, desc.metrics_model).values(values[start:start + UPSERT_BATCH_SIZE])
            stmt = stmt.on_conflict_do_update(
                index_elements=[desc.metrics_key, "date"],
                set_={col: getattr(stmt.excluded, col) for col in (*METRIC_COLUMNS, "synced_at")},
            )
            await self.db.execute(stmt)
        return len(values)

    async def get_metrics(self, level: EntityLevel, entity_id: uuid.UUID, days: int = 30) -> list:
        """Stored rows for the last ``days`` days, newest first."""
        desc = describe(level)
        model = desc.metrics_model
        since = _utcnow().date() - timedelta(days=days)
        result = await self.db.execute(
            select(model)
            .where(getattr(model, desc.metrics_key) == entity_id, model.date >= since)
            .order_by(model.date.desc())
        )
        return list(result.scalars().all())
