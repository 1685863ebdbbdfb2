"""Facebook connection lifecycle: OAuth connect, ad-account onboarding and the
disconnect cascade."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AppError, NotFound, StorageError, ValidationError
from app.models.fb_ads import (
    Ad,
    AdAccount,
    AdMetric,
    AdSet,
    AdSetMetric,
    Campaign,
    CampaignMetric,
    MetaCredential,
)
from app.models.job import SyncJob
from app.models.user import User
from app.schemas.fb_ads import (
    AdAccountResponse,
    AvailableAdAccount,
    ConnectAdAccountResponse,
    ConnectionResponse,
)
from app.services.credential_store import CredentialStore, as_utc
from app.services.meta_api import REQUIRED_SCOPES, MetaGraphGateway, normalize_account_id, parse_expires_in
from app.services.metrics_sync import EntitySynchronizer
from app.utils.outcome import Outcome

logger = logging.getLogger(__name__)

LIMITED_PERMISSIONS_WARNING = (
    "Connected, but ad permissions could not be verified. Some features may be unavailable."
)

# Strict foreign-key order: children before parents, credential last
DISCONNECT_STEPS = (
    "ad_metrics",
    "ads",
    "adset_metrics",
    "adsets",
    "campaign_metrics",
    "campaigns",
    "ad_accounts",
    "sync_jobs",
    "credential",
)


class ConnectError(AppError):
    """Connect flow failure; ``reason`` is the code the callback redirects with."""

    code = "connect_failed"
    status_code = 400

    def __init__(self, reason: str, message: str, details=None):
        super().__init__(message, details)
        self.reason = reason


@dataclass
class ConnectResult:
    user_id: uuid.UUID
    expires_at: datetime
    has_ad_permissions: bool
    fb_user_id: str | None = None
    fb_user_name: str | None = None
    warning: str | None = None


@dataclass
class DisconnectResult:
    success: bool
    outcome: Outcome = field(default_factory=Outcome)

    @property
    def errors(self) -> list[dict]:
        return [f.to_dict() for f in self.outcome.failures]


class ConnectionLifecycleManager:
    def __init__(
        self,
        db: AsyncSession,
        gateway: MetaGraphGateway | None = None,
        credentials: CredentialStore | None = None,
    ):
        self.db = db
        self.gateway = gateway or MetaGraphGateway()
        self.credentials = credentials or CredentialStore(db)

    # -- Connect -----------------------------------------------------------

    async def connect(self, user: User, code: str) -> ConnectResult:
        """Exchange ``code``, probe permissions and store the credential.

        A failed permission probe never aborts the connect: the credential is
        stored with ``has_ad_permissions=False`` and a warning is returned.
        """
        if not code:
            raise ConnectError("facebook_auth_failed", "No authorization code received from Facebook")

        try:
            token_data = await self.gateway.exchange_code(code)
        except AppError as e:
            logger.warning("Token exchange failed for user %s: %s", user.id, e.message)
            raise ConnectError("token_exchange_failed", e.message) from e

        access_token = token_data["access_token"]
        expires_in = token_data.get("expires_in")
        try:
            long_lived = await self.gateway.get_long_lived_token(access_token)
            access_token = long_lived["access_token"]
            expires_in = long_lived.get("expires_in")
        except (AppError, KeyError) as e:
            logger.warning("Could not upgrade to a long-lived token for user %s: %s", user.id, e)

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=parse_expires_in(expires_in))

        fb_user: dict = {}
        try:
            fb_user = await self.gateway.get_user_info(access_token)
        except AppError as e:
            logger.warning("Could not load Facebook profile for user %s: %s", user.id, e.message)

        try:
            has_ad_permissions = await self.gateway.verify_ad_permissions(access_token)
        except AppError as e:
            logger.warning("Ad permission probe failed for user %s: %s", user.id, e.message)
            has_ad_permissions = False

        try:
            await self.credentials.put(
                user.id,
                access_token,
                expires_at,
                has_ad_permissions,
                fb_user_id=fb_user.get("id"),
                fb_user_name=fb_user.get("name"),
                scopes=list(REQUIRED_SCOPES),
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.error("Could not store Facebook credential for user %s: %s", user.id, e)
            await self.db.rollback()
            raise ConnectError("token_storage_failed", "Could not save the Facebook connection") from e

        warning = None if has_ad_permissions else LIMITED_PERMISSIONS_WARNING
        if warning:
            logger.warning("User %s connected Facebook without verified ad permissions", user.id)
        logger.info("User %s connected Facebook (token expires %s)", user.id, expires_at.isoformat())
        return ConnectResult(
            user_id=user.id,
            expires_at=expires_at,
            has_ad_permissions=has_ad_permissions,
            fb_user_id=fb_user.get("id"),
            fb_user_name=fb_user.get("name"),
            warning=warning,
        )

    async def status(self, user_id: uuid.UUID) -> ConnectionResponse:
        result = await self.db.execute(
            select(MetaCredential).where(MetaCredential.user_id == user_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return ConnectionResponse(connected=False)
        expires_at = as_utc(row.expires_at)
        expired = expires_at <= datetime.now(timezone.utc)
        return ConnectionResponse(
            connected=not expired,
            expired=expired,
            has_ad_permissions=row.has_ad_permissions,
            fb_user_id=row.fb_user_id,
            fb_user_name=row.fb_user_name,
            expires_at=expires_at,
        )

    # -- Ad accounts -------------------------------------------------------

    async def list_available_accounts(self, user_id: uuid.UUID) -> list[AvailableAdAccount]:
        """Ad accounts the token can see, flagged when already connected."""
        cred = await self.credentials.require(user_id)
        accounts = await self.gateway.list_ad_accounts(cred.access_token)
        result = await self.db.execute(
            select(AdAccount.account_id).where(AdAccount.user_id == user_id)
        )
        connected = set(result.scalars().all())
        return [AvailableAdAccount(**acc, is_connected=acc["account_id"] in connected) for acc in accounts]

    async def connect_ad_account(self, user_id: uuid.UUID, ad_account_id: str) -> ConnectAdAccountResponse:
        """Attach an ad account, import its hierarchy and queue the first sync."""
        raw = str(ad_account_id).strip()
        if raw.startswith("act_"):
            raw = raw[4:]
        if not raw.isdigit():
            raise ValidationError("Ad account id must be numeric", field="ad_account_id")
        account_id = normalize_account_id(raw)

        cred = await self.credentials.require(user_id)
        available = {acc["account_id"]: acc for acc in await self.gateway.list_ad_accounts(cred.access_token)}
        info = available.get(account_id)
        if info is None:
            raise NotFound("Ad account not found or not accessible with this Facebook connection")

        result = await self.db.execute(
            select(AdAccount).where(AdAccount.user_id == user_id, AdAccount.account_id == account_id)
        )
        account = result.scalar_one_or_none()
        if account is None:
            account = AdAccount(user_id=user_id, account_id=account_id)
            self.db.add(account)
        account.name = info["name"]
        account.currency = info["currency"]
        account.timezone_name = info["timezone_name"]
        account.account_status = info["account_status"]
        account.amount_spent = info.get("amount_spent")
        account.business_country_code = info.get("business_country_code")
        account.is_active = True
        await self.db.commit()
        logger.info("User %s connected ad account %s", user_id, account_id)

        account_pk = account.id
        synchronizer = EntitySynchronizer(self.db, self.gateway, self.credentials)
        outcome = Outcome()
        try:
            await synchronizer.walk(account, outcome)
        except AppError as e:
            outcome.fail("list_campaigns", e, entity_id=account_id)
            logger.warning("Hierarchy import failed for %s: %s", account_id, e.message)

        job_id = None
        try:
            job = await synchronizer.sync_all_metrics(user_id, account_pk, trigger="initial")
            job_id = job.id
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Could not create the initial sync job for %s: %s", account_id, e)

        await self.db.refresh(account)
        return ConnectAdAccountResponse(
            ad_account=AdAccountResponse.model_validate(account),
            campaigns_imported=outcome.counts.get("campaigns_synced", 0),
            adsets_imported=outcome.counts.get("adsets_synced", 0),
            ads_imported=outcome.counts.get("ads_synced", 0),
            sync_job_id=job_id,
            errors=[f.to_dict() for f in outcome.failures],
        )

    # -- Disconnect --------------------------------------------------------

    async def disconnect(self, user_id: uuid.UUID) -> DisconnectResult:
        """Delete everything the user's connection owns, children first.

        Every step runs in its own savepoint and later steps still run when an
        earlier one fails. The result is successful when the credential row
        itself was removed.
        """
        outcome = Outcome()
        for step in DISCONNECT_STEPS:
            try:
                async with self.db.begin_nested():
                    count = await getattr(self, f"_delete_{step}")(user_id)
                outcome.succeed(step, count)
            except SQLAlchemyError as e:
                outcome.fail(step, StorageError(str(e)))
                logger.warning("Disconnect step %s failed for user %s: %s", step, user_id, e)

        await self.db.commit()
        self.credentials.cache.invalidate(user_id)

        success = outcome.succeeded("credential")
        if success:
            logger.info("User %s disconnected Facebook: %s", user_id, outcome.counts)
        else:
            logger.error("Disconnect for user %s did not remove the credential", user_id)
        return DisconnectResult(success=success, outcome=outcome)

    @staticmethod
    def _account_ids(user_id: uuid.UUID):
        return select(AdAccount.id).where(AdAccount.user_id == user_id)

    def _campaign_ids(self, user_id: uuid.UUID):
        return select(Campaign.id).where(Campaign.ad_account_id.in_(self._account_ids(user_id)))

    def _adset_ids(self, user_id: uuid.UUID):
        return select(AdSet.id).where(AdSet.campaign_id.in_(self._campaign_ids(user_id)))

    def _ad_ids(self, user_id: uuid.UUID):
        return select(Ad.id).where(Ad.adset_id.in_(self._adset_ids(user_id)))

    async def _delete(self, stmt) -> int:
        result = await self.db.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount or 0

    async def _delete_ad_metrics(self, user_id: uuid.UUID) -> int:
        return await self._delete(delete(AdMetric).where(AdMetric.ad_id.in_(self._ad_ids(user_id))))

    async def _delete_ads(self, user_id: uuid.UUID) -> int:
        return await self._delete(delete(Ad).where(Ad.adset_id.in_(self._adset_ids(user_id))))

    async def _delete_adset_metrics(self, user_id: uuid.UUID) -> int:
        return await self._delete(delete(AdSetMetric).where(AdSetMetric.adset_id.in_(self._adset_ids(user_id))))

    async def _delete_adsets(self, user_id: uuid.UUID) -> int:
        return await self._delete(delete(AdSet).where(AdSet.campaign_id.in_(self._campaign_ids(user_id))))

    async def _delete_campaign_metrics(self, user_id: uuid.UUID) -> int:
        return await self._delete(
            delete(CampaignMetric).where(CampaignMetric.campaign_id.in_(self._campaign_ids(user_id)))
        )

    async def _delete_campaigns(self, user_id: uuid.UUID) -> int:
        return await self._delete(delete(Campaign).where(Campaign.ad_account_id.in_(self._account_ids(user_id))))

    async def _delete_ad_accounts(self, user_id: uuid.UUID) -> int:
        # FK cascade also drops the accounts' sync jobs
        return await self._delete(delete(AdAccount).where(AdAccount.user_id == user_id))

    async def _delete_sync_jobs(self, user_id: uuid.UUID) -> int:
        return await self._delete(delete(SyncJob).where(SyncJob.user_id == user_id))

    async def _delete_credential(self, user_id: uuid.UUID) -> int:
        return int(await self.credentials.delete(user_id))
