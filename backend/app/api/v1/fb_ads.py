"""Facebook Ads routes: OAuth connection, ad accounts, hierarchy, sync jobs,
metrics and creates."""

import logging
import uuid
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, File, Query, Request, UploadFile
from fastapi.responses import RedirectResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.dependencies import get_current_user
from app.errors import ConfigurationError, StorageError
from app.models.fb_ads import Ad, AdAccount, AdSet, Campaign
from app.models.user import User
from app.schemas.fb_ads import (
    AdAccountResponse,
    AdCreateRequest,
    AdResponse,
    AdSetCreateRequest,
    AdSetResponse,
    AvailableAdAccount,
    CampaignCreateRequest,
    CampaignResponse,
    ConnectAdAccountRequest,
    ConnectAdAccountResponse,
    ConnectionResponse,
    DisconnectResponse,
    MediaUploadResponse,
    MetricRowResponse,
    MetricsSummaryResponse,
    MutationResponse,
    OAuthUrlResponse,
    SyncJobResponse,
    SyncTriggerResponse,
)
from app.services.connection_lifecycle import ConnectError, ConnectionLifecycleManager
from app.services.credential_store import CredentialStore
from app.services.entity_levels import EntityLevel, load_owned_account, load_owned_entity, parse_level
from app.services.meta_api import MetaGraphGateway
from app.services.metrics_reader import MetricsAggregationReader
from app.services.metrics_sync import EntitySynchronizer
from app.services.resource_mutation import ResourceMutationService
from app.utils.security import create_state_token, decode_state_token

logger = logging.getLogger(__name__)
router = APIRouter()
limiter = Limiter(key_func=get_remote_address)

LIMITED_PERMISSIONS_SYNC_WARNING = (
    "Your Facebook connection lacks ad permissions; some metrics may be missing. Reconnect to grant them."
)


def _redirect(params: dict) -> RedirectResponse:
    frontend_url = get_settings().frontend_url.rstrip("/")
    return RedirectResponse(url=f"{frontend_url}/dashboard?{urlencode(params)}")


# ---------------------------------------------------------------------------
# OAuth flow
# ---------------------------------------------------------------------------

@router.get("/connect/url", response_model=OAuthUrlResponse)
async def get_connect_url(user: User = Depends(get_current_user)):
    """Return the Facebook OAuth URL for the frontend to redirect to."""
    if not get_settings().meta_app_id:
        raise ConfigurationError("Meta App ID not configured. Set META_APP_ID env var.")
    return OAuthUrlResponse(url=MetaGraphGateway().get_oauth_url(state=create_state_token(str(user.id))))


@router.get("/callback")
@limiter.limit("20/minute")
async def oauth_callback(
    request: Request,
    code: str = Query(""),
    state: str = Query(""),
    error: str | None = Query(None),
    error_reason: str | None = Query(None),
    error_description: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Handle the Facebook OAuth callback and redirect back to the dashboard."""
    if error:
        reason = "missing_permissions" if error_reason == "user_denied" else "facebook_auth_failed"
        logger.warning("Facebook OAuth returned %s (%s)", error, error_reason)
        return _redirect({"error": reason, "message": error_description or error})

    user_id = decode_state_token(state)
    user = None
    if user_id:
        try:
            user = await db.get(User, uuid.UUID(user_id))
        except ValueError:
            user = None
    if user is None or not user.is_active:
        return _redirect({"error": "no_user", "message": "Could not match this login to a user"})

    try:
        result = await ConnectionLifecycleManager(db).connect(user, code)
    except ConnectError as e:
        return _redirect({"error": e.reason, "message": e.message})
    except Exception as e:
        logger.exception("Unexpected error in Facebook callback for user %s", user.id)
        return _redirect({"error": "unexpected_error", "message": str(e) or "Unexpected error"})

    params = {"success": "facebook_connected"}
    if not result.has_ad_permissions:
        params["warning"] = "limited_permissions"
    return _redirect(params)


# ---------------------------------------------------------------------------
# Connection management
# ---------------------------------------------------------------------------

@router.get("/connection", response_model=ConnectionResponse)
async def get_connection(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ConnectionLifecycleManager(db).status(user.id)


@router.delete("/connection", response_model=DisconnectResponse)
async def disconnect(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Disconnect Facebook and delete every mirrored resource of the user."""
    result = await ConnectionLifecycleManager(db).disconnect(user.id)
    if not result.success:
        raise StorageError("Could not remove the Facebook connection", details={"errors": result.errors})
    return DisconnectResponse(success=True, errors=result.errors)


# ---------------------------------------------------------------------------
# Ad accounts
# ---------------------------------------------------------------------------

@router.get("/ad-accounts/available", response_model=list[AvailableAdAccount])
async def list_available_ad_accounts(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ConnectionLifecycleManager(db).list_available_accounts(user.id)


@router.post("/ad-accounts", response_model=ConnectAdAccountResponse, status_code=201)
async def connect_ad_account(
    body: ConnectAdAccountRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ConnectionLifecycleManager(db).connect_ad_account(user.id, body.ad_account_id)


@router.get("/ad-accounts", response_model=list[AdAccountResponse])
async def list_ad_accounts(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(AdAccount).where(AdAccount.user_id == user.id).order_by(AdAccount.name)
    )
    return result.scalars().all()


# ---------------------------------------------------------------------------
# Hierarchy (local mirror)
# ---------------------------------------------------------------------------

@router.get("/ad-accounts/{ad_account_id}/campaigns", response_model=list[CampaignResponse])
async def list_campaigns(
    ad_account_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    account = await load_owned_account(db, ad_account_id, user.id)
    result = await db.execute(
        select(Campaign).where(Campaign.ad_account_id == account.id).order_by(Campaign.name)
    )
    return result.scalars().all()


@router.get("/campaigns/{campaign_id}/adsets", response_model=list[AdSetResponse])
async def list_campaign_adsets(
    campaign_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    campaign = await load_owned_entity(db, EntityLevel.CAMPAIGN, campaign_id, user.id)
    result = await db.execute(
        select(AdSet).where(AdSet.campaign_id == campaign.id).order_by(AdSet.name)
    )
    return result.scalars().all()


@router.get("/adsets/{adset_id}/ads", response_model=list[AdResponse])
async def list_adset_ads(
    adset_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    adset = await load_owned_entity(db, EntityLevel.ADSET, adset_id, user.id)
    result = await db.execute(select(Ad).where(Ad.adset_id == adset.id).order_by(Ad.name))
    return result.scalars().all()


# ---------------------------------------------------------------------------
# Sync jobs
# ---------------------------------------------------------------------------

@router.post("/ad-accounts/{ad_account_id}/sync", response_model=SyncTriggerResponse, status_code=202)
async def trigger_sync(
    ad_account_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Queue a metrics sync for one ad account; poll the returned job id."""
    account = await load_owned_account(db, ad_account_id, user.id)
    credentials = CredentialStore(db)
    cred = await credentials.require(user.id)

    job = await EntitySynchronizer(db, credentials=credentials).sync_all_metrics(user.id, account.id)
    return SyncTriggerResponse(
        job_id=job.id,
        status=job.status,
        has_ad_permissions=cred.has_ad_permissions,
        warning=None if cred.has_ad_permissions else LIMITED_PERMISSIONS_SYNC_WARNING,
    )


@router.get("/sync-jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(
    job_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await EntitySynchronizer(db).get_job(job_id, user.id)


@router.post("/sync-jobs/{job_id}/cancel", response_model=SyncJobResponse)
async def cancel_sync_job(
    job_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    job = await EntitySynchronizer(db).cancel_job(job_id, user.id)
    await db.commit()
    return job


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

@router.get("/metrics/{level}/{entity_id}", response_model=list[MetricRowResponse])
async def get_entity_metrics(
    level: str,
    entity_id: uuid.UUID,
    days: int = Query(30, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Stored daily rows for one campaign / ad set / ad, newest first."""
    entity_level = parse_level(level)
    await load_owned_entity(db, entity_level, entity_id, user.id)
    return await MetricsAggregationReader(db).rows(entity_level, entity_id, days)


@router.get("/metrics/{level}/{entity_id}/summary", response_model=MetricsSummaryResponse)
async def get_entity_metrics_summary(
    level: str,
    entity_id: uuid.UUID,
    days: int = Query(30, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    entity_level = parse_level(level)
    await load_owned_entity(db, entity_level, entity_id, user.id)
    return await MetricsAggregationReader(db).summarize(entity_level, entity_id, days)


# ---------------------------------------------------------------------------
# Creates
# ---------------------------------------------------------------------------

@router.post("/ad-accounts/{ad_account_id}/campaigns", response_model=MutationResponse, status_code=201)
async def create_campaign(
    ad_account_id: uuid.UUID,
    body: CampaignCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ResourceMutationService(db).create_campaign(user.id, ad_account_id, body)


@router.post("/campaigns/{campaign_id}/adsets", response_model=MutationResponse, status_code=201)
async def create_adset(
    campaign_id: uuid.UUID,
    body: AdSetCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ResourceMutationService(db).create_adset(user.id, campaign_id, body)


@router.post("/adsets/{adset_id}/ads", response_model=MutationResponse, status_code=201)
async def create_ad(
    adset_id: uuid.UUID,
    body: AdCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ResourceMutationService(db).create_ad(user.id, adset_id, body)


@router.post("/ad-accounts/{ad_account_id}/media", response_model=MediaUploadResponse, status_code=201)
async def upload_media(
    ad_account_id: uuid.UUID,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Upload an image or video to the ad account's media library."""
    content = await file.read()
    return await ResourceMutationService(db).upload_media(
        user.id, ad_account_id, file.filename or "upload", content, file.content_type
    )
