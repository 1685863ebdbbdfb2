"""Resource mutation service: validates create requests locally, calls the
Marketing API, then mirrors the new resource into local storage.

The local mirror is best effort. Once the provider has accepted a create the
resource exists upstream, so a storage failure afterwards is logged and the
operation still reports success (the next sync picks the row up).
"""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AppError
from app.models.fb_ads import Ad, AdAccount, AdSet, Campaign
from app.schemas.fb_ads import (
    AdCreateRequest,
    AdSetCreateRequest,
    CampaignCreateRequest,
    MediaUploadResponse,
    MutationResponse,
)
from app.services.credential_store import CredentialStore
from app.services.entity_levels import (
    EntityLevel,
    account_for_entity,
    load_owned_account,
    load_owned_entity,
)
from app.services.meta_api import MetaGraphGateway
from app.services.mutation_rules import (
    DEFAULT_BID_STRATEGY,
    check_adset_required_fields,
    requires_bid_amount,
    validate_ad_request,
    validate_adset_against_campaign,
    validate_campaign_request,
    validate_media,
)
from app.utils.mirror import mirror_best_effort

logger = logging.getLogger(__name__)

# Creative rejected because of an unsupported degrees_of_freedom_spec
DOF_REJECTED_SUBCODE = 1885183

MIRROR_WARNING = "Created on Facebook but not saved locally yet; it will appear after the next sync."


def campaign_payload(req: CampaignCreateRequest) -> dict:
    payload = {
        "name": req.name.strip(),
        "objective": req.objective,
        "status": req.status or "PAUSED",
        "special_ad_categories": req.special_ad_categories or [],
        "daily_budget": req.daily_budget,
        "lifetime_budget": req.lifetime_budget,
    }
    if req.buying_type:
        payload["buying_type"] = req.buying_type
    return payload


def adset_payload(req: AdSetCreateRequest, campaign: Campaign) -> dict:
    strategy = req.bid_strategy or DEFAULT_BID_STRATEGY
    payload = {
        "name": req.name.strip(),
        "campaign_id": campaign.campaign_id,
        "optimization_goal": req.optimization_goal,
        "billing_event": req.billing_event,
        "bid_strategy": strategy,
        "daily_budget": req.daily_budget,
        "lifetime_budget": req.lifetime_budget,
        "targeting": req.targeting.to_graph(),
        "status": req.status or "PAUSED",
        "start_time": req.start_time.isoformat() if req.start_time else None,
        "end_time": req.end_time.isoformat() if req.end_time else None,
    }
    if requires_bid_amount(strategy):
        payload["bid_amount"] = req.bid_amount
    return payload


def creative_payload(req: AdCreateRequest, *, with_dof: bool = True) -> dict:
    creative = req.creative
    payload = {
        "name": creative.name,
        "object_story_spec": creative.object_story_spec(),
    }
    if with_dof and creative.degrees_of_freedom_spec:
        payload["degrees_of_freedom_spec"] = creative.degrees_of_freedom_spec
    return payload


class ResourceMutationService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: MetaGraphGateway | None = None,
        credentials: CredentialStore | None = None,
    ):
        self.db = db
        # User-interactive path: no retries
        self.gateway = gateway or MetaGraphGateway(retries=False)
        self.credentials = credentials or CredentialStore(db)

    # -- Campaigns ---------------------------------------------------------

    async def create_campaign(
        self, user_id: uuid.UUID, ad_account_id: uuid.UUID, req: CampaignCreateRequest,
    ) -> MutationResponse:
        validate_campaign_request(req)
        account = await load_owned_account(self.db, ad_account_id, user_id)
        cred = await self.credentials.require(user_id)

        payload = campaign_payload(req)
        created = await self.gateway.create_entity(
            EntityLevel.CAMPAIGN, account.account_id, payload, cred.access_token
        )
        logger.info("Created campaign %s in %s", created["id"], account.account_id)

        local = await self._mirror(
            EntityLevel.CAMPAIGN,
            created["id"],
            Campaign(
                ad_account_id=account.id,
                campaign_id=created["id"],
                name=payload["name"],
                objective=req.objective,
                status=payload["status"],
                daily_budget=req.daily_budget,
                lifetime_budget=req.lifetime_budget,
                special_ad_categories=payload["special_ad_categories"],
                buying_type=req.buying_type or "AUCTION",
                raw_data={**payload, "id": created["id"]},
            ),
        )
        return self._response(EntityLevel.CAMPAIGN, created["id"], local)

    # -- Ad sets -----------------------------------------------------------

    async def create_adset(
        self, user_id: uuid.UUID, campaign_id: uuid.UUID, req: AdSetCreateRequest,
    ) -> MutationResponse:
        """Checks run in a fixed order: required fields, parent campaign and its
        CBO state, budget ownership, goal/billing pair, bid cap. Nothing is sent
        upstream until all of them pass."""
        check_adset_required_fields(req)
        campaign = await load_owned_entity(self.db, EntityLevel.CAMPAIGN, campaign_id, user_id)
        validate_adset_against_campaign(req, campaign.is_cbo)

        account = await account_for_entity(self.db, EntityLevel.CAMPAIGN, campaign)
        cred = await self.credentials.require(user_id)

        payload = adset_payload(req, campaign)
        created = await self.gateway.create_entity(
            EntityLevel.ADSET, account.account_id, payload, cred.access_token
        )
        logger.info("Created ad set %s under campaign %s", created["id"], campaign.campaign_id)

        local = await self._mirror(
            EntityLevel.ADSET,
            created["id"],
            AdSet(
                campaign_id=campaign.id,
                adset_id=created["id"],
                name=payload["name"],
                status=payload["status"],
                daily_budget=req.daily_budget,
                lifetime_budget=req.lifetime_budget,
                targeting=payload["targeting"],
                optimization_goal=req.optimization_goal,
                billing_event=req.billing_event,
                bid_strategy=payload["bid_strategy"],
                bid_amount=payload.get("bid_amount"),
                start_time=req.start_time,
                end_time=req.end_time,
                raw_data={**payload, "id": created["id"]},
            ),
        )
        return self._response(EntityLevel.ADSET, created["id"], local)

    # -- Ads ---------------------------------------------------------------

    async def create_ad(
        self, user_id: uuid.UUID, adset_id: uuid.UUID, req: AdCreateRequest,
    ) -> MutationResponse:
        """Create the ad creative, then the ad that references it."""
        validate_ad_request(req)
        adset = await load_owned_entity(self.db, EntityLevel.ADSET, adset_id, user_id)
        account = await account_for_entity(self.db, EntityLevel.ADSET, adset)
        cred = await self.credentials.require(user_id)

        creative = await self._create_creative(account, req, cred.access_token)

        payload = {
            "name": req.name.strip(),
            "adset_id": adset.adset_id,
            "creative": {"creative_id": creative["id"]},
            "status": req.status or "PAUSED",
            "tracking_specs": req.tracking_specs,
        }
        created = await self.gateway.create_entity(
            EntityLevel.AD, account.account_id, payload, cred.access_token
        )
        logger.info("Created ad %s (creative %s) under ad set %s", created["id"], creative["id"], adset.adset_id)

        local = await self._mirror(
            EntityLevel.AD,
            created["id"],
            Ad(
                adset_id=adset.id,
                ad_id=created["id"],
                name=payload["name"],
                status=payload["status"],
                creative_id=creative["id"],
                creative_data=req.creative.model_dump(exclude_none=True),
                raw_data={**payload, "id": created["id"]},
            ),
        )
        return self._response(EntityLevel.AD, created["id"], local, creative_id=creative["id"])

    async def _create_creative(self, account: AdAccount, req: AdCreateRequest, access_token: str) -> dict:
        try:
            return await self.gateway.create_ad_creative(
                account.account_id, creative_payload(req), access_token
            )
        except AppError as e:
            if not req.creative.degrees_of_freedom_spec or (e.details or {}).get("subcode") != DOF_REJECTED_SUBCODE:
                raise
            logger.warning(
                "Creative rejected degrees_of_freedom_spec in %s, retrying without it", account.account_id
            )
            return await self.gateway.create_ad_creative(
                account.account_id, creative_payload(req, with_dof=False), access_token
            )

    # -- Media -------------------------------------------------------------

    async def upload_media(
        self,
        user_id: uuid.UUID,
        ad_account_id: uuid.UUID,
        filename: str,
        content: bytes,
        content_type: str | None,
    ) -> MediaUploadResponse:
        media_type = validate_media(content_type, len(content))
        account = await load_owned_account(self.db, ad_account_id, user_id)
        cred = await self.credentials.require(user_id)

        handle = await self.gateway.upload_media(
            account.account_id, filename, content, content_type, media_type, cred.access_token
        )
        logger.info("Uploaded %s %s to %s (%d bytes)", media_type, filename, account.account_id, len(content))
        return MediaUploadResponse(media_type=media_type, handle=handle, filename=filename, size=len(content))

    # -- Local mirror ------------------------------------------------------

    async def _mirror(self, level: EntityLevel, provider_id: str, entity):
        """Persist the new entity; returns it, or ``None`` when the write failed."""
        if await mirror_best_effort(self.db, f"{level.value} {provider_id}", entity):
            return entity
        return None

    @staticmethod
    def _response(level: EntityLevel, provider_id: str, local, creative_id: str | None = None) -> MutationResponse:
        return MutationResponse(
            id=provider_id,
            level=level.value,
            local_id=local.id if local is not None else None,
            mirrored=local is not None,
            creative_id=creative_id,
            warning=None if local is not None else MIRROR_WARNING,
        )
