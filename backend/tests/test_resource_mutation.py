"""
Tests for creating campaigns, ad sets, ads and media through the Marketing API
with a best-effort local mirror.
"""

from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import func, select

from app.errors import CredentialMissing, NotFound, ProviderError, ValidationError
from app.models.fb_ads import Ad, AdSet, Campaign
from app.schemas.fb_ads import (
    AdCreateRequest,
    AdCreativeSpec,
    AdSetCreateRequest,
    CampaignCreateRequest,
    TargetingSpec,
)
from app.services.resource_mutation import MIRROR_WARNING, ResourceMutationService
from conftest import graph_error, graph_gateway


class GraphRecorder:
    """Mock Graph handler that records POST forms and answers with ids."""

    def __init__(self, responses: dict[str, list] | None = None):
        self.requests: list[tuple[str, dict]] = []
        self.responses = responses or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        edge = request.url.path.rsplit("/", 1)[-1]
        form = {}
        if request.headers.get("content-type", "").startswith("application/x-www-form-urlencoded"):
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append((edge, form))
        queued = self.responses.get(edge)
        if queued:
            return queued.pop(0)
        return httpx.Response(200, json={"id": f"new-{edge}-{len(self.requests)}"})

    def edges(self) -> list[str]:
        return [edge for edge, _ in self.requests]


def _service(db_session, recorder: GraphRecorder) -> ResourceMutationService:
    return ResourceMutationService(db_session, gateway=graph_gateway(recorder, retries=False))


def _adset_request(**overrides) -> AdSetCreateRequest:
    data = {
        "name": "Prospecting",
        "optimization_goal": "LINK_CLICKS",
        "billing_event": "IMPRESSIONS",
        "daily_budget": 2000,
        "targeting": TargetingSpec(countries=["US", "CA"], age_min=21),
    }
    data.update(overrides)
    return AdSetCreateRequest(**data)


def _ad_request(**creative_overrides) -> AdCreateRequest:
    creative = {
        "name": "Spring creative",
        "page_id": "page-1",
        "media_type": "image",
        "image_hash": "hash-1",
        "link_url": "https://example.com",
        "message": "Hello",
    }
    creative.update(creative_overrides)
    return AdCreateRequest(name="Spring ad", creative=AdCreativeSpec(**creative))


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_campaign_sends_defaults_and_mirrors(db_session, test_user, meta_credential, ad_account):
    recorder = GraphRecorder()
    result = await _service(db_session, recorder).create_campaign(
        test_user.id, ad_account.id, CampaignCreateRequest(name=" Spring ", objective="OUTCOME_TRAFFIC"),
    )

    edge, form = recorder.requests[0]
    assert edge == "campaigns"
    assert form["name"] == "Spring"
    assert form["status"] == "PAUSED"
    assert json.loads(form["special_ad_categories"]) == []
    assert "daily_budget" not in form

    assert result.mirrored is True
    assert result.warning is None
    campaign = await db_session.get(Campaign, result.local_id)
    assert campaign.campaign_id == result.id
    assert campaign.buying_type == "AUCTION"
    assert campaign.is_cbo is False


@pytest.mark.asyncio
async def test_validation_failure_makes_no_provider_call(db_session, test_user, meta_credential, ad_account):
    recorder = GraphRecorder()
    with pytest.raises(ValidationError):
        await _service(db_session, recorder).create_campaign(
            test_user.id, ad_account.id, CampaignCreateRequest(name="Spring"),
        )
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_create_campaign_checks_ownership(db_session, other_user, meta_credential, ad_account):
    recorder = GraphRecorder()
    with pytest.raises(NotFound):
        await _service(db_session, recorder).create_campaign(
            other_user.id, ad_account.id, CampaignCreateRequest(name="Spring", objective="OUTCOME_TRAFFIC"),
        )
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_create_without_credential(db_session, test_user, ad_account):
    recorder = GraphRecorder()
    with pytest.raises(CredentialMissing):
        await _service(db_session, recorder).create_campaign(
            test_user.id, ad_account.id, CampaignCreateRequest(name="Spring", objective="OUTCOME_TRAFFIC"),
        )
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_mirror_failure_still_reports_success(db_session, test_user, meta_credential, ad_account, hierarchy):
    # The provider hands back an id that is already mirrored, so the local insert fails
    recorder = GraphRecorder({"campaigns": [httpx.Response(200, json={"id": "c-abo"})]})
    result = await _service(db_session, recorder).create_campaign(
        test_user.id, ad_account.id, CampaignCreateRequest(name="Dup", objective="OUTCOME_TRAFFIC"),
    )

    assert result.id == "c-abo"
    assert result.mirrored is False
    assert result.local_id is None
    assert result.warning == MIRROR_WARNING

    count = (await db_session.execute(
        select(func.count()).select_from(Campaign).where(Campaign.campaign_id == "c-abo")
    )).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_provider_error_propagates(db_session, test_user, meta_credential, ad_account):
    recorder = GraphRecorder({"campaigns": [graph_error(1, "Unknown error", status=500)]})
    with pytest.raises(ProviderError):
        await _service(db_session, recorder).create_campaign(
            test_user.id, ad_account.id, CampaignCreateRequest(name="Spring", objective="OUTCOME_TRAFFIC"),
        )


# ---------------------------------------------------------------------------
# Ad sets
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_adset_payload(db_session, test_user, meta_credential, hierarchy):
    recorder = GraphRecorder()
    result = await _service(db_session, recorder).create_adset(
        test_user.id, hierarchy["abo"].id, _adset_request(bid_amount=300),
    )

    edge, form = recorder.requests[0]
    assert edge == "adsets"
    assert form["campaign_id"] == "c-abo"
    assert form["bid_strategy"] == "LOWEST_COST_WITHOUT_CAP"
    # bid_amount is only sent for cap strategies
    assert "bid_amount" not in form
    targeting = json.loads(form["targeting"])
    assert targeting["geo_locations"] == {"countries": ["US", "CA"]}
    assert targeting["targeting_automation"] == {"advantage_audience": 0}

    adset = await db_session.get(AdSet, result.local_id)
    assert adset.campaign_id == hierarchy["abo"].id
    assert adset.bid_amount is None


@pytest.mark.asyncio
async def test_bid_cap_without_amount_never_calls_provider(db_session, test_user, meta_credential, hierarchy):
    recorder = GraphRecorder()
    with pytest.raises(ValidationError) as exc:
        await _service(db_session, recorder).create_adset(
            test_user.id, hierarchy["abo"].id, _adset_request(bid_strategy="LOWEST_COST_WITH_BID_CAP"),
        )
    assert exc.value.field == "bid_amount"
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_bid_cap_sends_amount(db_session, test_user, meta_credential, hierarchy):
    recorder = GraphRecorder()
    await _service(db_session, recorder).create_adset(
        test_user.id, hierarchy["abo"].id, _adset_request(bid_strategy="TARGET_COST", bid_amount=250),
    )
    assert recorder.requests[0][1]["bid_amount"] == "250"


@pytest.mark.asyncio
async def test_adset_budget_under_cbo_campaign_rejected(db_session, test_user, meta_credential, hierarchy):
    recorder = GraphRecorder()
    with pytest.raises(ValidationError) as exc:
        await _service(db_session, recorder).create_adset(
            test_user.id, hierarchy["cbo"].id, _adset_request(daily_budget=1000),
        )
    assert "Campaign Budget Optimization" in exc.value.message
    assert recorder.requests == []


# ---------------------------------------------------------------------------
# Ads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_ad_creates_creative_first(db_session, test_user, meta_credential, hierarchy):
    recorder = GraphRecorder({"adcreatives": [httpx.Response(200, json={"id": "cr-9"})]})
    result = await _service(db_session, recorder).create_ad(
        test_user.id, hierarchy["adset"].id, _ad_request(),
    )

    assert recorder.edges() == ["adcreatives", "ads"]
    creative_form = recorder.requests[0][1]
    story = json.loads(creative_form["object_story_spec"])
    assert story["page_id"] == "page-1"
    assert story["link_data"]["image_hash"] == "hash-1"
    assert story["link_data"]["call_to_action"] == {"type": "LEARN_MORE", "value": {"link": "https://example.com"}}

    ad_form = recorder.requests[1][1]
    assert ad_form["adset_id"] == "s-1"
    assert json.loads(ad_form["creative"]) == {"creative_id": "cr-9"}
    assert ad_form["status"] == "PAUSED"

    assert result.creative_id == "cr-9"
    ad = await db_session.get(Ad, result.local_id)
    assert ad.creative_id == "cr-9"


@pytest.mark.asyncio
async def test_creative_retried_without_degrees_of_freedom(db_session, test_user, meta_credential, hierarchy):
    recorder = GraphRecorder({
        "adcreatives": [
            graph_error(100, "Invalid parameter", subcode=1885183),
            httpx.Response(200, json={"id": "cr-2"}),
        ],
    })
    result = await _service(db_session, recorder).create_ad(
        test_user.id,
        hierarchy["adset"].id,
        _ad_request(degrees_of_freedom_spec={"creative_features_spec": {"standard_enhancements": {"enroll_status": "OPT_IN"}}}),
    )

    assert recorder.edges() == ["adcreatives", "adcreatives", "ads"]
    assert "degrees_of_freedom_spec" in recorder.requests[0][1]
    assert "degrees_of_freedom_spec" not in recorder.requests[1][1]
    assert result.creative_id == "cr-2"


@pytest.mark.asyncio
async def test_other_creative_errors_are_not_retried(db_session, test_user, meta_credential, hierarchy):
    recorder = GraphRecorder({"adcreatives": [graph_error(100, "Invalid parameter", subcode=1487390)]})
    with pytest.raises(ProviderError):
        await _service(db_session, recorder).create_ad(
            test_user.id,
            hierarchy["adset"].id,
            _ad_request(degrees_of_freedom_spec={"creative_features_spec": {}}),
        )
    assert recorder.edges() == ["adcreatives"]


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upload_image(db_session, test_user, meta_credential, ad_account):
    recorder = GraphRecorder({"adimages": [httpx.Response(200, json={"images": {"a.png": {"hash": "h-77"}}})]})
    result = await _service(db_session, recorder).upload_media(
        test_user.id, ad_account.id, "a.png", b"\x89PNG", "image/png",
    )
    assert result.media_type == "image"
    assert result.handle == "h-77"
    assert result.size == 4


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_type_before_network(db_session, test_user, meta_credential, ad_account):
    recorder = GraphRecorder()
    with pytest.raises(ValidationError):
        await _service(db_session, recorder).upload_media(
            test_user.id, ad_account.id, "doc.pdf", b"%PDF", "application/pdf",
        )
    assert recorder.requests == []
