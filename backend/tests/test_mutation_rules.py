"""
Tests for the local create-request rules (no database, no network).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.errors import ValidationError
from app.schemas.fb_ads import (
    AdCreateRequest,
    AdCreativeSpec,
    AdSetCreateRequest,
    CampaignCreateRequest,
    TargetingSpec,
)
from app.services.mutation_rules import (
    check_adset_required_fields,
    is_valid_optimization_billing_combination,
    validate_ad_request,
    validate_adset_against_campaign,
    validate_campaign_request,
    validate_media,
)


def _adset(**overrides) -> AdSetCreateRequest:
    data = {
        "name": "Prospecting",
        "optimization_goal": "LINK_CLICKS",
        "billing_event": "IMPRESSIONS",
        "daily_budget": 2000,
        "targeting": TargetingSpec(countries=["US"]),
    }
    data.update(overrides)
    return AdSetCreateRequest(**data)


def _field_of(exc_info) -> str | None:
    return exc_info.value.field


# ---------------------------------------------------------------------------
# Optimization goal / billing event table
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "goal, billing, ok",
    [
        ("LINK_CLICKS", "LINK_CLICKS", True),
        ("LINK_CLICKS", "IMPRESSIONS", True),
        ("REACH", "IMPRESSIONS", True),
        ("REACH", "LINK_CLICKS", False),
        ("THRUPLAY", "THRUPLAY", True),
        ("CONVERSIONS", "LINK_CLICKS", False),
        ("UNKNOWN_GOAL", "IMPRESSIONS", False),
    ],
)
def test_optimization_billing_table(goal, billing, ok):
    assert is_valid_optimization_billing_combination(goal, billing) is ok


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------


def test_campaign_requires_name_and_objective():
    with pytest.raises(ValidationError) as exc:
        validate_campaign_request(CampaignCreateRequest(name=" ", objective="OUTCOME_TRAFFIC"))
    assert _field_of(exc) == "name"

    with pytest.raises(ValidationError) as exc:
        validate_campaign_request(CampaignCreateRequest(name="Spring"))
    assert _field_of(exc) == "objective"


def test_campaign_rejects_both_budgets():
    with pytest.raises(ValidationError) as exc:
        validate_campaign_request(CampaignCreateRequest(
            name="Spring", objective="OUTCOME_TRAFFIC", daily_budget=1000, lifetime_budget=10000,
        ))
    assert _field_of(exc) == "daily_budget"


def test_campaign_rejects_unknown_status():
    with pytest.raises(ValidationError) as exc:
        validate_campaign_request(CampaignCreateRequest(name="Spring", objective="OUTCOME_TRAFFIC", status="DELETED"))
    assert _field_of(exc) == "status"


# ---------------------------------------------------------------------------
# Ad sets
# ---------------------------------------------------------------------------


def test_adset_requires_targeting_country():
    with pytest.raises(ValidationError) as exc:
        check_adset_required_fields(_adset(targeting=TargetingSpec(countries=[])))
    assert _field_of(exc) == "targeting"


def test_cbo_campaign_rejects_adset_budget():
    with pytest.raises(ValidationError) as exc:
        validate_adset_against_campaign(_adset(daily_budget=1500), campaign_is_cbo=True)
    assert "Campaign Budget Optimization" in exc.value.message


def test_non_cbo_campaign_requires_adset_budget():
    with pytest.raises(ValidationError) as exc:
        validate_adset_against_campaign(_adset(daily_budget=None), campaign_is_cbo=False)
    assert _field_of(exc) == "daily_budget"


def test_cbo_campaign_accepts_budgetless_adset():
    validate_adset_against_campaign(_adset(daily_budget=None), campaign_is_cbo=True)


def test_incompatible_billing_event_lists_allowed_values():
    with pytest.raises(ValidationError) as exc:
        validate_adset_against_campaign(
            _adset(optimization_goal="REACH", billing_event="LINK_CLICKS"), campaign_is_cbo=False,
        )
    assert _field_of(exc) == "billing_event"
    assert "IMPRESSIONS" in exc.value.message


@pytest.mark.parametrize("strategy", ["LOWEST_COST_WITH_BID_CAP", "TARGET_COST"])
def test_cap_strategies_require_bid_amount(strategy):
    with pytest.raises(ValidationError) as exc:
        validate_adset_against_campaign(_adset(bid_strategy=strategy), campaign_is_cbo=False)
    assert _field_of(exc) == "bid_amount"

    validate_adset_against_campaign(_adset(bid_strategy=strategy, bid_amount=150), campaign_is_cbo=False)


def test_age_bounds():
    with pytest.raises(ValidationError):
        validate_adset_against_campaign(
            _adset(targeting=TargetingSpec(countries=["US"], age_min=12)), campaign_is_cbo=False,
        )
    with pytest.raises(ValidationError):
        validate_adset_against_campaign(
            _adset(targeting=TargetingSpec(countries=["US"], age_min=40, age_max=30)), campaign_is_cbo=False,
        )


def test_lifetime_budget_needs_end_after_start():
    start = datetime.now(timezone.utc) + timedelta(days=1)
    with pytest.raises(ValidationError) as exc:
        validate_adset_against_campaign(
            _adset(daily_budget=None, lifetime_budget=50000, start_time=start), campaign_is_cbo=False,
        )
    assert _field_of(exc) == "end_time"

    with pytest.raises(ValidationError):
        validate_adset_against_campaign(
            _adset(daily_budget=None, lifetime_budget=50000, start_time=start, end_time=start - timedelta(hours=1)),
            campaign_is_cbo=False,
        )


# ---------------------------------------------------------------------------
# Ads and media
# ---------------------------------------------------------------------------


def test_image_ad_needs_hash_and_link():
    req = AdCreateRequest(
        name="Ad", creative=AdCreativeSpec(name="Creative", page_id="p1", media_type="image", image_hash="h1"),
    )
    with pytest.raises(ValidationError) as exc:
        validate_ad_request(req)
    assert _field_of(exc) == "creative.link_url"


def test_ad_rejects_unknown_call_to_action():
    req = AdCreateRequest(
        name="Ad",
        creative=AdCreativeSpec(
            name="Creative", page_id="p1", media_type="video", video_id="v1", call_to_action_type="BUY_IT",
        ),
    )
    with pytest.raises(ValidationError) as exc:
        validate_ad_request(req)
    assert _field_of(exc) == "creative.call_to_action_type"


@pytest.mark.parametrize(
    "content_type, size, kind",
    [
        ("image/png", 1024, "image"),
        ("image/jpeg", 30 * 1024 * 1024, "image"),
        ("video/quicktime", 10 * 1024 * 1024, "video"),
    ],
)
def test_media_accepted(content_type, size, kind):
    assert validate_media(content_type, size) == kind


@pytest.mark.parametrize(
    "content_type, size",
    [
        ("image/webp", 1024),
        ("application/pdf", 1024),
        ("image/png", 30 * 1024 * 1024 + 1),
        ("video/mp4", 0),
        (None, 10),
    ],
)
def test_media_rejected(content_type, size):
    with pytest.raises(ValidationError):
        validate_media(content_type, size)
