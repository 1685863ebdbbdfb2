"""
Tests for the Meta Graph gateway: error normalization, retry/backoff,
pagination and token helpers.
"""

from __future__ import annotations

from datetime import date
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.errors import AuthExpired, NotFound, PermissionDenied, ProviderError, RateLimited, ValidationError
from app.services.entity_levels import EntityLevel
from app.services.meta_api import normalize_account_id, normalize_error, parse_expires_in, parse_insight_row
from conftest import graph_error, graph_gateway


# ---------------------------------------------------------------------------
# Error normalization
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "status, code, subcode, expected",
    [
        (400, 190, None, AuthExpired),
        (401, None, None, AuthExpired),
        (400, 200, None, PermissionDenied),
        (403, None, None, PermissionDenied),
        (400, 17, None, RateLimited),
        (400, 80004, None, RateLimited),
        (429, None, None, RateLimited),
        (400, 100, 33, NotFound),
        (400, 1487, None, ValidationError),
        (500, 1, None, ProviderError),
    ],
)
def test_normalize_error_maps_graph_codes(status, code, subcode, expected):
    body = {"error": {"message": "boom", "code": code, "error_subcode": subcode}}
    assert isinstance(normalize_error(status, body), expected)


def test_normalize_error_keeps_provider_codes():
    err = normalize_error(400, {"error": {"message": "bad creative", "code": 100, "error_subcode": 1885183}})
    assert isinstance(err, ProviderError)
    assert err.provider_code == 100
    assert err.subcode == 1885183
    assert err.to_dict()["details"]["subcode"] == 1885183


def test_normalize_error_without_body():
    err = normalize_error(502, None)
    assert isinstance(err, ProviderError)
    assert "502" in err.message


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_parse_expires_in_falls_back_to_one_hour():
    assert parse_expires_in(5000) == 5000
    assert parse_expires_in("5184000") == 5184000
    assert parse_expires_in(None) == 3600
    assert parse_expires_in(0) == 3600
    assert parse_expires_in("soon") == 3600


def test_normalize_account_id():
    assert normalize_account_id("123") == "act_123"
    assert normalize_account_id("act_123") == "act_123"
    assert normalize_account_id(" 123 ") == "act_123"


def test_parse_insight_row_sums_offsite_conversions():
    row = parse_insight_row({
        "date_start": "2024-05-01",
        "impressions": "1000",
        "clicks": "25",
        "spend": "12.346",
        "frequency": "1.23456",
        "actions": [
            {"action_type": "offsite_conversion.fb_pixel_purchase", "value": "3"},
            {"action_type": "offsite_conversion.fb_pixel_lead", "value": "2"},
            {"action_type": "link_click", "value": "25"},
        ],
    })
    assert row["date"] == date(2024, 5, 1)
    assert row["impressions"] == 1000
    assert row["conversions"] == 5
    assert str(row["spend"]) == "12.35"
    assert row["reach"] == 0


# ---------------------------------------------------------------------------
# Retry behaviour
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_rate_limited_calls_are_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) < 3:
            return graph_error(17, "User request limit reached")
        return httpx.Response(200, json={"data": [{"id": "c1", "name": "One"}]})

    gateway = graph_gateway(handler, max_retries=3)
    rows = await gateway.list_hierarchy(EntityLevel.CAMPAIGN, "act_1", "tok")

    assert [r["id"] for r in rows] == ["c1"]
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retries_give_up_after_max_attempts():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(429, json={})

    gateway = graph_gateway(handler, max_retries=2)
    with pytest.raises(RateLimited):
        await gateway.list_hierarchy(EntityLevel.CAMPAIGN, "act_1", "tok")
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return graph_error(190, "Error validating access token")

    gateway = graph_gateway(handler, max_retries=3)
    with pytest.raises(AuthExpired):
        await gateway.list_hierarchy(EntityLevel.CAMPAIGN, "act_1", "tok")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_creates_are_never_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return graph_error(17, "throttled")

    gateway = graph_gateway(handler, max_retries=3)
    with pytest.raises(RateLimited):
        await gateway.create_entity(EntityLevel.CAMPAIGN, "1001", {"name": "x"}, "tok")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_timeout_maps_to_rate_limited():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    gateway = graph_gateway(handler, retries=False)
    with pytest.raises(RateLimited):
        await gateway.get_user_info("tok")


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pagination_follows_next_and_pins_version():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if "after=cursor2" in str(request.url):
            return httpx.Response(200, json={"data": [{"id": "c3"}]})
        return httpx.Response(200, json={
            "data": [{"id": "c1"}, {"id": "c2"}],
            "paging": {"next": "https://graph.facebook.com/v99.0/act_1/campaigns?after=cursor2"},
        })

    gateway = graph_gateway(handler)
    rows = await gateway.list_hierarchy(EntityLevel.CAMPAIGN, "act_1", "tok")

    assert [r["id"] for r in rows] == ["c1", "c2", "c3"]
    assert f"/{gateway.api_version}/" in seen[1]
    assert "v99.0" not in seen[1]


@pytest.mark.asyncio
async def test_pagination_stops_at_page_bound():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "data": [{"id": "x"}],
            "paging": {"next": "https://graph.facebook.com/v1.0/act_1/campaigns?after=more"},
        })

    gateway = graph_gateway(handler)
    gateway.max_pages = 3
    rows = await gateway.list_hierarchy(EntityLevel.CAMPAIGN, "act_1", "tok")
    assert len(rows) == 3


@pytest.mark.asyncio
async def test_insights_request_daily_rows_for_window():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(parse_qs(urlparse(str(request.url)).query))
        return httpx.Response(200, json={"data": [
            {"date_start": "2024-05-01", "impressions": "10"},
            {"impressions": "5"},
        ]})

    gateway = graph_gateway(handler)
    rows = await gateway.get_entity_insights("c1", "tok", date(2024, 5, 1), date(2024, 5, 30))

    assert len(rows) == 1
    assert captured["time_increment"] == ["1"]
    assert '"since": "2024-05-01"' in captured["time_range"][0]


# ---------------------------------------------------------------------------
# OAuth and media
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_exchange_code_defaults_missing_expiry():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "short"})

    gateway = graph_gateway(handler)
    data = await gateway.exchange_code("code")
    assert data == {"access_token": "short", "expires_in": 3600}


@pytest.mark.asyncio
async def test_verify_ad_permissions_false_on_permission_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return graph_error(200, "Requires ads_read permission", status=403)

    gateway = graph_gateway(handler)
    assert await gateway.verify_ad_permissions("tok") is False


def test_oauth_url_lists_required_scopes():
    gateway = graph_gateway(lambda request: httpx.Response(200, json={}))
    query = parse_qs(urlparse(gateway.get_oauth_url(state="abc")).query)
    assert query["state"] == ["abc"]
    assert query["scope"][0].split(",") == [
        "ads_management", "ads_read", "business_management", "read_insights", "public_profile", "email",
    ]


@pytest.mark.asyncio
async def test_image_upload_returns_hash():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/act_1001/adimages")
        return httpx.Response(200, json={"images": {"banner.png": {"hash": "abc123"}}})

    gateway = graph_gateway(handler)
    handle = await gateway.upload_media("1001", "banner.png", b"png", "image/png", "image", "tok")
    assert handle == "abc123"


@pytest.mark.asyncio
async def test_upload_without_handle_is_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": True})

    gateway = graph_gateway(handler)
    with pytest.raises(ProviderError):
        await gateway.upload_media("1001", "clip.mp4", b"mp4", "video/mp4", "video", "tok")
