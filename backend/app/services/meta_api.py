"""Meta Marketing API gateway: OAuth, hierarchy reads, insights, creates, media.

All Graph calls go through ``MetaGraphGateway._request`` which applies the
configured timeout, normalizes provider errors into ``app.errors`` and retries
``RateLimited``-class failures (429s, throttling codes, timeouts) with
exponential backoff. Auth and permission errors are never retried.
"""

import asyncio
import json
import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlencode

import httpx

from app.config import get_settings
from app.errors import (
    AppError,
    AuthExpired,
    NotFound,
    PermissionDenied,
    ProviderError,
    RateLimited,
    ValidationError,
)
from app.services.entity_levels import EntityLevel, describe

logger = logging.getLogger(__name__)

# Pagination URLs may come back on a newer API version than the app is approved
# for; every ``paging.next`` is rewritten onto the pinned version.
_VERSION_RE = re.compile(r"graph\.facebook\.com/v[\d.]+/")

REQUIRED_SCOPES = [
    "ads_management",
    "ads_read",
    "business_management",
    "read_insights",
    "public_profile",
    "email",
]

ACCOUNT_STATUS_MAP = {
    1: "ACTIVE",
    2: "DISABLED",
    3: "UNSETTLED",
    7: "PENDING_RISK_REVIEW",
    8: "PENDING_SETTLEMENT",
    9: "IN_GRACE_PERIOD",
    100: "PENDING_CLOSURE",
    101: "CLOSED",
}

AD_ACCOUNT_FIELDS = (
    "id,name,account_id,account_status,amount_spent,balance,currency,"
    "timezone_name,business_city,business_country_code,owner,age"
)

INSIGHT_FIELDS = (
    "impressions,clicks,unique_clicks,spend,reach,frequency,"
    "actions,action_values,date_start,date_stop"
)

# Graph error codes
_TOKEN_ERROR_CODES = {102, 190, 463, 467}
_PERMISSION_ERROR_CODES = {10, 200, 294}
_RATE_LIMIT_ERROR_CODES = {4, 17, 32, 341, 613} | set(range(80000, 80015))
_NOT_FOUND_SUBCODE = 33
_TARGETING_ERROR_CODE = 1487
_OPT_BILLING_ERROR_CODE = 1885

DEFAULT_TOKEN_TTL_SECONDS = 3600


def _pin_api_version(url: str | None, version: str) -> str | None:
    """Rewrite a Facebook pagination URL to use our pinned API version."""
    if not url:
        return None
    return _VERSION_RE.sub(f"graph.facebook.com/{version}/", url)


def normalize_account_id(account_id: str) -> str:
    """Return the ``act_<digits>`` form of an ad account id."""
    raw = str(account_id).strip()
    if raw.startswith("act_"):
        raw = raw[4:]
    return f"act_{raw}"


def parse_expires_in(value: Any, default: int = DEFAULT_TOKEN_TTL_SECONDS) -> int:
    """Seconds until expiry from a token response; non-positive or non-numeric
    values fall back to ``default``."""
    try:
        seconds = int(float(value))
    except (TypeError, ValueError):
        return default
    return seconds if seconds > 0 else default


def normalize_error(status_code: int, body: Any) -> AppError:
    """Map an HTTP status + Graph error body onto the error taxonomy."""
    err = body.get("error") if isinstance(body, dict) else None
    if not isinstance(err, dict):
        err = {}
    message = err.get("error_user_msg") or err.get("message") or f"Meta API returned HTTP {status_code}"
    code = err.get("code")
    subcode = err.get("error_subcode")
    lowered = message.lower()
    details = {"provider_code": code, "subcode": subcode, "fbtrace_id": err.get("fbtrace_id")}

    if code == 100 and subcode == _NOT_FOUND_SUBCODE:
        return NotFound(message, details=details)
    if status_code == 401 or code in _TOKEN_ERROR_CODES:
        return AuthExpired(message, details=details)
    if status_code == 403 or code in _PERMISSION_ERROR_CODES or "permission" in lowered:
        return PermissionDenied(message, details=details)
    if status_code == 429 or code in _RATE_LIMIT_ERROR_CODES or "rate limit" in lowered or "too many" in lowered:
        return RateLimited(message, details=details)
    if status_code == 404 or "not found" in lowered or "does not exist" in lowered:
        return NotFound(message, details=details)
    if code == _TARGETING_ERROR_CODE:
        return ValidationError(f"Invalid targeting: {message}", field="targeting", details=details)
    if code == _OPT_BILLING_ERROR_CODE:
        return ValidationError(
            f"Optimization goal and billing event are not compatible: {message}",
            field="billing_event",
            details=details,
        )
    return ProviderError(message, provider_code=code, subcode=subcode, details=details)


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _to_decimal(value: Any, places: str = "0.01") -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal(places))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal(0).quantize(Decimal(places))


def parse_insight_row(row: dict) -> dict:
    """Turn one daily Graph insights row into metric-row counters."""
    actions = row.get("actions") or []
    conversions = 0
    for act in actions:
        if str(act.get("action_type", "")).startswith("offsite_conversion"):
            conversions += _to_int(act.get("value"))
    return {
        "date": date.fromisoformat(row["date_start"]),
        "impressions": _to_int(row.get("impressions")),
        "clicks": _to_int(row.get("clicks")),
        "unique_clicks": _to_int(row.get("unique_clicks")),
        "reach": _to_int(row.get("reach")),
        "frequency": _to_decimal(row.get("frequency"), "0.0001"),
        "spend": _to_decimal(row.get("spend")),
        "conversions": conversions,
        "actions": actions,
        "action_values": row.get("action_values") or [],
    }


def _encode_form(payload: dict) -> dict:
    """Graph form posts need nested objects JSON-encoded; ``None`` is dropped."""
    form = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            form[key] = json.dumps(value)
        elif isinstance(value, bool):
            form[key] = "true" if value else "false"
        else:
            form[key] = str(value)
    return form


class MetaGraphGateway:
    """Wraps the Meta Graph API for OAuth, reads, creates and media uploads."""

    def __init__(
        self,
        *,
        retries: bool = True,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.app_id = settings.meta_app_id
        self.app_secret = settings.meta_app_secret
        self.redirect_uri = settings.effective_meta_redirect_uri
        self.api_version = settings.meta_graph_api_version
        self.base_url = f"https://graph.facebook.com/{self.api_version}"
        self.timeout = settings.meta_request_timeout
        self.max_pages = settings.meta_max_pages
        self.retries = retries
        self.max_retries = settings.meta_max_retries if max_retries is None else max_retries
        self.backoff_base = settings.meta_retry_backoff_base if backoff_base is None else backoff_base
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    # -- Core request ------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        data: dict | None = None,
        files: dict | None = None,
        retry: bool | None = None,
    ) -> dict:
        allow_retry = self.retries if retry is None else retry
        attempts = 1 + (self.max_retries if allow_retry else 0)
        url = self._url(path)
        last_exc: AppError | None = None

        for attempt in range(attempts):
            try:
                async with self._client() as client:
                    resp = await client.request(method, url, params=params, data=data, files=files)
            except httpx.TimeoutException:
                last_exc = RateLimited("Meta API request timed out", details={"timeout": True})
            except httpx.TransportError as e:
                raise ProviderError(f"Could not reach Meta API: {e}") from e
            else:
                try:
                    body = resp.json()
                except ValueError:
                    body = {}
                if resp.status_code < 400 and not (isinstance(body, dict) and "error" in body):
                    return body if isinstance(body, dict) else {"data": body}
                last_exc = normalize_error(resp.status_code, body)

            if not last_exc.retryable or attempt == attempts - 1:
                raise last_exc
            wait = self.backoff_base * (2 ** attempt)
            logger.warning(
                "Meta API %s %s throttled (attempt %d/%d), retrying in %.1fs",
                method, path.split("?")[0], attempt + 1, attempts, wait,
            )
            await asyncio.sleep(wait)

        raise last_exc

    async def _paginate(self, path: str, params: dict, *, max_pages: int | None = None) -> list[dict]:
        """Collect ``data`` across pages, following ``paging.next`` until it runs
        out or the page bound is reached."""
        limit = max_pages or self.max_pages
        rows: list[dict] = []
        url: str | None = path
        page = 0
        while url:
            if page >= limit:
                logger.warning("Stopped paginating %s after %d pages", path, limit)
                break
            data = await self._request("GET", url, params=params)
            rows.extend(data.get("data", []))
            url = _pin_api_version(data.get("paging", {}).get("next"), self.api_version)
            params = None  # next URL includes params
            page += 1
        return rows

    # -- OAuth flow --------------------------------------------------------

    def get_oauth_url(self, state: str = "") -> str:
        """Return the Facebook OAuth dialog URL."""
        params = {
            "client_id": self.app_id,
            "redirect_uri": self.redirect_uri,
            "scope": ",".join(REQUIRED_SCOPES),
            "response_type": "code",
            "state": state,
        }
        return f"https://www.facebook.com/{self.api_version}/dialog/oauth?{urlencode(params)}"

    async def exchange_code(self, code: str) -> dict:
        """Exchange an authorization code for ``{access_token, expires_in}``."""
        data = await self._request(
            "GET",
            "oauth/access_token",
            params={
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "redirect_uri": self.redirect_uri,
                "code": code,
            },
            retry=False,
        )
        if not data.get("access_token"):
            raise ProviderError("Token exchange returned no access token")
        return {"access_token": data["access_token"], "expires_in": parse_expires_in(data.get("expires_in"))}

    async def get_long_lived_token(self, short_token: str) -> dict:
        """Exchange a short-lived token for a long-lived one (~60 days)."""
        data = await self._request(
            "GET",
            "oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "fb_exchange_token": short_token,
            },
            retry=False,
        )
        return {"access_token": data["access_token"], "expires_in": parse_expires_in(data.get("expires_in"))}

    async def get_user_info(self, access_token: str) -> dict:
        return await self._request(
            "GET", "me", params={"access_token": access_token, "fields": "id,name"}, retry=False
        )

    async def verify_ad_permissions(self, access_token: str) -> bool:
        """Probe a lightweight ads read. Permission-shaped failures mean ``False``;
        anything else propagates."""
        try:
            await self._request(
                "GET",
                "me/adaccounts",
                params={"access_token": access_token, "fields": "id,name", "limit": 1},
                retry=False,
            )
        except PermissionDenied as e:
            logger.info("Ad permission probe denied: %s", e.message)
            return False
        return True

    # -- Ad accounts -------------------------------------------------------

    async def list_ad_accounts(self, access_token: str) -> list[dict]:
        """List all ad accounts the user has access to."""
        rows = await self._paginate(
            "me/adaccounts",
            {"access_token": access_token, "fields": AD_ACCOUNT_FIELDS, "limit": 100},
        )
        accounts = []
        for acc in rows:
            accounts.append({
                "account_id": normalize_account_id(acc.get("id") or acc.get("account_id", "")),
                "name": acc.get("name", "Unknown"),
                "currency": acc.get("currency", "USD"),
                "timezone_name": acc.get("timezone_name", "UTC"),
                "account_status": ACCOUNT_STATUS_MAP.get(acc.get("account_status"), "UNKNOWN"),
                "amount_spent": acc.get("amount_spent"),
                "business_country_code": acc.get("business_country_code"),
            })
        return accounts

    # -- Hierarchy ---------------------------------------------------------

    async def list_hierarchy(
        self,
        level: EntityLevel,
        parent_id: str,
        access_token: str,
        fields: str | None = None,
    ) -> list[dict]:
        """List the children of ``parent_id`` at ``level``: campaigns of an
        account, ad sets of a campaign, ads of an ad set."""
        desc = describe(level)
        return await self._paginate(
            f"{parent_id}/{desc.graph_edge}",
            {"access_token": access_token, "fields": fields or desc.graph_fields, "limit": 200},
        )

    async def get_entity_insights(
        self, entity_id: str, access_token: str, since: date, until: date,
    ) -> list[dict]:
        """Daily metric rows for one campaign / ad set / ad over [since, until]."""
        rows = await self._paginate(
            f"{entity_id}/insights",
            {
                "access_token": access_token,
                "fields": INSIGHT_FIELDS,
                "time_range": json.dumps({"since": since.isoformat(), "until": until.isoformat()}),
                "time_increment": 1,
                "limit": 100,
            },
        )
        return [parse_insight_row(r) for r in rows if r.get("date_start")]

    # -- Creates -----------------------------------------------------------

    async def create_entity(
        self, level: EntityLevel, account_id: str, payload: dict, access_token: str,
    ) -> dict:
        """Create a campaign / ad set / ad under an ad account.

        Creates are not idempotent, so they are never retried.
        """
        edge = describe(level).graph_edge
        data = await self._request(
            "POST",
            f"{normalize_account_id(account_id)}/{edge}",
            params={"access_token": access_token},
            data=_encode_form(payload),
            retry=False,
        )
        if not data.get("id"):
            raise ProviderError(f"Meta API did not return an id for the new {level.value}", details=data)
        return {"id": data["id"], "raw": data}

    async def create_ad_creative(self, account_id: str, payload: dict, access_token: str) -> dict:
        data = await self._request(
            "POST",
            f"{normalize_account_id(account_id)}/adcreatives",
            params={"access_token": access_token},
            data=_encode_form(payload),
            retry=False,
        )
        if not data.get("id"):
            raise ProviderError("Meta API did not return an id for the new ad creative", details=data)
        return {"id": data["id"], "raw": data}

    # -- Media -------------------------------------------------------------

    async def upload_media(
        self,
        account_id: str,
        filename: str,
        content: bytes,
        content_type: str,
        media_type: str,
        access_token: str,
    ) -> str:
        """Upload an image or video; returns the image hash or the video id."""
        account = normalize_account_id(account_id)
        if media_type == "image":
            data = await self._request(
                "POST",
                f"{account}/adimages",
                params={"access_token": access_token},
                files={"filename": (filename, content, content_type)},
                retry=False,
            )
            images = data.get("images") or {}
            image = images.get(filename) or next(iter(images.values()), {})
            handle = image.get("hash") or data.get("hash")
        else:
            data = await self._request(
                "POST",
                f"{account}/advideos",
                params={"access_token": access_token},
                data={"name": filename},
                files={"source": (filename, content, content_type)},
                retry=False,
            )
            handle = data.get("id")
        if not handle:
            raise ProviderError(f"Meta API returned no {media_type} handle for {filename}", details=data)
        return handle
