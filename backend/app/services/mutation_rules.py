"""Business rules checked locally before any create call reaches the Marketing API."""

from datetime import datetime

from app.config import get_settings
from app.errors import ValidationError

# Billing events each optimization goal can be paired with
OPTIMIZATION_BILLING_COMPATIBILITY: dict[str, tuple[str, ...]] = {
    "REACH": ("IMPRESSIONS",),
    "IMPRESSIONS": ("IMPRESSIONS",),
    "LINK_CLICKS": ("LINK_CLICKS", "IMPRESSIONS"),
    "POST_ENGAGEMENT": ("POST_ENGAGEMENT", "IMPRESSIONS"),
    "PAGE_LIKES": ("PAGE_LIKES", "IMPRESSIONS"),
    "APP_INSTALLS": ("APP_INSTALLS", "IMPRESSIONS"),
    "LEAD_GENERATION": ("IMPRESSIONS",),
    "CONVERSIONS": ("IMPRESSIONS",),
    "VIDEO_VIEWS": ("VIDEO_VIEWS", "THRUPLAY", "IMPRESSIONS"),
    "THRUPLAY": ("THRUPLAY", "IMPRESSIONS"),
}

DEFAULT_BID_STRATEGY = "LOWEST_COST_WITHOUT_CAP"
BID_STRATEGIES = ("LOWEST_COST_WITHOUT_CAP", "LOWEST_COST_WITH_BID_CAP", "TARGET_COST")
# Strategies that need a manual bid_amount
CAP_BID_STRATEGIES = frozenset({"LOWEST_COST_WITH_BID_CAP", "TARGET_COST"})

CREATE_STATUSES = ("ACTIVE", "PAUSED")

CTA_TYPES = (
    "LEARN_MORE",
    "SHOP_NOW",
    "SIGN_UP",
    "DOWNLOAD",
    "BOOK_TRAVEL",
    "CONTACT_US",
    "DONATE_NOW",
    "GET_QUOTE",
    "SUBSCRIBE",
    "APPLY_NOW",
    "GET_OFFER",
    "WATCH_MORE",
    "ORDER_NOW",
    "SEND_MESSAGE",
    "CALL_NOW",
    "NO_BUTTON",
)

AGE_MIN_LIMIT = 13
AGE_MAX_LIMIT = 65

MB = 1024 * 1024
MEDIA_RULES: dict[str, dict] = {
    "image": {
        "mime_types": frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif"}),
        "limit_setting": "max_image_upload_mb",
    },
    "video": {
        "mime_types": frozenset({"video/mp4", "video/mov", "video/avi", "video/quicktime"}),
        "limit_setting": "max_video_upload_mb",
    },
}


def is_valid_optimization_billing_combination(optimization_goal: str, billing_event: str) -> bool:
    return billing_event in OPTIMIZATION_BILLING_COMPATIBILITY.get(optimization_goal, ())


def requires_bid_amount(bid_strategy: str | None) -> bool:
    return bid_strategy in CAP_BID_STRATEGIES


def _require(value, field: str, label: str | None = None) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label or field} is required", field=field)


def _check_status(status: str | None) -> None:
    if status and status not in CREATE_STATUSES:
        raise ValidationError(
            f"status must be one of {', '.join(CREATE_STATUSES)}", field="status"
        )


def _check_budget_pair(daily_budget: int | None, lifetime_budget: int | None) -> None:
    if daily_budget is not None and lifetime_budget is not None:
        raise ValidationError(
            "Set either daily_budget or lifetime_budget, not both", field="daily_budget"
        )
    for field, value in (("daily_budget", daily_budget), ("lifetime_budget", lifetime_budget)):
        if value is not None and value <= 0:
            raise ValidationError(f"{field} must be a positive amount", field=field)


def validate_campaign_request(req) -> None:
    _require(req.name, "name", "Campaign name")
    _require(req.objective, "objective", "Campaign objective")
    _check_status(req.status)
    _check_budget_pair(req.daily_budget, req.lifetime_budget)


def check_adset_required_fields(req) -> None:
    _require(req.name, "name", "Ad set name")
    _require(req.optimization_goal, "optimization_goal", "Optimization goal")
    _require(req.billing_event, "billing_event", "Billing event")
    if req.targeting is None or not req.targeting.countries:
        raise ValidationError("Targeting with at least one country is required", field="targeting")


def validate_adset_against_campaign(req, campaign_is_cbo: bool) -> None:
    """Budget ownership, goal/billing compatibility and bid rules."""
    has_budget = req.daily_budget is not None or req.lifetime_budget is not None
    if campaign_is_cbo and has_budget:
        raise ValidationError(
            "The campaign uses Campaign Budget Optimization; ad sets cannot set their own budget",
            field="daily_budget" if req.daily_budget is not None else "lifetime_budget",
        )
    if not campaign_is_cbo and not has_budget:
        raise ValidationError(
            "The campaign has no budget; the ad set must set daily_budget or lifetime_budget",
            field="daily_budget",
        )
    _check_budget_pair(req.daily_budget, req.lifetime_budget)

    if not is_valid_optimization_billing_combination(req.optimization_goal, req.billing_event):
        allowed = OPTIMIZATION_BILLING_COMPATIBILITY.get(req.optimization_goal)
        hint = f" Allowed: {', '.join(allowed)}." if allowed else ""
        raise ValidationError(
            f"Billing event {req.billing_event} is not compatible with optimization goal "
            f"{req.optimization_goal}.{hint}",
            field="billing_event",
        )

    strategy = req.bid_strategy or DEFAULT_BID_STRATEGY
    if strategy not in BID_STRATEGIES:
        raise ValidationError(
            f"bid_strategy must be one of {', '.join(BID_STRATEGIES)}", field="bid_strategy"
        )
    if requires_bid_amount(strategy) and (req.bid_amount is None or req.bid_amount <= 0):
        raise ValidationError(f"bid_amount is required for {strategy}", field="bid_amount")

    _check_status(req.status)
    validate_targeting(req.targeting)
    validate_schedule(req.start_time, req.end_time, req.lifetime_budget)


def validate_targeting(targeting) -> None:
    if targeting.age_min < AGE_MIN_LIMIT or targeting.age_max > AGE_MAX_LIMIT:
        raise ValidationError(
            f"Age range must be within {AGE_MIN_LIMIT}-{AGE_MAX_LIMIT}", field="targeting.age_min"
        )
    if targeting.age_min > targeting.age_max:
        raise ValidationError("age_min cannot be greater than age_max", field="targeting.age_min")


def validate_schedule(start_time: datetime | None, end_time: datetime | None, lifetime_budget: int | None) -> None:
    if lifetime_budget is not None and end_time is None:
        raise ValidationError("end_time is required with a lifetime budget", field="end_time")
    if start_time and end_time and end_time <= start_time:
        raise ValidationError("end_time must be after start_time", field="end_time")


def validate_ad_request(req) -> None:
    _require(req.name, "name", "Ad name")
    creative = req.creative
    if creative is None:
        raise ValidationError("creative is required", field="creative")
    _require(creative.name, "creative.name", "Creative name")
    _require(creative.page_id, "creative.page_id", "Page id")
    if creative.media_type == "image":
        _require(creative.image_hash, "creative.image_hash", "Uploaded image hash")
        _require(creative.link_url, "creative.link_url", "Destination link")
    elif creative.media_type == "video":
        _require(creative.video_id, "creative.video_id", "Uploaded video id")
    else:
        raise ValidationError("creative.media_type must be image or video", field="creative.media_type")
    if creative.call_to_action_type not in CTA_TYPES:
        raise ValidationError(
            f"Unsupported call to action {creative.call_to_action_type}",
            field="creative.call_to_action_type",
        )
    _check_status(req.status)


def media_kind(content_type: str | None) -> str:
    kind = (content_type or "").split("/", 1)[0]
    if kind not in MEDIA_RULES:
        raise ValidationError(
            f"Unsupported file type {content_type or 'unknown'}; upload an image or a video",
            field="file",
        )
    return kind


def validate_media(content_type: str | None, size: int) -> str:
    """Check MIME allow-list and size ceiling; returns ``image`` or ``video``."""
    kind = media_kind(content_type)
    rules = MEDIA_RULES[kind]
    if content_type not in rules["mime_types"]:
        raise ValidationError(
            f"Unsupported {kind} type {content_type}. Allowed: {', '.join(sorted(rules['mime_types']))}",
            field="file",
        )
    if size <= 0:
        raise ValidationError("Uploaded file is empty", field="file")
    limit_mb = getattr(get_settings(), rules["limit_setting"])
    if size > limit_mb * MB:
        raise ValidationError(f"{kind.capitalize()} exceeds the {limit_mb} MB limit", field="file")
    return kind
