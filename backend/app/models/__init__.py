from app.models.user import User
from app.models.job import SyncJob
from app.models.fb_ads import (
    MetaCredential, AdAccount,
    Campaign, AdSet, Ad,
    CampaignMetric, AdSetMetric, AdMetric,
)
from app.models.tavus import TavusConnection, TavusReplica, TavusPersona, TavusVideo

__all__ = [
    "User",
    "SyncJob",
    # FB Ads
    "MetaCredential",
    "AdAccount",
    "Campaign",
    "AdSet",
    "Ad",
    "CampaignMetric",
    "AdSetMetric",
    "AdMetric",
    # Tavus
    "TavusConnection",
    "TavusReplica",
    "TavusPersona",
    "TavusVideo",
]
