from fastapi import APIRouter
from app.api.v1 import chat, cron, fb_ads, tavus

api_router = APIRouter()

api_router.include_router(fb_ads.router, prefix="/fb-ads", tags=["Facebook Ads"])
api_router.include_router(cron.router, prefix="/cron", tags=["Cron"])
api_router.include_router(tavus.router, prefix="/tavus", tags=["Tavus"])
api_router.include_router(chat.router, prefix="/chat", tags=["AI Chat"])
