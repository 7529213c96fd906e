# app/api/v1/api.py

from fastapi import APIRouter

from app.api.v1.endpoints import metrics, upsell, webhooks

api_router = APIRouter()

api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
api_router.include_router(upsell.router, prefix="/upsell", tags=["Upsell"])
api_router.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
