# app/api/deps.py
# Request-scoped access to the objects the lifespan builds on app.state.

from typing import Annotated

from fastapi import Depends, Request

from app.modules.metrics.service import CheckoutMetricsService
from app.modules.payments.ingestion import WebhookIngestionService
from app.modules.upsell.service import UpsellSessionManager


def get_ingestion(request: Request) -> WebhookIngestionService:
    return request.app.state.ingestion


def get_upsell_manager(request: Request) -> UpsellSessionManager:
    return request.app.state.upsell_manager


def get_metrics_service(request: Request) -> CheckoutMetricsService:
    return request.app.state.metrics_service


IngestionDep = Annotated[WebhookIngestionService, Depends(get_ingestion)]
UpsellManagerDep = Annotated[UpsellSessionManager, Depends(get_upsell_manager)]
MetricsServiceDep = Annotated[CheckoutMetricsService, Depends(get_metrics_service)]
