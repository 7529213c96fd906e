# app/services/components.py
# Wires repositories, provider integrations and services around one database
# handle and one HTTP client. Used by the API lifespan and the CLI tools.

from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.concurrency import LimiterRegistry
from app.core.config import settings
from app.core.logging_setup import logger
from app.core.supervisor import BackgroundTaskRunner
from app.db.schemas.sale_schemas import PaymentProvider
from app.modules.dispatch.job import ConsolidatedPurchaseJob
from app.modules.integrations.access_webhook import AccessWebhookClient
from app.modules.integrations.facebook import FacebookConversionsClient
from app.modules.integrations.fanout import IntegrationFanout
from app.modules.integrations.tracking_webhook import TrackingWebhookClient
from app.modules.metrics.repository import CheckoutMetricRepository
from app.modules.metrics.service import CheckoutMetricsService
from app.modules.offers.repository import OfferRepository
from app.modules.payments.base import ProviderGateway, WebhookAdapter
from app.modules.payments.ingestion import WebhookIngestionService
from app.modules.payments.pagarme_adapter import PagarmeGateway, PagarmeWebhookAdapter
from app.modules.payments.paypal_adapter import PayPalClient, PayPalGateway, PayPalWebhookAdapter
from app.modules.payments.stripe_adapter import StripeGateway, StripeWebhookAdapter
from app.modules.sales.repository import SaleRepository
from app.modules.sales.service import ReconciliationService
from app.modules.upsell.repository import UpsellSessionRepository
from app.modules.upsell.service import UpsellSessionManager


@dataclass
class EngineComponents:
    sale_repo: SaleRepository
    offer_repo: OfferRepository
    session_repo: UpsellSessionRepository
    facebook: FacebookConversionsClient
    fanout: IntegrationFanout
    gateways: Dict[str, ProviderGateway]
    adapters: Dict[str, WebhookAdapter]
    limiters: LimiterRegistry
    reconciliation: ReconciliationService
    ingestion: WebhookIngestionService
    upsell_manager: UpsellSessionManager
    metrics_service: CheckoutMetricsService
    dispatch_job: ConsolidatedPurchaseJob


def build_components(db: AsyncIOMotorDatabase, http: httpx.AsyncClient,
                     background: Optional[BackgroundTaskRunner] = None) -> EngineComponents:
    sale_repo = SaleRepository(db)
    offer_repo = OfferRepository(db)
    session_repo = UpsellSessionRepository(db)

    facebook = FacebookConversionsClient(http)
    fanout = IntegrationFanout(sale_repo, AccessWebhookClient(http), TrackingWebhookClient(http), facebook)

    paypal_client = PayPalClient(http)
    gateways: Dict[str, ProviderGateway] = {
        PaymentProvider.STRIPE.value: StripeGateway(),
        PaymentProvider.PAYPAL.value: PayPalGateway(paypal_client),
        PaymentProvider.PAGARME.value: PagarmeGateway(),
    }
    adapters: Dict[str, WebhookAdapter] = {
        PaymentProvider.STRIPE.value: StripeWebhookAdapter(),
        PaymentProvider.PAYPAL.value: PayPalWebhookAdapter(paypal_client),
        PaymentProvider.PAGARME.value: PagarmeWebhookAdapter(),
    }
    limiters = LimiterRegistry.for_channels(
        adapters.keys(),
        permits=settings.WEBHOOK_CONCURRENCY_LIMIT,
        max_waiting=settings.WEBHOOK_QUEUE_LIMIT,
        acquire_timeout=settings.WEBHOOK_ACQUIRE_TIMEOUT_SECONDS,
    )

    reconciliation = ReconciliationService(sale_repo, offer_repo, session_repo, gateways, fanout, background)
    components = EngineComponents(
        sale_repo=sale_repo,
        offer_repo=offer_repo,
        session_repo=session_repo,
        facebook=facebook,
        fanout=fanout,
        gateways=gateways,
        adapters=adapters,
        limiters=limiters,
        reconciliation=reconciliation,
        ingestion=WebhookIngestionService(adapters, limiters, reconciliation),
        upsell_manager=UpsellSessionManager(session_repo, sale_repo, offer_repo, gateways, reconciliation),
        metrics_service=CheckoutMetricsService(CheckoutMetricRepository(db), offer_repo, facebook),
        dispatch_job=ConsolidatedPurchaseJob(sale_repo, offer_repo, fanout),
    )
    logger.info(f"Engine components built for providers: {', '.join(adapters)}")
    return components
