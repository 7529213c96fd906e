# app/api/v1/endpoints/webhooks.py
# Provider webhook receivers. The raw body is read before any parsing so
# signatures are checked against the exact bytes the provider signed.

from fastapi import APIRouter, Request

from app.api.deps import IngestionDep
from app.core.logging_setup import logger
from app.db.schemas.sale_schemas import PaymentProvider

router = APIRouter()


async def _receive(provider: PaymentProvider, request: Request, ingestion: IngestionDep) -> dict:
    raw_body = await request.body()
    result = await ingestion.handle(provider.value, raw_body, request.headers)
    logger.bind(provider=provider.value).debug(f"Webhook {result.value}.")
    return {"received": True}


@router.post("/stripe", summary="Stripe webhook receiver")
async def stripe_webhook(request: Request, ingestion: IngestionDep):
    return await _receive(PaymentProvider.STRIPE, request, ingestion)


@router.post("/paypal", summary="PayPal webhook receiver")
async def paypal_webhook(request: Request, ingestion: IngestionDep):
    return await _receive(PaymentProvider.PAYPAL, request, ingestion)


@router.post("/pagarme", summary="Pagar.me webhook receiver")
async def pagarme_webhook(request: Request, ingestion: IngestionDep):
    return await _receive(PaymentProvider.PAGARME, request, ingestion)
