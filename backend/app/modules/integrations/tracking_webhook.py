# app/modules/integrations/tracking_webhook.py
# Attribution webhook (order + UTM parameters) for the seller's tracking tool.

from typing import Any, Dict

import httpx

from app.core.http_client import post_json
from app.db.schemas.common_schemas import as_utc
from app.db.schemas.offer_schemas import OfferDoc
from app.db.schemas.sale_schemas import SaleDoc

CHANNEL = "tracking"
_TS = "%Y-%m-%d %H:%M:%S"


def tracking_payload(sale: SaleDoc, offer: OfferDoc) -> Dict[str, Any]:
    net = max(sale.total_amount_in_cents - sale.platform_fee_in_cents, 0)
    return {
        "orderId": sale.external_reference,
        "platform": "checkout",
        "paymentMethod": sale.payment_method_type or sale.provider,
        "status": "paid",
        "createdAt": as_utc(sale.created_at).strftime(_TS),
        "approvedDate": as_utc(sale.updated_at).strftime(_TS),
        "refundedAt": None,
        "customer": {
            "name": sale.customer_name,
            "email": sale.customer_email,
            "phone": sale.customer_phone,
            "document": None,
            "country": sale.country,
            "ip": sale.ip,
        },
        "products": [
            {
                "id": item.product_id or item.custom_id or offer.id,
                "name": item.name,
                "planId": None,
                "planName": None,
                "quantity": 1,
                "priceInCents": item.price_in_cents,
            }
            for item in sale.items
        ],
        "trackingParameters": {
            "src": None,
            "sck": None,
            "utm_source": sale.utm_source,
            "utm_medium": sale.utm_medium,
            "utm_campaign": sale.utm_campaign,
            "utm_term": sale.utm_term,
            "utm_content": sale.utm_content,
        },
        "commission": {
            "totalPriceInCents": sale.total_amount_in_cents,
            "gatewayFeeInCents": sale.platform_fee_in_cents,
            "userCommissionInCents": net,
            "currency": sale.currency.upper(),
        },
        "isTest": False,
    }


class TrackingWebhookClient:
    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def deliver(self, sale: SaleDoc, offer: OfferDoc) -> bool:
        if not offer.tracking_webhook_url:
            return True
        headers = {"x-api-token": offer.tracking_api_token} if offer.tracking_api_token else None
        await post_json(self.http, CHANNEL, offer.tracking_webhook_url, tracking_payload(sale, offer), headers=headers)
        return True
