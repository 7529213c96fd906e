# app/modules/integrations/access_webhook.py
# Fulfillment webhook: tells the seller's members area to grant access.

from typing import Any, Dict

import httpx

from app.core.http_client import post_json
from app.db.schemas.offer_schemas import OfferDoc
from app.db.schemas.sale_schemas import SaleDoc

CHANNEL = "access"


def access_payload(sale: SaleDoc, offer: OfferDoc) -> Dict[str, Any]:
    return {
        "event": "purchase.approved",
        "sale_id": sale.id,
        "external_reference": sale.external_reference,
        "is_upsell": sale.is_upsell,
        "customer": {
            "name": sale.customer_name,
            "email": sale.customer_email,
            "phone": sale.customer_phone or "",
        },
        "offer": {"id": offer.id, "slug": offer.slug, "name": offer.name},
        "products": [
            {
                "id": item.product_id,
                "custom_id": item.custom_id,
                "name": item.name,
                "price_in_cents": item.price_in_cents,
                "is_order_bump": item.is_order_bump,
            }
            for item in sale.items
        ],
        "total_amount_in_cents": sale.total_amount_in_cents,
        "currency": sale.currency,
        "paid_at": sale.updated_at.isoformat(),
    }


class AccessWebhookClient:
    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def deliver(self, sale: SaleDoc, offer: OfferDoc) -> bool:
        """Returns True when delivered, or when the offer has no webhook configured."""
        if not offer.access_webhook_url:
            return True
        await post_json(self.http, CHANNEL, offer.access_webhook_url, access_payload(sale, offer))
        return True
