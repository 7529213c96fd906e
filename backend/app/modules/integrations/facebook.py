# app/modules/integrations/facebook.py
# Conversions API client and event builders.

import asyncio
import hashlib
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlencode

import httpx

from app.core.config import settings
from app.core.exceptions import IntegrationError
from app.core.http_client import post_json
from app.core.logging_setup import logger
from app.db.schemas.common_schemas import as_utc
from app.db.schemas.offer_schemas import FacebookPixel, OfferDoc
from app.db.schemas.sale_schemas import SaleDoc, SaleItem

CHANNEL = "facebook"
UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")
_NON_DIGITS = re.compile(r"\D")


def hash_value(value: str) -> str:
    """SHA-256 of the trimmed, lowercased value, as the Conversions API expects."""
    return hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()


def build_user_data(
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    name: Optional[str] = None,
    fbc: Optional[str] = None,
    fbp: Optional[str] = None,
    city: Optional[str] = None,
    state: Optional[str] = None,
    zip_code: Optional[str] = None,
    country: Optional[str] = None,
) -> Dict[str, Any]:
    """PII is hashed and wrapped in single-element lists. fbc/fbp cookies are sent as-is."""
    data: Dict[str, Any] = {"client_ip_address": ip or "", "client_user_agent": user_agent or ""}
    if email:
        data["em"] = [hash_value(email)]
    if phone and _NON_DIGITS.sub("", phone):
        data["ph"] = [hash_value(_NON_DIGITS.sub("", phone))]
    if name and name.strip():
        parts = name.strip().split()
        data["fn"] = [hash_value(parts[0])]
        if len(parts) > 1:
            data["ln"] = [hash_value(parts[-1])]
    if fbc:
        data["fbc"] = fbc
    if fbp:
        data["fbp"] = fbp
    if city:
        data["ct"] = [hash_value(city)]
    if state:
        data["st"] = [hash_value(state)]
    if zip_code and _NON_DIGITS.sub("", zip_code):
        data["zp"] = [hash_value(_NON_DIGITS.sub("", zip_code))]
    if country:
        data["country"] = [hash_value(country)]
    return data


def sale_user_data(sale: SaleDoc) -> Dict[str, Any]:
    return build_user_data(
        ip=sale.ip, user_agent=sale.user_agent, email=sale.customer_email, phone=sale.customer_phone,
        name=sale.customer_name, fbc=sale.fbc, fbp=sale.fbp, city=sale.address_city,
        state=sale.address_state, zip_code=sale.address_zip_code, country=sale.address_country,
    )


def utm_params(sale: SaleDoc) -> Dict[str, str]:
    return {k: getattr(sale, k) for k in UTM_FIELDS if getattr(sale, k)}


def event_source_url(offer: OfferDoc, sale: SaleDoc, frontend_url: str | None = None) -> str:
    base = f"{(frontend_url or settings.FRONTEND_URL).rstrip('/')}/p/{offer.slug}"
    params = utm_params(sale)
    return f"{base}?{urlencode(params)}" if params else base


def content_ids(items: Sequence[SaleItem]) -> List[str]:
    return [i.product_id or i.custom_id or "unknown" for i in items]


def purchase_event(
    sale: SaleDoc,
    offer: OfferDoc,
    total_amount_in_cents: int,
    items: Sequence[SaleItem],
    event_id: str,
    event_time: datetime | None = None,
) -> Dict[str, Any]:
    """Purchase event attributed to `sale`'s buyer, reporting `total_amount_in_cents`."""
    when = as_utc(event_time or sale.created_at)
    custom_data: Dict[str, Any] = {
        "currency": (sale.currency or settings.DEFAULT_CURRENCY).upper(),
        "value": total_amount_in_cents / 100,
        "order_id": str(sale.id),
        "content_ids": content_ids(items),
        "content_type": "product",
    }
    custom_data.update({k: getattr(sale, k) or "" for k in UTM_FIELDS})
    return {
        "event_name": "Purchase",
        "event_time": int(when.timestamp()),
        "event_id": event_id,
        "action_source": "website",
        "event_source_url": event_source_url(offer, sale),
        "user_data": sale_user_data(sale),
        "custom_data": custom_data,
    }


def initiate_checkout_event(offer: OfferDoc, ip: str | None, user_agent: str | None,
                            fbc: str | None = None, fbp: str | None = None,
                            source_url: str | None = None, event_id: str | None = None) -> Dict[str, Any]:
    price = offer.main_product.price_in_cents
    return {
        "event_name": "InitiateCheckout",
        "event_time": int(time.time()),
        "event_id": event_id,
        "action_source": "website",
        "event_source_url": source_url or f"{settings.FRONTEND_URL.rstrip('/')}/p/{offer.slug}",
        "user_data": build_user_data(ip=ip, user_agent=user_agent, fbc=fbc, fbp=fbp),
        "custom_data": {
            "currency": offer.currency.upper(),
            "value": price / 100,
            "content_ids": [offer.main_product.id or offer.main_product.custom_id or "unknown"],
            "content_type": "product",
        },
    }


@dataclass
class PixelDeliveryReport:
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def any_succeeded(self) -> bool:
        return bool(self.succeeded)


class FacebookConversionsClient:
    def __init__(self, http: httpx.AsyncClient, graph_url: str | None = None,
                 timeout: float | None = None, test_event_code: str | None = None):
        self.http = http
        self.graph_url = (graph_url or settings.FACEBOOK_GRAPH_API_URL).rstrip("/")
        self.timeout = timeout or settings.FACEBOOK_TIMEOUT_SECONDS
        self.test_event_code = test_event_code if test_event_code is not None else settings.FACEBOOK_TEST_EVENT_CODE

    async def send_event(self, pixel: FacebookPixel, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not pixel.pixel_id or not pixel.access_token:
            raise IntegrationError(CHANNEL, "pixel id or access token missing")
        body: Dict[str, Any] = {"data": [{k: v for k, v in payload.items() if v is not None}],
                                "access_token": pixel.access_token}
        if self.test_event_code:
            body["test_event_code"] = self.test_event_code
        response = await post_json(self.http, CHANNEL, f"{self.graph_url}/{pixel.pixel_id}/events", body,
                                   timeout=self.timeout)
        data = response.json()
        if data.get("messages"):
            logger.bind(pixel_id=pixel.pixel_id).warning(f"Conversions API returned messages: {data['messages']}")
        return data

    async def send_to_pixels(self, pixels: Sequence[FacebookPixel], payload: Dict[str, Any]) -> PixelDeliveryReport:
        """Delivers to every pixel in parallel. One pixel failing never affects the others."""
        results = await asyncio.gather(*(self.send_event(p, payload) for p in pixels), return_exceptions=True)
        report = PixelDeliveryReport()
        for pixel, result in zip(pixels, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.bind(pixel_id=pixel.pixel_id, event_id=payload.get("event_id")).error(
                    f"{payload.get('event_name')} delivery failed: {result}")
                report.failed[pixel.pixel_id] = str(result)
            else:
                report.succeeded.append(pixel.pixel_id)
        return report
