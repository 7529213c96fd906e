# app/modules/metrics/service.py
# Checkout funnel tracking. Called after the response was sent, so nothing
# here may surface to the buyer.

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.core.config import settings
from app.core.logging_setup import logger
from app.db.schemas.common_schemas import utcnow
from app.db.schemas.metric_schemas import CheckoutMetricDoc, MetricType, TrackMetricRequest
from app.modules.integrations.facebook import FacebookConversionsClient, initiate_checkout_event
from app.modules.metrics.repository import CheckoutMetricRepository
from app.modules.offers.repository import OfferRepository


class CheckoutMetricsService:
    def __init__(self, metric_repo: CheckoutMetricRepository, offer_repo: OfferRepository,
                 facebook: FacebookConversionsClient, clock: Callable[[], datetime] = utcnow):
        self.metric_repo = metric_repo
        self.offer_repo = offer_repo
        self.facebook = facebook
        self.clock = clock

    async def track(self, request: TrackMetricRequest, ip: Optional[str], user_agent: Optional[str]) -> None:
        """
        `view` counts unique visitors (one per IP per dedup window) and every
        view also lands as `view_total`. `initiate_checkout` is additionally
        reported to the offer's pixels.
        """
        offer = await self.offer_repo.get_by_id(request.offer_id)
        if offer is None:
            logger.bind(offer_id=request.offer_id).warning("Metric for unknown offer discarded.")
            return
        now = self.clock()
        metric_type = MetricType(request.type)

        if metric_type == MetricType.VIEW:
            await self.metric_repo.insert(CheckoutMetricDoc(offer_id=offer.id, type=MetricType.VIEW_TOTAL,
                                                            ip=ip, user_agent=user_agent, created_at=now))
            since = now - timedelta(hours=settings.VIEW_DEDUP_WINDOW_HOURS)
            if await self.metric_repo.exists_since(offer.id, MetricType.VIEW, ip, since):
                return

        await self.metric_repo.insert(CheckoutMetricDoc(offer_id=offer.id, type=metric_type,
                                                        ip=ip, user_agent=user_agent, created_at=now))

        if metric_type == MetricType.INITIATE_CHECKOUT and offer.pixels():
            payload = initiate_checkout_event(offer, ip, user_agent, request.fbc, request.fbp,
                                              request.event_source_url, f"initiate_checkout_{uuid.uuid4().hex}")
            report = await self.facebook.send_to_pixels(offer.pixels(), payload)
            logger.bind(offer_id=offer.id).debug(
                f"InitiateCheckout sent to {len(report.succeeded)}/{len(offer.pixels())} pixel(s).")

    async def track_safely(self, request: TrackMetricRequest, ip: Optional[str], user_agent: Optional[str]) -> None:
        try:
            await self.track(request, ip, user_agent)
        except Exception:
            logger.bind(offer_id=request.offer_id).exception("Failed to record checkout metric.")
