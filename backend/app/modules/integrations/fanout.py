# app/modules/integrations/fanout.py
# Delivers the three downstream notification classes of a sale, each with
# its own success flag. One channel failing never blocks the others and
# never touches the sale's status.

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from app.core.logging_setup import logger
from app.db.schemas.common_schemas import as_utc, utcnow
from app.db.schemas.offer_schemas import OfferDoc
from app.db.schemas.sale_schemas import IntegrationChannel, SaleDoc, SaleItem
from app.modules.integrations.access_webhook import AccessWebhookClient
from app.modules.integrations.facebook import FacebookConversionsClient, purchase_event
from app.modules.integrations.tracking_webhook import TrackingWebhookClient
from app.modules.sales.repository import SaleRepository

IMMEDIATE_CHANNELS = (IntegrationChannel.ACCESS, IntegrationChannel.TRACKING)


@dataclass
class ConsolidatedPurchase:
    """A primary sale plus its succeeded upsells, reported as one conversion."""
    parent: SaleDoc
    children: List[SaleDoc] = field(default_factory=list)

    @property
    def total_amount_in_cents(self) -> int:
        return self.parent.total_amount_in_cents + sum(c.total_amount_in_cents for c in self.children)

    @property
    def items(self) -> List[SaleItem]:
        items = list(self.parent.items)
        for child in self.children:
            items.extend(child.items)
        return items

    @property
    def sale_ids(self) -> List[str]:
        return [self.parent.id] + [c.id for c in self.children]

    @property
    def event_id(self) -> str:
        return f"consolidated_purchase_{self.parent.id}"


class IntegrationFanout:
    def __init__(
        self,
        sale_repo: SaleRepository,
        access: AccessWebhookClient,
        tracking: TrackingWebhookClient,
        facebook: FacebookConversionsClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sale_repo = sale_repo
        self.access = access
        self.tracking = tracking
        self.facebook = facebook
        self.clock = clock

    async def consolidate(self, parent: SaleDoc) -> ConsolidatedPurchase:
        return ConsolidatedPurchase(parent, await self.sale_repo.find_children(parent.id))

    async def send_consolidated_purchase(self, purchase: ConsolidatedPurchase, offer: OfferDoc) -> bool:
        """Sends one Purchase event to every pixel. True if at least one pixel accepted it."""
        pixels = offer.pixels()
        if not pixels:
            return True
        payload = purchase_event(
            purchase.parent, offer, purchase.total_amount_in_cents, purchase.items, purchase.event_id
        )
        report = await self.facebook.send_to_pixels(pixels, payload)
        log = logger.bind(sale_id=purchase.parent.id, event_id=purchase.event_id)
        if report.any_succeeded:
            log.info(f"Consolidated Purchase sent: {purchase.total_amount_in_cents} cents, "
                     f"{len(purchase.children)} upsell(s), {len(report.succeeded)}/{len(pixels)} pixel(s).")
        else:
            log.error(f"Consolidated Purchase failed on all {len(pixels)} pixel(s).")
        return report.any_succeeded

    async def _facebook(self, sale: SaleDoc, offer: OfferDoc) -> bool:
        if not sale.is_upsell:
            send_after = sale.facebook_purchase_send_after
            if send_after is not None and as_utc(send_after) > self.clock():
                # Still collecting upsells; the dispatch job sends it once due
                logger.bind(sale_id=sale.id).info("Consolidated Purchase not due yet. Leaving it to the dispatch job.")
                return False
            purchase = await self.consolidate(sale)
            ok = await self.send_consolidated_purchase(purchase, offer)
            if ok and purchase.children:
                await self.sale_repo.mark_channels([c.id for c in purchase.children], {IntegrationChannel.FACEBOOK: True})
            return ok

        parent = await self.sale_repo.get_by_id(sale.parent_sale_id) if sale.parent_sale_id else None
        if parent is not None and not parent.integrations_facebook_sent:
            logger.bind(sale_id=sale.id, parent_sale_id=parent.id).info(
                "Upsell conversion deferred to the parent's consolidated event.")
            return False
        # Orphan upsell, or one that succeeded after its parent was reported
        pixels = offer.pixels()
        if not pixels:
            return True
        payload = purchase_event(sale, offer, sale.total_amount_in_cents, sale.items, f"upsell_purchase_{sale.id}")
        return (await self.facebook.send_to_pixels(pixels, payload)).any_succeeded

    async def _deliver_one(self, channel: IntegrationChannel, sale: SaleDoc, offer: OfferDoc) -> bool:
        if channel == IntegrationChannel.ACCESS:
            return await self.access.deliver(sale, offer)
        if channel == IntegrationChannel.TRACKING:
            return await self.tracking.deliver(sale, offer)
        return await self._facebook(sale, offer)

    async def deliver(self, sale: SaleDoc, offer: OfferDoc,
                      channels: Optional[Iterable[IntegrationChannel]] = None) -> Dict[IntegrationChannel, bool]:
        """
        Delivers `channels` (default: every unsent channel) concurrently and
        records the per-channel outcome on the sale.
        """
        targets = list(channels) if channels is not None else sale.missing_channels()
        if not targets:
            return {}
        log = logger.bind(sale_id=sale.id, external_reference=sale.external_reference)
        results = await asyncio.gather(*(self._deliver_one(c, sale, offer) for c in targets), return_exceptions=True)

        delivered: Dict[IntegrationChannel, bool] = {}
        for channel, result in zip(targets, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                log.error(f"{channel.value} integration failed: {result}")
                delivered[channel] = False
            else:
                delivered[channel] = bool(result)

        await self.sale_repo.mark_channels([sale.id], delivered)
        log.info("Integrations attempted: " + ", ".join(f"{c.value}={'ok' if ok else 'pending'}" for c, ok in delivered.items()))
        return delivered
