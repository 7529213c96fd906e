# app/modules/dispatch/job.py
# Periodic consolidated Purchase dispatch. Runs on an interval instead of on
# the success event so a just-paid sale has time to pick up its upsells.

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from app.core.config import settings
from app.core.logging_setup import logger
from app.db.schemas.common_schemas import utcnow
from app.db.schemas.sale_schemas import IntegrationChannel, SaleDoc
from app.modules.integrations.fanout import IntegrationFanout
from app.modules.offers.repository import OfferRepository
from app.modules.sales.repository import SaleRepository


@dataclass
class DispatchCycleReport:
    selected: int = 0
    sent: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # offer deleted or no pixels: marked sent
    failed: List[str] = field(default_factory=list)   # left unset, retried next cycle
    errors: List[str] = field(default_factory=list)
    upsells_sent: List[str] = field(default_factory=list)  # reported on their own, outside a consolidation


class ConsolidatedPurchaseJob:
    def __init__(
        self,
        sale_repo: SaleRepository,
        offer_repo: OfferRepository,
        fanout: IntegrationFanout,
        interval: float | None = None,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sale_repo = sale_repo
        self.offer_repo = offer_repo
        self.fanout = fanout
        self.interval = interval if interval is not None else settings.DISPATCH_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.DISPATCH_BATCH_SIZE
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.log = logger.bind(service="ConsolidatedPurchaseJob")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_cycle(self) -> DispatchCycleReport:
        report = DispatchCycleReport()
        due = await self.sale_repo.find_due_for_dispatch(self.clock(), self.batch_size)
        report.selected = len(due)
        if due:
            self.log.info(f"Dispatching consolidated Purchase for {len(due)} sale(s).")

        for sale in due:
            if self._stop_event.is_set():
                self.log.info("Stop requested. Leaving the rest of the batch for the next run.")
                break
            try:
                outcome = await self._process(sale)
            except Exception as e:
                # Isolated per sale; the flag stays unset so the next cycle retries
                self.log.bind(sale_id=sale.id).exception(f"Error dispatching sale: {e}")
                report.errors.append(sale.id)
                continue
            getattr(report, outcome).append(sale.id)

        if not self._stop_event.is_set():
            await self._send_unsent_upsells(report)
        return report

    async def _send_unsent_upsells(self, report: DispatchCycleReport) -> None:
        """
        Upsells that succeeded after their parent's consolidated event went
        out, or that have no parent, are reported individually. Ones whose
        parent is still pending stay deferred.
        """
        cutoff = self.clock() - timedelta(seconds=settings.FACEBOOK_PURCHASE_DELAY_SECONDS)
        for sale in await self.sale_repo.find_unsent_upsells(cutoff, self.batch_size):
            if self._stop_event.is_set():
                break
            log = self.log.bind(sale_id=sale.id, parent_sale_id=sale.parent_sale_id)
            try:
                offer = await self.offer_repo.get_by_id(sale.offer_id) if sale.offer_id else None
                if offer is None:
                    log.warning(f"Offer {sale.offer_id} no longer exists. Marking upsell as sent.")
                    await self.sale_repo.mark_channels([sale.id], {IntegrationChannel.FACEBOOK: True})
                    continue
                delivered = await self.fanout.deliver(sale, offer, [IntegrationChannel.FACEBOOK])
            except Exception as e:
                log.exception(f"Error dispatching upsell: {e}")
                report.errors.append(sale.id)
                continue
            if delivered.get(IntegrationChannel.FACEBOOK):
                report.upsells_sent.append(sale.id)

    async def _process(self, parent: SaleDoc) -> str:
        log = self.log.bind(sale_id=parent.id)
        offer = await self.offer_repo.get_by_id(parent.offer_id) if parent.offer_id else None
        if offer is None:
            log.warning(f"Offer {parent.offer_id} no longer exists. Marking as sent.")
            await self.sale_repo.mark_channels([parent.id], {IntegrationChannel.FACEBOOK: True})
            return "skipped"
        if not offer.pixels():
            await self.sale_repo.mark_channels([parent.id], {IntegrationChannel.FACEBOOK: True})
            return "skipped"

        purchase = await self.fanout.consolidate(parent)
        if await self.fanout.send_consolidated_purchase(purchase, offer):
            await self.sale_repo.mark_channels(purchase.sale_ids, {IntegrationChannel.FACEBOOK: True})
            return "sent"
        await self.sale_repo.mark_channels([parent.id], {IntegrationChannel.FACEBOOK: False})
        return "failed"

    async def _loop(self) -> None:
        self.log.info(f"Starting consolidated dispatch loop (every {self.interval:.0f}s, batch {self.batch_size}).")
        while not self._stop_event.is_set():
            try:
                report = await self.run_cycle()
                if report.selected or report.upsells_sent:
                    self.log.info(f"Cycle done: sent={len(report.sent)} skipped={len(report.skipped)} "
                                  f"failed={len(report.failed)} upsells={len(report.upsells_sent)} errors={len(report.errors)}")
            except Exception:
                self.log.exception("Unexpected error in dispatch cycle.")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        self.log.info("Consolidated dispatch loop shutting down.")

    def start(self) -> None:
        """Runs one pass immediately (catch-up after downtime), then every `interval` seconds."""
        if self.running:
            self.log.warning("Dispatch job already running.")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="consolidated-dispatch")

    async def stop(self, timeout: float | None = None) -> None:
        """Lets the in-flight sale finish; cancels only if that takes longer than `timeout`."""
        if not self.running:
            return
        timeout = timeout if timeout is not None else settings.DISPATCH_STOP_TIMEOUT_SECONDS
        self.log.info("Signaling dispatch job to stop...")
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
            self.log.info("Dispatch job stopped gracefully.")
        except asyncio.TimeoutError:
            self.log.warning("Dispatch job did not stop in time. Cancelling.")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                self.log.info("Dispatch job cancellation confirmed.")
        finally:
            self._task = None
