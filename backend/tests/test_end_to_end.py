"""
The `pi_1` lifecycle across reconciliation and the dispatch job.

created -> pending; succeeded -> succeeded with a send-after ten minutes
out; after the delay one consolidated Purchase of 5000 with a single item;
a late redelivery of the success event changes nothing.
"""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.db.schemas.offer_schemas import OfferProduct
from app.db.schemas.sale_schemas import SaleStatus
from app.modules.dispatch.job import ConsolidatedPurchaseJob
from app.modules.integrations.facebook import PixelDeliveryReport
from app.modules.integrations.fanout import IntegrationFanout
from app.modules.payments.commands import PaymentEventKind
from app.modules.sales.service import ReconciliationOutcome, ReconciliationService

from fakes import (
    FakeGateway, FakeOfferRepository, FakeSaleRepository, FakeSessionRepository,
    at, make_command, make_offer, make_owner, new_id,
)


@pytest.mark.asyncio
async def test_pi_1_from_creation_to_consolidated_purchase():
    owner = make_owner()
    offer = make_offer(owner, slug="O", main_product=OfferProduct(id=new_id(), name="Widget", price_in_cents=5000))
    sales = FakeSaleRepository()
    offers = FakeOfferRepository([offer], [owner])
    facebook = AsyncMock()
    facebook.send_to_pixels.return_value = PixelDeliveryReport(succeeded=["px1"])
    fanout = IntegrationFanout(sales, AsyncMock(), AsyncMock(), facebook)
    clock = SimpleNamespace(now=at(0))
    reconciliation = ReconciliationService(sales, offers, FakeSessionRepository(), {"stripe": FakeGateway()},
                                           fanout, clock=lambda: clock.now)
    job = ConsolidatedPurchaseJob(sales, offers, fanout, interval=60, batch_size=50, clock=lambda: clock.now)

    created = make_command(PaymentEventKind.CREATED, "pi_1", offer_slug="O", amount_in_cents=5000)
    assert await reconciliation.apply(created) == ReconciliationOutcome.CREATED
    assert sales.rows["pi_1"].status == SaleStatus.PENDING

    succeeded = make_command(PaymentEventKind.SUCCEEDED, "pi_1", offer_slug="O", amount_in_cents=5000)
    assert await reconciliation.apply(succeeded) == ReconciliationOutcome.UPDATED
    sale = sales.rows["pi_1"]
    assert sale.status == SaleStatus.SUCCEEDED
    assert sale.facebook_purchase_send_after == at(10)

    clock.now = at(9)
    assert (await job.run_cycle()).selected == 0

    clock.now = at(10) + timedelta(seconds=30)
    report = await job.run_cycle()
    assert report.sent == [sale.id]
    _, payload = facebook.send_to_pixels.await_args.args
    assert payload["custom_data"]["value"] == 50.0
    assert len(payload["custom_data"]["content_ids"]) == 1
    assert sales.rows["pi_1"].integrations_facebook_sent is True

    assert await reconciliation.apply(succeeded) == ReconciliationOutcome.NOOP
    assert len(sales.rows) == 1
    assert sales.rows["pi_1"].status == SaleStatus.SUCCEEDED
    assert (await job.run_cycle()).selected == 0
    facebook.send_to_pixels.assert_awaited_once()
