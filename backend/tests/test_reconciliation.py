"""
Tests for `app/modules/sales/service.py`.

Covers:
- Idempotency under sequential and concurrent duplicate deliveries.
- Monotonic status: late or out-of-order events never move a sale backwards.
- Buyer identity fallbacks and the unresolved flag.
- Upsell parent linking and the conversion delay window.
- Ledger write retries.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.core.exceptions import RepositoryError
from app.core.supervisor import BackgroundTaskRunner
from app.db.schemas.sale_schemas import SaleStatus
from app.db.schemas.upsell_schemas import UpsellSessionDoc
from app.modules.integrations.fanout import IMMEDIATE_CHANNELS
from app.modules.payments.base import BuyerProfile
from app.modules.payments.commands import PaymentEventKind
from app.modules.payments.exceptions import MalformedMetadataError, OfferNotFoundError
from app.modules.sales.service import ReconciliationOutcome, ReconciliationService

from fakes import (
    FakeGateway, FakeOfferRepository, FakeSaleRepository, FakeSessionRepository,
    at, make_command, make_offer, make_owner, make_sale,
)


def build(gateway=None, background=None):
    owner = make_owner()
    offer = make_offer(owner)
    sales = FakeSaleRepository()
    sessions = FakeSessionRepository()
    fanout = AsyncMock()
    service = ReconciliationService(
        sales, FakeOfferRepository([offer], [owner]), sessions,
        {"stripe": gateway or FakeGateway()}, fanout, background, clock=lambda: at(0),
    )
    return SimpleNamespace(service=service, sales=sales, sessions=sessions, offer=offer, fanout=fanout)


@pytest.mark.asyncio
async def test_duplicate_success_delivery_creates_one_sale():
    env = build()
    first = await env.service.apply(make_command())
    second = await env.service.apply(make_command())

    assert first == ReconciliationOutcome.CREATED
    assert second == ReconciliationOutcome.NOOP
    assert len(env.sales.rows) == 1
    assert env.sales.rows["pi_1"].status == SaleStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_converge_on_one_row():
    env = build()
    outcomes = await asyncio.gather(*(env.service.apply(make_command()) for _ in range(5)))

    assert len(env.sales.rows) == 1
    assert outcomes.count(ReconciliationOutcome.CREATED) == 1
    assert all(o in (ReconciliationOutcome.CREATED, ReconciliationOutcome.NOOP) for o in outcomes)


@pytest.mark.asyncio
async def test_concurrent_created_and_succeeded_end_succeeded():
    env = build()
    await asyncio.gather(
        env.service.apply(make_command(PaymentEventKind.CREATED)),
        env.service.apply(make_command(PaymentEventKind.SUCCEEDED)),
    )
    assert len(env.sales.rows) == 1
    assert env.sales.rows["pi_1"].status == SaleStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_created_then_succeeded_transitions_and_sets_delay_window():
    env = build()
    assert await env.service.apply(make_command(PaymentEventKind.CREATED)) == ReconciliationOutcome.CREATED
    assert env.sales.rows["pi_1"].status == SaleStatus.PENDING

    assert await env.service.apply(make_command()) == ReconciliationOutcome.UPDATED
    sale = env.sales.rows["pi_1"]
    assert sale.status == SaleStatus.SUCCEEDED
    assert sale.facebook_purchase_send_after == at(10)
    assert sale.integrations_facebook_sent is False


@pytest.mark.asyncio
async def test_late_created_event_does_not_regress_a_succeeded_sale():
    env = build()
    await env.service.apply(make_command())
    assert await env.service.apply(make_command(PaymentEventKind.CREATED)) == ReconciliationOutcome.NOOP
    assert env.sales.rows["pi_1"].status == SaleStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_failure_after_success_is_ignored():
    env = build()
    await env.service.apply(make_command())
    outcome = await env.service.apply(make_command(PaymentEventKind.FAILED, failure_reason="card_declined"))

    assert outcome == ReconciliationOutcome.NOOP
    assert env.sales.rows["pi_1"].status == SaleStatus.SUCCEEDED
    assert env.sales.rows["pi_1"].failure_reason is None


@pytest.mark.asyncio
async def test_failure_on_pending_records_reason():
    env = build()
    await env.service.apply(make_command(PaymentEventKind.CREATED))
    outcome = await env.service.apply(
        make_command(PaymentEventKind.FAILED, failure_reason="insufficient_funds", failure_message="Saldo insuficiente")
    )
    sale = env.sales.rows["pi_1"]
    assert outcome == ReconciliationOutcome.UPDATED
    assert sale.status == SaleStatus.FAILED
    assert sale.failure_reason == "insufficient_funds"
    assert sale.failure_message == "Saldo insuficiente"


@pytest.mark.asyncio
async def test_failure_without_prior_row_creates_failed_sale():
    env = build()
    assert await env.service.apply(make_command(PaymentEventKind.FAILED)) == ReconciliationOutcome.CREATED
    assert env.sales.rows["pi_1"].status == SaleStatus.FAILED
    assert env.sales.rows["pi_1"].failure_reason == "unknown"


@pytest.mark.asyncio
async def test_refund_rules():
    env = build()
    assert await env.service.apply(make_command(PaymentEventKind.REFUNDED, "pi_unknown")) == ReconciliationOutcome.DISCARDED
    assert "pi_unknown" not in env.sales.rows

    await env.service.apply(make_command())
    assert await env.service.apply(make_command(PaymentEventKind.REFUNDED)) == ReconciliationOutcome.UPDATED
    assert env.sales.rows["pi_1"].status == SaleStatus.REFUNDED
    assert await env.service.apply(make_command(PaymentEventKind.REFUNDED)) == ReconciliationOutcome.NOOP

    # Nothing moves a refunded sale
    assert await env.service.apply(make_command()) == ReconciliationOutcome.NOOP
    assert env.sales.rows["pi_1"].status == SaleStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_of_pending_sale_is_left_untouched():
    env = build()
    await env.service.apply(make_command(PaymentEventKind.CREATED))
    assert await env.service.apply(make_command(PaymentEventKind.REFUNDED)) == ReconciliationOutcome.NOOP
    assert env.sales.rows["pi_1"].status == SaleStatus.PENDING


@pytest.mark.asyncio
async def test_missing_buyer_identity_uses_placeholders_and_flags_sale():
    env = build(gateway=FakeGateway(profile=None))
    await env.service.apply(make_command(customer_name=None, customer_email=None))
    sale = env.sales.rows["pi_1"]

    assert sale.customer_name == "Unidentified Customer"
    assert sale.customer_email == "email@not.informed"
    assert sale.buyer_identity_unresolved is True


@pytest.mark.asyncio
async def test_buyer_identity_falls_back_to_provider_profile():
    env = build(gateway=FakeGateway(profile=BuyerProfile(name="Bia Lima", email="bia@example.com", phone="+5511999")))
    await env.service.apply(make_command(customer_name=None, customer_email=None))
    sale = env.sales.rows["pi_1"]

    assert sale.customer_name == "Bia Lima"
    assert sale.customer_email == "bia@example.com"
    assert sale.customer_phone == "+5511999"
    assert sale.buyer_identity_unresolved is False


@pytest.mark.asyncio
async def test_unknown_offer_is_a_data_error():
    env = build()
    with pytest.raises(OfferNotFoundError):
        await env.service.apply(make_command(offer_slug="nao-existe"))
    assert env.sales.rows == {}


@pytest.mark.asyncio
async def test_no_offer_reference_is_malformed():
    env = build()
    with pytest.raises(MalformedMetadataError):
        await env.service.apply(make_command(offer_slug=None))


@pytest.mark.asyncio
async def test_order_bumps_resolved_by_id_and_unknown_ids_skipped():
    env = build()
    bump = env.offer.order_bumps[0]
    await env.service.apply(make_command(amount_in_cents=12000, selected_order_bumps=[bump.id, "ghost"]))
    items = env.sales.rows["pi_1"].items

    assert [i.name for i in items] == ["Curso X", "Ebook"]
    assert items[1].is_order_bump is True
    assert env.sales.rows["pi_1"].total_amount_in_cents == 12000


@pytest.mark.asyncio
async def test_upsell_links_to_parent_through_session_token():
    env = build()
    parent = env.sales.add(make_sale(env.offer, "pi_parent", 10000))
    await env.sessions.create(UpsellSessionDoc(
        token="tok1", provider="stripe", payment_method_id="pm_1", offer_id=env.offer.id,
        original_sale_id=parent.id,
    ))
    await env.service.apply(make_command(reference="pi_up", amount_in_cents=5000, is_upsell=True,
                                         upsell_session_token="tok1"))
    upsell = env.sales.rows["pi_up"]

    assert upsell.is_upsell is True
    assert upsell.parent_sale_id == parent.id
    assert upsell.facebook_purchase_send_after is None
    assert upsell.items[0].name == "Mentoria"
    assert upsell.items[0].price_in_cents == 5000


@pytest.mark.asyncio
async def test_upsell_parent_must_be_succeeded():
    env = build()
    parent = env.sales.add(make_sale(env.offer, "pi_parent", 10000, status=SaleStatus.PENDING))
    await env.service.apply(make_command(reference="pi_up", amount_in_cents=5000, is_upsell=True,
                                         parent_sale_id=parent.id))
    assert env.sales.rows["pi_up"].status == SaleStatus.SUCCEEDED
    assert env.sales.rows["pi_up"].parent_sale_id is None


@pytest.mark.asyncio
async def test_transient_write_failures_are_retried():
    env = build()
    env.sales.fail_next_writes = 2
    assert await env.service.apply(make_command()) == ReconciliationOutcome.CREATED
    assert env.sales.write_attempts == 3


@pytest.mark.asyncio
async def test_persistent_write_failure_surfaces_repository_error():
    env = build()
    env.sales.fail_next_writes = 3
    with pytest.raises(RepositoryError):
        await env.service.apply(make_command())
    assert env.sales.rows == {}


@pytest.mark.asyncio
async def test_success_schedules_immediate_channels_only():
    env = build(background=BackgroundTaskRunner())
    await env.service.apply(make_command())
    await env.service.background.drain(timeout=1)

    env.fanout.deliver.assert_awaited_once()
    sale, offer, channels = env.fanout.deliver.await_args.args
    assert sale.external_reference == "pi_1"
    assert offer.id == env.offer.id
    assert tuple(channels) == IMMEDIATE_CHANNELS


@pytest.mark.asyncio
async def test_fanout_failure_never_affects_the_ledger():
    env = build(background=BackgroundTaskRunner())
    env.fanout.deliver.side_effect = RuntimeError("downstream exploded")
    assert await env.service.apply(make_command()) == ReconciliationOutcome.CREATED
    await env.service.background.drain(timeout=1)
    assert env.sales.rows["pi_1"].status == SaleStatus.SUCCEEDED
