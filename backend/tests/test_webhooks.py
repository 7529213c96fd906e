"""
Tests for `app/modules/payments/ingestion.py` and the webhook endpoints.

The application is driven through TestClient without running its lifespan;
each test puts its own ingestion service on `app.state`.
"""

import json
import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from app.core.concurrency import LimiterRegistry
from app.core.exceptions import LimiterQueueFullError, RepositoryError
from app.db.schemas.sale_schemas import SaleStatus
from app.main import app
from app.modules.payments.ingestion import IngestionResult, WebhookIngestionService
from app.modules.payments.pagarme_adapter import PagarmeWebhookAdapter, sign
from app.modules.payments.stripe_adapter import StripeWebhookAdapter
from app.modules.sales.service import ReconciliationService

from fakes import FakeGateway, FakeOfferRepository, FakeSaleRepository, FakeSessionRepository, make_offer, make_owner
from test_adapters import PAGARME_SECRET, STRIPE_SECRET, pagarme_order, stripe_event, stripe_signature


def build_ingestion():
    owner = make_owner()
    offer = make_offer(owner)
    sales = FakeSaleRepository()
    gateways = {"stripe": FakeGateway(), "pagarme": FakeGateway()}
    reconciliation = ReconciliationService(sales, FakeOfferRepository([offer], [owner]), FakeSessionRepository(),
                                           gateways, AsyncMock())
    adapters = {
        "stripe": StripeWebhookAdapter(webhook_secret=STRIPE_SECRET),
        "pagarme": PagarmeWebhookAdapter(webhook_secret=PAGARME_SECRET),
    }
    limiters = LimiterRegistry.for_channels(["stripe", "pagarme"], permits=2, max_waiting=10, acquire_timeout=1)
    return WebhookIngestionService(adapters, limiters, reconciliation), sales


def signed_stripe(event: dict):
    body = json.dumps(event).encode()
    return body, {"Stripe-Signature": stripe_signature(body), "Content-Type": "application/json"}


@pytest.fixture
def client():
    ingestion, sales = build_ingestion()
    app.state.ingestion = ingestion
    with_client = TestClient(app, raise_server_exceptions=False)
    yield with_client, sales, ingestion
    del app.state.ingestion


# --- Service ---

@pytest.mark.asyncio
async def test_ingestion_processes_ignores_and_acknowledges():
    ingestion, sales = build_ingestion()

    body, headers = signed_stripe(stripe_event("payment_intent.succeeded"))
    assert await ingestion.handle("stripe", body, headers) == IngestionResult.PROCESSED

    body, headers = signed_stripe(stripe_event("customer.created"))
    assert await ingestion.handle("stripe", body, headers) == IngestionResult.IGNORED

    unknown = stripe_event("payment_intent.succeeded", id="pi_2", metadata={"offerSlug": "nao-existe"})
    body, headers = signed_stripe(unknown)
    assert await ingestion.handle("stripe", body, headers) == IngestionResult.ACKNOWLEDGED
    assert list(sales.rows) == ["pi_1"]

    garbage = b"not json"
    assert await ingestion.handle("pagarme", garbage,
                                  {"X-Hub-Signature": sign(garbage, PAGARME_SECRET)}) == IngestionResult.ACKNOWLEDGED


@pytest.mark.asyncio
async def test_ledger_failure_propagates_for_redelivery():
    ingestion, sales = build_ingestion()
    sales.fail_next_writes = 10

    body, headers = signed_stripe(stripe_event("payment_intent.succeeded"))
    with pytest.raises(RepositoryError):
        await ingestion.handle("stripe", body, headers)


# --- HTTP ---

def test_stripe_webhook_records_sale_once_across_redeliveries(client):
    http, sales, _ = client
    body, headers = signed_stripe(stripe_event("payment_intent.succeeded"))

    for _ in range(3):
        response = http.post("/api/v1/webhooks/stripe", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"received": True}

    assert len(sales.rows) == 1
    sale = sales.rows["pi_1"]
    assert sale.status == SaleStatus.SUCCEEDED
    assert sale.total_amount_in_cents == 12000
    assert sale.customer_email == "ana@example.com"


def test_bad_signature_is_rejected_with_400(client):
    http, sales, _ = client
    body, headers = signed_stripe(stripe_event("payment_intent.succeeded"))
    headers["Stripe-Signature"] = f"t={int(time.time())},v1=deadbeef"

    response = http.post("/api/v1/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 400
    assert sales.rows == {}


def test_pagarme_webhook_is_verified_and_recorded(client):
    http, sales, _ = client
    body = json.dumps(pagarme_order("order.paid")).encode()

    response = http.post("/api/v1/webhooks/pagarme", content=body,
                         headers={"X-Hub-Signature": sign(body, PAGARME_SECRET)})

    assert response.status_code == 200
    assert sales.rows["PAGARME_or_1"].status == SaleStatus.SUCCEEDED


def test_unknown_offer_is_acknowledged_with_200(client):
    http, sales, _ = client
    body, headers = signed_stripe(stripe_event("payment_intent.succeeded", metadata={"offerSlug": "nao-existe"}))

    response = http.post("/api/v1/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 200
    assert sales.rows == {}


def test_event_without_an_id_is_acknowledged_not_retried(client):
    http, sales, _ = client
    body = json.dumps({"id": "hook_2", "type": "order.paid", "data": {}}).encode()

    response = http.post("/api/v1/webhooks/pagarme", content=body,
                         headers={"X-Hub-Signature": sign(body, PAGARME_SECRET)})

    assert response.status_code == 200
    assert sales.rows == {}


def test_database_failure_returns_503_so_the_provider_retries(client):
    http, sales, _ = client
    sales.fail_next_writes = 10
    body, headers = signed_stripe(stripe_event("payment_intent.succeeded"))

    response = http.post("/api/v1/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 503


def test_capacity_shedding_returns_503_with_retry_after(client):
    http, _, ingestion = client
    ingestion.handle = AsyncMock(side_effect=LimiterQueueFullError("stripe", 100))

    response = http.post("/api/v1/webhooks/stripe", content=b"{}")

    assert response.status_code == 503
    assert response.headers["retry-after"] == "5"


def test_unexpected_error_returns_500(client):
    http, _, ingestion = client
    ingestion.handle = AsyncMock(side_effect=RuntimeError("boom"))

    response = http.post("/api/v1/webhooks/stripe", content=b"{}")

    assert response.status_code == 500
