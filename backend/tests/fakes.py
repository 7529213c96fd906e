"""
In-memory stand-ins for the Mongo repositories.

Each write does its check-and-set without awaiting in between, which gives
the same single-document atomicity the real `find_one_and_update` calls
have. A leading `asyncio.sleep(0)` lets concurrent callers interleave.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId

from app.core.exceptions import RepositoryError
from app.db.schemas.common_schemas import utcnow
from app.db.schemas.offer_schemas import FacebookPixel, OfferDoc, OfferProduct, OwnerDoc, UpsellConfig
from app.db.schemas.sale_schemas import IntegrationChannel, SaleDoc, SaleStatus, can_transition
from app.db.schemas.upsell_schemas import UpsellSessionDoc
from app.modules.payments.base import BuyerProfile, ChargeResult
from app.modules.payments.commands import PaymentCommand, PaymentEventKind


def new_id() -> str:
    return str(ObjectId())


class FakeSaleRepository:
    def __init__(self):
        self.rows: Dict[str, SaleDoc] = {}
        self.fail_next_writes = 0
        self.write_attempts = 0

    def _maybe_fail(self) -> None:
        self.write_attempts += 1
        if self.fail_next_writes > 0:
            self.fail_next_writes -= 1
            raise RepositoryError("simulated write failure")

    @staticmethod
    def _apply(sale: SaleDoc, fields: Dict[str, Any]) -> SaleDoc:
        data = sale.model_dump()
        data.update(fields)
        return SaleDoc.model_validate(data)

    def add(self, sale: SaleDoc) -> SaleDoc:
        stored = sale.model_copy(update={"id": sale.id or new_id()})
        self.rows[stored.external_reference] = stored
        return stored

    async def get_by_reference(self, external_reference: str) -> Optional[SaleDoc]:
        return self.rows.get(external_reference)

    async def get_by_id(self, sale_id: str) -> Optional[SaleDoc]:
        return next((s for s in self.rows.values() if s.id == sale_id), None)

    async def create_if_absent(self, sale: SaleDoc) -> Tuple[SaleDoc, bool]:
        await asyncio.sleep(0)
        self._maybe_fail()
        existing = self.rows.get(sale.external_reference)
        if existing is not None:
            return existing, False
        return self.add(sale.model_copy(update={"id": None})), True

    async def transition(self, external_reference: str, from_statuses: Iterable[SaleStatus],
                         to_status: SaleStatus, fields: Optional[Dict[str, Any]] = None) -> Optional[SaleDoc]:
        assert all(can_transition(s, to_status) for s in from_statuses)
        await asyncio.sleep(0)
        self._maybe_fail()
        sale = self.rows.get(external_reference)
        if sale is None or sale.status not in [s.value for s in from_statuses]:
            return None
        updated = self._apply(sale, {**(fields or {}), "status": to_status.value, "updated_at": utcnow()})
        self.rows[external_reference] = updated
        return updated

    async def mark_channels(self, sale_ids: List[str], delivered: Dict[IntegrationChannel, bool],
                            attempted_at: Optional[datetime] = None) -> int:
        now = attempted_at or utcnow()
        fields: Dict[str, Any] = {"integrations_last_attempt": now}
        for channel, ok in delivered.items():
            if ok:
                fields[channel.flag_field] = True
                fields[channel.sent_at_field] = now
        count = 0
        for ref, sale in list(self.rows.items()):
            if sale.id in sale_ids:
                self.rows[ref] = self._apply(sale, fields)
                count += 1
        return count

    async def find_due_for_dispatch(self, now: datetime, limit: int) -> List[SaleDoc]:
        due = [
            s for s in self.rows.values()
            if s.status == SaleStatus.SUCCEEDED and not s.is_upsell and not s.integrations_facebook_sent
            and s.facebook_purchase_send_after is not None and s.facebook_purchase_send_after <= now
        ]
        return sorted(due, key=lambda s: s.facebook_purchase_send_after)[:limit]

    async def find_unsent_upsells(self, created_before: datetime, limit: int) -> List[SaleDoc]:
        rows = [s for s in self.rows.values()
                if s.status == SaleStatus.SUCCEEDED and s.is_upsell and not s.integrations_facebook_sent
                and s.created_at <= created_before]
        return sorted(rows, key=lambda s: s.created_at)[:limit]

    async def find_children(self, parent_sale_id: str) -> List[SaleDoc]:
        children = [s for s in self.rows.values()
                    if s.parent_sale_id == parent_sale_id and s.is_upsell and s.status == SaleStatus.SUCCEEDED]
        return sorted(children, key=lambda s: s.created_at)

    async def find_missing_integrations(self, limit: int, date_from: Optional[datetime] = None,
                                        date_to: Optional[datetime] = None) -> List[SaleDoc]:
        rows = [s for s in self.rows.values() if s.status == SaleStatus.SUCCEEDED and s.missing_channels()]
        if date_from:
            rows = [s for s in rows if s.created_at >= date_from]
        if date_to:
            rows = [s for s in rows if s.created_at <= date_to]
        return sorted(rows, key=lambda s: s.created_at, reverse=True)[:limit]

    async def count_missing_by_channel(self, date_from: Optional[datetime] = None,
                                       date_to: Optional[datetime] = None) -> Dict[str, int]:
        rows = await self.find_missing_integrations(len(self.rows) or 1, date_from, date_to)
        return {c.value: sum(1 for s in rows if not s.channel_sent(c)) for c in IntegrationChannel}


class FakeOfferRepository:
    def __init__(self, offers: Iterable[OfferDoc] = (), owners: Iterable[OwnerDoc] = ()):
        self.offers = {o.id: o for o in offers}
        self.owners = {o.id: o for o in owners}

    async def get_by_slug(self, slug: str) -> Optional[OfferDoc]:
        return next((o for o in self.offers.values() if o.slug == slug), None)

    async def get_by_id(self, offer_id: str) -> Optional[OfferDoc]:
        return self.offers.get(offer_id)

    async def get_owner(self, owner_id: str) -> Optional[OwnerDoc]:
        return self.owners.get(owner_id)


class FakeSessionRepository:
    def __init__(self):
        self.sessions: Dict[str, UpsellSessionDoc] = {}

    async def create(self, session: UpsellSessionDoc) -> UpsellSessionDoc:
        stored = session.model_copy(update={"id": new_id()})
        self.sessions[session.token] = stored
        return stored

    async def get(self, token: str) -> Optional[UpsellSessionDoc]:
        return self.sessions.get(token)

    async def delete(self, token: str) -> bool:
        return self.sessions.pop(token, None) is not None

    async def take(self, token: str) -> Optional[UpsellSessionDoc]:
        await asyncio.sleep(0)
        return self.sessions.pop(token, None)


class FakeGateway:
    name = "stripe"

    def __init__(self, profile: Optional[BuyerProfile] = None, decline: Optional[Exception] = None):
        self.profile = profile
        self.decline = decline
        self.charges: List[Dict[str, Any]] = []

    async def fetch_customer(self, command: PaymentCommand, owner: OwnerDoc) -> Optional[BuyerProfile]:
        return self.profile

    async def enrich(self, command: PaymentCommand, owner: OwnerDoc) -> PaymentCommand:
        return command

    async def charge_off_session(self, session: UpsellSessionDoc, owner: OwnerDoc, amount_in_cents: int,
                                 currency: str, metadata: Dict[str, str], description: str) -> ChargeResult:
        self.charges.append({"amount": amount_in_cents, "currency": currency, "metadata": metadata})
        if self.decline is not None:
            raise self.decline
        return ChargeResult(f"pi_upsell_{len(self.charges)}", amount_in_cents, currency, round(amount_in_cents * 0.05))


# --- Builders ---

def make_owner(**overrides) -> OwnerDoc:
    data = {"_id": new_id(), "email": "seller@example.com", "stripe_account_id": "acct_123"}
    data.update(overrides)
    return OwnerDoc.model_validate(data)


def make_offer(owner: OwnerDoc, **overrides) -> OfferDoc:
    data = {
        "_id": new_id(),
        "slug": "curso-x",
        "name": "Curso X",
        "owner_id": owner.id,
        "currency": "brl",
        "main_product": OfferProduct(id=new_id(), name="Curso X", price_in_cents=10000),
        "order_bumps": [OfferProduct(id=new_id(), name="Ebook", price_in_cents=2000)],
        "upsell": UpsellConfig(enabled=True, name="Mentoria", price_in_cents=5000,
                               redirect_url="https://seller.example.com/upsell",
                               fallback_checkout_url="https://pay.example.com/p/mentoria"),
        "thank_you_page_url": "https://seller.example.com/obrigado",
        "facebook_pixels": [FacebookPixel(pixel_id="px1", access_token="tok1")],
    }
    data.update(overrides)
    return OfferDoc.model_validate(data)


def make_command(kind: PaymentEventKind = PaymentEventKind.SUCCEEDED, reference: str = "pi_1", **overrides) -> PaymentCommand:
    data: Dict[str, Any] = {
        "kind": kind,
        "provider": "stripe",
        "external_reference": reference,
        "amount_in_cents": 10000,
        "currency": "brl",
        "offer_slug": "curso-x",
        "customer_name": "Ana Souza",
        "customer_email": "ana@example.com",
        "provider_customer_id": "cus_1",
        "provider_payment_method_id": "pm_1",
    }
    data.update(overrides)
    return PaymentCommand(**data)


def make_sale(offer: OfferDoc, reference: str, amount: int, status: SaleStatus = SaleStatus.SUCCEEDED,
              **overrides) -> SaleDoc:
    data: Dict[str, Any] = {
        "external_reference": reference,
        "owner_id": offer.owner_id,
        "offer_id": offer.id,
        "provider": "stripe",
        "total_amount_in_cents": amount,
        "status": status,
        "customer_name": "Ana Souza",
        "customer_email": "ana@example.com",
        "items": [{"product_id": offer.main_product.id, "name": "Curso X", "price_in_cents": amount}],
    }
    data.update(overrides)
    return SaleDoc.model_validate(data)


def at(minutes: float) -> datetime:
    """A fixed clock origin plus `minutes`."""
    return datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
