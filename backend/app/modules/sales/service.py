# app/modules/sales/service.py
# Reconciliation of normalized payment commands into the Sale ledger.

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from app.core.config import settings
from app.core.exceptions import RepositoryError
from app.core.logging_setup import logger
from app.core.retry import retry_async
from app.core.supervisor import BackgroundTaskRunner
from app.db.schemas.common_schemas import utcnow
from app.db.schemas.offer_schemas import OfferDoc, OwnerDoc
from app.db.schemas.sale_schemas import SaleDoc, SaleItem, SaleStatus
from app.modules.integrations.fanout import IMMEDIATE_CHANNELS, IntegrationFanout
from app.modules.offers.repository import OfferRepository
from app.modules.payments.base import ProviderGateway
from app.modules.payments.commands import PaymentCommand, PaymentEventKind
from app.modules.payments.exceptions import MalformedMetadataError, OfferNotFoundError, SellerNotConfiguredError
from app.modules.sales.repository import SaleRepository
from app.modules.upsell.repository import UpsellSessionRepository

T = TypeVar("T")

ATTRIBUTION_FIELDS = (
    "ip", "user_agent", "fbc", "fbp", "address_city", "address_state", "address_zip_code",
    "address_country", "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "ab_test_id",
)


class ReconciliationOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    NOOP = "noop"            # already in (or past) the target state
    DISCARDED = "discarded"  # nothing to act on; acknowledged and logged


class ReconciliationService:
    """
    Applies PaymentCommands to the ledger:

        pending -> succeeded | failed
        succeeded -> refunded

    Handlers never branch on provider. Every write is an atomic conditional
    update or create-if-absent, so concurrent duplicate deliveries converge on
    one row. Offer/seller/metadata problems raise DataError (acknowledged by
    the caller); ledger write failures raise RepositoryError after a few
    in-process retries so the provider redelivers.
    """

    def __init__(
        self,
        sale_repo: SaleRepository,
        offer_repo: OfferRepository,
        session_repo: UpsellSessionRepository,
        gateways: Mapping[str, ProviderGateway],
        fanout: IntegrationFanout,
        background: Optional[BackgroundTaskRunner] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sale_repo = sale_repo
        self.offer_repo = offer_repo
        self.session_repo = session_repo
        self.gateways = gateways
        self.fanout = fanout
        self.background = background
        self.clock = clock

    async def apply(self, command: PaymentCommand) -> ReconciliationOutcome:
        handler = {
            PaymentEventKind.CREATED: self.handle_created,
            PaymentEventKind.SUCCEEDED: self.handle_succeeded,
            PaymentEventKind.FAILED: self.handle_failed,
            PaymentEventKind.REFUNDED: self.handle_refunded,
        }[command.kind]
        outcome = await handler(command)
        logger.bind(external_reference=command.external_reference, provider=command.provider.value,
                    event=command.kind.value).info(f"Reconciled: {outcome.value}")
        return outcome

    # --- Ledger writes with in-process retry ---

    async def _write(self, label: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(
            fn,
            attempts=settings.LEDGER_WRITE_RETRIES,
            base_delay=settings.LEDGER_WRITE_BACKOFF_SECONDS,
            retry_on=(RepositoryError,),
            label=label,
        )

    async def _create(self, sale: SaleDoc) -> Tuple[SaleDoc, bool]:
        return await self._write(f"create sale {sale.external_reference}",
                                 lambda: self.sale_repo.create_if_absent(sale))

    async def _transition(self, reference: str, from_statuses: List[SaleStatus], to_status: SaleStatus,
                          fields: Dict[str, Any]) -> Optional[SaleDoc]:
        return await self._write(f"transition {reference} to {to_status.value}",
                                 lambda: self.sale_repo.transition(reference, from_statuses, to_status, fields))

    # --- Lookups ---

    async def _resolve_offer(self, command: PaymentCommand, existing: Optional[SaleDoc] = None) -> Tuple[OfferDoc, OwnerDoc]:
        if command.offer_slug:
            offer = await self.offer_repo.get_by_slug(command.offer_slug)
        elif existing is not None and existing.offer_id:
            offer = await self.offer_repo.get_by_id(existing.offer_id)
        else:
            raise MalformedMetadataError(f"No offer reference on {command.provider.value} event {command.external_reference}")
        if offer is None:
            raise OfferNotFoundError(command.offer_slug or (existing.offer_id if existing else None))
        owner = await self.offer_repo.get_owner(offer.owner_id)
        if owner is None:
            raise SellerNotConfiguredError(offer.owner_id, command.provider.value)
        return offer, owner

    def _gateway(self, command: PaymentCommand) -> Optional[ProviderGateway]:
        return self.gateways.get(command.provider.value)

    @staticmethod
    def build_items(command: PaymentCommand, offer: OfferDoc) -> List[SaleItem]:
        if command.is_upsell:
            upsell = offer.upsell
            return [SaleItem(
                name=(upsell.name if upsell and upsell.name else None) or command.upsell_product_name or "Upsell",
                price_in_cents=command.amount_in_cents or 0,
                custom_id=upsell.custom_id if upsell else None,
            )]

        main = offer.main_product
        items = [SaleItem(
            product_id=main.id,
            name=main.name,
            price_in_cents=main.price_in_cents,
            compare_at_price_in_cents=main.compare_at_price_in_cents,
            custom_id=main.custom_id,
        )]
        for bump_id in command.selected_order_bumps:
            bump = offer.find_bump(bump_id)
            if bump is None:
                logger.debug(f"Order bump {bump_id} not in offer {offer.slug} catalog. Skipping.")
                continue
            items.append(SaleItem(
                product_id=bump.id,
                name=bump.name,
                price_in_cents=bump.price_in_cents,
                compare_at_price_in_cents=bump.compare_at_price_in_cents,
                is_order_bump=True,
                custom_id=bump.custom_id,
            ))
        return items

    async def resolve_buyer(self, command: PaymentCommand, owner: OwnerDoc) -> Dict[str, Any]:
        """Event fields, then the provider's customer profile, then placeholders (flagged unresolved)."""
        name, email, phone = command.customer_name, command.customer_email, command.customer_phone
        if not (name and email):
            gateway = self._gateway(command)
            profile = await gateway.fetch_customer(command, owner) if gateway else None
            if profile is not None:
                name, email, phone = name or profile.name, email or profile.email, phone or profile.phone
        unresolved = not (name and email)
        if unresolved:
            logger.bind(external_reference=command.external_reference).warning(
                "Buyer identity unresolved. Storing placeholders.")
        return {
            "customer_name": name or settings.PLACEHOLDER_CUSTOMER_NAME,
            "customer_email": email or settings.PLACEHOLDER_CUSTOMER_EMAIL,
            "customer_phone": phone,
            "buyer_identity_unresolved": unresolved,
        }

    async def resolve_parent(self, command: PaymentCommand) -> Optional[str]:
        """The originating sale of an upsell, taken from its one-click session."""
        candidate = command.parent_sale_id
        if command.upsell_session_token:
            session = await self.session_repo.get(command.upsell_session_token)
            if session is not None:
                candidate = session.original_sale_id
        if not candidate:
            logger.bind(external_reference=command.external_reference).warning("Upsell has no resolvable parent sale.")
            return None
        parent = await self.sale_repo.get_by_id(candidate)
        if parent is None or parent.is_upsell or parent.status != SaleStatus.SUCCEEDED:
            logger.bind(external_reference=command.external_reference, parent_sale_id=candidate).warning(
                "Parent sale missing, not succeeded, or itself an upsell. Leaving link unset.")
            return None
        return parent.id

    def _base_fields(self, command: PaymentCommand, offer: OfferDoc, items: List[SaleItem]) -> Dict[str, Any]:
        amount = command.amount_in_cents
        if amount is None:
            amount = sum(i.price_in_cents for i in items)
        fields: Dict[str, Any] = {
            "owner_id": offer.owner_id,
            "offer_id": offer.id,
            "provider": command.provider.value,
            "total_amount_in_cents": amount,
            "currency": (command.currency or offer.currency or settings.DEFAULT_CURRENCY).lower(),
            "country": command.country or settings.DEFAULT_COUNTRY,
            "is_upsell": command.is_upsell,
            "items": items,
        }
        for name in ATTRIBUTION_FIELDS:
            value = getattr(command, name)
            if value:
                fields[name] = value
        for name in ("payment_method_type", "wallet_type", "provider_account_id",
                     "provider_customer_id", "provider_payment_method_id"):
            value = getattr(command, name)
            if value:
                fields[name] = value
        return fields

    def _new_sale(self, command: PaymentCommand, status: SaleStatus, fields: Dict[str, Any]) -> SaleDoc:
        now = self.clock()
        return SaleDoc(external_reference=command.external_reference, status=status,
                       created_at=now, updated_at=now, **fields)

    @staticmethod
    def _as_update(fields: Dict[str, Any]) -> Dict[str, Any]:
        update = dict(fields)
        if "items" in update:
            update["items"] = [i.model_dump() if isinstance(i, SaleItem) else i for i in update["items"]]
        return update

    # --- Handlers ---

    async def handle_created(self, command: PaymentCommand) -> ReconciliationOutcome:
        if await self.sale_repo.get_by_reference(command.external_reference):
            return ReconciliationOutcome.NOOP
        offer, owner = await self._resolve_offer(command)
        items = self.build_items(command, offer)
        fields = self._base_fields(command, offer, items)
        fields.update(await self.resolve_buyer(command, owner))
        _, created = await self._create(self._new_sale(command, SaleStatus.PENDING, fields))
        return ReconciliationOutcome.CREATED if created else ReconciliationOutcome.NOOP

    async def handle_succeeded(self, command: PaymentCommand) -> ReconciliationOutcome:
        log = logger.bind(external_reference=command.external_reference)
        existing = await self.sale_repo.get_by_reference(command.external_reference)
        if existing is not None and existing.status != SaleStatus.PENDING:
            if existing.status != SaleStatus.SUCCEEDED:
                log.warning(f"Success event for a {existing.status} sale. Ignoring.")
            return ReconciliationOutcome.NOOP

        offer, owner = await self._resolve_offer(command, existing)
        gateway = self._gateway(command)
        if gateway is not None:
            command = await gateway.enrich(command, owner)

        items = self.build_items(command, offer)
        fields = self._base_fields(command, offer, items)
        fields["platform_fee_in_cents"] = command.platform_fee_in_cents
        fields.update(await self.resolve_buyer(command, owner))
        if command.is_upsell:
            fields["parent_sale_id"] = await self.resolve_parent(command)
        else:
            fields["facebook_purchase_send_after"] = self.clock() + timedelta(seconds=settings.FACEBOOK_PURCHASE_DELAY_SECONDS)

        if existing is None:
            sale, created = await self._create(self._new_sale(command, SaleStatus.SUCCEEDED, fields))
            if created:
                self._schedule_fanout(sale, offer)
                return ReconciliationOutcome.CREATED
            if sale.status != SaleStatus.PENDING:
                return ReconciliationOutcome.NOOP
            # Lost a race with the creation event; promote its row below

        sale = await self._transition(command.external_reference, [SaleStatus.PENDING], SaleStatus.SUCCEEDED,
                                      self._as_update(fields))
        if sale is None:
            # Someone else moved it first (duplicate delivery or a failure event)
            return ReconciliationOutcome.NOOP
        self._schedule_fanout(sale, offer)
        return ReconciliationOutcome.UPDATED

    async def handle_failed(self, command: PaymentCommand) -> ReconciliationOutcome:
        failure = {
            "failure_reason": command.failure_reason or "unknown",
            "failure_message": command.failure_message or "payment declined",
        }
        existing = await self.sale_repo.get_by_reference(command.external_reference)
        if existing is not None and existing.status != SaleStatus.PENDING:
            return ReconciliationOutcome.NOOP

        if existing is None:
            offer, owner = await self._resolve_offer(command)
            items = self.build_items(command, offer)
            fields = self._base_fields(command, offer, items)
            fields.update(await self.resolve_buyer(command, owner))
            fields.update(failure)
            sale, created = await self._create(self._new_sale(command, SaleStatus.FAILED, fields))
            if created:
                return ReconciliationOutcome.CREATED
            if sale.status != SaleStatus.PENDING:
                return ReconciliationOutcome.NOOP

        updated = await self._transition(command.external_reference, [SaleStatus.PENDING], SaleStatus.FAILED, failure)
        return ReconciliationOutcome.UPDATED if updated else ReconciliationOutcome.NOOP

    async def handle_refunded(self, command: PaymentCommand) -> ReconciliationOutcome:
        log = logger.bind(external_reference=command.external_reference)
        existing = await self.sale_repo.get_by_reference(command.external_reference)
        if existing is None:
            log.warning("Refund for an unknown sale. Discarding.")
            return ReconciliationOutcome.DISCARDED
        if existing.status == SaleStatus.REFUNDED:
            return ReconciliationOutcome.NOOP
        if existing.status != SaleStatus.SUCCEEDED:
            log.warning(f"Refund for a {existing.status} sale. Leaving untouched.")
            return ReconciliationOutcome.NOOP
        updated = await self._transition(command.external_reference, [SaleStatus.SUCCEEDED], SaleStatus.REFUNDED, {})
        return ReconciliationOutcome.UPDATED if updated else ReconciliationOutcome.NOOP

    # --- Immediate integrations ---

    def _schedule_fanout(self, sale: SaleDoc, offer: OfferDoc) -> None:
        """Access and tracking webhooks go out right away; the conversion event waits for the dispatch job."""
        if self.background is None:
            return
        self.background.spawn(self._immediate_fanout(sale, offer), name=f"fanout:{sale.external_reference}")

    async def _immediate_fanout(self, sale: SaleDoc, offer: OfferDoc) -> None:
        try:
            await self.fanout.deliver(sale, offer, IMMEDIATE_CHANNELS)
        except Exception:
            logger.bind(sale_id=sale.id).exception("Immediate integration fan-out failed. Reprocessing will retry.")
