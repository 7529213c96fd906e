# app/modules/upsell/service.py
# One-click upsell: issue a short-lived capability to charge the payment
# method of a just-succeeded sale, redeem it once, charge off-session.

import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional, Tuple

from app.core.config import settings
from app.core.exceptions import ProviderAPIError, RepositoryError
from app.core.logging_setup import logger
from app.db.schemas.common_schemas import as_utc, utcnow
from app.db.schemas.offer_schemas import OfferDoc, OfferProduct
from app.db.schemas.sale_schemas import PaymentProvider, SaleDoc, SaleStatus
from app.db.schemas.upsell_schemas import UpsellOutcome, UpsellSessionDoc, UpsellTokenResponse
from app.modules.offers.repository import OfferRepository
from app.modules.payments.base import ProviderGateway
from app.modules.payments.commands import PaymentCommand, PaymentEventKind
from app.modules.payments.exceptions import PaymentDeclinedError
from app.modules.sales.repository import SaleRepository
from app.modules.sales.service import ReconciliationService
from app.modules.upsell.exceptions import UpsellNotEligibleError, UpsellSessionNotFoundError
from app.modules.upsell.repository import UpsellSessionRepository


def append_query(url: str, params: Dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return url + separator + "&".join(f"{k}={v}" for k, v in params.items())


def fallback_url(offer: Optional[OfferDoc]) -> Optional[str]:
    """Where to send the buyer when one-click is not possible."""
    if offer is None:
        return None
    upsell = offer.upsell
    if upsell and upsell.fallback_checkout_url:
        return upsell.fallback_checkout_url
    if upsell and upsell.enabled and upsell.redirect_url:
        return upsell.redirect_url
    return offer.thank_you_page_url


def check_eligible(offer: OfferDoc, provider: str) -> None:
    upsell = offer.upsell
    if not upsell or not upsell.enabled:
        raise UpsellNotEligibleError("upsell_disabled", "This offer has no active upsell.")
    if not upsell.redirect_url:
        raise UpsellNotEligibleError("no_redirect_url", "Upsell page URL not configured.")
    if provider == PaymentProvider.PAYPAL.value and not upsell.paypal_one_click_enabled:
        raise UpsellNotEligibleError("paypal_one_click_disabled", "One-click is disabled for PayPal on this offer.")
    if provider == PaymentProvider.PAGARME.value:
        raise UpsellNotEligibleError("one_click_unavailable", "One-click is not available for PIX.")


class UpsellSessionManager:
    def __init__(
        self,
        session_repo: UpsellSessionRepository,
        sale_repo: SaleRepository,
        offer_repo: OfferRepository,
        gateways: Mapping[str, ProviderGateway],
        reconciliation: ReconciliationService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_repo = session_repo
        self.sale_repo = sale_repo
        self.offer_repo = offer_repo
        self.gateways = gateways
        self.reconciliation = reconciliation
        self.clock = clock
        self.log = logger.bind(service="UpsellSessionManager")

    # --- Issuance ---

    async def issue(self, origin_sale: SaleDoc, provider: str, account_id: Optional[str],
                    customer_id: Optional[str], payment_method_id: str, offer: OfferDoc) -> Tuple[str, str]:
        """Stores a new single-use session and returns (token, upsell page URL)."""
        check_eligible(offer, provider)
        token = uuid.uuid4().hex
        session = UpsellSessionDoc(
            token=token,
            provider=provider,
            account_id=account_id,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            offer_id=offer.id,
            original_sale_id=origin_sale.id,
            customer_name=origin_sale.customer_name,
            customer_email=origin_sale.customer_email,
            customer_phone=origin_sale.customer_phone,
            ip=origin_sale.ip,
            utm_source=origin_sale.utm_source,
            utm_medium=origin_sale.utm_medium,
            utm_campaign=origin_sale.utm_campaign,
            utm_term=origin_sale.utm_term,
            utm_content=origin_sale.utm_content,
            created_at=self.clock(),
        )
        await self.session_repo.create(session)
        url = append_query(offer.upsell.redirect_url, {"token": token, "payment_method": provider, "offerId": offer.id})
        self.log.bind(sale_id=origin_sale.id, provider=provider).info("Upsell session issued.")
        return token, url

    async def issue_for_sale(self, external_reference: str, offer_slug: str) -> UpsellTokenResponse:
        """
        Called by the checkout once the primary charge succeeded. Ineligible
        sales get the fallback link instead of a token.
        """
        offer = await self.offer_repo.get_by_slug(offer_slug)
        if offer is None:
            return UpsellTokenResponse()
        sale = await self.sale_repo.get_by_reference(external_reference)
        log = self.log.bind(external_reference=external_reference)

        reason = None
        if sale is None or sale.status != SaleStatus.SUCCEEDED:
            reason = "sale not succeeded yet"
        elif sale.is_upsell or sale.offer_id != offer.id:
            reason = "sale does not belong to this offer"
        elif not sale.provider_payment_method_id:
            reason = "no stored payment method"
        if reason:
            log.info(f"No upsell token issued: {reason}.")
            return UpsellTokenResponse(redirect_url=fallback_url(offer))

        try:
            token, url = await self.issue(
                sale, sale.provider, sale.provider_account_id, sale.provider_customer_id,
                sale.provider_payment_method_id, offer,
            )
        except UpsellNotEligibleError as e:
            log.info(f"No upsell token issued: {e.reason}.")
            return UpsellTokenResponse(redirect_url=fallback_url(offer))
        except RepositoryError:
            log.exception("Upsell session could not be stored. Using fallback link.")
            return UpsellTokenResponse(redirect_url=fallback_url(offer))
        return UpsellTokenResponse(token=token, redirect_url=url)

    # --- Redemption ---

    def _expired(self, session: UpsellSessionDoc) -> bool:
        # The TTL monitor is lazy; never honour a session past its lifetime
        return as_utc(session.created_at) + timedelta(seconds=settings.UPSELL_SESSION_TTL_SECONDS) < self.clock()

    async def redeem(self, token: Optional[str]) -> UpsellSessionDoc:
        """Looks the session up without using it up."""
        if not token:
            raise UpsellSessionNotFoundError(token)
        session = await self.session_repo.get(token)
        if session is None:
            raise UpsellSessionNotFoundError(token)
        if self._expired(session):
            await self.session_repo.delete(token)
            raise UpsellSessionNotFoundError(token)
        return session

    async def claim(self, token: str) -> UpsellSessionDoc:
        """Removes the session in one atomic step. A concurrent second claim gets not-found."""
        session = await self.session_repo.take(token)
        if session is None or self._expired(session):
            raise UpsellSessionNotFoundError(token)
        return session

    async def consume(self, token: str) -> None:
        await self.session_repo.delete(token)

    @staticmethod
    def _choose_item(offer: OfferDoc, chosen_item_id: Optional[str]) -> OfferProduct:
        upsell = offer.upsell
        if chosen_item_id and upsell.options:
            chosen = next((o for o in upsell.options if o.id == chosen_item_id), None)
            if chosen is None:
                raise UpsellNotEligibleError("invalid_item", "The selected item is not part of this upsell.")
            return chosen
        return OfferProduct(name=upsell.name or offer.name, price_in_cents=upsell.price_in_cents,
                            custom_id=upsell.custom_id)

    async def accept(self, token: Optional[str], chosen_item_id: Optional[str] = None,
                     offer_id: Optional[str] = None) -> UpsellOutcome:
        """
        Charges the stored payment method off-session and records the upsell
        sale. Declines come back as a structured outcome, never as an error.
        """
        try:
            session = await self.redeem(token)
        except UpsellSessionNotFoundError:
            offer = await self.offer_repo.get_by_id(offer_id) if offer_id else None
            return UpsellOutcome(success=False, reason="session_not_found",
                                 message="This offer link has expired.", redirect_url=fallback_url(offer))

        log = self.log.bind(original_sale_id=session.original_sale_id, provider=session.provider)
        offer = await self.offer_repo.get_by_id(session.offer_id)
        owner = await self.offer_repo.get_owner(offer.owner_id) if offer else None
        gateway = self.gateways.get(session.provider)
        try:
            if offer is None or not offer.upsell or not offer.upsell.enabled:
                raise UpsellNotEligibleError("upsell_disabled", "This offer has no active upsell.")
            item = self._choose_item(offer, chosen_item_id)
            if item.price_in_cents < settings.UPSELL_MIN_PRICE_IN_CENTS:
                raise UpsellNotEligibleError("invalid_price", "Upsell price is below the provider minimum.")
            if owner is None or gateway is None:
                raise UpsellNotEligibleError("seller_not_configured", "Seller payment account not configured.")
        except UpsellNotEligibleError as e:
            log.warning(f"Upsell not charged: {e.reason}")
            return UpsellOutcome(success=False, reason=e.reason, message=e.message, redirect_url=fallback_url(offer))

        try:
            session = await self.claim(session.token)
        except UpsellSessionNotFoundError:
            log.info("Upsell session already used by a concurrent request.")
            return UpsellOutcome(success=False, reason="session_not_found",
                                 message="This offer link has expired.", redirect_url=fallback_url(offer))

        metadata = {
            "isUpsell": "true",
            "originalOfferSlug": offer.slug,
            "productName": item.name,
            "originalSessionToken": session.token,
            "parentSaleId": session.original_sale_id,
        }
        try:
            charge = await gateway.charge_off_session(
                session, owner, item.price_in_cents, offer.currency, metadata, f"Upsell: {item.name}"
            )
        except PaymentDeclinedError as e:
            log.info(f"Upsell charge declined: {e.reason}")
            return UpsellOutcome(success=False, reason=e.reason, message=e.message, status=e.status,
                                 redirect_url=fallback_url(offer))
        except ProviderAPIError:
            # Charges are idempotent per token, so the buyer may safely retry
            await self.session_repo.create(session)
            raise

        command = PaymentCommand(
            kind=PaymentEventKind.SUCCEEDED,
            provider=session.provider,
            external_reference=charge.external_reference,
            amount_in_cents=charge.amount_in_cents,
            currency=charge.currency,
            platform_fee_in_cents=charge.platform_fee_in_cents,
            offer_slug=offer.slug,
            is_upsell=True,
            upsell_product_name=item.name,
            upsell_session_token=session.token,
            parent_sale_id=session.original_sale_id,
            customer_name=session.customer_name,
            customer_email=session.customer_email,
            customer_phone=session.customer_phone,
            ip=session.ip,
            utm_source=session.utm_source,
            utm_medium=session.utm_medium,
            utm_campaign=session.utm_campaign,
            utm_term=session.utm_term,
            utm_content=session.utm_content,
            provider_account_id=session.account_id,
            provider_customer_id=session.customer_id,
            provider_payment_method_id=session.payment_method_id,
        )
        try:
            # The provider's own webhook for this charge converges on the same row
            await self.reconciliation.apply(command)
        except RepositoryError:
            log.exception("Upsell charged but not recorded yet. The provider webhook will record it.")
        log.bind(external_reference=charge.external_reference).info("Upsell charged.")
        return UpsellOutcome(success=True, redirect_url=offer.thank_you_page_url)

    async def refuse(self, token: Optional[str], offer_id: Optional[str] = None) -> UpsellOutcome:
        target_offer_id = offer_id
        if token:
            session = await self.session_repo.get(token)
            if session is not None:
                target_offer_id = target_offer_id or session.offer_id
                await self.consume(token)
        offer = await self.offer_repo.get_by_id(target_offer_id) if target_offer_id else None
        return UpsellOutcome(success=True, redirect_url=offer.thank_you_page_url if offer else None)
