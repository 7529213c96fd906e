# app/modules/payments/stripe_adapter.py
# Card processor: webhook verification/normalization and the Stripe API calls.

from typing import Any, Dict, Mapping, Optional

import stripe

from app.core.config import settings
from app.core.exceptions import ProviderAPIError, WebhookAuthenticationError
from app.core.logging_setup import logger
from app.db.schemas.offer_schemas import OwnerDoc
from app.db.schemas.sale_schemas import PaymentProvider
from app.db.schemas.upsell_schemas import UpsellSessionDoc
from app.modules.payments.base import BuyerProfile, ChargeResult
from app.modules.payments.commands import PaymentCommand, PaymentEventKind, fields_from_metadata, require_id
from app.modules.payments.exceptions import MalformedMetadataError, PaymentDeclinedError

WALLET_TYPES = {"apple_pay", "google_pay", "samsung_pay"}

_PI_EVENTS = {
    "payment_intent.created": PaymentEventKind.CREATED,
    "payment_intent.succeeded": PaymentEventKind.SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventKind.FAILED,
}


def dig(obj: Any, *path: str) -> Any:
    """Walks nested dicts or Stripe objects. Missing keys yield None."""
    for key in path:
        if obj is None:
            return None
        obj = obj.get(key) if isinstance(obj, dict) else getattr(obj, key, None)
    return obj


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return dig(value, "id")


def payment_method_details(payment_intent: Any) -> Dict[str, Optional[str]]:
    """Payment method type, wallet and card country from the (expanded) latest charge."""
    charge = dig(payment_intent, "latest_charge")
    if charge is None or isinstance(charge, str):
        charges = dig(payment_intent, "charges", "data")
        charge = charges[0] if charges else None
    details = dig(charge, "payment_method_details")
    if not details:
        return {"payment_method_type": "card", "wallet_type": None, "country": None}
    method_type = dig(details, "type") or "card"
    wallet = dig(details, "card", "wallet", "type") if method_type == "card" else None
    return {
        "payment_method_type": method_type,
        "wallet_type": wallet if wallet in WALLET_TYPES else None,
        "country": dig(details, "card", "country"),
    }


class StripeWebhookAdapter:
    name = PaymentProvider.STRIPE.value

    def __init__(self, webhook_secret: str | None = None, tolerance: int | None = None):
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance or settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if settings.skip_webhook_verification:
            logger.warning("Stripe signature verification skipped (non-production escape hatch).")
            return
        signature = headers.get("stripe-signature")
        if not signature:
            raise WebhookAuthenticationError(self.name, "missing Stripe-Signature header")
        if not self.webhook_secret:
            raise WebhookAuthenticationError(self.name, "webhook secret not configured")
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"), signature, self.webhook_secret, tolerance=self.tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise WebhookAuthenticationError(self.name, str(e)) from e

    def to_command(self, event: Dict[str, Any]) -> Optional[PaymentCommand]:
        event_type = event.get("type")
        obj = dig(event, "data", "object")
        if not isinstance(obj, dict):
            raise MalformedMetadataError(f"Stripe event {event.get('id')} has no data.object")

        if event_type == "charge.refunded":
            reference = _id_of(obj.get("payment_intent"))
            if not reference:
                raise MalformedMetadataError(f"Refunded charge {obj.get('id')} has no payment_intent")
            return PaymentCommand(
                kind=PaymentEventKind.REFUNDED,
                provider=PaymentProvider.STRIPE,
                external_reference=reference,
                event_id=event.get("id"),
            )

        kind = _PI_EVENTS.get(event_type)
        if kind is None:
            return None

        fields = fields_from_metadata(obj.get("metadata"))
        if not fields.get("offer_slug"):
            # Not created by the checkout (e.g. a manual charge on the connected account)
            logger.info(f"Stripe {event_type} {obj.get('id')} carries no offer metadata. Ignoring.")
            return None

        details = payment_method_details(obj)
        if details["country"] and not fields.get("country"):
            fields["country"] = details["country"]

        last_error = obj.get("last_payment_error") or {}
        if kind == PaymentEventKind.FAILED:
            fields["failure_reason"] = last_error.get("code") or obj.get("cancellation_reason") or "unknown"
            fields["failure_message"] = last_error.get("message") or "payment declined"

        return PaymentCommand(
            kind=kind,
            provider=PaymentProvider.STRIPE,
            external_reference=require_id(obj, self.name),
            event_id=event.get("id"),
            amount_in_cents=obj.get("amount"),
            currency=obj.get("currency"),
            platform_fee_in_cents=obj.get("application_fee_amount") or 0,
            payment_method_type=details["payment_method_type"],
            wallet_type=details["wallet_type"],
            provider_account_id=event.get("account"),
            provider_customer_id=_id_of(obj.get("customer")),
            provider_payment_method_id=_id_of(obj.get("payment_method")),
            **fields,
        )


class StripeGateway:
    """Outbound Stripe calls, made on behalf of the seller's connected account."""
    name = PaymentProvider.STRIPE.value

    def __init__(self, client: stripe.StripeClient | None = None, api_key: str | None = None):
        api_key = api_key or settings.STRIPE_SECRET_KEY
        if client is None and api_key:
            client = stripe.StripeClient(api_key, http_client=stripe.HTTPXClient())
        self._client = client

    def _require_client(self) -> stripe.StripeClient:
        if self._client is None:
            raise ProviderAPIError(self.name, "STRIPE_SECRET_KEY not configured")
        return self._client

    @staticmethod
    def _options(account_id: str | None) -> Dict[str, Any]:
        return {"stripe_account": account_id} if account_id else {}

    async def fetch_customer(self, command: PaymentCommand, owner: OwnerDoc) -> Optional[BuyerProfile]:
        if not command.provider_customer_id or self._client is None:
            return None
        account = command.provider_account_id or owner.stripe_account_id
        try:
            customer = await self._client.customers.retrieve_async(
                command.provider_customer_id, options=self._options(account)
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe customer lookup failed for {command.provider_customer_id}: {e}")
            return None
        if dig(customer, "deleted"):
            return None
        return BuyerProfile(name=dig(customer, "name"), email=dig(customer, "email"), phone=dig(customer, "phone"))

    async def enrich(self, command: PaymentCommand, owner: OwnerDoc) -> PaymentCommand:
        """Re-reads the PaymentIntent with its latest charge expanded (wallet, card country)."""
        if self._client is None or command.kind == PaymentEventKind.REFUNDED:
            return command
        account = command.provider_account_id or owner.stripe_account_id
        try:
            pi = await self._client.payment_intents.retrieve_async(
                command.external_reference,
                params={"expand": ["latest_charge.payment_method_details"]},
                options=self._options(account),
            )
        except stripe.StripeError as e:
            logger.warning(f"Could not expand PaymentIntent {command.external_reference}: {e}. Using webhook data.")
            return command
        details = payment_method_details(pi)
        update = {
            "payment_method_type": details["payment_method_type"],
            "wallet_type": details["wallet_type"],
            "provider_account_id": account,
        }
        if details["country"]:
            update["country"] = details["country"]
        if not command.provider_customer_id:
            update["provider_customer_id"] = _id_of(dig(pi, "customer"))
        if not command.provider_payment_method_id:
            update["provider_payment_method_id"] = _id_of(dig(pi, "payment_method"))
        return command.model_copy(update=update)

    async def charge_off_session(self, session: UpsellSessionDoc, owner: OwnerDoc, amount_in_cents: int,
                                 currency: str, metadata: Dict[str, str], description: str) -> ChargeResult:
        client = self._require_client()
        fee = round(amount_in_cents * settings.UPSELL_PLATFORM_FEE_RATE)
        params = {
            "amount": amount_in_cents,
            "currency": currency,
            "customer": session.customer_id,
            "payment_method": session.payment_method_id,
            "off_session": True,
            "confirm": True,
            "description": description,
            "metadata": metadata,
        }
        if fee > 0:
            params["application_fee_amount"] = fee
        options = self._options(session.account_id or owner.stripe_account_id)
        options["idempotency_key"] = f"upsell_{session.token}"
        try:
            pi = await client.payment_intents.create_async(params=params, options=options)
        except stripe.CardError as e:
            raise PaymentDeclinedError(e.code or "card_declined", e.user_message or "payment declined") from e
        except stripe.StripeError as e:
            raise ProviderAPIError(self.name, str(e), getattr(e, "http_status", None)) from e

        if pi.status != "succeeded":
            raise PaymentDeclinedError("requires_action", "The payment could not be completed automatically.", pi.status)
        return ChargeResult(pi.id, amount_in_cents, currency, fee)
