# app/modules/payments/pagarme_adapter.py
# Local instant-payment processor (PIX orders).

import hashlib
import hmac
from typing import Any, Dict, Mapping, Optional

from app.core.config import settings
from app.core.exceptions import WebhookAuthenticationError
from app.core.logging_setup import logger
from app.db.schemas.offer_schemas import OwnerDoc
from app.db.schemas.sale_schemas import PaymentProvider
from app.db.schemas.upsell_schemas import UpsellSessionDoc
from app.modules.payments.base import BuyerProfile, ChargeResult
from app.modules.payments.commands import PaymentCommand, PaymentEventKind, fields_from_metadata, require_id
from app.modules.payments.exceptions import MalformedMetadataError, PaymentDeclinedError

REFERENCE_PREFIX = "PAGARME_"
SIGNATURE_HEADER = "x-hub-signature"

_ORDER_EVENTS = {
    "order.created": PaymentEventKind.CREATED,
    "order.paid": PaymentEventKind.SUCCEEDED,
    "order.payment_failed": PaymentEventKind.FAILED,
    "order.canceled": PaymentEventKind.FAILED,
    "order.refunded": PaymentEventKind.REFUNDED,
}


def sign(raw_body: bytes, secret: str) -> str:
    return "sha1=" + hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha1).hexdigest()


def _phone(customer: Dict[str, Any]) -> Optional[str]:
    mobile = (customer.get("phones") or {}).get("mobile_phone") or {}
    digits = "".join(str(mobile.get(k) or "") for k in ("country_code", "area_code", "number"))
    return digits or None


class PagarmeWebhookAdapter:
    name = PaymentProvider.PAGARME.value

    def __init__(self, webhook_secret: str | None = None):
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.PAGARME_WEBHOOK_SECRET

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if settings.skip_webhook_verification:
            logger.warning("Pagar.me signature verification skipped (non-production escape hatch).")
            return
        received = headers.get(SIGNATURE_HEADER)
        if not received:
            raise WebhookAuthenticationError(self.name, "missing X-Hub-Signature header")
        if not self.webhook_secret:
            raise WebhookAuthenticationError(self.name, "webhook secret not configured")
        if not hmac.compare_digest(sign(raw_body, self.webhook_secret), received.strip()):
            raise WebhookAuthenticationError(self.name, "signature mismatch")

    def to_command(self, event: Dict[str, Any]) -> Optional[PaymentCommand]:
        event_type = event.get("type")
        data = event.get("data")
        if not isinstance(data, dict):
            raise MalformedMetadataError(f"Pagar.me event {event.get('id')} has no data")

        if event_type == "charge.refunded":
            order_id = (data.get("order") or {}).get("id")
            if not order_id:
                raise MalformedMetadataError(f"Pagar.me charge {data.get('id')} has no order")
            return PaymentCommand(kind=PaymentEventKind.REFUNDED, provider=PaymentProvider.PAGARME,
                                  external_reference=f"{REFERENCE_PREFIX}{order_id}", event_id=event.get("id"))

        kind = _ORDER_EVENTS.get(event_type)
        if kind is None:
            return None
        order_id = require_id(data, self.name)
        if kind == PaymentEventKind.REFUNDED:
            return PaymentCommand(kind=kind, provider=PaymentProvider.PAGARME,
                                  external_reference=f"{REFERENCE_PREFIX}{order_id}", event_id=event.get("id"))

        fields = fields_from_metadata(data.get("metadata"))
        customer = data.get("customer") or {}
        fields.setdefault("customer_name", customer.get("name"))
        fields.setdefault("customer_email", customer.get("email"))
        fields.setdefault("customer_phone", _phone(customer))

        charges = data.get("charges") or [{}]
        charge = charges[0]
        if kind == PaymentEventKind.FAILED:
            tx = charge.get("last_transaction") or {}
            fields["failure_reason"] = tx.get("acquirer_return_code") or data.get("status") or "unknown"
            fields["failure_message"] = tx.get("acquirer_message") or "payment declined"

        return PaymentCommand(
            kind=kind,
            provider=PaymentProvider.PAGARME,
            external_reference=f"{REFERENCE_PREFIX}{order_id}",
            event_id=event.get("id"),
            amount_in_cents=data.get("amount"),
            currency=(data.get("currency") or "").lower() or None,
            payment_method_type=charge.get("payment_method") or "pix",
            **fields,
        )


class PagarmeGateway:
    """PIX payments need buyer interaction, so there is nothing to look up or charge off-session."""
    name = PaymentProvider.PAGARME.value

    async def fetch_customer(self, command: PaymentCommand, owner: OwnerDoc) -> Optional[BuyerProfile]:
        return None

    async def enrich(self, command: PaymentCommand, owner: OwnerDoc) -> PaymentCommand:
        return command

    async def charge_off_session(self, session: UpsellSessionDoc, owner: OwnerDoc, amount_in_cents: int,
                                 currency: str, metadata: Dict[str, str], description: str) -> ChargeResult:
        raise PaymentDeclinedError("one_click_unavailable", "One-click charges are not supported for PIX.")
